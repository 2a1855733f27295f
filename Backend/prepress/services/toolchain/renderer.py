"""
Proof renderer (pdftocairo).
"""
from prepress.core.config import settings
from prepress.services.toolchain.runner import ToolExecutionError, ToolRunner

PNG_MAGIC = b"\x89PNG\r\n\x1a\n"


async def render_proof(runner: ToolRunner, pdf: bytes, page: int = 1, dpi: int = None) -> bytes:
    """Render one page (1-indexed) to PNG."""
    image = await runner.pdftocairo_render(pdf, page, dpi or settings.PROOF_DPI)
    if not image.startswith(PNG_MAGIC):
        raise ToolExecutionError(f"pdftocairo produced no PNG for page {page}")
    return image
