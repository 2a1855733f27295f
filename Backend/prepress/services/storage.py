"""
Prepress temp file storage.

All file paths are derived from the job id and the configured temp root.
Paths are NEVER stored in the database; they are recomputed at runtime.

File lifecycle:
- Input: written at submission, read by the worker, deleted after finalization
- Output: written by the worker, kept until the job's TTL expires
"""
import logging
import re
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from prepress.core.config import settings

logger = logging.getLogger(__name__)

_JOB_ID_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_-]*$")

# Output kind -> file name inside {jobDir}/output
OUTPUT_FILENAMES = {
    "report_json": "report.json",
    "proof_png": "proof.png",
    "fixed_pdf": "fixed.pdf",
}


@dataclass(frozen=True)
class JobPaths:
    temp_root: Path
    job_dir: Path        # {tempRoot}/{jobId}
    input_file: Path     # {tempRoot}/{jobId}/input.pdf
    output_dir: Path     # {tempRoot}/{jobId}/output
    report_json: Path
    proof_png: Path
    fixed_pdf: Path

    def output_path(self, kind: str) -> Path:
        if kind not in OUTPUT_FILENAMES:
            raise ValueError(f"Unknown output kind: {kind}")
        return self.output_dir / OUTPUT_FILENAMES[kind]


def get_temp_root() -> Path:
    return Path(settings.PREPRESS_TEMP_DIR)


def get_job_paths(job_id: str, temp_root: Optional[Path] = None) -> JobPaths:
    # The id becomes a directory name, so refuse anything path-like
    if not _JOB_ID_PATTERN.match(job_id or ""):
        raise ValueError(f"Invalid job id: {job_id!r}")

    root = Path(temp_root) if temp_root is not None else get_temp_root()
    job_dir = root / job_id
    output_dir = job_dir / "output"
    return JobPaths(
        temp_root=root,
        job_dir=job_dir,
        input_file=job_dir / "input.pdf",
        output_dir=output_dir,
        report_json=output_dir / OUTPUT_FILENAMES["report_json"],
        proof_png=output_dir / OUTPUT_FILENAMES["proof_png"],
        fixed_pdf=output_dir / OUTPUT_FILENAMES["fixed_pdf"],
    )


def write_file(path: Path, data: bytes) -> None:
    """Write bytes, creating parent directories if needed."""
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "wb") as buffer:
        buffer.write(data)


def read_file(path: Path) -> bytes:
    with open(path, "rb") as f:
        return f.read()


def delete_file(path: Path) -> bool:
    """Delete a file. Missing files are not an error."""
    try:
        path.unlink()
        return True
    except FileNotFoundError:
        return False


def initialize_job_directory(job_id: str) -> JobPaths:
    """Create {tempRoot}/{jobId}; output/ appears with the first output."""
    paths = get_job_paths(job_id)
    paths.job_dir.mkdir(parents=True, exist_ok=True)
    return paths


def delete_job_directory(job_id: str) -> None:
    """Remove the whole job directory (input and outputs)."""
    paths = get_job_paths(job_id)
    if paths.job_dir.exists():
        shutil.rmtree(paths.job_dir)
        logger.info(f"Deleted temp directory for job {job_id}")


def cleanup_scratch_files(job_id: str) -> None:
    """
    Delete intermediate files once a job is finalized.
    Only the input is scratch today; outputs stay until TTL expiry.
    """
    paths = get_job_paths(job_id)
    delete_file(paths.input_file)
    # A job that never wrote outputs leaves no directory behind
    if paths.job_dir.is_dir() and not any(paths.job_dir.iterdir()):
        paths.job_dir.rmdir()
