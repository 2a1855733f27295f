from .runner import ToolRunner, SubprocessToolRunner, ToolExecutionError, ToolTimeoutError
from .detector import TOOLS, ToolStatus, detect_tools
from .normalizer import NormalizationResult, normalize_file
