from .errors import CancelledError, ItemSkippedError, ToolError
from .jobs import CancelToken, Job, JobRegistry
from .paths import EnginePaths
from .runtime import get_runtime_info

__all__ = [
    "CancelToken",
    "CancelledError",
    "EnginePaths",
    "ItemSkippedError",
    "Job",
    "JobRegistry",
    "ToolError",
    "get_runtime_info",
]
