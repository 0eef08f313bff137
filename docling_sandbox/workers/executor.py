"""
Docling Sandbox Executor.
Runs model warm-up and transcription tasks off the request thread.
"""

from concurrent.futures import ThreadPoolExecutor

from docling_sandbox.config import Config

# Global executor for background tasks.
executor = ThreadPoolExecutor(max_workers=Config.MAX_WORKERS)

# Core status tracking utilities
from .utils import (
    update_status,
    request_task_cancellation,
)

# Model lifecycle task
from .tasks.model_tasks import (
    run_model_warmup_task
)

# Transcription task
from .tasks.transcription_tasks import (
    run_transcription_task
)

__all__ = [
    "executor",
    "update_status",
    "request_task_cancellation",
    "run_model_warmup_task",
    "run_transcription_task"
]
