import os
import time
import logging
import traceback

from docling_sandbox.config import Config
from docling_sandbox.core.engines.docling_client import DoclingClient
from docling_sandbox.core.engines.docling.diagnostics import describe_backend
from docling_sandbox.core.services.logging.granular_logger import GranularLogger
from docling_sandbox.workers.utils import update_status, release_task

logger = logging.getLogger(__name__)


def run_model_warmup_task(task_id: str):
    """
    Background task that loads the model and reports the unified download percentage.
    The percentage only appears once every weight shard has reported; before that the
    status stays at 'Resolving weights...'.
    """
    trace_dir = os.path.join(Config.TRACE_DIR, task_id) if Config.TRACE_DIR else None
    f_logger = GranularLogger(trace_dir)
    client = DoclingClient()
    start = time.time()

    def on_progress(percentage: int):
        f_logger.log_download_progress(percentage)
        update_status(task_id, 'PROGRESS', percentage, 100, f"Downloading weights... {percentage}%",
                      progress=percentage, logs=f_logger.console_log)

    try:
        backend_info = describe_backend(client.backend)
        f_logger.push_context('model_warmup', model=client.session.model_id, backend=backend_info['backend'])
        f_logger.log_backend(backend_info['note'], backend_info['providers'])
        update_status(task_id, 'PROGRESS', 0, 100, "Resolving weights...", progress=None, logs=f_logger.console_log)

        client.ensure_model_ready(progress_callback=on_progress)

        elapsed_ms = (time.time() - start) * 1000
        f_logger.log_model_ready(client.session.model_id, backend_info['backend'], elapsed_ms)
        f_logger.pop_context('READY', elapsed_ms=round(elapsed_ms))
        update_status(task_id, 'SUCCESS', 100, 100, "Model ready.", progress=100,
                      result=client.session.status(), logs=f_logger.console_log)

    except Exception as e:
        logger.error(f"Warm-up Task Failed: {traceback.format_exc()}")
        f_logger.log_error("MODEL_INIT", e)
        # Distinct failure state; the host must not keep showing a stale percentage
        update_status(task_id, 'FAILURE', status=f"Error: {str(e)}", progress=None,
                      blocking=True, logs=f_logger.console_log)
    finally:
        release_task(task_id)
