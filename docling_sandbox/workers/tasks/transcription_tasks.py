import os
import logging
import threading
import traceback
from typing import Optional

from docling_sandbox.config import Config
from docling_sandbox.core.engines.docling_client import DoclingClient
from docling_sandbox.core.engines.docling.errors import (
    GenerationCancelled,
    GenerationError,
    InitializationError,
    InvalidInputError,
)
from docling_sandbox.core.services.logging.granular_logger import GranularLogger
from docling_sandbox.workers.utils import (
    append_output,
    get_cancel_event,
    release_task,
    request_task_cancellation,
    update_status,
)

logger = logging.getLogger(__name__)

# The engine's concurrent-generation safety is undocumented, so runs are serialized here
RUN_LOCK = threading.Lock()

_ACTIVE_RUN = {'task_id': None}
_ACTIVE_LOCK = threading.Lock()


def supersede_active_run(task_id: str) -> Optional[str]:
    """
    Marks task_id as the active run and cancels the previous one, if any.

    Returns:
        str or None: The id of the run that was cancelled.
    """
    with _ACTIVE_LOCK:
        previous = _ACTIVE_RUN['task_id']
        _ACTIVE_RUN['task_id'] = task_id
    if previous and previous != task_id:
        request_task_cancellation(previous)
        return previous
    return None


def _clear_active_run(task_id: str):
    with _ACTIVE_LOCK:
        if _ACTIVE_RUN['task_id'] == task_id:
            _ACTIVE_RUN['task_id'] = None


def run_transcription_task(task_id: str, image_bytes: bytes, instruction_text: str):
    """
    Background transcription run. Fragments are appended to the task's 'output' as they
    are decoded so the UI can render them by polling /status/<task_id>.
    """
    trace_dir = os.path.join(Config.TRACE_DIR, task_id) if Config.TRACE_DIR else None
    f_logger = GranularLogger(trace_dir)
    cancel_event = get_cancel_event(task_id)

    try:
        update_status(task_id, 'PROGRESS', status="Waiting for the model...", logs=f_logger.console_log)

        with RUN_LOCK:
            if cancel_event.is_set():
                raise GenerationCancelled("Run was cancelled before it started.")

            update_status(task_id, 'PROGRESS', status="Generating...", logs=f_logger.console_log)
            text = DoclingClient().run_inference(
                image_bytes,
                instruction_text,
                on_fragment=lambda fragment: append_output(task_id, fragment),
                cancel_event=cancel_event,
                granular_logger=f_logger,
            )

        update_status(task_id, 'SUCCESS', status="Transcription complete.", output=text,
                      result={'text': text}, logs=f_logger.console_log)

    except GenerationCancelled:
        f_logger.log('PIPELINE', "⚠️ Run cancelled.")
        update_status(task_id, 'CANCELLED', status="Cancelled", output='', logs=f_logger.console_log)

    except InvalidInputError as e:
        f_logger.log_error("INPUT", e)
        update_status(task_id, 'FAILURE', status=f"Invalid input: {str(e)}", logs=f_logger.console_log)

    except InitializationError as e:
        f_logger.log_error("MODEL_INIT", e)
        update_status(task_id, 'FAILURE', status=f"Model unavailable: {str(e)}", blocking=True,
                      logs=f_logger.console_log)

    except GenerationError as e:
        f_logger.log_error("GENERATION", e)
        update_status(task_id, 'FAILURE', status=f"Generation failed: {str(e)}", logs=f_logger.console_log)

    except Exception as e:
        logger.error(f"Transcription Task Failed: {traceback.format_exc()}")
        f_logger.log_error("PIPELINE_CRITICAL_FAILURE", e)
        update_status(task_id, 'FAILURE', status=f"Error: {str(e)}", logs=f_logger.console_log)

    finally:
        _clear_active_run(task_id)
        release_task(task_id)
