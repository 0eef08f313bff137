"""
Task status tracking shared by the HTTP controllers and the background workers.
Statuses live in process memory only and are polled through /status/<task_id>.
"""

import threading
import time
from typing import Dict, Optional

TASK_STATUS: Dict[str, dict] = {}
_CANCEL_EVENTS: Dict[str, threading.Event] = {}
_STATUS_LOCK = threading.Lock()


def update_status(task_id: str, state: str, current: Optional[int] = None, total: Optional[int] = None,
                  status: Optional[str] = None, result=None, logs=None, **extra):
    """Merges a status update into TASK_STATUS[task_id]."""
    with _STATUS_LOCK:
        entry = TASK_STATUS.setdefault(task_id, {'state': 'PENDING', 'status': 'Queued...', 'output': ''})
        entry['state'] = state
        entry['updated_at'] = time.time()
        if current is not None:
            entry['current'] = current
        if total is not None:
            entry['total'] = total
        if status is not None:
            entry['status'] = status
        if result is not None:
            entry['result'] = result
        if logs is not None:
            entry['logs'] = list(logs)
        entry.update(extra)
        return dict(entry)


def append_output(task_id: str, fragment: str):
    """Appends a streamed fragment to the task's cumulative output."""
    with _STATUS_LOCK:
        entry = TASK_STATUS.setdefault(task_id, {'state': 'PROGRESS', 'status': 'Generating...', 'output': ''})
        entry['output'] = entry.get('output', '') + fragment


def get_status(task_id: str) -> Optional[dict]:
    with _STATUS_LOCK:
        entry = TASK_STATUS.get(task_id)
        return dict(entry) if entry is not None else None


def get_cancel_event(task_id: str) -> threading.Event:
    with _STATUS_LOCK:
        return _CANCEL_EVENTS.setdefault(task_id, threading.Event())


def request_task_cancellation(task_id: str) -> bool:
    """Signals a queued or running task. Returns False if the task is unknown or already finished."""
    with _STATUS_LOCK:
        event = _CANCEL_EVENTS.get(task_id)
    if event is None:
        return False
    event.set()
    return True


def release_task(task_id: str):
    """Drops the cancel handle once a task has reached a terminal state."""
    with _STATUS_LOCK:
        _CANCEL_EVENTS.pop(task_id, None)
