import uuid
import threading
from flask import jsonify
from docling_sandbox.core.engines.docling_client import DoclingClient
from docling_sandbox.core.engines.docling.diagnostics import describe_backend
from docling_sandbox.workers.executor import executor, run_model_warmup_task
from docling_sandbox.workers.utils import get_status, update_status
from . import playground_bp

# The single warm-up task currently tracked by the host
_WARMUP = {'task_id': None}
_WARMUP_LOCK = threading.Lock()

@playground_bp.route('/api/playground/backend', methods=['GET'])
def get_backend():
    """Reports the compute backend chosen at startup."""
    return jsonify(describe_backend(DoclingClient().backend))

@playground_bp.route('/api/playground/model/ensure', methods=['POST'])
def ensure_model():
    """
    Idempotent warm-up. Returns READY immediately, the in-flight task if one is
    running, or queues a new load (including after a failed one).
    """
    client = DoclingClient()
    if client.session.is_ready:
        return jsonify({'status': 'ready', **client.session.status()}), 200

    with _WARMUP_LOCK:
        task_id = _WARMUP['task_id']
        current = get_status(task_id) if task_id else None
        if current and current.get('state') in ('PENDING', 'PROGRESS'):
            return jsonify({'status': 'loading', 'task_id': task_id}), 202

        task_id = str(uuid.uuid4())
        _WARMUP['task_id'] = task_id
        update_status(task_id, 'PENDING', status='Queued...')

    # Dispatch non-blocking load
    executor.submit(run_model_warmup_task, task_id)

    return jsonify({
        'status': 'queued',
        'task_id': task_id,
        'message': f"Loading {client.session.model_id}"
    }), 202

@playground_bp.route('/api/playground/model/status', methods=['GET'])
def model_status():
    """Session state, aggregate download percentage (None until all shards report) and error."""
    return jsonify(DoclingClient().session.status())
