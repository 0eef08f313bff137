import uuid
from flask import request, jsonify
from docling_sandbox.config import Config
from docling_sandbox.core.engines.docling_client import DoclingClient
from docling_sandbox.core.engines.docling.session import SessionState
from docling_sandbox.workers.executor import executor, run_transcription_task
from docling_sandbox.workers.tasks.transcription_tasks import supersede_active_run
from docling_sandbox.workers.utils import get_cancel_event, get_status, request_task_cancellation, update_status
from . import playground_bp

@playground_bp.route('/api/playground/inference', methods=['POST'])
def trigger_inference():
    """
    Initiates a background transcription run for an uploaded image.
    A new request supersedes (cancels) the run that is currently active.
    """
    if 'image' not in request.files:
        return jsonify({'error': 'No image file provided'}), 400

    file = request.files['image']
    if file.filename == '':
        return jsonify({'error': 'No image file selected'}), 400

    image_bytes = file.read()
    if not image_bytes:
        return jsonify({'error': 'Image file is empty'}), 400

    # An explicitly empty prompt is passed through to the chat template as-is
    instruction_text = request.form.get('prompt', Config.DEFAULT_INSTRUCTION)

    session = DoclingClient().session
    if session.state is SessionState.FAILED:
        return jsonify({
            'error': 'Model failed to initialize. Reload it via /api/playground/model/ensure.',
            'detail': str(session.error),
        }), 503

    task_id = str(uuid.uuid4())
    get_cancel_event(task_id)
    update_status(task_id, 'PENDING', status='Queued...')
    superseded = supersede_active_run(task_id)

    # Dispatch
    executor.submit(run_transcription_task, task_id, image_bytes, instruction_text)

    return jsonify({
        'status': 'queued',
        'task_id': task_id,
        'superseded': superseded
    }), 202

@playground_bp.route('/api/playground/abort/<task_id>', methods=['POST'])
def abort_task(task_id):
    """
    Signals the worker to stop emitting fragments at the next decoding step.
    """
    if not request_task_cancellation(task_id):
        return jsonify({'error': 'Task not found or already finished', 'task_id': task_id}), 404
    return jsonify({'status': 'cancel_requested', 'task_id': task_id}), 200

@playground_bp.route('/status/<task_id>')
def task_status(task_id):
    """
    Polling endpoint for task progress and the streamed output so far.
    """
    return jsonify(get_status(task_id) or {'state': 'PENDING', 'status': 'Queued...', 'output': ''})
