# docling_sandbox/core/services/logging/granular_logger.py
"""
Run Trace Logging for the Docling Sandbox.
Keeps a hierarchical, human-readable trace of each warm-up or transcription task in
memory (for the polling endpoint) and optionally mirrors it to a file.
"""

import json
import os
import time
from datetime import datetime
from typing import Optional, Dict, Any

class GranularLogger:
    """
    Structured logger that records all operations in an in-memory array for real-time
    rendering in the UI console, with optional file persistence.
    """

    def __init__(self, session_folder: Optional[str] = None, filename: str = 'docling_run.log'):
        """
        Initialize the trace for a single task. No file is written when session_folder is None.
        """
        self.session_folder = session_folder
        self.log_file = os.path.join(session_folder, filename) if session_folder else None
        self.console_log = []
        self.start_time = time.time()
        self.context_stack = []

        if self.log_file:
            os.makedirs(session_folder, exist_ok=True)
        self._write_header()

    def _write_header(self):
        """Emits the trace initialization metadata."""
        header_data = {
            'session_start': datetime.now().isoformat(),
            'timestamp_unix': self.start_time,
            'session_folder': self.session_folder
        }
        readable_start = f"[SESSION START] {header_data['session_start']}"
        self.console_log.append(readable_start)

        if self.log_file:
            with open(self.log_file, 'w', encoding='utf-8') as f:
                f.write(readable_start + "\n")
                f.write(f"  [JSON] {json.dumps(header_data)}\n")

    def _format_timestamp(self) -> str:
        return datetime.now().strftime('[%H:%M:%S]')

    def _get_context_prefix(self) -> str:
        """Calculates visual indentation based on context depth."""
        if not self.context_stack:
            return ""
        depth = len(self.context_stack)
        return "  " * (depth - 1)

    def log(self, level: str, message: str, data: Optional[Dict[str, Any]] = None, **kwargs):
        """
        The core logging primitive. Appends a console line and mirrors it to file.
        """
        timestamp = self._format_timestamp()
        prefix = self._get_context_prefix()

        console_line = f"{timestamp} [{level}] {prefix}{message}"
        self.console_log.append(console_line)

        if self.log_file:
            with open(self.log_file, 'a', encoding='utf-8') as f:
                f.write(console_line + "\n")
                if data or kwargs:
                    json_entry = {
                        'timestamp': timestamp,
                        'level': level,
                        'message': message,
                        'depth': len(self.context_stack),
                        **(data or {}),
                        **kwargs
                    }
                    f.write(f"  [JSON] {json.dumps(json_entry)}\n")

    def push_context(self, stage_name: str, **metadata):
        """Pushes a new operational context onto the stack (increases indentation)."""
        self.context_stack.append({'name': stage_name, 'metadata': metadata})
        self.log('PIPELINE', f"→ {stage_name.upper()}", metadata)

    def pop_context(self, status: str = 'OK', **metadata):
        """Pops the current context (decreases indentation)."""
        if self.context_stack:
            ctx = self.context_stack.pop()
            elapsed_ms = metadata.pop('elapsed_ms', None)
            status_line = f"✓ {ctx['name']} ({status})"
            if elapsed_ms:
                status_line += f" - {elapsed_ms}ms"
            self.log('PIPELINE', status_line, metadata)

    # ========== MODEL LIFECYCLE FACADES ==========

    def log_backend(self, note: str, providers: list):
        self.log('BACKEND', f"{note} | Providers: {', '.join(providers)}")

    def log_download_progress(self, percentage: int):
        self.log('ASSETS', f"Weight download: {percentage}%")

    def log_model_ready(self, model_id: str, backend: str, elapsed_ms: float):
        self.log('VLM', f"Model ready: {model_id.split('/')[-1]} on {backend} ({elapsed_ms/1000:.1f}s)")

    # ========== TRANSCRIPTION FACADES ==========

    def log_preprocessing(self, image_size: tuple, tokens: int, elapsed_ms: float):
        self.log('VLM', f"Preprocessing image ({image_size[0]}x{image_size[1]}) | {tokens} input tokens")

    def log_token_generation(self, generated: int, max_tokens: int, elapsed_ms: float, tokens_per_sec: float):
        self.log('TOKEN', f"Generated {generated}/{max_tokens} tokens | Performance: {tokens_per_sec:.1f} tok/s")

    def log_error(self, component: str, error: Exception):
        self.log('ERROR', f"[{component}] {type(error).__name__}: {str(error)}")
