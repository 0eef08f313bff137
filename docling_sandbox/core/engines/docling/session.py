import enum
import logging
import threading
import time
from concurrent.futures import Future
from typing import Callable, Dict, Optional

from docling_sandbox.config import Config
from docling_sandbox.core.engines.docling.diagnostics import ComputeBackend
from docling_sandbox.core.engines.docling.errors import InitializationError
from docling_sandbox.core.engines.docling.loader import ModelLoader
from docling_sandbox.core.engines.docling.progress import ProgressAggregator

logger = logging.getLogger(__name__)


class SessionState(enum.Enum):
    IDLE = "IDLE"
    LOADING = "LOADING"
    READY = "READY"
    FAILED = "FAILED"


class ModelSession:
    """
    Lazily initialized holder of the Preprocessor and Generator.

    Only one initialization runs at a time: the first caller builds the model while
    concurrent callers wait on the same Future and observe the same outcome. A failed
    initialization stays FAILED (no automatic retry) until someone calls
    ensure_ready() again, which starts a fresh acquisition. There is no unload.
    """

    def __init__(self, backend: ComputeBackend, model_id: str = None,
                 dtype: Optional[Dict[str, str]] = None, loader: Optional[ModelLoader] = None):
        self.backend = backend
        self.model_id = model_id or Config.LOCAL_MODEL_ID
        self.dtype = dict(dtype or Config.MODEL_DTYPE)
        self.loader = loader or ModelLoader()

        self.preprocessor = None
        self.generator = None
        self.error: Optional[InitializationError] = None
        self.progress: Optional[int] = None

        self._state = SessionState.IDLE
        self._future: Optional[Future] = None
        self._lock = threading.Lock()
        self._progress_listeners = []

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def is_ready(self) -> bool:
        return self._state is SessionState.READY

    def ensure_ready(self, progress_callback: Optional[Callable[[int], None]] = None) -> "ModelSession":
        """
        Blocks until the model is loaded.

        Args:
            progress_callback (callable, optional): Receives the aggregate download percentage.

        Raises:
            InitializationError: The (shared) initialization attempt failed.
        """
        with self._lock:
            if self._state is SessionState.READY:
                return self
            if progress_callback:
                self._progress_listeners.append(progress_callback)
            owner = self._state in (SessionState.IDLE, SessionState.FAILED)
            if owner:
                self._future = Future()
                self._state = SessionState.LOADING
                self.error = None
                self.progress = None
            future = self._future

        if owner:
            self._initialize(future)
        return future.result()

    def _emit_progress(self, percentage: int):
        self.progress = percentage
        for listener in list(self._progress_listeners):
            listener(percentage)

    def _initialize(self, future: Future):
        start = time.time()
        try:
            logger.info(f"Initializing {self.model_id} on backend '{self.backend.value}' with dtype {self.dtype}")
            preprocessor = self.loader.load_preprocessor(self.model_id)
            manifest = self.loader.plan_generator(self.model_id, self.dtype)
            aggregator = ProgressAggregator(
                manifest.expected_shards,
                sink=self._emit_progress,
                shard_suffix=manifest.shard_suffix,
            )
            generator = self.loader.load_generator(
                self.model_id,
                self.backend,
                manifest,
                progress_callback=aggregator.update,
                preprocessor=preprocessor,
            )
        except Exception as e:
            error = e if isinstance(e, InitializationError) else InitializationError(f"Model initialization failed: {e}")
            if error is not e:
                error.__cause__ = e
            logger.error(f"Model session failed to initialize: {error}")
            with self._lock:
                self.error = error
                self._state = SessionState.FAILED
                self._progress_listeners.clear()
            future.set_exception(error)
            return

        with self._lock:
            self.preprocessor = preprocessor
            self.generator = generator
            self._state = SessionState.READY
            self._progress_listeners.clear()
        logger.info(f"Model ready: {self.model_id.split('/')[-1]} ({time.time() - start:.1f}s)")
        future.set_result(self)

    def status(self) -> Dict:
        return {
            'model_id': self.model_id,
            'backend': self.backend.value,
            'state': self._state.value,
            'progress': self.progress,
            'error': str(self.error) if self.error else None,
        }
