import time
import logging
import threading
from typing import Callable, Optional

from docling_sandbox.config import Config
from docling_sandbox.core.engines.docling.diagnostics import ComputeBackend, select_backend, describe_backend
from docling_sandbox.core.engines.docling.errors import DoclingEngineError, GenerationCancelled, GenerationError
from docling_sandbox.core.engines.docling.generator import StreamingDecoder
from docling_sandbox.core.engines.docling.preparer import InputPreparer
from docling_sandbox.core.engines.docling.session import ModelSession

# Configure logging
logger = logging.getLogger(__name__)


class DoclingClient:
    """
    Singleton Orchestrator for the local Granite Docling model.
    Picks the compute backend exactly once, owns the ModelSession, and exposes the
    two entry points the host calls: ensure_model_ready() and run_inference().
    """
    _instance = None
    _instance_lock = threading.Lock()

    # State Containers
    _backend: ComputeBackend = None
    _session: ModelSession = None

    def __new__(cls):
        with cls._instance_lock:
            if cls._instance is None:
                instance = super(DoclingClient, cls).__new__(cls)
                instance._backend = select_backend(force=Config.FORCE_BACKEND)
                instance._session = ModelSession(instance._backend)
                logger.info(f"Docling client created: {describe_backend(instance._backend)['note']}")
                cls._instance = instance
        return cls._instance

    @property
    def backend(self) -> ComputeBackend:
        return self._backend

    @property
    def session(self) -> ModelSession:
        return self._session

    def ensure_model_ready(self, progress_callback: Optional[Callable[[int], None]] = None) -> None:
        """Idempotent. Concurrent callers share the in-flight initialization."""
        self._session.ensure_ready(progress_callback)

    def run_inference(self,
                      image,
                      instruction_text: str,
                      on_fragment: Callable[[str], None],
                      cancel_event: Optional[threading.Event] = None,
                      granular_logger=None) -> str:
        """
        Public facade for a transcription run.
        The image is validated before the model is touched, so bad input never
        triggers a download or a generation call.

        Returns:
            str: Final transcription with the trailing end marker removed.

        Raises:
            InvalidInputError, InitializationError, GenerationError, GenerationCancelled
        """
        raster = InputPreparer.rasterize(image)

        if granular_logger:
            granular_logger.push_context('transcription', width=raster.width, height=raster.height)

        try:
            text = self._transcribe(raster, instruction_text, on_fragment, cancel_event, granular_logger)
        except GenerationCancelled:
            if granular_logger:
                granular_logger.pop_context('CANCELLED')
            raise
        except Exception as e:
            if granular_logger:
                granular_logger.pop_context('FAILED', error=type(e).__name__)
            raise

        if granular_logger:
            granular_logger.pop_context('COMPLETE', chars=len(text))
        return text

    def _transcribe(self, raster, instruction_text, on_fragment, cancel_event, granular_logger) -> str:
        self.ensure_model_ready()

        preproc_start = time.time()
        try:
            preparer = InputPreparer(self._session.preprocessor)
            payload = preparer.prepare(raster, instruction_text)
        except DoclingEngineError:
            raise
        except Exception as e:
            logger.error(f"Preprocessing failed: {e}")
            raise GenerationError(f"Preprocessing failed: {str(e)}") from e

        if granular_logger:
            input_ids = payload.tensors['input_ids']
            granular_logger.log_preprocessing(
                (raster.width, raster.height),
                int(input_ids.shape[-1]),
                (time.time() - preproc_start) * 1000,
            )

        decoder = StreamingDecoder(self._session.generator, self._session.preprocessor.tokenizer)
        return decoder.generate(payload, on_fragment, cancel_event=cancel_event, granular_logger=granular_logger)
