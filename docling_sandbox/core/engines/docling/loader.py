import os
import logging
from typing import Callable, Dict, Optional

import onnxruntime as ort
from transformers import AutoConfig, AutoProcessor

from docling_sandbox.config import Config
from docling_sandbox.core.engines.docling.assets import AssetFetcher, ModelManifest
from docling_sandbox.core.engines.docling.diagnostics import ComputeBackend, execution_providers
from docling_sandbox.core.engines.docling.errors import InitializationError
from docling_sandbox.core.engines.docling.onnx_model import OnnxVision2Seq

logger = logging.getLogger(__name__)


class ModelLoader:
    """
    Builds the two halves of a model session:
    - Preprocessor: transformers AutoProcessor (chat template, tokenizer, image tiling).
    - Generator: ONNX Runtime sessions per component, each at its own precision.
    """

    def __init__(self, models_root: Optional[str] = None, token: Optional[str] = None,
                 revision: Optional[str] = None, fetcher_factory=AssetFetcher,
                 session_factory=ort.InferenceSession):
        self.models_root = models_root or Config.MODELS_DIR
        self.token = token if token is not None else Config.HF_TOKEN
        self.revision = revision or Config.MODEL_REVISION
        self.fetcher_factory = fetcher_factory
        self.session_factory = session_factory

    @property
    def hub_cache_dir(self) -> str:
        return os.path.join(self.models_root, 'hub')

    def _fetcher(self, model_id: str):
        return self.fetcher_factory(
            model_id,
            models_root=self.models_root,
            revision=self.revision,
            token=self.token,
            subfolder=Config.MODEL_SUBFOLDER,
        )

    def load_preprocessor(self, model_id: str):
        """Loads processor, tokenizer and chat template for the model."""
        try:
            return AutoProcessor.from_pretrained(model_id, cache_dir=self.hub_cache_dir, token=self.token)
        except Exception as e:
            logger.error(f"Failed to load preprocessor {model_id}: {str(e)}")
            raise InitializationError(f"Preprocessor Initialization Failure: {str(e)}") from e

    def plan_generator(self, model_id: str, dtype: Dict[str, str]) -> ModelManifest:
        """Resolves which graph files (and weight shards) the precision table needs."""
        return self._fetcher(model_id).plan(dtype)

    def load_generator(self, model_id: str, backend: ComputeBackend, manifest: ModelManifest,
                       progress_callback: Optional[Callable[[dict], None]] = None,
                       preprocessor=None) -> OnnxVision2Seq:
        """
        Downloads the manifest and opens one InferenceSession per component.

        Args:
            model_id (str): Hugging Face model identifier.
            backend (ComputeBackend): Selected once at startup.
            manifest (ModelManifest): Output of plan_generator().
            progress_callback (callable, optional): Receives engine progress events.
            preprocessor (optional): Used to resolve the image and eos token ids.

        Returns:
            OnnxVision2Seq
        """
        paths = self._fetcher(model_id).fetch(manifest, progress_callback)
        providers = execution_providers(backend)

        try:
            config = AutoConfig.from_pretrained(model_id, cache_dir=self.hub_cache_dir, token=self.token)

            options = ort.SessionOptions()
            options.log_severity_level = 3

            sessions = {}
            for component, filename in manifest.components.items():
                sessions[component] = self.session_factory(paths[filename], sess_options=options, providers=providers)
                logger.info(f"Loaded {component} ({filename}) with providers: {providers}")

            text_config = getattr(config, 'text_config', config)
            image_token_id = getattr(config, 'image_token_id', None)
            eos_token_ids = self._eos_token_ids(text_config, preprocessor)
            if image_token_id is None and preprocessor is not None:
                image_token_id = preprocessor.tokenizer.convert_tokens_to_ids('<image>')

            return OnnxVision2Seq(
                sessions,
                image_token_id=image_token_id,
                eos_token_ids=eos_token_ids,
                text_config=text_config,
            )
        except Exception as e:
            logger.error(f"Failed to load generator {model_id}: {str(e)}")
            raise InitializationError(f"Generator Initialization Failure: {str(e)}") from e

    @staticmethod
    def _eos_token_ids(text_config, preprocessor):
        eos = getattr(text_config, 'eos_token_id', None)
        ids = list(eos) if isinstance(eos, (list, tuple)) else [eos]
        if preprocessor is not None:
            ids.append(getattr(preprocessor.tokenizer, 'eos_token_id', None))
        return [i for i in ids if i is not None]
