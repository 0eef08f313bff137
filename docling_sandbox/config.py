import os
import yaml
from pathlib import Path
from dotenv import load_dotenv

# Load environment variables from .env
load_dotenv()

class Config:
    """
    Centralized configuration for the Docling Sandbox.
    Static defaults live here; YAML settings and environment overrides are
    injected onto the class at import time (see ATTRIBUTE INJECTION below).
    """

    # Base Directories
    BASE_DIR = Path(__file__).resolve().parent.parent
    CONFIG_DIR = os.path.join(BASE_DIR, 'config')
    PROMPTS_DIR = os.path.join(CONFIG_DIR, 'prompts')
    SETTINGS_DIR = os.path.join(CONFIG_DIR, 'settings')

    # Weight cache (mirrors the HF layout: models/models--org--repo)
    MODELS_DIR = os.environ.get('DOCLING_MODELS_DIR', os.path.join(BASE_DIR, 'models'))

    # Credentials
    SECRET_KEY = os.environ.get('SECRET_KEY', 'playground-dev-key')
    HF_TOKEN = os.environ.get('HF_TOKEN') or None

    # Background workers. Runs are serialized by the worker run lock, the
    # extra slots keep warm-up and polling responsive while a run is active.
    MAX_WORKERS = 4

    # Upload guard for the inference endpoint
    MAX_CONTENT_LENGTH = 32 * 1024 * 1024

    @staticmethod
    def load_config_yaml(filename, subfolder='settings'):
        """Utility to load configuration files from the settings or prompts directories."""
        directory = Config.SETTINGS_DIR if subfolder == 'settings' else Config.PROMPTS_DIR
        path = os.path.join(directory, filename)
        if not os.path.exists(path):
            return {}
        with open(path, 'r', encoding='utf-8') as f:
            return yaml.safe_load(f) or {}

# --- DATA INITIALIZATION ---

local_model_params = Config.load_config_yaml('local_model.yaml')
app_params = Config.load_config_yaml('app_params.yaml')
prompt_params = Config.load_config_yaml('inference_prompt.yaml', subfolder='prompts')

model_meta = local_model_params.get('model', {})
generation_meta = local_model_params.get('generation', {})
download_meta = app_params.get('downloads', {})

# --- ATTRIBUTE INJECTION ---
# We inject loaded values directly into the Config class for global static access.

# Model Identity & Precision
Config.LOCAL_MODEL_ID = os.environ.get(
    'DOCLING_MODEL_ID',
    model_meta.get('id', "onnx-community/granite-docling-258M-ONNX")
)
Config.MODEL_REVISION = model_meta.get('revision', 'main')
# Per-component precision. A q4 decoder is ~6x smaller but loops on
# repeated output, so the merged decoder stays at fp32.
Config.MODEL_DTYPE = model_meta.get('dtype', {
    'embed_tokens': 'fp16',
    'vision_encoder': 'fp32',
    'decoder_model_merged': 'fp32',
})
Config.MODEL_SUBFOLDER = model_meta.get('subfolder', 'onnx')

# Generation Policy
Config.MAX_NEW_TOKENS = int(os.environ.get('DOCLING_MAX_NEW_TOKENS', generation_meta.get('max_new_tokens', 4096)))
Config.DO_IMAGE_SPLITTING = bool(generation_meta.get('do_image_splitting', True))
Config.END_OF_TEXT_MARKER = generation_meta.get('end_of_text_marker', '<|end_of_text|>')

# Asset Acquisition
Config.SHARD_SUFFIX = download_meta.get('shard_suffix', 'onnx_data')
Config.DOWNLOAD_CHUNK_SIZE = int(download_meta.get('chunk_size', 1024 * 1024))
# Only the connection is bounded; shard reads may stall without a timeout
Config.CONNECT_TIMEOUT = float(download_meta.get('connect_timeout', 10.0))
Config.DOWNLOAD_WORKERS = int(download_meta.get('max_concurrent', 4))

# Backend override: 'gpu', 'cpu' or unset (probe)
Config.FORCE_BACKEND = (os.environ.get('DOCLING_FORCE_BACKEND') or app_params.get('backend', {}).get('force') or '').lower() or None

# Trace files are opt-in; by default run traces stay in memory
Config.TRACE_DIR = os.environ.get('DOCLING_TRACE_DIR') or app_params.get('tracing', {}).get('dir')

# Prompts
Config.DEFAULT_INSTRUCTION = prompt_params.get('prompt', {}).get('main', "Convert this page to docling.")
