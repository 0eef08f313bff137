import os
import logging
import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Tuple

import requests
from huggingface_hub import HfApi, get_hf_file_metadata, hf_hub_url
from huggingface_hub.utils import build_hf_headers

from docling_sandbox.config import Config
from docling_sandbox.core.engines.docling.errors import InitializationError

logger = logging.getLogger(__name__)

# ONNX community file naming: onnx/{component}{suffix}.onnx
DTYPE_SUFFIXES = {
    'fp32': '',
    'fp16': '_fp16',
    'q8': '_quantized',
    'int8': '_int8',
    'uint8': '_uint8',
    'q4': '_q4',
    'q4f16': '_q4f16',
    'bnb4': '_bnb4',
}

ProgressCallback = Callable[[dict], None]


def format_size(bytes_val):
    """Formats bytes to human readable string."""
    if bytes_val < 1024:
        return f"{bytes_val} B"
    elif bytes_val < 1024**2:
        return f"{bytes_val/1024:.1f} KB"
    elif bytes_val < 1024**3:
        return f"{bytes_val/(1024**2):.1f} MB"
    else:
        return f"{bytes_val/(1024**3):.2f} GB"


def local_model_dir(models_root: str, model_id: str) -> str:
    """models/models--org--repo, matching the HF cache folder naming without symlinks."""
    safe_name = model_id.replace('/', '--')
    return os.path.join(models_root, f"models--{safe_name}")


@dataclass
class ModelManifest:
    """The set of repository files one precision table needs."""
    model_id: str
    components: Dict[str, str] = field(default_factory=dict)
    files: List[str] = field(default_factory=list)
    shard_suffix: str = 'onnx_data'

    @property
    def expected_shards(self) -> int:
        return sum(1 for f in self.files if f.endswith(self.shard_suffix))


class AssetFetcher:
    """
    Resolves and downloads the ONNX graphs (and their external-data shards) for a model.
    Every chunk is reported through an engine-style progress event:
    {'status': 'progress', 'file': ..., 'loaded': int, 'total': int, 'progress': float}
    """

    def __init__(self, model_id: str, models_root: Optional[str] = None, revision: str = 'main',
                 token: Optional[str] = None, subfolder: str = 'onnx', chunk_size: Optional[int] = None,
                 shard_suffix: Optional[str] = None, http=None, api: Optional[HfApi] = None,
                 max_workers: Optional[int] = None):
        self.model_id = model_id
        self.models_root = models_root or Config.MODELS_DIR
        self.revision = revision
        self.token = token
        self.subfolder = subfolder
        self.chunk_size = chunk_size or Config.DOWNLOAD_CHUNK_SIZE
        self.shard_suffix = shard_suffix or Config.SHARD_SUFFIX
        self.http = http or requests.Session()
        self.api = api or HfApi()
        self.max_workers = max_workers or Config.DOWNLOAD_WORKERS

    @property
    def local_dir(self) -> str:
        return local_model_dir(self.models_root, self.model_id)

    def plan(self, dtype_table: Dict[str, str]) -> ModelManifest:
        """
        Builds the manifest for a per-component precision table.

        Raises:
            InitializationError: The listing failed, a dtype is unknown, or a graph is missing.
        """
        try:
            repo_files = set(self.api.list_repo_files(self.model_id, revision=self.revision, token=self.token))
        except Exception as e:
            logger.error(f"[Assets] Failed to list repository {self.model_id}: {e}")
            raise InitializationError(f"Could not list files for '{self.model_id}': {e}") from e

        manifest = ModelManifest(model_id=self.model_id, shard_suffix=self.shard_suffix)
        for component, dtype in dtype_table.items():
            if dtype not in DTYPE_SUFFIXES:
                raise InitializationError(f"Unsupported dtype '{dtype}' for component '{component}'.")

            filename = f"{component}{DTYPE_SUFFIXES[dtype]}.onnx"
            if self.subfolder:
                filename = f"{self.subfolder}/{filename}"
            if filename not in repo_files:
                raise InitializationError(f"Required component {component} ({filename}) not found in {self.model_id}.")

            manifest.components[component] = filename
            manifest.files.append(filename)

            # Large graphs keep their weights in a companion external-data file
            data_filename = f"{filename}_data"
            if data_filename in repo_files:
                manifest.files.append(data_filename)

        logger.info(f"[Assets] Manifest for {self.model_id}: {len(manifest.files)} files, "
                    f"{manifest.expected_shards} weight shards")
        return manifest

    def fetch(self, manifest: ModelManifest, progress_callback: Optional[ProgressCallback] = None) -> Dict[str, str]:
        """
        Downloads every manifest file into the local model directory.

        Sizes are resolved for all files first and each one reports an initial
        'progress' event, so the aggregate percentage is known before any bytes
        stream. The files then download in parallel.

        Returns:
            dict: repository filename -> local path

        Raises:
            InitializationError: Any single file failed. Nothing partial is returned.
        """
        emit = progress_callback or (lambda event: None)
        if not manifest.files:
            return {}

        targets = {filename: self._resolve(filename, emit) for filename in manifest.files}

        abort = threading.Event()
        paths = {}
        with ThreadPoolExecutor(max_workers=min(self.max_workers, len(targets))) as pool:
            futures = {
                pool.submit(self._fetch_file, filename, url, total, emit, abort): filename
                for filename, (url, total) in targets.items()
            }
            try:
                for future in as_completed(futures):
                    filename = futures[future]
                    try:
                        paths[filename] = future.result()
                    except InitializationError:
                        raise
                    except Exception as e:
                        logger.error(f"[Assets] Download failed for {filename}: {e}")
                        raise InitializationError(f"Failed to fetch '{filename}' from {self.model_id}: {e}") from e
            except InitializationError:
                abort.set()
                for future in futures:
                    future.cancel()
                raise
        return paths

    def _resolve(self, filename: str, emit: ProgressCallback) -> Tuple[str, int]:
        """Looks up the file size and reports what is already on disk."""
        emit({'status': 'initiate', 'name': self.model_id, 'file': filename})
        url = hf_hub_url(self.model_id, filename, revision=self.revision)
        try:
            total = get_hf_file_metadata(url, token=self.token).size or 0
        except Exception as e:
            logger.error(f"[Assets] Metadata lookup failed for {filename}: {e}")
            raise InitializationError(f"Failed to resolve '{filename}' from {self.model_id}: {e}") from e

        target = self._target(filename)
        if self._is_complete(target, total):
            loaded = total = os.path.getsize(target)
        else:
            loaded = self._resume_offset(target + '.incomplete', total)
        emit({'status': 'progress', 'name': self.model_id, 'file': filename,
              'loaded': loaded, 'total': total,
              'progress': (100.0 * loaded / total) if total else 0.0})
        return url, total

    def _target(self, filename: str) -> str:
        return os.path.join(self.local_dir, *filename.split('/'))

    @staticmethod
    def _is_complete(target: str, total: int) -> bool:
        return os.path.exists(target) and (not total or os.path.getsize(target) == total)

    @staticmethod
    def _resume_offset(partial: str, total: int) -> int:
        size = os.path.getsize(partial) if os.path.exists(partial) else 0
        return size if total and size < total else 0

    def _fetch_file(self, filename: str, url: str, total: int, emit: ProgressCallback,
                    abort: Optional[threading.Event] = None) -> str:
        target = self._target(filename)
        partial = target + '.incomplete'
        os.makedirs(os.path.dirname(target), exist_ok=True)

        # Cache hit: already reported as fully loaded during resolution
        if self._is_complete(target, total):
            emit({'status': 'done', 'name': self.model_id, 'file': filename})
            return target

        headers = build_hf_headers(token=self.token)
        resume_from = self._resume_offset(partial, total)
        if resume_from:
            headers['Range'] = f"bytes={resume_from}-"

        emit({'status': 'download', 'name': self.model_id, 'file': filename})

        timeout = (Config.CONNECT_TIMEOUT, None)
        with self.http.get(url, headers=headers, stream=True, timeout=timeout) as response:
            response.raise_for_status()
            if response.status_code != 206:
                # Server ignored the range request; start over
                resume_from = 0
            if not total:
                total = resume_from + int(response.headers.get('Content-Length', 0))

            loaded = resume_from
            mode = 'ab' if resume_from else 'wb'
            with open(partial, mode) as f:
                for chunk in response.iter_content(chunk_size=self.chunk_size):
                    if abort is not None and abort.is_set():
                        raise InitializationError(f"Download of '{filename}' aborted after a sibling failed.")
                    if not chunk:
                        continue
                    f.write(chunk)
                    loaded += len(chunk)
                    emit({'status': 'progress', 'name': self.model_id, 'file': filename,
                          'loaded': loaded, 'total': total,
                          'progress': (100.0 * loaded / total) if total else 0.0})

        if total and loaded != total:
            raise InitializationError(f"Truncated download for '{filename}': {loaded} of {total} bytes.")

        os.replace(partial, target)
        logger.info(f"[Assets] Fetched {filename} ({format_size(loaded)})")
        emit({'status': 'done', 'name': self.model_id, 'file': filename})
        return target
