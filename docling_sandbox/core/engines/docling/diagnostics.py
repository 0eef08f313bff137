import enum
import logging
from typing import Callable, Dict, List, Optional, Union

import onnxruntime as ort

# Configure logging for the diagnostics module
logger = logging.getLogger(__name__)

# Execution providers that count as "accelerated", in order of preference
ACCELERATED_PROVIDERS = (
    "CUDAExecutionProvider",
    "ROCMExecutionProvider",
    "DmlExecutionProvider",
    "CoreMLExecutionProvider",
)
CPU_PROVIDER = "CPUExecutionProvider"


class ComputeBackend(enum.Enum):
    ACCELERATED = "accelerated"
    CPU_FALLBACK = "cpu"


def _probe_accelerated() -> bool:
    """Returns True when ONNX Runtime exposes at least one GPU execution provider."""
    available = ort.get_available_providers()
    return any(p in available for p in ACCELERATED_PROVIDERS)


def select_backend(probe: Optional[Callable[[], bool]] = None, force: Optional[str] = None) -> ComputeBackend:
    """
    Chooses the compute backend for the lifetime of the process.

    Args:
        probe (callable, optional): Capability check. Defaults to the ONNX Runtime provider probe.
        force (str, optional): 'gpu' or 'cpu' to bypass probing.

    Returns:
        ComputeBackend: ACCELERATED if the probe succeeds, CPU_FALLBACK otherwise
                        (including when the probe raises).
    """
    if force == "cpu":
        return ComputeBackend.CPU_FALLBACK
    if force == "gpu":
        return ComputeBackend.ACCELERATED

    probe = probe or _probe_accelerated
    try:
        capable = bool(probe())
    except Exception as e:
        logger.warning(f"[Diagnostics] Accelerator probe failed: {e}. Falling back to CPU.")
        return ComputeBackend.CPU_FALLBACK

    if not capable:
        logger.warning("[Diagnostics] No GPU execution provider detected. Defaulting to CPU.")
        return ComputeBackend.CPU_FALLBACK
    return ComputeBackend.ACCELERATED


def execution_providers(backend: ComputeBackend, available: Optional[List[str]] = None) -> List[str]:
    """Maps a backend onto the ONNX Runtime provider list passed to InferenceSession."""
    if backend is ComputeBackend.CPU_FALLBACK:
        return [CPU_PROVIDER]
    if available is None:
        available = ort.get_available_providers()
    providers = [p for p in ACCELERATED_PROVIDERS if p in available]
    # CPU stays last so unsupported ops can still be placed
    return providers + [CPU_PROVIDER]


def describe_backend(backend: ComputeBackend) -> Dict[str, Union[str, List[str]]]:
    """
    Human-readable summary for the host UI.

    Returns:
        dict: {
            'backend': str,        # enum value
            'providers': list,     # ONNX Runtime providers in use
            'note': str            # status line shown next to the picker
        }
    """
    try:
        providers = execution_providers(backend)
    except Exception as e:
        logger.error(f"[Diagnostics] Failed to query execution providers: {e}")
        providers = []

    if backend is ComputeBackend.ACCELERATED:
        note = "Using GPU acceleration"
    else:
        note = "GPU unavailable, falling back to CPU (slower)"

    return {
        'backend': backend.value,
        'providers': providers,
        'note': note,
    }
