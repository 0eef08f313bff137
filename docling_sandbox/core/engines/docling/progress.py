import logging
import threading
from dataclasses import dataclass
from typing import Callable, Dict, Optional

logger = logging.getLogger(__name__)


@dataclass
class AssetProgressEntry:
    bytes_loaded: int = 0
    bytes_total: int = 0


class ProgressAggregator:
    """
    Folds per-file download events into a single percentage.

    Only 'progress' events for weight shards (files ending with the shard suffix)
    are tracked. The aggregate is emitted only once every expected shard has
    reported at least once, since totals of unseen shards are unknown until then.
    Events may arrive from several download threads.
    """

    def __init__(self, expected_assets: int, sink: Optional[Callable[[int], None]] = None,
                 shard_suffix: str = "onnx_data"):
        self.expected_assets = expected_assets
        self.sink = sink
        self.shard_suffix = shard_suffix
        self.entries: Dict[str, AssetProgressEntry] = {}
        self.percentage: Optional[int] = None
        self._lock = threading.Lock()

    def _is_shard(self, file_name) -> bool:
        return isinstance(file_name, str) and file_name.endswith(self.shard_suffix)

    def update(self, event: dict) -> Optional[int]:
        """
        Consumes one engine progress event of shape {status, file, loaded, total}.

        Returns:
            int or None: The aggregate percentage if one was emitted for this event.
        """
        if event.get('status') != 'progress' or not self._is_shard(event.get('file')):
            return None

        with self._lock:
            entry = self.entries.setdefault(event['file'], AssetProgressEntry())
            entry.bytes_loaded = int(event.get('loaded') or 0)
            entry.bytes_total = int(event.get('total') or 0)

            if len(self.entries) != self.expected_assets:
                return None

            loaded = sum(e.bytes_loaded for e in self.entries.values())
            total = sum(e.bytes_total for e in self.entries.values())
            if total <= 0:
                return None

            self.percentage = (100 * loaded) // total
            if self.sink:
                self.sink(self.percentage)
            return self.percentage

    __call__ = update
