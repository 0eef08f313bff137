import logging
import threading
from typing import Callable, Optional

from transformers import TextStreamer

# Configure logging
logger = logging.getLogger(__name__)


class FragmentStreamer(TextStreamer):
    """
    Token streamer that forwards each decoded text chunk to a sink instead of stdout.
    Special tokens are kept: DocTags structure (<page_header>, <loc_12>, ...) lives in them.
    """

    def __init__(self, tokenizer, on_fragment: Callable[[str], None],
                 cancel_event: Optional[threading.Event] = None):
        """
        Args:
            tokenizer: The model's tokenizer.
            on_fragment (callable): Receives each non-empty text fragment, in order.
            cancel_event (threading.Event, optional): Once set, no further fragments are emitted.
        """
        super().__init__(tokenizer, skip_prompt=True, skip_special_tokens=False)
        self.on_fragment = on_fragment
        self.cancel_event = cancel_event
        self.fragment_count = 0

    def is_cancelled(self) -> bool:
        return self.cancel_event is not None and self.cancel_event.is_set()

    def on_finalized_text(self, text: str, stream_end: bool = False):
        """
        Called by the parent TextStreamer when a chunk of text is decoded.
        Replaces the stdout print with a direct call to the sink.
        """
        if not text or self.is_cancelled():
            return
        self.fragment_count += 1
        self.on_fragment(text)
