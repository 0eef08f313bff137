import time
import logging
import threading
from dataclasses import dataclass, field
from typing import Callable, List, Optional

from docling_sandbox.config import Config
from docling_sandbox.core.engines.docling.errors import GenerationCancelled, GenerationError
from docling_sandbox.core.engines.docling.preparer import PreparedInputs
from docling_sandbox.core.engines.docling.streamer import FragmentStreamer

# Configure logging
logger = logging.getLogger(__name__)


def strip_end_marker(text: str, marker: str) -> str:
    """Removes one end-of-sequence marker from the very end of the text; occurrences elsewhere stay."""
    if marker and text.endswith(marker):
        return text[:-len(marker)]
    return text


@dataclass
class StreamedOutput:
    """Append-only fragment log for a single run."""
    fragments: List[str] = field(default_factory=list)
    final_text: Optional[str] = None

    @property
    def text(self) -> str:
        return "".join(self.fragments)

    def append(self, fragment: str):
        if self.final_text is not None:
            raise RuntimeError("StreamedOutput is already finalized.")
        self.fragments.append(fragment)

    def finalize(self, end_marker: str) -> str:
        if self.final_text is not None:
            raise RuntimeError("StreamedOutput is already finalized.")
        self.final_text = strip_end_marker(self.text, end_marker)
        return self.final_text


class StreamingDecoder:
    """
    Drives incremental generation and hands each fragment to the caller as soon as
    it is decoded. The full text is trimmed once at the end; delivered fragments are
    never corrected.
    """

    def __init__(self, generator, tokenizer, max_new_tokens: int = None, end_marker: str = None):
        self.generator = generator
        self.tokenizer = tokenizer
        self.max_new_tokens = max_new_tokens or Config.MAX_NEW_TOKENS
        self.end_marker = Config.END_OF_TEXT_MARKER if end_marker is None else end_marker

    def generate(self, payload: PreparedInputs, on_fragment: Callable[[str], None],
                 cancel_event: Optional[threading.Event] = None, granular_logger=None) -> str:
        """
        Args:
            payload (PreparedInputs): Output of InputPreparer.prepare().
            on_fragment (callable): Sink receiving each fragment synchronously, in order.
            cancel_event (threading.Event, optional): Raise to stop emission and cancel the run.
            granular_logger: Optional trace logger for the run.

        Returns:
            str: The concatenated output without a trailing end marker.

        Raises:
            GenerationCancelled: cancel_event was set before generation finished.
            GenerationError: The engine failed mid-decode.
        """
        output = StreamedOutput()

        def sink(fragment: str):
            output.append(fragment)
            on_fragment(fragment)

        streamer = FragmentStreamer(self.tokenizer, sink, cancel_event=cancel_event)

        gen_start = time.time()
        try:
            generated_ids = self.generator.generate(
                **payload.tensors,
                max_new_tokens=self.max_new_tokens,
                streamer=streamer,
                should_stop=streamer.is_cancelled,
            )
        except Exception as e:
            logger.error(f"Generation failed: {e}")
            raise GenerationError(f"Decode step failed: {str(e)}") from e

        if streamer.is_cancelled():
            logger.info(f"Generation cancelled after {streamer.fragment_count} fragments")
            raise GenerationCancelled("Run was cancelled.")

        gen_elapsed = (time.time() - gen_start) * 1000
        output_tokens_count = int(generated_ids.shape[-1]) if hasattr(generated_ids, 'shape') else 0
        tps = output_tokens_count / (gen_elapsed / 1000) if gen_elapsed > 0 else 0

        if granular_logger:
            granular_logger.log_token_generation(output_tokens_count, self.max_new_tokens, gen_elapsed, tps)

        return output.finalize(self.end_marker)
