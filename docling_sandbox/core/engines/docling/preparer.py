import io
import os
import logging
from dataclasses import dataclass
from typing import Dict, List

from PIL import Image, UnidentifiedImageError

from docling_sandbox.config import Config
from docling_sandbox.core.engines.docling.errors import InvalidInputError

logger = logging.getLogger(__name__)


@dataclass
class PreparedInputs:
    """Tensor payload for one run: the chat record, its rendered prompt and the packed arrays."""
    messages: List[Dict]
    prompt_text: str
    tensors: Dict


class InputPreparer:
    """
    Turns (image, instruction) into the payload the generator consumes:
    rasterize -> single user turn -> chat template -> processor packing.
    """

    def __init__(self, processor, do_image_splitting: bool = None):
        self.processor = processor
        self.do_image_splitting = Config.DO_IMAGE_SPLITTING if do_image_splitting is None else do_image_splitting

    @staticmethod
    def rasterize(image) -> Image.Image:
        """
        Decodes the input into an RGB image at its native resolution.
        Accepts bytes, a binary file-like object, a filesystem path or a PIL image.

        Raises:
            InvalidInputError: Missing, empty or undecodable input.
        """
        if image is None:
            raise InvalidInputError("No image provided.")

        try:
            if isinstance(image, Image.Image):
                source = image
            elif isinstance(image, (bytes, bytearray)):
                if not image:
                    raise InvalidInputError("Image file is empty.")
                source = Image.open(io.BytesIO(image))
            elif isinstance(image, (str, os.PathLike)):
                if not os.path.isfile(image) or os.path.getsize(image) == 0:
                    raise InvalidInputError(f"Image file not found or empty: {image}")
                source = Image.open(image)
            elif hasattr(image, 'read'):
                data = image.read()
                if not data:
                    raise InvalidInputError("Image stream is empty.")
                source = Image.open(io.BytesIO(data))
            else:
                raise InvalidInputError(f"Unsupported image input type: {type(image).__name__}")

            # Force a full decode so truncated files fail here, not inside the processor
            source.load()
            raster = source.convert('RGB')
        except InvalidInputError:
            raise
        except (UnidentifiedImageError, OSError, ValueError, SyntaxError) as e:
            raise InvalidInputError(f"Unreadable image: {e}") from e

        if raster.width == 0 or raster.height == 0:
            raise InvalidInputError("Image has zero width or height.")
        return raster

    @staticmethod
    def build_messages(instruction_text: str) -> List[Dict]:
        """One user turn: an image placeholder followed by the literal instruction."""
        return [{
            "role": "user",
            "content": [
                {"type": "image"},
                {"type": "text", "text": instruction_text or ""},
            ],
        }]

    def render_prompt(self, messages: List[Dict]) -> str:
        return self.processor.apply_chat_template(messages, add_generation_prompt=True)

    def pack(self, prompt_text: str, raster: Image.Image):
        return self.processor(
            text=prompt_text,
            images=[raster],
            do_image_splitting=self.do_image_splitting,
            return_tensors="np",
        )

    def prepare(self, image, instruction_text: str) -> PreparedInputs:
        raster = self.rasterize(image)
        messages = self.build_messages(instruction_text)
        prompt_text = self.render_prompt(messages)
        tensors = self.pack(prompt_text, raster)
        logger.debug(f"Prepared {raster.width}x{raster.height} image, prompt of {len(prompt_text)} chars")
        return PreparedInputs(messages=messages, prompt_text=prompt_text, tensors=tensors)
