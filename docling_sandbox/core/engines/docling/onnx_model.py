import logging
from typing import Callable, Dict, Iterable, Optional

import numpy as np

logger = logging.getLogger(__name__)

# ONNX element types -> numpy dtypes for the inputs we feed
_ONNX_DTYPES = {
    'tensor(float)': np.float32,
    'tensor(float16)': np.float16,
    'tensor(int64)': np.int64,
    'tensor(bool)': np.bool_,
}

PAST_PREFIX = 'past_key_values.'
PRESENT_PREFIX = 'present.'


class OnnxVision2Seq:
    """
    Vision-to-sequence generator over three exported ONNX graphs:
    embed_tokens, vision_encoder and decoder_model_merged (with KV cache).

    Follows the transformers `generate()` streamer contract so the decoding layer
    does not care which engine it drives: `put(prompt_ids)`, `put(token)` per step, `end()`.
    """

    def __init__(self, sessions: Dict[str, object], image_token_id: int,
                 eos_token_ids: Iterable[int], text_config=None):
        self.embed_tokens = sessions['embed_tokens']
        self.vision_encoder = sessions['vision_encoder']
        self.decoder = sessions['decoder_model_merged']
        self.image_token_id = image_token_id
        self.eos_token_ids = {int(t) for t in eos_token_ids if t is not None}
        self.text_config = text_config

        self._decoder_inputs = {node.name: node for node in self.decoder.get_inputs()}
        self._past_names = [name for name in self._decoder_inputs if name.startswith(PAST_PREFIX)]
        self._decoder_outputs = [node.name for node in self.decoder.get_outputs()]

    @staticmethod
    def _input_dtype(session, name: str, default=np.float32):
        for node in session.get_inputs():
            if node.name == name:
                return _ONNX_DTYPES.get(node.type, default)
        return default

    def _kv_shape(self, node):
        """(num_kv_heads, head_dim) from the declared past shape, falling back to the text config."""
        shape = list(node.shape or [])
        if len(shape) == 4 and isinstance(shape[1], int) and isinstance(shape[3], int):
            return shape[1], shape[3]
        cfg = self.text_config
        heads = getattr(cfg, 'num_key_value_heads', None) or cfg.num_attention_heads
        head_dim = getattr(cfg, 'head_dim', None) or cfg.hidden_size // cfg.num_attention_heads
        return heads, head_dim

    def _empty_cache(self, batch_size: int) -> Dict[str, np.ndarray]:
        cache = {}
        for name in self._past_names:
            node = self._decoder_inputs[name]
            heads, head_dim = self._kv_shape(node)
            cache[name] = np.zeros([batch_size, heads, 0, head_dim], dtype=_ONNX_DTYPES.get(node.type, np.float32))
        return cache

    def _encode_image(self, pixel_values, pixel_attention_mask):
        vision_inputs = {
            'pixel_values': pixel_values.astype(self._input_dtype(self.vision_encoder, 'pixel_values'), copy=False)
        }
        if pixel_attention_mask is not None:
            vision_inputs['pixel_attention_mask'] = pixel_attention_mask.astype(np.bool_)
        return self.vision_encoder.run(['image_features'], vision_inputs)[0]

    def generate(self, input_ids, attention_mask, pixel_values=None, pixel_attention_mask=None,
                 max_new_tokens: int = 4096, streamer=None,
                 should_stop: Optional[Callable[[], bool]] = None, **unused) -> np.ndarray:
        """
        Greedy decoding loop.

        Args:
            input_ids, attention_mask: int64 arrays of shape (1, seq).
            pixel_values, pixel_attention_mask: Packed image tiles from the processor.
            max_new_tokens (int): Budget for generated tokens.
            streamer: Object with put()/end(), e.g. a transformers TextStreamer.
            should_stop (callable, optional): Checked before every step; True halts generation.

        Returns:
            np.ndarray: Generated token ids of shape (1, n), eos included when reached.
        """
        input_ids = np.asarray(input_ids, dtype=np.int64)
        attention_mask = np.asarray(attention_mask, dtype=np.int64)
        batch_size = input_ids.shape[0]

        embeds_dtype = self._input_dtype(self.decoder, 'inputs_embeds')
        past_key_values = self._empty_cache(batch_size)
        position_ids = np.cumsum(attention_mask, axis=-1) - 1
        image_features = None
        generated = []

        if streamer is not None:
            streamer.put(input_ids)

        for _ in range(max_new_tokens):
            if should_stop is not None and should_stop():
                break

            inputs_embeds = self.embed_tokens.run(None, {'input_ids': input_ids})[0].astype(embeds_dtype)

            # Vision features are computed once and spliced into the prompt embeddings
            if image_features is None and pixel_values is not None:
                image_features = self._encode_image(np.asarray(pixel_values), pixel_attention_mask)
                mask = input_ids == self.image_token_id
                flat = image_features.reshape(-1, image_features.shape[-1])
                if int(mask.sum()) != flat.shape[0]:
                    raise ValueError(f"Image token count {int(mask.sum())} does not match "
                                     f"{flat.shape[0]} vision features.")
                inputs_embeds[mask] = flat.astype(embeds_dtype)

            feeds = {
                'inputs_embeds': inputs_embeds,
                'attention_mask': attention_mask,
                'position_ids': position_ids,
                **past_key_values,
            }
            feeds = {k: v for k, v in feeds.items() if k in self._decoder_inputs}
            outputs = dict(zip(self._decoder_outputs, self.decoder.run(None, feeds)))
            logits = outputs['logits']

            next_token = logits[:, -1].argmax(-1, keepdims=True).astype(np.int64)
            # present.N.key feeds past_key_values.N.key on the next step
            for name, value in outputs.items():
                if name.startswith(PRESENT_PREFIX):
                    past_name = PAST_PREFIX + name[len(PRESENT_PREFIX):]
                    if past_name in past_key_values:
                        past_key_values[past_name] = value

            generated.append(next_token)
            if streamer is not None:
                streamer.put(next_token)
            if int(next_token[0, 0]) in self.eos_token_ids:
                break

            input_ids = next_token
            attention_mask = np.concatenate([attention_mask, np.ones_like(next_token)], axis=-1)
            position_ids = position_ids[:, -1:] + 1

        if streamer is not None:
            streamer.end()

        if not generated:
            return np.zeros((batch_size, 0), dtype=np.int64)
        return np.concatenate(generated, axis=-1)
