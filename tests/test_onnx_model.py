from types import SimpleNamespace

import numpy as np
import pytest

from conftest import EOS_TOKEN_ID, IMAGE_TOKEN_ID
from docling_sandbox.core.engines.docling.onnx_model import OnnxVision2Seq

HIDDEN = 4
VOCAB_SIZE = 8


def _node(name, type_, shape=None):
    return SimpleNamespace(name=name, type=type_, shape=shape or [])


class FakeEmbed:
    def get_inputs(self):
        return [_node('input_ids', 'tensor(int64)', ['batch', 'seq'])]

    def run(self, output_names, feeds):
        ids = feeds['input_ids']
        return [np.repeat(ids[..., None].astype(np.float32), HIDDEN, axis=-1)]


class FakeVision:
    def __init__(self, features=1):
        self.features = features
        self.calls = []

    def get_inputs(self):
        return [_node('pixel_values', 'tensor(float)'), _node('pixel_attention_mask', 'tensor(bool)')]

    def run(self, output_names, feeds):
        self.calls.append(feeds)
        return [np.full((1, self.features, HIDDEN), 9.0, dtype=np.float32)]


class FakeDecoder:
    """Emits a scripted next token per step and grows a one-layer KV cache."""

    OUTPUTS = ['logits', 'present.0.key', 'present.0.value']

    def __init__(self, script, outputs=None):
        self.script = list(script)
        self.outputs = outputs or self.OUTPUTS
        self.feeds = []

    def get_inputs(self):
        return [
            _node('inputs_embeds', 'tensor(float)', ['batch', 'seq', HIDDEN]),
            _node('attention_mask', 'tensor(int64)', ['batch', 'total']),
            _node('position_ids', 'tensor(int64)', ['batch', 'seq']),
            _node('past_key_values.0.key', 'tensor(float)', ['batch', 2, 'past', 3]),
            _node('past_key_values.0.value', 'tensor(float)', ['batch', 2, 'past', 3]),
        ]

    def get_outputs(self):
        return [_node(name, 'tensor(float)') for name in self.outputs]

    def run(self, output_names, feeds):
        self.feeds.append(feeds)
        embeds = feeds['inputs_embeds']
        seq = embeds.shape[1]
        logits = np.zeros((1, seq, VOCAB_SIZE), dtype=np.float32)
        logits[0, -1, self.script[len(self.feeds) - 1]] = 1.0
        past = feeds['past_key_values.0.key'].shape[2]
        results = {
            'logits': logits,
            'present.0.key': np.full((1, 2, past + seq, 3), 1.0, dtype=np.float32),
            'present.0.value': np.full((1, 2, past + seq, 3), 2.0, dtype=np.float32),
        }
        return [results[name] for name in self.outputs]


class RecordingStreamer:
    def __init__(self):
        self.puts = []
        self.ended = False

    def put(self, value):
        self.puts.append(np.asarray(value).tolist())

    def end(self):
        self.ended = True


def _model(script, features=1, outputs=None):
    decoder = FakeDecoder(script, outputs)
    vision = FakeVision(features)
    sessions = {'embed_tokens': FakeEmbed(), 'vision_encoder': vision, 'decoder_model_merged': decoder}
    return OnnxVision2Seq(sessions, IMAGE_TOKEN_ID, [EOS_TOKEN_ID, None]), decoder, vision


def _inputs():
    return {
        'input_ids': np.array([[1, IMAGE_TOKEN_ID, 2]], dtype=np.int64),
        'attention_mask': np.ones((1, 3), dtype=np.int64),
        'pixel_values': np.zeros((1, 1, 3, 4, 4), dtype=np.float64),
        'pixel_attention_mask': np.ones((1, 1, 4, 4), dtype=np.int64),
    }


def test_generates_until_eos_and_streams_every_token():
    model, decoder, _ = _model([2, 3, EOS_TOKEN_ID, 4])
    streamer = RecordingStreamer()

    out = model.generate(**_inputs(), max_new_tokens=10, streamer=streamer)

    assert out.tolist() == [[2, 3, EOS_TOKEN_ID]]
    assert streamer.puts == [[[1, IMAGE_TOKEN_ID, 2]], [[2]], [[3]], [[EOS_TOKEN_ID]]]
    assert streamer.ended
    assert len(decoder.feeds) == 3


def test_image_features_are_spliced_once_at_the_image_token():
    model, decoder, vision = _model([2, 3, EOS_TOKEN_ID])
    model.generate(**_inputs())

    assert len(vision.calls) == 1
    assert vision.calls[0]['pixel_values'].dtype == np.float32
    assert vision.calls[0]['pixel_attention_mask'].dtype == np.bool_

    first = decoder.feeds[0]['inputs_embeds']
    assert first[0, 1].tolist() == [9.0] * HIDDEN
    assert first[0, 0].tolist() == [1.0] * HIDDEN
    assert first[0, 2].tolist() == [2.0] * HIDDEN


def test_cache_mask_and_positions_advance_per_step():
    model, decoder, _ = _model([2, 3, EOS_TOKEN_ID])
    model.generate(**_inputs())

    first, second, third = decoder.feeds
    assert first['past_key_values.0.key'].shape == (1, 2, 0, 3)
    assert first['position_ids'].tolist() == [[0, 1, 2]]

    assert second['inputs_embeds'].shape == (1, 1, HIDDEN)
    assert second['past_key_values.0.key'].shape == (1, 2, 3, 3)
    assert second['attention_mask'].shape == (1, 4)
    assert second['position_ids'].tolist() == [[3]]

    assert third['past_key_values.0.value'].shape == (1, 2, 4, 3)
    assert third['position_ids'].tolist() == [[4]]


def test_respects_token_budget():
    model, decoder, _ = _model([2, 2, 2, 2])
    out = model.generate(**_inputs(), max_new_tokens=2)
    assert out.tolist() == [[2, 2]]
    assert len(decoder.feeds) == 2


def test_should_stop_halts_before_next_step():
    model, decoder, _ = _model([2, 3, 4, EOS_TOKEN_ID])
    streamer = RecordingStreamer()
    out = model.generate(**_inputs(), streamer=streamer, should_stop=lambda: len(decoder.feeds) >= 1)

    assert out.tolist() == [[2]]
    assert streamer.ended


def test_image_token_count_mismatch_is_rejected():
    model, _, _ = _model([2], features=3)
    with pytest.raises(ValueError):
        model.generate(**_inputs())


def test_kv_shape_falls_back_to_text_config():
    model, _, _ = _model([EOS_TOKEN_ID])
    model.text_config = SimpleNamespace(num_key_value_heads=3, num_attention_heads=6, hidden_size=48)
    assert model._kv_shape(_node('past_key_values.0.key', 'tensor(float)', ['batch', 'heads', 'past', 'dim'])) == (3, 8)


def test_cache_is_fed_back_by_output_name():
    model, decoder, _ = _model([2, EOS_TOKEN_ID], outputs=['present.0.value', 'logits', 'present.0.key'])
    model.generate(**_inputs())

    second = decoder.feeds[1]
    assert (second['past_key_values.0.key'] == 1.0).all()
    assert (second['past_key_values.0.value'] == 2.0).all()
    assert second['past_key_values.0.key'].shape == (1, 2, 3, 3)
