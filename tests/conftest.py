import io
import threading
from concurrent.futures import Future

import numpy as np
import pytest
from PIL import Image

from docling_sandbox.core.engines.docling.assets import ModelManifest
from docling_sandbox.core.engines.docling.errors import InitializationError

END = "<|end_of_text|>"

# Token id -> text. Decoding is plain concatenation, like a byte-level BPE vocab.
VOCAB = {
    0: "<image>",
    1: "<doctag>",
    2: "Hello ",
    3: "world",
    4: "\n",
    5: END,
    6: "</doctag>",
    7: "<loc_12>",
}
IMAGE_TOKEN_ID = 0
EOS_TOKEN_ID = 5


class FakeTokenizer:
    eos_token_id = EOS_TOKEN_ID

    def decode(self, ids, **kwargs):
        return "".join(VOCAB[int(i)] for i in ids)

    def convert_tokens_to_ids(self, token):
        return {v: k for k, v in VOCAB.items()}[token]


class FakeProcessor:
    """Mimics the Idefics3 processor surface used by InputPreparer."""

    def __init__(self):
        self.tokenizer = FakeTokenizer()
        self.template_calls = []
        self.pack_calls = []

    def apply_chat_template(self, messages, add_generation_prompt=False):
        self.template_calls.append((messages, add_generation_prompt))
        parts = []
        for message in messages:
            content = "".join("<image>" if c["type"] == "image" else c["text"] for c in message["content"])
            parts.append(f"User:{content}<end_of_utterance>\n")
        if add_generation_prompt:
            parts.append("Assistant:")
        return "".join(parts)

    def __call__(self, text, images, do_image_splitting=False, return_tensors=None):
        self.pack_calls.append({'text': text, 'images': images,
                                'do_image_splitting': do_image_splitting, 'return_tensors': return_tensors})
        return {
            'input_ids': np.array([[1, IMAGE_TOKEN_ID, 2]], dtype=np.int64),
            'attention_mask': np.ones((1, 3), dtype=np.int64),
            'pixel_values': np.zeros((1, 1, 3, 4, 4), dtype=np.float32),
            'pixel_attention_mask': np.ones((1, 1, 4, 4), dtype=np.bool_),
        }


class ScriptedGenerator:
    """Replays a fixed token script through the streamer, honouring should_stop."""

    def __init__(self, script, fail_at=None, on_step=None):
        self.script = list(script)
        self.fail_at = fail_at
        self.on_step = on_step
        self.calls = []

    def generate(self, input_ids, attention_mask, max_new_tokens=4096, streamer=None, should_stop=None, **kwargs):
        self.calls.append({'max_new_tokens': max_new_tokens, 'kwargs': sorted(kwargs)})
        if streamer is not None:
            streamer.put(np.asarray(input_ids))
        produced = []
        for step, token in enumerate(self.script[:max_new_tokens]):
            if should_stop is not None and should_stop():
                break
            if self.fail_at is not None and step == self.fail_at:
                raise RuntimeError("decoder exploded")
            produced.append(token)
            if streamer is not None:
                streamer.put(np.array([[token]], dtype=np.int64))
            if self.on_step:
                self.on_step(step, token)
        if streamer is not None:
            streamer.end()
        return np.array([produced], dtype=np.int64)


class FakeLoader:
    """
    Stand-in for ModelLoader. Emits progress events for a two-shard manifest and can
    be made to block (gate) or fail.
    """

    def __init__(self, fail=False, gate=None, generator=None):
        self.fail = fail
        self.gate = gate
        self.generator = generator or ScriptedGenerator([1, 2, 3, 4, EOS_TOKEN_ID])
        self.preprocessor_calls = 0
        self.fetched = []
        self.started = threading.Event()

    def load_preprocessor(self, model_id):
        self.preprocessor_calls += 1
        self.started.set()
        if self.gate is not None:
            self.gate.wait(timeout=5)
        return FakeProcessor()

    def plan_generator(self, model_id, dtype):
        manifest = ModelManifest(model_id=model_id, shard_suffix='onnx_data')
        for component in dtype:
            manifest.components[component] = f"onnx/{component}.onnx"
            manifest.files += [f"onnx/{component}.onnx", f"onnx/{component}.onnx_data"]
        return manifest

    def load_generator(self, model_id, backend, manifest, progress_callback=None, preprocessor=None):
        for filename in manifest.files:
            self.fetched.append(filename)
            if progress_callback:
                progress_callback({'status': 'progress', 'file': filename, 'loaded': 10, 'total': 10})
        if self.fail:
            raise InitializationError("network unreachable")
        return self.generator


@pytest.fixture
def fake_processor():
    return FakeProcessor()


@pytest.fixture
def fake_tokenizer():
    return FakeTokenizer()


@pytest.fixture
def png_bytes():
    buf = io.BytesIO()
    Image.new('RGB', (32, 24), (255, 255, 255)).save(buf, format='PNG')
    return buf.getvalue()


@pytest.fixture
def fresh_client(monkeypatch):
    """A DoclingClient singleton backed by FakeLoader on the CPU backend."""
    from docling_sandbox.core.engines import docling_client
    from docling_sandbox.core.engines.docling.session import ModelSession
    from docling_sandbox.core.engines.docling.diagnostics import ComputeBackend

    loader = FakeLoader()
    monkeypatch.setattr(docling_client.DoclingClient, '_instance', None)
    monkeypatch.setattr(docling_client, 'select_backend', lambda force=None: ComputeBackend.CPU_FALLBACK)
    monkeypatch.setattr(docling_client, 'ModelSession', lambda backend: ModelSession(backend, loader=loader))
    client = docling_client.DoclingClient()
    client.fake_loader = loader
    return client


class SyncExecutor:
    """Runs submitted tasks inline so HTTP tests observe final task states."""

    def submit(self, fn, *args, **kwargs):
        future = Future()
        future.set_result(fn(*args, **kwargs))
        return future


@pytest.fixture
def app_client(fresh_client, monkeypatch):
    from docling_sandbox import create_app
    from docling_sandbox.http.controllers.playground import inference, model
    from docling_sandbox.workers import utils
    from docling_sandbox.workers.tasks import transcription_tasks

    monkeypatch.setattr(inference, 'executor', SyncExecutor())
    monkeypatch.setattr(model, 'executor', SyncExecutor())
    monkeypatch.setattr(model, '_WARMUP', {'task_id': None})
    monkeypatch.setattr(utils, 'TASK_STATUS', {})
    monkeypatch.setattr(utils, '_CANCEL_EVENTS', {})
    monkeypatch.setattr(transcription_tasks, '_ACTIVE_RUN', {'task_id': None})

    app = create_app()
    app.config['TESTING'] = True
    return app.test_client()
