import threading

import pytest

from conftest import END, ScriptedGenerator
from docling_sandbox.core.engines import docling_client
from docling_sandbox.core.engines.docling.errors import GenerationCancelled, GenerationError, InvalidInputError
from docling_sandbox.core.engines.docling.session import SessionState
from docling_sandbox.core.services.logging.granular_logger import GranularLogger


def test_client_is_a_singleton(fresh_client):
    assert docling_client.DoclingClient() is fresh_client


def test_invalid_input_never_loads_or_generates(fresh_client):
    with pytest.raises(InvalidInputError):
        fresh_client.run_inference(b"", "Convert this page to docling.", on_fragment=lambda f: None)

    assert fresh_client.fake_loader.preprocessor_calls == 0
    assert fresh_client.fake_loader.generator.calls == []
    assert fresh_client.session.state is SessionState.IDLE


def test_run_inference_loads_lazily_and_streams(fresh_client, png_bytes):
    fragments = []
    f_logger = GranularLogger()

    text = fresh_client.run_inference(png_bytes, "Convert this page to docling.",
                                      on_fragment=fragments.append, granular_logger=f_logger)

    assert fresh_client.session.state is SessionState.READY
    assert text == "<doctag>Hello world\n"
    assert "".join(fragments) == text + END
    assert any("32x24" in line for line in f_logger.console_log)
    assert f_logger.context_stack == []


def test_second_run_reuses_the_loaded_model(fresh_client, png_bytes):
    fresh_client.run_inference(png_bytes, "a", on_fragment=lambda f: None)
    fresh_client.run_inference(png_bytes, "b", on_fragment=lambda f: None)

    assert fresh_client.fake_loader.preprocessor_calls == 1
    assert len(fresh_client.fake_loader.generator.calls) == 2


def test_trace_context_is_closed_when_generation_fails(fresh_client, png_bytes):
    fresh_client.fake_loader.generator = ScriptedGenerator([2, 4], fail_at=1)
    f_logger = GranularLogger()

    with pytest.raises(GenerationError):
        fresh_client.run_inference(png_bytes, "x", on_fragment=lambda f: None, granular_logger=f_logger)

    assert f_logger.context_stack == []
    assert any("transcription (FAILED)" in line for line in f_logger.console_log)


def test_trace_context_is_closed_when_cancelled(fresh_client, png_bytes):
    cancel = threading.Event()
    cancel.set()
    f_logger = GranularLogger()

    with pytest.raises(GenerationCancelled):
        fresh_client.run_inference(png_bytes, "x", on_fragment=lambda f: None,
                                   cancel_event=cancel, granular_logger=f_logger)

    assert f_logger.context_stack == []
    assert any("transcription (CANCELLED)" in line for line in f_logger.console_log)
