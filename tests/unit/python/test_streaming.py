"""
Unit tests for the async streaming bridge

The blocking session runs in a worker thread; fragments must arrive on
the event loop in generation order, followed by exactly one final item.
"""

import threading

import pytest

from fake_engine import FakeEngine

from crispify_runtime.errors import ErrorKind
from crispify_runtime.models.cancellation import CancellationToken
from crispify_runtime.models.session import ModelSession
from crispify_runtime.models.streaming import stream_process_text


def ready_session(config, preflight, **engine_kwargs):
    engine = FakeEngine(**engine_kwargs)
    session = ModelSession(engine, config, preflight=preflight)
    assert session.load_model("model.gguf")
    return session, engine


class TestStreamProcessText:
    @pytest.mark.asyncio
    async def test_fragments_in_order_then_final(self, config, roomy_preflight):
        session, _ = ready_session(config, roomy_preflight)

        items = [item async for item in stream_process_text(session, "The cat sat on the mat.")]

        assert [i.fragment for i in items[:-1]] == ["The", " cat", " sat."]
        assert all(not i.is_final for i in items[:-1])
        final = items[-1]
        assert final.is_final is True
        assert final.result.error_kind is ErrorKind.NONE

    @pytest.mark.asyncio
    async def test_error_still_ends_with_single_final(self, config, roomy_preflight):
        session, _ = ready_session(config, roomy_preflight)
        text = " ".join(["word"] * 1001)

        items = [item async for item in stream_process_text(session, text)]

        assert len(items) == 1
        assert items[0].is_final
        assert items[0].result.error_kind is ErrorKind.TOKEN_LIMIT_EXCEEDED

    @pytest.mark.asyncio
    async def test_small_queue_applies_backpressure(self, config, roomy_preflight):
        script = [f" t{i}" for i in range(20)]
        session, _ = ready_session(config, roomy_preflight, script=script)

        items = [item async for item in stream_process_text(session, "The cat sat.", queue_size=1)]

        assert "".join(i.fragment for i in items) == "".join(script)
        assert sum(1 for i in items if i.is_final) == 1

    @pytest.mark.asyncio
    async def test_breaking_out_cancels_generation(self, config, roomy_preflight):
        session, engine = ready_session(config, roomy_preflight, script=[" x"] * 100)
        token = CancellationToken()

        stream = stream_process_text(session, "The cat sat.", token, queue_size=1)
        async for item in stream:
            assert item.fragment == " x"
            break
        await stream.aclose()

        assert token.cancelled
        assert engine.sample_calls < 100
        assert session.process_text("The cat sat.", lambda f, final: None).error_kind is ErrorKind.NONE

    @pytest.mark.asyncio
    async def test_caller_token_cancels_stream(self, config, roomy_preflight):
        session, engine = ready_session(config, roomy_preflight, script=[" y"] * 50)
        token = CancellationToken()
        gate = threading.Event()

        def on_sample(n):
            if n == 2:
                token.cancel()
                gate.set()

        engine.on_sample = on_sample

        items = [item async for item in stream_process_text(session, "The cat sat.", token)]

        assert gate.is_set()
        assert items[-1].result.error_kind is ErrorKind.CANCELLED
        assert len(items) - 1 == 3
