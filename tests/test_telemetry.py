"""
Tests for generation telemetry, the context cache and callback handles.
"""

import asyncio
import json

import pytest

from convoctl.core.cancellation import CancellationToken, GenerationCancelled
from convoctl.core.context_cache import ContextCache, history_signature
from convoctl.core.telemetry import TelemetryCollector
from convoctl.models.session import Message
from convoctl.utils.callbacks import CallbackRef


class TestTelemetryCollector:
    """Tests for spans and per-message generation times."""

    def test_span_written_on_end(self, temp_dir):
        collector = TelemetryCollector(base_dir=temp_dir)

        span = collector.start_generation("s1", "send", "m1")
        collector.end_generation(span, status="error", error="boom")

        event = json.loads((temp_dir / "s1.jsonl").read_text().splitlines()[0])
        assert event["type"] == "generation"
        assert event["status"] == "error"
        assert event["error"] == "boom"
        assert event["metadata"]["message_id"] == "m1"

    def test_generation_times_persist(self, temp_dir):
        TelemetryCollector(base_dir=temp_dir).record_generation_time("s1", "m1", 1.23456)

        times = TelemetryCollector(base_dir=temp_dir).generation_times("s1")

        assert times == {"m1": 1.235}

    def test_clear_generation_times(self, temp_dir):
        collector = TelemetryCollector(base_dir=temp_dir)
        collector.record_generation_time("s1", "m1", 1.0)
        collector.record_generation_time("s1", "m2", 2.0)

        collector.clear_generation_times("s1", ["m1", "unknown"])

        assert collector.generation_times("s1") == {"m2": 2.0}

    def test_disabled_writes_nothing(self, temp_dir):
        collector = TelemetryCollector(base_dir=temp_dir / "telemetry", enabled=False)

        collector.end_generation(collector.start_generation("s1", "send", "m1"))
        collector.record_generation_time("s1", "m1", 1.0)

        assert not (temp_dir / "telemetry").exists()
        assert collector.generation_times("s1") == {"m1": 1.0}
        assert collector.get_summary("s1")["generations"] == 0

    def test_summary(self, temp_dir):
        collector = TelemetryCollector(base_dir=temp_dir)
        for status in ("ok", "ok", "cancelled"):
            collector.end_generation(collector.start_generation("s1", "send", "m"), status=status)

        summary = collector.get_summary("s1")

        assert summary["generations"] == 3
        assert summary["ok"] == 2
        assert summary["cancelled"] == 1


class TestContextCache:
    """Tests for the prepared-context cache."""

    def test_hit_requires_same_history(self):
        cache = ContextCache()
        history = [Message(id="u0", role="user", content="Hi")]
        signature = history_signature(history)
        cache.put("s1", "m", "fp", signature, [{"role": "user", "content": "Hi"}])

        assert cache.get("s1", "m", "fp", signature) == [{"role": "user", "content": "Hi"}]
        edited = [Message(id="u0", role="user", content="Hey")]
        assert cache.get("s1", "m", "fp", history_signature(edited)) is None

    def test_invalidate(self):
        cache = ContextCache()
        cache.put("s1", "m", "fp1", "sig", [])
        cache.put("s1", "m", "fp2", "sig", [])
        cache.put("s2", "m", "fp1", "sig", [])

        cache.invalidate("s1", "m", "fp1")
        assert cache.get("s1", "m", "fp1", "sig") is None
        assert cache.get("s1", "m", "fp2", "sig") == []

        assert cache.invalidate_session("s1") == 1
        assert len(cache) == 1


class TestCallbackRef:
    """Tests for fire-and-forget callback handles."""

    def test_invokes_latest_callback(self):
        seen = []
        ref = CallbackRef(lambda m: seen.append(("old", m)))
        ref.set(lambda m: seen.append(("new", m)))

        ref.fire_and_forget("x")

        assert seen == [("new", "x")]

    def test_failure_is_swallowed(self):
        def explode(_):
            raise RuntimeError("nope")

        CallbackRef(explode).fire_and_forget("x")

    def test_empty_ref(self):
        CallbackRef().fire_and_forget("x")

    @pytest.mark.asyncio
    async def test_coroutine_is_scheduled(self):
        seen = []

        async def listener(message):
            seen.append(message)

        CallbackRef(listener).fire_and_forget("x")
        await asyncio.sleep(0)

        assert seen == ["x"]


class TestCancellationToken:
    """Tests for cooperative cancellation."""

    @pytest.mark.asyncio
    async def test_run_returns_result(self):
        async def work():
            return 42

        assert await CancellationToken().run(work()) == 42

    @pytest.mark.asyncio
    async def test_run_interrupted(self):
        token = CancellationToken()

        async def slow():
            await asyncio.sleep(10)

        task = asyncio.create_task(token.run(slow()))
        await asyncio.sleep(0)
        token.cancel()

        with pytest.raises(GenerationCancelled):
            await task
        assert token.cancelled is True
