"""Tests for best-effort dispatch and the analytics sink."""

import hashlib
import hmac
import logging
import threading

import httpx

from switchyard.dispatch import AnalyticsSink, BestEffortDispatcher


def test_dispatcher_runs_submitted_work():
    dispatcher = BestEffortDispatcher()
    seen = []
    try:
        assert dispatcher.submit(seen.append, 1)
        assert dispatcher.submit(seen.append, 2)
        dispatcher.flush(timeout=2)
    finally:
        dispatcher.stop()
    assert seen == [1, 2]


def test_failing_work_is_logged_and_skipped(caplog):
    dispatcher = BestEffortDispatcher()
    seen = []

    def boom():
        raise RuntimeError("sink down")

    try:
        with caplog.at_level(logging.ERROR, logger="switchyard.dispatch"):
            dispatcher.submit(boom)
            dispatcher.submit(seen.append, "after")
            dispatcher.flush(timeout=2)
    finally:
        dispatcher.stop()

    assert seen == ["after"]
    assert "Best-effort dispatch of boom failed" in caplog.text


def test_full_queue_drops_work():
    dispatcher = BestEffortDispatcher(maxsize=1)
    gate = threading.Event()
    started = threading.Event()

    def block():
        started.set()
        gate.wait(2)

    try:
        assert dispatcher.submit(block)
        started.wait(2)
        assert dispatcher.submit(lambda: None)
        assert dispatcher.submit(lambda: None) is False
    finally:
        gate.set()
        dispatcher.stop()


def test_sink_signs_canonical_body():
    seen = {}

    def handler(request):
        seen["body"] = request.content.decode()
        seen["signature"] = request.headers.get("X-Switchyard-Signature")
        return httpx.Response(204)

    sink = AnalyticsSink(
        "https://analytics.example/ingest",
        secret="s3cret",
        client=httpx.Client(transport=httpx.MockTransport(handler)),
    )
    sink.send({"outcome": "plan", "amount": "0.01"})

    assert seen["body"] == '{"amount":"0.01","outcome":"plan"}'
    expected = hmac.new(b"s3cret", seen["body"].encode(), hashlib.sha256).hexdigest()
    assert seen["signature"] == f"sha256={expected}"


def test_unsigned_sink_sends_no_signature():
    seen = {}

    def handler(request):
        seen["headers"] = request.headers
        return httpx.Response(200)

    sink = AnalyticsSink(
        "https://analytics.example/ingest",
        client=httpx.Client(transport=httpx.MockTransport(handler)),
    )
    sink.send({"outcome": "deny"})
    assert "X-Switchyard-Signature" not in seen["headers"]
