import asyncio

import httpx
import pytest

from dailyplate.errors import PaymentNotYetVisible, UpstreamFetchError
from dailyplate.infra import timings
from dailyplate.processor import PaymentProcessor, ProcessorResponse
from dailyplate.reconcile import fetch_payment

DELAYS = (0.0, 0.7, 1.4, 2.1)


class ScriptedProcessor(PaymentProcessor):
    def __init__(self, *responses):
        self.responses = list(responses)
        self.calls = 0

    async def create_preference(self, payload):
        raise NotImplementedError

    async def get_payment(self, payment_id):
        self.calls += 1
        r = self.responses.pop(0)
        if isinstance(r, Exception):
            raise r
        return r


class RecordingSleep:
    def __init__(self):
        self.waits = []

    async def __call__(self, seconds):
        self.waits.append(seconds)


def _fetch(proc, sleep, delays=DELAYS):
    return asyncio.run(fetch_payment(proc, "42", delays, sleep))


def test_first_attempt_success_does_not_sleep():
    proc = ScriptedProcessor(ProcessorResponse(200, {"id": 42}))
    sleep = RecordingSleep()
    assert _fetch(proc, sleep) == {"id": 42}
    assert proc.calls == 1
    assert sleep.waits == []


def test_404_then_success_follows_schedule():
    proc = ScriptedProcessor(
        ProcessorResponse(404, {"message": "not found"}),
        ProcessorResponse(404, {"message": "not found"}),
        ProcessorResponse(200, {"id": 42, "status": "approved"}),
    )
    sleep = RecordingSleep()
    assert _fetch(proc, sleep)["status"] == "approved"
    assert proc.calls == 3
    assert sleep.waits == [0.7, 1.4]


def test_gives_up_after_schedule_when_never_visible():
    proc = ScriptedProcessor(*[ProcessorResponse(404, {})] * 4)
    sleep = RecordingSleep()
    with pytest.raises(PaymentNotYetVisible) as exc:
        _fetch(proc, sleep)
    assert exc.value.attempts == 4
    assert proc.calls == 4
    assert sleep.waits == [0.7, 1.4, 2.1]


def test_hard_client_error_stops_immediately():
    proc = ScriptedProcessor(ProcessorResponse(401, {"message": "bad token"}))
    sleep = RecordingSleep()
    with pytest.raises(UpstreamFetchError) as exc:
        _fetch(proc, sleep)
    assert exc.value.status == 401
    assert exc.value.data == {"message": "bad token"}
    assert proc.calls == 1


def test_server_errors_and_transport_errors_are_retried():
    proc = ScriptedProcessor(
        ProcessorResponse(502, {}),
        httpx.ConnectError("connection refused"),
        ProcessorResponse(200, {"id": 42}),
    )
    assert _fetch(proc, RecordingSleep()) == {"id": 42}
    assert proc.calls == 3


def test_exhausted_on_server_errors_is_upstream_failure():
    proc = ScriptedProcessor(*[ProcessorResponse(503, {})] * 4)
    with pytest.raises(UpstreamFetchError) as exc:
        _fetch(proc, RecordingSleep())
    assert exc.value.status == 503


def test_non_dict_body_is_returned_empty():
    proc = ScriptedProcessor(ProcessorResponse(200, ["odd"]))
    assert _fetch(proc, RecordingSleep()) == {}


def test_lookups_are_timed():
    proc = ScriptedProcessor(ProcessorResponse(404, {}),
                             ProcessorResponse(200, {"id": 42}))
    _fetch(proc, RecordingSleep())
    kinds = {row["kind"]: row["n"] for row in timings.snapshot()}
    assert kinds["processor.get_payment"] == 2
