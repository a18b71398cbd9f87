import asyncio
import json

import httpx
import pytest

from exam_gate.client.api import ApiError, ExamGateClient
from exam_gate.client.integrity import IntegrityCollector
from exam_gate.client.session import AttemptSession
from exam_gate.main import app


class FakeServer:
    """Records requests and answers them from a list of (status, body) replies."""

    def __init__(self, replies=None, default=(200, {"status": "ok", "logged": 1, "integrityScore": 100})):
        self.replies = list(replies or [])
        self.default = default
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content) if request.content else None
        self.requests.append((request.method, request.url.path, body))
        status, payload = self.replies.pop(0) if self.replies else self.default
        if isinstance(payload, Exception):
            raise payload
        if isinstance(payload, str):
            return httpx.Response(status, text=payload)
        return httpx.Response(status, json=payload)

    def paths(self):
        return [path for _, path, _ in self.requests]


def make_client(server):
    return ExamGateClient("http://exam.test", transport=httpx.MockTransport(server))


class FakeClock:
    def __init__(self, now=1000.0):
        self.now = now

    def __call__(self):
        return self.now


# ── API client ────────────────────────────────────────────────

@pytest.mark.parametrize("reply, code, status", [
    ((401, {"error": "INVALID_PIN", "reason": "pin_not_found"}), "INVALID_PIN", 401),
    ((502, "Bad gateway"), "HTTP_502", 502),
    ((500, httpx.ConnectError("refused")), "NETWORK_ERROR", 0),
    ((500, httpx.ReadTimeout("slow")), "TIMEOUT", 0),
])
def test_error_mapping(reply, code, status):
    async def scenario():
        async with make_client(FakeServer([reply])) as client:
            with pytest.raises(ApiError) as exc_info:
                await client.validate_pin("exam-1", "PIN")
            return exc_info.value

    error = asyncio.run(scenario())
    assert error.code == code
    assert error.status_code == status


def test_requests_use_camel_case_bodies():
    server = FakeServer(default=(200, {"status": "ok"}))

    async def scenario():
        async with make_client(server) as client:
            await client.save_answer("a-1", "q-1", [0, 2], current_question_index=3)
            await client.resume("exam-1", candidate_identifier="S-1", pin="PIN")

    asyncio.run(scenario())
    assert server.requests[0] == ("POST", "/api/attempts/a-1/answers",
                                  {"questionId": "q-1", "answerPayload": [0, 2], "isFinal": False,
                                   "currentQuestionIndex": 3})
    assert server.requests[1][2]["pin"] == "PIN"


def test_beacon_never_raises():
    server = FakeServer([(503, {"error": "UNAVAILABLE"}), (500, httpx.ConnectError("gone"))])

    async def scenario():
        async with make_client(server) as client:
            return [
                await client.send_integrity_beacon("a-1", [{"type": "tab_hidden"}]),
                await client.send_integrity_beacon("a-1", [{"type": "tab_hidden"}]),
                await client.send_integrity_beacon("a-1", [{"type": "tab_hidden"}]),
            ]

    assert asyncio.run(scenario()) == [False, False, True]


# ── integrity collector ───────────────────────────────────────

def test_threshold_triggers_a_flush():
    server = FakeServer()

    async def scenario():
        async with make_client(server) as client:
            collector = IntegrityCollector(client, "a-1")
            for _ in range(4):
                collector.on_blur()
            assert not collector._pending_flushes
            collector.on_focus()
            await asyncio.gather(*list(collector._pending_flushes))
            return collector

    collector = asyncio.run(scenario())
    assert len(collector.queue) == 0
    assert len(server.requests) == 1
    _, path, body = server.requests[0]
    assert path == "/api/attempts/a-1/integrity"
    assert [e["type"] for e in body["events"]] == ["window_blur"] * 4 + ["window_focus"]
    assert body["events"][0]["occurredAt"].endswith("Z")


def test_queue_is_bounded_and_drops_oldest():
    collector = IntegrityCollector(client=None, attempt_id="a-1", capacity=3, flush_threshold=100)
    for i in range(5):
        collector.record("tab_hidden", "warning", {"seq": i})

    assert collector.dropped == 2
    assert [e["metadata"]["seq"] for e in collector.queue] == [2, 3, 4]


def test_failed_flush_requeues_in_order():
    server = FakeServer([(503, {"error": "UNAVAILABLE"})])

    async def scenario():
        async with make_client(server) as client:
            collector = IntegrityCollector(client, "a-1", flush_threshold=100, batch_size=2)
            for i in range(3):
                collector.record("tab_hidden", metadata={"seq": i})
            first = await collector.flush()
            order_after_failure = [e["metadata"]["seq"] for e in collector.queue]
            second = await collector.flush()
            return first, order_after_failure, second, collector

    first, order_after_failure, second, collector = asyncio.run(scenario())
    assert first == 0
    assert order_after_failure == [0, 1, 2]
    assert second == 2
    assert [e["metadata"]["seq"] for e in collector.queue] == [2]


def test_flush_sends_at_most_one_batch():
    server = FakeServer()

    async def scenario():
        async with make_client(server) as client:
            collector = IntegrityCollector(client, "a-1", flush_threshold=100)
            for _ in range(25):
                collector.record("window_blur")
            return await collector.flush(), len(collector.queue)

    assert asyncio.run(scenario()) == (20, 5)


def test_page_hide_falls_back_from_beacon_to_keep_alive():
    server = FakeServer([(503, {"error": "UNAVAILABLE"})])

    async def scenario():
        async with make_client(server) as client:
            collector = IntegrityCollector(client, "a-1", flush_threshold=100)
            collector.on_visibility_change(hidden=True)
            delivered = await collector.page_hide()
            return delivered, collector

    delivered, collector = asyncio.run(scenario())
    assert delivered == 2
    assert collector.dropped == 0
    assert len(server.requests) == 2
    events = server.requests[1][2]["events"]
    assert events[-1]["type"] == "suspicious_client_event"
    assert events[-1]["metadata"] == {"reason": "pagehide"}


def test_final_flush_accepts_loss():
    server = FakeServer(default=(503, {"error": "UNAVAILABLE"}))

    async def scenario():
        async with make_client(server) as client:
            collector = IntegrityCollector(client, "a-1", flush_threshold=100)
            collector.on_fullscreen_change(fullscreen=False)
            return await collector.stop(final_flush=True), collector

    delivered, collector = asyncio.run(scenario())
    assert delivered == 0
    assert collector.dropped == 1
    assert not collector.queue


def test_tick_detects_timer_drift():
    clock = FakeClock(0.0)
    collector = IntegrityCollector(client=None, attempt_id="a-1", flush_threshold=100, clock=clock)

    assert collector.tick() is None
    clock.now = 1.0
    assert collector.tick() == 0
    clock.now = 4.0
    assert collector.tick() == pytest.approx(2000)

    assert len(collector.queue) == 1
    event = collector.queue[0]
    assert event["type"] == "timer_drift"
    assert event["metadata"] == {"drift_ms": 2000}


def test_interval_flush_and_stop_cancels_background_tasks():
    server = FakeServer()

    async def scenario():
        async with make_client(server) as client:
            collector = IntegrityCollector(client, "a-1", flush_interval=0.02, tick_interval=0.01,
                                           drift_threshold_ms=60_000)
            collector.on_visibility_change(hidden=True)
            collector.on_visibility_change(hidden=False)
            assert not collector._pending_flushes

            collector.start()
            tasks = list(collector._tasks)
            for _ in range(200):
                if server.requests and not collector.queue and not collector._flushing:
                    break
                await asyncio.sleep(0.01)

            delivered_on_stop = await collector.stop(final_flush=False)
            collector.on_blur()
            return tasks, delivered_on_stop, collector

    tasks, delivered_on_stop, collector = asyncio.run(scenario())
    assert len(server.requests) == 1
    assert [e["type"] for e in server.requests[0][2]["events"]] == ["tab_hidden", "tab_visible"]
    assert delivered_on_stop == 0
    assert len(tasks) == 2
    assert all(task.cancelled() for task in tasks)
    assert collector._tasks == []
    assert not collector.queue


# ── attempt session ───────────────────────────────────────────

VIEW = {
    "attemptId": "a-1",
    "status": "in_progress",
    "serverTime": "2026-03-01T10:00:00Z",
    "expiresAt": "2026-03-01T10:20:00Z",
    "remainingSeconds": 5,
    "currentQuestionIndex": 2,
    "questions": [{"questionId": "q-1", "answer": 1}, {"questionId": "q-2", "answer": None}],
}


def test_session_countdown_uses_server_times():
    clock = FakeClock(500.0)
    session = AttemptSession.from_attempt_view(None, VIEW, clock=clock)

    assert session.remaining_seconds() == 1200
    assert session.current_question_index == 2
    assert session.answers == {"q-1": 1}
    clock.now += 1500
    assert session.remaining_seconds() == 0


def test_failed_save_stays_dirty_until_autosave():
    server = FakeServer([(500, httpx.ConnectError("offline"))], default=(200, {"status": "ok", "versionNo": 1}))

    async def scenario():
        async with make_client(server) as client:
            session = AttemptSession(client, "a-1", remaining_seconds=600)
            saved_now = await session.set_answer("q-1", 2, current_question_index=1)
            dirty_after_failure = dict(session.dirty)
            retried = await session.save_dirty()
            return saved_now, dirty_after_failure, retried, session

    saved_now, dirty_after_failure, retried, session = asyncio.run(scenario())
    assert saved_now is False
    assert dirty_after_failure == {"q-1": 1}
    assert retried == 1
    assert session.dirty == {}
    assert server.requests[-1][2]["answerPayload"] == 2


def test_submit_runs_once():
    server = FakeServer(default=(200, {"status": "ok", "finalStatus": "submitted"}))

    async def scenario():
        async with make_client(server) as client:
            session = AttemptSession(client, "a-1", remaining_seconds=600)
            return await asyncio.gather(session.submit(), session.submit())

    results = asyncio.run(scenario())
    assert results[0] == results[1] == {"status": "ok", "finalStatus": "submitted"}
    assert server.paths().count("/api/attempts/a-1/submit") == 1


def test_submit_on_closed_attempt_returns_none():
    server = FakeServer([(400, {"error": "ATTEMPT_NOT_EDITABLE", "status": "auto_submitted"})])

    async def scenario():
        async with make_client(server) as client:
            session = AttemptSession(client, "a-1", remaining_seconds=600)
            return await session.submit(), session.finished

    assert asyncio.run(scenario()) == (None, True)


def test_countdown_submits_at_zero():
    server = FakeServer(default=(200, {"status": "ok", "finalStatus": "auto_submitted"}))
    expired = []

    async def scenario():
        async with make_client(server) as client:
            session = AttemptSession(client, "a-1", remaining_seconds=0, autosave_interval=0.01,
                                     on_expire=expired.append)
            session.start()
            await asyncio.wait_for(asyncio.gather(*session._tasks), timeout=5)
            await session.stop()
            return session

    session = asyncio.run(scenario())
    assert session.finished is True
    assert expired == [{"status": "ok", "finalStatus": "auto_submitted"}]
    assert server.paths() == ["/api/attempts/a-1/submit"]


# ── end to end against the app ────────────────────────────────

def test_candidate_flow_against_the_app(client, make_exam, make_pin):
    exam_id, question_ids = make_exam()
    make_pin(exam_id, raw="E2E-PIN")

    async def scenario():
        api = ExamGateClient("http://testserver", transport=httpx.ASGITransport(app=app))
        async with api:
            entry = await api.validate_pin(exam_id, "E2E-PIN", candidate_name="Ada Lovelace")
            view = await api.get_attempt(entry["attemptId"])
            session = AttemptSession.from_attempt_view(api, view)
            collector = IntegrityCollector(api, entry["attemptId"], flush_threshold=100)

            for index, question_id in enumerate(question_ids[:3]):
                await session.set_answer(question_id, index, current_question_index=index)
            collector.on_visibility_change(hidden=True)
            collector.on_visibility_change(hidden=False)

            await collector.stop(final_flush=True)
            outcome = await session.submit()
            after = await api.get_attempt(entry["attemptId"])
            return outcome, after

    outcome, after = asyncio.run(scenario())
    assert outcome["finalStatus"] == "submitted"
    assert outcome["result"]["percentage"] == 75
    assert after["status"] == "submitted"
    assert after["integrityScore"] == 95
