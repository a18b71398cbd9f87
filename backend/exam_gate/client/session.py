"""
Candidate attempt session: advisory countdown and autosave.

The countdown is derived from the server's expiresAt and serverTime so a
wrong local clock does not shift it; the server still rejects late writes
on its own. Changed answers are saved immediately and anything that failed
is retried by the 30-second autosave. At zero the session submits once.
"""

import asyncio
import time
from typing import Any, Callable, Dict, List, Optional

from exam_gate.client.api import ApiError, ExamGateClient
from exam_gate.logging_config import get_logger, log_with_context
from exam_gate.timeutil import parse_timestamp

logger = get_logger("attempts")

# Answers to these errors mean the attempt is already closed
TERMINAL_ERRORS = ("ATTEMPT_NOT_EDITABLE", "SUBMIT_IN_PROGRESS")


class AttemptSession:

    def __init__(self, client: ExamGateClient, attempt_id: str, remaining_seconds: float,
                 autosave_interval: float = 30.0, tick_interval: float = 1.0,
                 on_expire: Callable[[Optional[dict]], Any] = None,
                 clock: Callable[[], float] = time.monotonic):
        self.client = client
        self.attempt_id = attempt_id
        self.autosave_interval = autosave_interval
        self.tick_interval = tick_interval
        self.on_expire = on_expire
        self.clock = clock
        self.deadline = clock() + max(0.0, remaining_seconds)

        self.answers: Dict[str, Any] = {}
        self.dirty: Dict[str, Optional[int]] = {}
        self.current_question_index = 0
        self.finished = False
        self.result: Optional[dict] = None
        self._tasks: List[asyncio.Task] = []
        self._submit_lock = asyncio.Lock()

    @classmethod
    def from_attempt_view(cls, client: ExamGateClient, view: Dict[str, Any], **kwargs) -> "AttemptSession":
        """Build a session from GET /api/attempts/{id}."""
        expires_at = parse_timestamp(view.get("expiresAt"))
        server_time = parse_timestamp(view.get("serverTime"))
        if expires_at and server_time:
            remaining = (expires_at - server_time).total_seconds()
        else:
            remaining = float(view.get("remainingSeconds") or 0)
        session = cls(client, view["attemptId"], remaining, **kwargs)
        session.current_question_index = view.get("currentQuestionIndex") or 0
        for question in view.get("questions", []):
            if question.get("answer") is not None:
                session.answers[question["questionId"]] = question["answer"]
        if view.get("status") != "in_progress":
            session.finished = True
        return session

    def remaining_seconds(self) -> float:
        return max(0.0, self.deadline - self.clock())

    async def set_answer(self, question_id: str, payload: Any, current_question_index: int = None) -> bool:
        """Record an answer and save it now; a failed save stays dirty for autosave."""
        self.answers[question_id] = payload
        if current_question_index is not None:
            self.current_question_index = current_question_index
        self.dirty[question_id] = current_question_index
        return await self._save(question_id)

    async def _save(self, question_id: str) -> bool:
        index = self.dirty.get(question_id, self.current_question_index)
        try:
            await self.client.save_answer(self.attempt_id, question_id, self.answers.get(question_id),
                                          current_question_index=index)
        except ApiError as exc:
            if exc.code in TERMINAL_ERRORS:
                self.finished = True
            log_with_context(logger, "WARNING", "Answer save failed: {}".format(exc.code),
                context={"attempt_id": self.attempt_id, "question_id": question_id})
            return False
        self.dirty.pop(question_id, None)
        return True

    async def save_dirty(self) -> int:
        """Retry every unsaved answer; returns how many were saved."""
        saved = 0
        for question_id in list(self.dirty):
            if self.finished:
                break
            if await self._save(question_id):
                saved += 1
        return saved

    async def submit(self) -> Optional[dict]:
        """Save what is dirty, then submit. Returns the result, or None if already closed."""
        async with self._submit_lock:
            if self.finished:
                return self.result
            await self.save_dirty()
            try:
                self.result = await self.client.submit(self.attempt_id)
            except ApiError as exc:
                if exc.code not in TERMINAL_ERRORS:
                    raise
                self.result = None
            self.finished = True
            return self.result

    async def _autosave_loop(self):
        while not self.finished:
            await asyncio.sleep(self.autosave_interval)
            await self.save_dirty()

    async def _countdown_loop(self):
        while not self.finished:
            if self.remaining_seconds() <= 0:
                result = await self.submit()
                log_with_context(logger, "INFO", "Time is up; attempt submitted",
                    context={"attempt_id": self.attempt_id})
                if self.on_expire:
                    self.on_expire(result)
                return
            await asyncio.sleep(min(self.tick_interval, self.remaining_seconds() or self.tick_interval))

    def start(self):
        if self._tasks or self.finished:
            return
        loop = asyncio.get_running_loop()
        self._tasks = [loop.create_task(self._autosave_loop()), loop.create_task(self._countdown_loop())]

    async def stop(self):
        tasks, self._tasks = self._tasks, []
        current = asyncio.current_task()
        for task in tasks:
            if task is not current:
                task.cancel()
        await asyncio.gather(*(t for t in tasks if t is not current), return_exceptions=True)
