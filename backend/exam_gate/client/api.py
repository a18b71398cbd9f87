"""
Async HTTP client for the candidate API.

Wraps httpx.AsyncClient; every non-2xx answer becomes an ApiError carrying
the server's error code so callers can branch (re-prompt, switch to
resume, accept a terminal state).
"""

from typing import Any, Dict, List, Optional

import httpx


class ApiError(Exception):
    """Error answer from the candidate API (status 0 = network failure)."""

    def __init__(self, code: str, status_code: int, body: dict = None):
        self.code = code
        self.status_code = status_code
        self.body = body or {}
        super().__init__("{} ({})".format(code, status_code))


class ExamGateClient:
    """
    Candidate API client.

    Pass transport=httpx.MockTransport(...) (or an ASGI transport) to run
    without a network.
    """

    def __init__(self, base_url: str, timeout: float = 15.0, beacon_timeout: float = 2.0,
                 transport: httpx.AsyncBaseTransport = None, headers: dict = None):
        self.beacon_timeout = beacon_timeout
        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            timeout=timeout,
            transport=transport,
            headers=headers,
        )

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.aclose()

    async def aclose(self):
        await self._client.aclose()

    async def _request(self, method: str, path: str, payload: dict = None,
                       timeout: Optional[float] = None) -> Dict[str, Any]:
        kwargs = {"json": payload} if payload is not None else {}
        if timeout is not None:
            kwargs["timeout"] = timeout
        try:
            resp = await self._client.request(method, path, **kwargs)
        except httpx.TimeoutException:
            raise ApiError("TIMEOUT", 0)
        except httpx.TransportError:
            raise ApiError("NETWORK_ERROR", 0)

        try:
            body = resp.json()
        except ValueError:
            body = {}
        if resp.is_error:
            code = body.get("error") if isinstance(body, dict) else None
            raise ApiError(code or "HTTP_{}".format(resp.status_code), resp.status_code,
                           body if isinstance(body, dict) else {})
        return body

    async def validate_pin(self, exam_id: str, pin: str, candidate_name: str = "",
                           candidate_identifier: str = "", start_attempt: bool = True) -> Dict[str, Any]:
        return await self._request("POST", "/api/pins/validate", {
            "examId": exam_id,
            "pin": pin,
            "candidateName": candidate_name,
            "candidateIdentifier": candidate_identifier,
            "startAttempt": start_attempt,
        })

    async def resume(self, exam_id: str, candidate_name: str = "", candidate_identifier: str = "",
                     pin: str = None) -> Dict[str, Any]:
        payload = {
            "examId": exam_id,
            "candidateName": candidate_name,
            "candidateIdentifier": candidate_identifier,
        }
        if pin:
            payload["pin"] = pin
        return await self._request("POST", "/api/attempts/resume", payload)

    async def get_attempt(self, attempt_id: str) -> Dict[str, Any]:
        return await self._request("GET", "/api/attempts/{}".format(attempt_id))

    async def save_answer(self, attempt_id: str, question_id: str, answer_payload: Any,
                          current_question_index: int = None, is_final: bool = False) -> Dict[str, Any]:
        payload = {"questionId": question_id, "answerPayload": answer_payload, "isFinal": is_final}
        if current_question_index is not None:
            payload["currentQuestionIndex"] = current_question_index
        return await self._request("POST", "/api/attempts/{}/answers".format(attempt_id), payload)

    async def submit(self, attempt_id: str) -> Dict[str, Any]:
        return await self._request("POST", "/api/attempts/{}/submit".format(attempt_id), {})

    async def send_integrity(self, attempt_id: str, events: List[dict],
                             timeout: Optional[float] = None) -> Dict[str, Any]:
        return await self._request("POST", "/api/attempts/{}/integrity".format(attempt_id),
                                   {"events": events}, timeout=timeout)

    async def send_integrity_beacon(self, attempt_id: str, events: List[dict]) -> bool:
        """
        Fire-and-forget delivery used while the page goes away: short
        timeout, never raises, True only when the server accepted the batch.
        """
        try:
            await self.send_integrity(attempt_id, events, timeout=self.beacon_timeout)
            return True
        except ApiError:
            return False
