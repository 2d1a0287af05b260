from __future__ import annotations

from http import HTTPStatus
from typing import Any, Dict, Optional

import httpx

from .db import get_settings
from .errors import TransientNetworkError, error_from_payload
from .models import GameConfig
from .schemas import CreateSessionOut, PublicSessionOut, SessionResultsOut, SubmitAnswerIn, SubmitAnswerOut


class TriviaClient:
    """HTTP client for the trivia API.

    Transport failures, timeouts and 5xx responses surface as
    ``TransientNetworkError``; every other failed response is rebuilt into the
    typed error named by its ``code``.
    """

    def __init__(self, base_url: Optional[str] = None, http: Optional[httpx.AsyncClient] = None, timeout: float = 10.0):
        base_url = base_url or get_settings().API_BASE_URL
        self._http = http or httpx.AsyncClient(base_url=base_url, timeout=timeout)
        self._owns_http = http is None

    async def aclose(self) -> None:
        if self._owns_http:
            await self._http.aclose()

    async def __aenter__(self) -> "TriviaClient":
        return self

    async def __aexit__(self, *exc) -> None:
        await self.aclose()

    async def create_session(self, config: GameConfig) -> CreateSessionOut:
        body = {
            "identity": config.identity,
            "questionCount": config.question_count,
            "category": config.category,
            "difficulty": config.difficulty,
        }
        data = await self._request("POST", "/api/game/session", json=body)
        return CreateSessionOut.model_validate(data)

    async def cancel_session(self, session_id: str, *, timeout: Optional[float] = None) -> PublicSessionOut:
        data = await self._request("DELETE", f"/api/game/session/{session_id}", timeout=timeout)
        return PublicSessionOut.model_validate(data)

    async def get_results(self, session_id: str) -> SessionResultsOut:
        data = await self._request("GET", f"/api/game/session/{session_id}/results")
        return SessionResultsOut.model_validate(data)

    async def submit_answer(self, request: SubmitAnswerIn, *, timeout: Optional[float] = None) -> SubmitAnswerOut:
        body = request.model_dump(mode="json", by_alias=True, exclude_none=True)
        if request.answer is None:
            body["answer"] = None
        data = await self._request("POST", "/api/scores", json=body, timeout=timeout)
        return SubmitAnswerOut.model_validate(data)

    async def _request(self, method: str, url: str, *, timeout: Optional[float] = None, **kwargs: Any) -> Dict[str, Any]:
        if timeout is not None:
            kwargs["timeout"] = timeout
        try:
            response = await self._http.request(method, url, **kwargs)
        except httpx.TimeoutException as exc:
            raise TransientNetworkError(f"{method} {url} timed out", cause=exc) from exc
        except httpx.RequestError as exc:
            raise TransientNetworkError(f"{method} {url} failed: {exc}", cause=exc) from exc

        try:
            data = response.json()
        except ValueError:
            data = {"error": response.text}

        if response.status_code != HTTPStatus.OK:
            if not isinstance(data, dict):
                data = {"error": str(data)}
            raise error_from_payload(response.status_code, data)
        return data
