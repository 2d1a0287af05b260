from __future__ import annotations

from typing import Optional


class TriviaError(Exception):
    """Base error; carries the HTTP status and machine code used on the wire."""

    status_code = 500
    code = "internal_error"

    def __init__(self, message: str = "", *, cause: Optional[BaseException] = None):
        super().__init__(message or self.__class__.__name__)
        self.message = message or self.__class__.__name__
        self.cause = cause


class ValidationError(TriviaError):
    status_code = 400
    code = "validation_error"


class NotFoundError(ValidationError):
    status_code = 404
    code = "not_found"


class TimingInvalidError(TriviaError):
    status_code = 400
    code = "timing_invalid"


class RateLimitExceeded(TriviaError):
    status_code = 429
    code = "rate_limited"


class TransientNetworkError(TriviaError):
    status_code = 503
    code = "transient"


class QuestionProviderError(TransientNetworkError):
    code = "questions_unavailable"


class QuestionCountMismatch(TransientNetworkError):
    code = "question_count_mismatch"


class SessionCreationFailure(TriviaError):
    code = "session_creation_failed"


class SessionBusyError(TriviaError):
    status_code = 409
    code = "session_busy"


class DuplicateSubmission(TriviaError):
    # Internal signal only; callers turn it into the recorded outcome.
    status_code = 200
    code = "duplicate"


_BY_CODE = {
    cls.code: cls
    for cls in (
        ValidationError,
        NotFoundError,
        TimingInvalidError,
        RateLimitExceeded,
        TransientNetworkError,
        QuestionProviderError,
        SessionBusyError,
    )
}


def error_from_payload(status_code: int, payload: dict) -> TriviaError:
    """Rebuild a typed error from a ``{"success": false, ...}`` response body."""

    message = str(payload.get("error") or f"Request failed with status {status_code}")
    cls = _BY_CODE.get(payload.get("code") or "")
    if cls is None:
        if status_code == 429:
            cls = RateLimitExceeded
        elif status_code == 404:
            cls = NotFoundError
        elif status_code >= 500:
            cls = TransientNetworkError
        else:
            cls = ValidationError
    return cls(message)
