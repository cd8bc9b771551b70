"""Transport errors."""

from __future__ import annotations

RETRYABLE_STATUS_CODES = frozenset({408, 409, 429, 500, 502, 503, 504})


class TransportError(RuntimeError):
    """Raised when the model backend cannot complete a request.

    ``retryable`` distinguishes transient failures (timeouts, rate limiting,
    server errors) from fatal ones (authentication, malformed requests).
    """

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        retryable: bool = False,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.retryable = retryable

    @classmethod
    def from_status(cls, status_code: int, detail: object) -> TransportError:
        retryable = status_code in RETRYABLE_STATUS_CODES or status_code >= 500
        return cls(
            f"LLM request failed with status {status_code}: {detail}",
            status_code=status_code,
            retryable=retryable,
        )


__all__ = ["RETRYABLE_STATUS_CODES", "TransportError"]
