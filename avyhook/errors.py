from __future__ import annotations

from dataclasses import dataclass
from typing import Any


class AvyhookError(Exception):
    """Base error. `retryable` decides between redelivery and dead-lettering."""

    retryable = False
    http_status = 500
    code = "error"


class RetryableError(AvyhookError):
    retryable = True
    http_status = 500


class TerminalError(AvyhookError):
    retryable = False
    http_status = 400


class SignatureInvalidError(TerminalError):
    code = "signature_invalid"


class MalformedPayloadError(TerminalError):
    code = "malformed_payload"


class SubscriptionRejectedError(TerminalError):
    http_status = 403
    code = "subscription_rejected"


class AuthStateInvalidError(TerminalError):
    http_status = 403
    code = "auth_state_invalid"


class CredentialNotFoundError(TerminalError):
    http_status = 404
    code = "credential_not_found"


class QueueUnavailableError(RetryableError):
    code = "queue_unavailable"


class StoreUnavailableError(RetryableError):
    code = "store_unavailable"


class ActivityFetchFailedError(RetryableError):
    code = "activity_fetch_failed"


class ExternalUpdateFailedError(RetryableError):
    code = "external_update_failed"


class TokenRefreshFailedError(RetryableError):
    code = "token_refresh_failed"


class TokenExchangeFailedError(TerminalError):
    http_status = 500
    code = "token_exchange_failed"


RESULT_UPDATED = "updated"
RESULT_SKIPPED = "skipped"
RESULT_ERROR = "error"


@dataclass(frozen=True)
class ProcessResult:
    """Outcome of one notification attempt, returned instead of raised."""

    status: str
    branch: str
    activity_id: int | None = None
    reason: str | None = None
    error: AvyhookError | None = None

    @classmethod
    def updated(cls, branch: str, activity_id: int, reason: str | None = None) -> "ProcessResult":
        return cls(status=RESULT_UPDATED, branch=branch, activity_id=activity_id, reason=reason)

    @classmethod
    def skipped(cls, branch: str, activity_id: int | None, reason: str) -> "ProcessResult":
        return cls(status=RESULT_SKIPPED, branch=branch, activity_id=activity_id, reason=reason)

    @classmethod
    def failed(cls, branch: str, activity_id: int | None, error: AvyhookError) -> "ProcessResult":
        return cls(status=RESULT_ERROR, branch=branch, activity_id=activity_id, reason=str(error), error=error)

    @property
    def ok(self) -> bool:
        return self.status != RESULT_ERROR

    @property
    def retryable(self) -> bool:
        return self.error is not None and self.error.retryable

    def as_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "status": self.status,
            "branch": self.branch,
            "activity_id": self.activity_id,
        }
        if self.reason:
            payload["reason"] = self.reason
        if self.error is not None:
            payload["error_code"] = self.error.code
            payload["retryable"] = self.error.retryable
        return payload
