from __future__ import annotations

import hashlib
import hmac
import json
import logging
from dataclasses import dataclass
from typing import Callable

from .errors import (
    MalformedPayloadError,
    QueueUnavailableError,
    SignatureInvalidError,
    SubscriptionRejectedError,
)
from .models import WebhookNotification


logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "X-Strava-Signature"

INGRESS_QUEUED = "queued"
INGRESS_IGNORED = "ignored"


@dataclass(frozen=True)
class IngressResult:
    status: str
    reason: str | None = None
    job_id: str | None = None

    def as_dict(self) -> dict[str, str]:
        payload = {"status": self.status}
        if self.reason:
            payload["reason"] = self.reason
        if self.job_id:
            payload["job_id"] = self.job_id
        return payload


def verify_subscription(
    mode: str | None,
    token: str | None,
    challenge: str | None,
    verify_token: str,
) -> dict[str, str]:
    if not verify_token:
        raise SubscriptionRejectedError("Verify token is not configured.")
    if mode != "subscribe" or token != verify_token or not challenge:
        raise SubscriptionRejectedError("Subscription verification failed.")
    return {"hub.challenge": challenge}


def compute_signature(raw_body: bytes, secret: str) -> str:
    return hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha256).hexdigest()


def verify_signature(raw_body: bytes, signature_header: str | None, secret: str) -> bool:
    if not signature_header or not secret:
        return False
    expected = compute_signature(raw_body, secret)
    return hmac.compare_digest(expected.encode("ascii"), signature_header.strip().lower().encode("utf-8"))


def accept_notification(
    raw_body: bytes,
    signature_header: str | None,
    *,
    secret: str,
    enqueue: Callable[[str], str | None],
) -> IngressResult:
    """Verify, parse and filter one webhook delivery, then enqueue it.

    Raises the terminal ingress errors for bad signatures and bodies and
    `QueueUnavailableError` when the event could not be stored, so the
    provider retries the delivery.
    """
    if not signature_header:
        raise SignatureInvalidError("Missing signature header.")
    if not verify_signature(raw_body, signature_header, secret):
        raise SignatureInvalidError("Signature does not match request body.")

    try:
        payload = json.loads(raw_body.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise MalformedPayloadError("Request body is not valid JSON.") from exc
    notification = WebhookNotification.from_payload(payload)

    if not notification.is_enqueueable:
        logger.info(
            "Ignoring %s/%s event for object %s.",
            notification.object_type,
            notification.aspect_type,
            notification.object_id,
        )
        return IngressResult(
            INGRESS_IGNORED,
            reason=f"Event {notification.object_type}/{notification.aspect_type} is not processed.",
        )

    body_text = raw_body.decode("utf-8")
    try:
        job_id = enqueue(body_text)
    except Exception as exc:
        logger.exception("Enqueue raised for activity %s.", notification.object_id)
        raise QueueUnavailableError("Queue is unavailable.") from exc
    if not job_id:
        raise QueueUnavailableError("Queue is unavailable.")

    logger.info(
        "Queued %s event for activity %s as job %s.",
        notification.aspect_type,
        notification.object_id,
        job_id,
    )
    return IngressResult(INGRESS_QUEUED, job_id=job_id)
