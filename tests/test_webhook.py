import json
import unittest

from avyhook.errors import (
    MalformedPayloadError,
    QueueUnavailableError,
    SignatureInvalidError,
    SubscriptionRejectedError,
)
from avyhook.webhook import (
    INGRESS_IGNORED,
    INGRESS_QUEUED,
    accept_notification,
    compute_signature,
    verify_signature,
    verify_subscription,
)


SECRET = "client-secret"


def _body(**overrides) -> bytes:
    payload = {
        "object_type": "activity",
        "object_id": 42,
        "aspect_type": "create",
        "owner_id": 7,
        "event_time": 1_700_000_000,
        "subscription_id": 1,
    }
    payload.update(overrides)
    return json.dumps(payload).encode("utf-8")


class _Queue:
    def __init__(self, result="job-1"):
        self.result = result
        self.bodies = []

    def __call__(self, body):
        self.bodies.append(body)
        return self.result


class TestVerifySubscription(unittest.TestCase):
    def test_echoes_challenge(self) -> None:
        self.assertEqual(
            verify_subscription("subscribe", "tok", "abc123", "tok"),
            {"hub.challenge": "abc123"},
        )

    def test_rejects_wrong_token_or_mode(self) -> None:
        with self.assertRaises(SubscriptionRejectedError):
            verify_subscription("subscribe", "nope", "abc123", "tok")
        with self.assertRaises(SubscriptionRejectedError):
            verify_subscription("unsubscribe", "tok", "abc123", "tok")
        with self.assertRaises(SubscriptionRejectedError):
            verify_subscription(None, None, None, "tok")

    def test_rejects_when_verify_token_unset(self) -> None:
        with self.assertRaises(SubscriptionRejectedError):
            verify_subscription("subscribe", "", "abc123", "")


class TestSignature(unittest.TestCase):
    def test_valid_signature(self) -> None:
        body = _body()
        self.assertTrue(verify_signature(body, compute_signature(body, SECRET), SECRET))

    def test_mutated_body_fails(self) -> None:
        body = _body()
        signature = compute_signature(body, SECRET)
        mutated = body.replace(b'"object_id": 42', b'"object_id": 43')
        self.assertNotEqual(body, mutated)
        self.assertFalse(verify_signature(mutated, signature, SECRET))

    def test_non_ascii_header_fails(self) -> None:
        self.assertFalse(verify_signature(_body(), "\u00e9" * 64, SECRET))

    def test_empty_header_or_secret_fails(self) -> None:
        body = _body()
        self.assertFalse(verify_signature(body, None, SECRET))
        self.assertFalse(verify_signature(body, compute_signature(body, SECRET), ""))


class TestAcceptNotification(unittest.TestCase):
    def _accept(self, body, signature=None, queue=None):
        return accept_notification(
            body,
            compute_signature(body, SECRET) if signature is None else signature,
            secret=SECRET,
            enqueue=queue or _Queue(),
        )

    def test_activity_create_is_queued_with_raw_body(self) -> None:
        queue = _Queue()
        body = _body()
        result = self._accept(body, queue=queue)
        self.assertEqual(result.status, INGRESS_QUEUED)
        self.assertEqual(result.job_id, "job-1")
        self.assertEqual(queue.bodies, [body.decode("utf-8")])

    def test_missing_signature_rejected_before_parsing(self) -> None:
        queue = _Queue()
        with self.assertRaises(SignatureInvalidError):
            self._accept(b"not json", signature="", queue=queue)
        self.assertEqual(queue.bodies, [])

    def test_mutated_body_rejected(self) -> None:
        body = _body()
        signature = compute_signature(body, SECRET)
        with self.assertRaises(SignatureInvalidError) as ctx:
            self._accept(_body(object_id=43), signature=signature)
        self.assertEqual(ctx.exception.http_status, 400)

    def test_non_ascii_signature_rejected(self) -> None:
        queue = _Queue()
        with self.assertRaises(SignatureInvalidError) as ctx:
            self._accept(_body(), signature="\u00e9" * 64, queue=queue)
        self.assertEqual(ctx.exception.http_status, 400)
        self.assertEqual(queue.bodies, [])

    def test_malformed_json(self) -> None:
        with self.assertRaises(MalformedPayloadError):
            self._accept(b"{not json")

    def test_missing_required_field(self) -> None:
        payload = json.loads(_body())
        del payload["owner_id"]
        with self.assertRaises(MalformedPayloadError):
            self._accept(json.dumps(payload).encode("utf-8"))

    def test_non_activity_and_delete_ignored(self) -> None:
        queue = _Queue()
        athlete = self._accept(_body(object_type="athlete", aspect_type="update"), queue=queue)
        delete = self._accept(_body(aspect_type="delete"), queue=queue)
        self.assertEqual(athlete.status, INGRESS_IGNORED)
        self.assertEqual(delete.status, INGRESS_IGNORED)
        self.assertEqual(queue.bodies, [])

    def test_queue_failure_is_retryable(self) -> None:
        with self.assertRaises(QueueUnavailableError) as ctx:
            self._accept(_body(), queue=_Queue(result=None))
        self.assertTrue(ctx.exception.retryable)
        self.assertEqual(ctx.exception.http_status, 500)


if __name__ == "__main__":
    unittest.main()
