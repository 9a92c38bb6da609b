"""Tests for notiflow.services.worker.DeliveryWorker: the per-message state machine."""

from __future__ import annotations

import json
import threading
import time
import urllib.error
from unittest.mock import ANY, MagicMock, patch

import pytest
from doubles import (
    FakeChannel,
    InMemoryNotificationStore,
    make_callback_settings,
    make_delivery_settings,
    make_queue_settings,
    make_smtp_settings,
)

from notiflow.core.errors import NotifyError
from notiflow.core.types import NotificationStatus
from notiflow.models.job import Job
from notiflow.services.callback import CallbackNotifier
from notiflow.services.worker import DeliveryWorker, Outcome

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _body(notification_id, job_type="notification", retries=0, **data) -> bytes:
    payload = {
        "type": job_type,
        "data": {
            "to": "a@example.com",
            "subject": "Hi",
            "message": "Body",
            "notificationId": str(notification_id),
            **data,
        },
        "timestamp": 1_700_000_000_000,
        "retries": retries,
    }
    return json.dumps(payload).encode("utf-8")


def _make_renderer():
    renderer = MagicMock()
    renderer.render.return_value = ("Verify your email", "<html>verify</html>")
    renderer.render_body.return_value = "<p>Body</p>"
    return renderer


def _make_worker(store, *, smtp=None, producer=None, notifier=None, **delivery):
    return DeliveryWorker(
        connection=MagicMock(),
        producer=producer or MagicMock(),
        notifications=store,
        channel=smtp or MagicMock(),
        renderer=_make_renderer(),
        notifier=notifier or MagicMock(),
        queues=make_queue_settings(),
        delivery=make_delivery_settings(**delivery),
    )


# ---------------------------------------------------------------------------
# Success path
# ---------------------------------------------------------------------------


class TestSuccessfulDelivery:
    def test_marks_sent_and_acks(self):
        store = InMemoryNotificationStore()
        n = store.add()
        smtp = MagicMock()
        notifier = MagicMock()
        worker = _make_worker(store, smtp=smtp, notifier=notifier)
        channel = FakeChannel()

        outcome = worker.process_message(channel, 7, _body(n.id))

        assert outcome is Outcome.SENT
        record = store.get_by_id(n.id)
        assert record.status is NotificationStatus.SENT
        assert record.sent_at is not None
        assert record.error_message is None
        assert channel.acks == [7]
        assert channel.nacks == []
        smtp.send.assert_called_once_with("a@example.com", "Hi", "<p>Body</p>", text="Body")
        notifier.notify.assert_called_once_with(ANY, NotificationStatus.SENT)

    def test_walks_claim_then_sent(self):
        store = InMemoryNotificationStore()
        n = store.add()
        worker = _make_worker(store)

        worker.process_message(FakeChannel(), 1, _body(n.id))

        assert [s for _, s, _ in store.updates] == [
            NotificationStatus.SENDING,
            NotificationStatus.SENT,
        ]

    def test_callback_fires_before_ack(self):
        store = InMemoryNotificationStore()
        n = store.add()
        channel = FakeChannel()
        acks_seen_by_callback = []
        notifier = MagicMock()
        notifier.notify.side_effect = lambda *a, **kw: acks_seen_by_callback.append(list(channel.acks))
        worker = _make_worker(store, notifier=notifier)

        worker.process_message(channel, 3, _body(n.id))

        assert acks_seen_by_callback == [[]]
        assert channel.acks == [3]

    def test_verification_job_renders_template(self):
        store = InMemoryNotificationStore()
        n = store.add()
        smtp = MagicMock()
        worker = _make_worker(store, smtp=smtp)

        body = json.dumps(
            {
                "type": "verification",
                "data": {
                    "to": "new@example.com",
                    "username": "alice",
                    "verificationLink": "https://app.example.com/verify?t=1",
                    "notificationId": str(n.id),
                },
                "timestamp": 1,
                "retries": 0,
            }
        ).encode()
        outcome = worker.process_message(FakeChannel(), 1, body)

        assert outcome is Outcome.SENT
        worker._renderer.render.assert_called_once_with(
            "verification",
            {"username": "alice", "verification_link": "https://app.example.com/verify?t=1"},
        )
        smtp.send.assert_called_once_with("new@example.com", "Verify your email", "<html>verify</html>")

    def test_verification_subject_override(self):
        store = InMemoryNotificationStore()
        n = store.add()
        smtp = MagicMock()
        worker = _make_worker(store, smtp=smtp)

        worker.process_message(
            FakeChannel(),
            1,
            _body(n.id, job_type="verification", subject="Confirm your account"),
        )

        assert smtp.send.call_args.args[1] == "Confirm your account"

    def test_legacy_email_field_is_recipient(self):
        store = InMemoryNotificationStore()
        n = store.add()
        smtp = MagicMock()
        worker = _make_worker(store, smtp=smtp)

        body = json.dumps(
            {
                "type": "notification",
                "data": {"email": "old@example.com", "subject": "S", "message": "M", "notificationId": str(n.id)},
            }
        ).encode()
        worker.process_message(FakeChannel(), 1, body)

        assert smtp.send.call_args.args[0] == "old@example.com"


# ---------------------------------------------------------------------------
# Dropped messages
# ---------------------------------------------------------------------------


class TestDroppedMessages:
    def test_malformed_json_is_acked_without_store_mutation(self):
        store = InMemoryNotificationStore()
        store.add()
        smtp = MagicMock()
        worker = _make_worker(store, smtp=smtp)
        channel = FakeChannel()

        outcome = worker.process_message(channel, 11, b"{not json")

        assert outcome is Outcome.MALFORMED
        assert channel.acks == [11]
        assert channel.nacks == []
        assert store.updates == []
        smtp.send.assert_not_called()

    def test_missing_notification_id_is_acked(self):
        store = InMemoryNotificationStore()
        worker = _make_worker(store)
        channel = FakeChannel()

        body = json.dumps({"type": "notification", "data": {"to": "a@example.com"}}).encode()
        outcome = worker.process_message(channel, 2, body)

        assert outcome is Outcome.MALFORMED
        assert channel.acks == [2]
        assert store.updates == []

    def test_non_uuid_notification_id_is_acked_without_claim(self):
        store = MagicMock()
        store.update_status.side_effect = RuntimeError("invalid input syntax for type uuid")
        smtp = MagicMock()
        worker = _make_worker(store, smtp=smtp)
        channel = FakeChannel()

        for tag in range(3):
            assert worker.process_message(channel, tag, _body("not-a-uuid")) is Outcome.MALFORMED

        assert channel.acks == [0, 1, 2]
        assert channel.nacks == []
        store.update_status.assert_not_called()
        smtp.send.assert_not_called()

    @pytest.mark.parametrize(
        "status",
        [NotificationStatus.SENDING, NotificationStatus.SENT, NotificationStatus.FAILED],
    )
    def test_lost_claim_is_dropped_without_sending(self, status):
        store = InMemoryNotificationStore()
        n = store.add(status=status)
        smtp = MagicMock()
        notifier = MagicMock()
        worker = _make_worker(store, smtp=smtp, notifier=notifier)
        channel = FakeChannel()

        outcome = worker.process_message(channel, 4, _body(n.id))

        assert outcome is Outcome.STALE
        assert channel.acks == [4]
        assert store.get_by_id(n.id).status is status
        smtp.send.assert_not_called()
        notifier.notify.assert_not_called()

    def test_unknown_record_is_dropped(self):
        store = InMemoryNotificationStore()
        worker = _make_worker(store)
        channel = FakeChannel()

        outcome = worker.process_message(channel, 5, _body("8d5e1c3a-0000-4000-8000-000000000001"))

        assert outcome is Outcome.STALE
        assert channel.acks == [5]


# ---------------------------------------------------------------------------
# Failure classification
# ---------------------------------------------------------------------------


class TestRetriableFailure:
    def test_first_transient_failure_schedules_retry(self):
        store = InMemoryNotificationStore()
        n = store.add()
        smtp = MagicMock()
        smtp.send.side_effect = NotifyError.transient("connection timed out")
        producer = MagicMock()
        notifier = MagicMock()
        worker = _make_worker(store, smtp=smtp, producer=producer, notifier=notifier)
        channel = FakeChannel()

        outcome = worker.process_message(channel, 9, _body(n.id))

        assert outcome is Outcome.RETRYING
        assert store.get_by_id(n.id).status is NotificationStatus.RETRYING
        retry_job = producer.publish_retry.call_args.args[0]
        assert isinstance(retry_job, Job)
        assert retry_job.retries == 1
        assert retry_job.notification_id == str(n.id)
        assert channel.acks == [9]
        assert channel.nacks == []
        notifier.notify.assert_called_once_with(ANY, NotificationStatus.RETRYING, "connection timed out")

    def test_unexpected_exception_is_retriable(self):
        store = InMemoryNotificationStore()
        n = store.add()
        smtp = MagicMock()
        smtp.send.side_effect = RuntimeError("boom")
        producer = MagicMock()
        worker = _make_worker(store, smtp=smtp, producer=producer)

        outcome = worker.process_message(FakeChannel(), 1, _body(n.id))

        assert outcome is Outcome.RETRYING
        producer.publish_retry.assert_called_once()

    def test_exhausted_retries_dead_letter(self):
        store = InMemoryNotificationStore()
        n = store.add(status=NotificationStatus.RETRYING)
        smtp = MagicMock()
        smtp.send.side_effect = NotifyError.transient("still down")
        producer = MagicMock()
        notifier = MagicMock()
        worker = _make_worker(store, smtp=smtp, producer=producer, notifier=notifier)
        channel = FakeChannel()

        outcome = worker.process_message(channel, 12, _body(n.id, retries=3))

        assert outcome is Outcome.FAILED
        record = store.get_by_id(n.id)
        assert record.status is NotificationStatus.FAILED
        assert record.error_message == "still down"
        assert channel.nacks == [(12, False)]
        assert channel.acks == []
        producer.publish_retry.assert_not_called()
        notifier.notify.assert_called_once_with(ANY, NotificationStatus.FAILED, "still down")

    def test_max_retries_setting_is_honoured(self):
        store = InMemoryNotificationStore()
        n = store.add(status=NotificationStatus.RETRYING)
        smtp = MagicMock()
        smtp.send.side_effect = NotifyError.transient("down")
        worker = _make_worker(store, smtp=smtp, max_retries=1)

        outcome = worker.process_message(FakeChannel(), 1, _body(n.id, retries=1))

        assert outcome is Outcome.FAILED


class TestPermanentFailure:
    def test_client_error_fails_on_first_attempt(self):
        store = InMemoryNotificationStore()
        n = store.add()
        smtp = MagicMock()
        smtp.send.side_effect = NotifyError.client("Recipient a@example.com rejected: 550")
        producer = MagicMock()
        worker = _make_worker(store, smtp=smtp, producer=producer)
        channel = FakeChannel()

        outcome = worker.process_message(channel, 6, _body(n.id))

        assert outcome is Outcome.FAILED
        assert store.get_by_id(n.id).status is NotificationStatus.FAILED
        assert channel.nacks == [(6, False)]
        producer.publish_retry.assert_not_called()

    def test_unknown_job_type_is_claimed_then_failed(self):
        store = InMemoryNotificationStore()
        n = store.add()
        smtp = MagicMock()
        worker = _make_worker(store, smtp=smtp)
        channel = FakeChannel()

        outcome = worker.process_message(channel, 8, _body(n.id, job_type="sms"))

        assert outcome is Outcome.FAILED
        record = store.get_by_id(n.id)
        assert record.status is NotificationStatus.FAILED
        assert record.error_message == "Unknown job type: sms"
        assert channel.nacks == [(8, False)]
        smtp.send.assert_not_called()

    def test_missing_recipient_is_permanent(self):
        from notiflow.delivery.smtp import SmtpChannel

        store = InMemoryNotificationStore()
        n = store.add()
        worker = _make_worker(store, smtp=SmtpChannel(make_smtp_settings()))

        outcome = worker.process_message(FakeChannel(), 1, _body(n.id, to=""))

        assert outcome is Outcome.FAILED
        assert store.get_by_id(n.id).error_message == "Email recipient is required"


# ---------------------------------------------------------------------------
# Bookkeeping failures
# ---------------------------------------------------------------------------


class TestBookkeepingFailures:
    def test_store_error_on_claim_requeues(self):
        store = MagicMock()
        store.update_status.side_effect = RuntimeError("db down")
        smtp = MagicMock()
        worker = _make_worker(store, smtp=smtp)
        channel = FakeChannel()

        outcome = worker.process_message(channel, 13, _body("8d5e1c3a-0000-4000-8000-000000000001"))

        assert outcome is Outcome.REQUEUED
        assert channel.nacks == [(13, True)]
        assert channel.acks == []
        smtp.send.assert_not_called()

    def test_store_error_recording_sent_dead_letters(self):
        store = InMemoryNotificationStore()
        n = store.add()
        real_update = store.update_status

        def flaky_update(notification_id, status, error_message=None):
            if status is NotificationStatus.SENT:
                raise RuntimeError("db down")
            return real_update(notification_id, status, error_message)

        store.update_status = flaky_update
        notifier = MagicMock()
        worker = _make_worker(store, notifier=notifier)
        channel = FakeChannel()

        outcome = worker.process_message(channel, 14, _body(n.id))

        assert outcome is Outcome.DEAD_LETTERED
        assert channel.nacks == [(14, False)]
        notifier.notify.assert_not_called()

    def test_retry_publish_failure_requeues_original(self):
        store = InMemoryNotificationStore()
        n = store.add()
        smtp = MagicMock()
        smtp.send.side_effect = NotifyError.transient("timeout")
        producer = MagicMock()
        producer.publish_retry.side_effect = NotifyError.unavailable("broker")
        worker = _make_worker(store, smtp=smtp, producer=producer)
        channel = FakeChannel()

        outcome = worker.process_message(channel, 15, _body(n.id))

        assert outcome is Outcome.REQUEUED
        assert channel.nacks == [(15, True)]
        # The redelivered original can be claimed again
        assert store.get_by_id(n.id).status is NotificationStatus.RETRYING


# ---------------------------------------------------------------------------
# Callbacks never affect acknowledgement
# ---------------------------------------------------------------------------


class TestCallbackIsolation:
    def _worker_with_real_notifier(self, store, smtp=None):
        notifier = CallbackNotifier(make_callback_settings(), store)
        return _make_worker(store, smtp=smtp, notifier=notifier)

    @patch("notiflow.services.callback.urllib.request.urlopen")
    def test_unreachable_callback_still_acks(self, mock_urlopen):
        mock_urlopen.side_effect = urllib.error.URLError("refused")
        store = InMemoryNotificationStore()
        n = store.add()
        worker = self._worker_with_real_notifier(store)
        channel = FakeChannel()

        outcome = worker.process_message(
            channel,
            21,
            _body(n.id, callbackUrl="https://caller.example.com/hook"),
        )

        assert outcome is Outcome.SENT
        assert channel.acks == [21]
        # First attempt plus one fallback attempt
        assert mock_urlopen.call_count == 2

    @patch("notiflow.services.callback.urllib.request.urlopen")
    def test_unreachable_callback_still_dead_letters(self, mock_urlopen):
        mock_urlopen.side_effect = TimeoutError("timed out")
        store = InMemoryNotificationStore()
        n = store.add()
        smtp = MagicMock()
        smtp.send.side_effect = NotifyError.client("rejected")
        worker = self._worker_with_real_notifier(store, smtp=smtp)
        channel = FakeChannel()

        outcome = worker.process_message(
            channel,
            22,
            _body(n.id, callbackUrl="https://caller.example.com/hook"),
        )

        assert outcome is Outcome.FAILED
        assert channel.nacks == [(22, False)]


# ---------------------------------------------------------------------------
# End-to-end retry chain and concurrency
# ---------------------------------------------------------------------------


class TestRetryChain:
    def test_always_transient_ends_failed_after_three_requeues(self):
        store = InMemoryNotificationStore()
        n = store.add()
        smtp = MagicMock()
        smtp.send.side_effect = NotifyError.transient("smtp unavailable")
        retry_queue: list[Job] = []
        producer = MagicMock()
        producer.publish_retry.side_effect = lambda job: retry_queue.append(job) or 5
        worker = _make_worker(store, smtp=smtp, producer=producer)
        channel = FakeChannel()

        body = _body(n.id)
        outcomes = []
        for tag in range(1, 10):
            outcomes.append(worker.process_message(channel, tag, body))
            if not retry_queue:
                break
            # The retry queue dead-letters expired messages back to the main queue
            body = retry_queue.pop().to_bytes()

        assert outcomes == [Outcome.RETRYING] * 3 + [Outcome.FAILED]
        assert [c.args[0].retries for c in producer.publish_retry.call_args_list] == [1, 2, 3]
        record = store.get_by_id(n.id)
        assert record.status is NotificationStatus.FAILED
        assert record.error_message == "smtp unavailable"
        assert channel.acks == [1, 2, 3]
        assert channel.nacks == [(4, False)]
        assert smtp.send.call_count == 4


class TestConcurrentClaims:
    def test_duplicate_delivery_sends_once(self):
        store = InMemoryNotificationStore()
        n = store.add()
        sends = []
        barrier = threading.Barrier(2)

        def slow_send(*args, **kwargs):
            sends.append(args)
            time.sleep(0.05)

        smtp = MagicMock()
        smtp.send.side_effect = slow_send
        workers = [_make_worker(store, smtp=smtp) for _ in range(2)]
        outcomes = []
        lock = threading.Lock()

        def run(worker, tag):
            barrier.wait()
            result = worker.process_message(FakeChannel(), tag, _body(n.id))
            with lock:
                outcomes.append(result)

        threads = [threading.Thread(target=run, args=(w, i)) for i, w in enumerate(workers)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=5)

        assert sorted(outcomes) == sorted([Outcome.SENT, Outcome.STALE])
        assert len(sends) == 1
        assert store.get_by_id(n.id).status is NotificationStatus.SENT
