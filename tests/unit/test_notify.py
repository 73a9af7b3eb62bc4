from feedsync.common.config_loader import NotificationSettings
from feedsync.common.http import RetryableHttpError
from feedsync.pipeline.notify import (
    LogNotifier,
    WebhookNotifier,
    build_notifier,
    format_run_result,
    notify_run_result,
)

RESULT = {
    "run_id": "run-1",
    "status": "partial",
    "duration_formatted": "0h 1m 2s",
    "counts": {"inserted": 3, "updated": 1, "skipped": 10, "reconciled_deleted": 2, "errors": 1},
}


class RecordingNotifier:
    def __init__(self, exc=None):
        self.sent = []
        self.exc = exc

    def send(self, subject, body, payload):
        if self.exc is not None:
            raise self.exc
        self.sent.append((subject, body, payload))


def test_format_run_result_lists_counts():
    subject, body = format_run_result(RESULT)
    assert subject == "Feed import partial: run-1"
    assert "Inserted: 3" in body
    assert "Deleted: 2" in body
    assert "Failure" not in body

    failed = dict(RESULT, status="failed", error_code="FEED_ABORT", error_message="too many errors")
    assert format_run_result(failed)[1].endswith("Failure: FEED_ABORT: too many errors")


def test_notify_respects_enabled_and_outcome_flags(logger):
    notifier = RecordingNotifier()
    assert not notify_run_result(notifier, RESULT, NotificationSettings(enabled=False, on_success=True), logger)
    assert not notify_run_result(notifier, RESULT, NotificationSettings(enabled=True, on_success=False), logger)
    assert notify_run_result(notifier, RESULT, NotificationSettings(enabled=True, on_success=True), logger)

    failed = dict(RESULT, status="failed")
    assert not notify_run_result(notifier, failed, NotificationSettings(enabled=True, on_error=False), logger)
    assert notify_run_result(notifier, failed, NotificationSettings(enabled=True, on_error=True), logger)
    assert len(notifier.sent) == 2


def test_notify_delivery_failure_is_logged_not_raised(logger):
    notifier = RecordingNotifier(exc=RetryableHttpError("503"))
    settings = NotificationSettings(enabled=True, on_success=True)
    assert notify_run_result(notifier, RESULT, settings, logger) is False


def test_build_notifier_prefers_webhook_when_configured(logger):
    class Client:
        def __init__(self):
            self.posted = []

        def post_json(self, url, payload):
            self.posted.append((url, payload))
            return 200

    client = Client()
    assert isinstance(build_notifier(NotificationSettings(), logger, client), LogNotifier)
    notifier = build_notifier(NotificationSettings(webhook_url="https://hooks.test/x"), logger, client)
    assert isinstance(notifier, WebhookNotifier)

    notifier.send("subject", "body", RESULT)
    url, payload = client.posted[0]
    assert url == "https://hooks.test/x"
    assert payload["subject"] == "subject"
    assert payload["result"]["run_id"] == "run-1"
