"""Run-result notifications."""

from __future__ import annotations

import logging
from typing import Any, Protocol

from feedsync.common.config_loader import NotificationSettings
from feedsync.common.http import HttpClient, HttpRequestError
from feedsync.common.logging import log_event


class Notifier(Protocol):
    def send(self, subject: str, body: str, payload: dict[str, Any]) -> None:
        ...


class LogNotifier:
    def __init__(self, logger: logging.Logger) -> None:
        self.logger = logger

    def send(self, subject: str, body: str, payload: dict[str, Any]) -> None:
        log_event(
            self.logger,
            f"{subject}\n{body}",
            run_id=payload.get("run_id"),
            stage="notify",
            event="NOTIFY",
            status=payload.get("status"),
        )


class WebhookNotifier:
    def __init__(self, url: str, client: HttpClient) -> None:
        self.url = url
        self.client = client

    def send(self, subject: str, body: str, payload: dict[str, Any]) -> None:
        self.client.post_json(self.url, {"subject": subject, "text": body, "result": payload})


def build_notifier(settings: NotificationSettings, logger: logging.Logger, client: HttpClient | None = None) -> Notifier:
    if settings.webhook_url and client is not None:
        return WebhookNotifier(settings.webhook_url, client)
    return LogNotifier(logger)


def format_run_result(result: dict[str, Any]) -> tuple[str, str]:
    counts = result.get("counts", {})
    status = result.get("status", "unknown")
    subject = f"Feed import {status}: {result.get('run_id')}"
    lines = [
        f"Status: {status}",
        f"Duration: {result.get('duration_formatted', '-')}",
        f"Inserted: {counts.get('inserted', 0)}",
        f"Updated: {counts.get('updated', 0)}",
        f"Skipped: {counts.get('skipped', 0)}",
        f"Deleted: {counts.get('reconciled_deleted', 0)}",
        f"Errors: {counts.get('errors', 0)}",
    ]
    if result.get("error_message"):
        lines.append(f"Failure: {result.get('error_code')}: {result['error_message']}")
    return subject, "\n".join(lines)


def notify_run_result(
    notifier: Notifier,
    result: dict[str, Any],
    settings: NotificationSettings,
    logger: logging.Logger,
) -> bool:
    if not settings.enabled:
        return False
    failed = result.get("status") == "failed"
    if failed and not settings.on_error:
        return False
    if not failed and not settings.on_success:
        return False

    subject, body = format_run_result(result)
    try:
        notifier.send(subject, body, result)
    except HttpRequestError as exc:
        log_event(
            logger,
            f"notification failed: {exc}",
            level="warning",
            run_id=result.get("run_id"),
            stage="notify",
            event="NOTIFY_FAIL",
            status="warning",
            error_code=exc.error_code,
        )
        return False
    return True
