from __future__ import annotations

import json
import logging
from dataclasses import asdict, dataclass, field
from typing import Optional, Protocol
from urllib.error import URLError
from urllib.request import Request, urlopen

from config import get_settings


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Notification:
    member_id: int
    account_id: int
    kind: str
    title: str
    body: str
    data: dict[str, str] = field(default_factory=dict)
    action_url: Optional[str] = None


class NotificationError(RuntimeError):
    pass


class NotificationSender(Protocol):
    def send(self, notification: Notification) -> None:  # pragma: no cover - interface
        ...


class LoggingNotificationSender:
    """Sender used when no transport is configured."""

    def send(self, notification: Notification) -> None:
        logger.info(
            f"notification: member_id={notification.member_id} "
            f"account_id={notification.account_id} kind={notification.kind} "
            f"title={notification.title!r}"
        )


class WebhookNotificationSender:
    """Posts each notification as JSON to the push gateway."""

    def __init__(self, url: str, *, timeout: float) -> None:
        self.url = url
        self.timeout = timeout

    def send(self, notification: Notification) -> None:
        payload = json.dumps(asdict(notification)).encode("utf-8")
        req = Request(
            self.url,
            data=payload,
            method="POST",
            headers={"Content-Type": "application/json", "Accept": "application/json"},
        )
        try:
            with urlopen(req, timeout=self.timeout) as resp:
                status = resp.status
        except (URLError, TimeoutError) as exc:
            raise NotificationError(
                f"Failed to deliver {notification.kind} to member {notification.member_id}"
            ) from exc
        if status >= 300:
            raise NotificationError(f"Push gateway answered {status}")


def default_sender() -> NotificationSender:
    settings = get_settings()
    if settings.notify_webhook_url:
        return WebhookNotificationSender(
            settings.notify_webhook_url, timeout=settings.notify_timeout_secs
        )
    return LoggingNotificationSender()
