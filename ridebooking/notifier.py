"""
Notification collaborator. Delivery is best-effort: callers go through
``notify_passengers`` which logs and drops every failure.
"""

import logging
from typing import Iterable, Optional

import httpx

logger = logging.getLogger(__name__)


class Notifier:
    def send(self, contact: str, message: str) -> None:
        raise NotImplementedError


class LogNotifier(Notifier):
    def send(self, contact: str, message: str) -> None:
        logger.info("notify %s: %s", contact, message)


class WebhookNotifier(Notifier):
    """Posts {"to", "message"} to an SMS/WhatsApp relay."""

    def __init__(self, url: str, client: Optional[httpx.Client] = None, timeout: float = 5.0):
        self.url = url
        self.client = client or httpx.Client(timeout=timeout)

    def send(self, contact: str, message: str) -> None:
        resp = self.client.post(self.url, json={"to": contact, "message": message})
        resp.raise_for_status()


def notify_passengers(notifier: Optional[Notifier], passengers: Iterable, message_for) -> int:
    """Send one message per passenger with a phone number; returns how many were delivered."""
    if notifier is None:
        return 0
    sent = 0
    for p in passengers:
        if not p.phone:
            continue
        try:
            notifier.send(p.phone, message_for(p))
            sent += 1
        except Exception as e:
            logger.warning("Notification to %s failed: %s", p.phone, e)
    return sent
