"""
Notification delivery collaborators.

Email content and templates live with the delivery channel; the engine only
hands over the recipient, a template name and its context.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

import aiohttp
from aiohttp import ClientTimeout

from signdesk.core.errors import NotificationDeliveryError
from signdesk.core.logging import get_logger

logger = get_logger(__name__)

POSTMARK_API_URL = "https://api.postmarkapp.com/email/withTemplate"


@dataclass
class NotificationMessage:
    recipient_email: str
    template: str
    recipient_name: Optional[str] = None
    context: Dict[str, Any] = field(default_factory=dict)


class NotificationSender(ABC):
    @abstractmethod
    async def send(self, message: NotificationMessage) -> None:
        """
        Deliver one notification.

        Raises:
            NotificationDeliveryError: If the channel rejects the message
        """


class LoggingNotificationSender(NotificationSender):
    """Writes notifications to the structured log instead of delivering them."""

    async def send(self, message: NotificationMessage) -> None:
        logger.info(
            "notification.sent",
            channel="log",
            recipient=message.recipient_email,
            template=message.template,
        )


class PostmarkNotificationSender(NotificationSender):
    """Delivers notifications through Postmark templates."""

    def __init__(self, server_token: str, from_email: str, timeout_seconds: int = 10):
        self.server_token = server_token
        self.from_email = from_email
        self._timeout = ClientTimeout(total=timeout_seconds)
        self._session: aiohttp.ClientSession | None = None

    @property
    def session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=self._timeout,
                headers={
                    "X-Postmark-Server-Token": self.server_token,
                    "Accept": "application/json",
                },
            )
        return self._session

    async def send(self, message: NotificationMessage) -> None:
        payload = {
            "From": self.from_email,
            "To": message.recipient_email,
            "TemplateAlias": message.template.replace(".", "-"),
            "TemplateModel": {"name": message.recipient_name or message.recipient_email, **message.context},
            "MessageStream": "outbound",
        }
        try:
            async with self.session.post(POSTMARK_API_URL, json=payload) as response:
                if response.status != 200:
                    body = await response.text()
                    raise NotificationDeliveryError(f"Postmark rejected message ({response.status}): {body}")
        except aiohttp.ClientError as exc:
            raise NotificationDeliveryError(f"Postmark request failed: {exc}") from exc
        logger.info("notification.sent", channel="postmark", recipient=message.recipient_email, template=message.template)

    async def close(self) -> None:
        if self._session and not self._session.closed:
            await self._session.close()
