from __future__ import annotations

import asyncio
import logging
import os
import re
import tempfile
from dataclasses import dataclass
from typing import Any, Iterable

import apprise

from relay_gateway.errors import DeliveryError
from relay_gateway.messages import Message

SENT = "sent"
FAILED = "failed"


@dataclass(frozen=True)
class DeliveryOutcome:
    recipient: str
    status: str
    reason: str | None = None

    @classmethod
    def sent(cls, recipient: str) -> DeliveryOutcome:
        return cls(recipient, SENT)

    @classmethod
    def failed(cls, recipient: str, reason: str) -> DeliveryOutcome:
        return cls(recipient, FAILED, reason)

    @property
    def ok(self) -> bool:
        return self.status == SENT

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"recipient": self.recipient, "status": self.status}
        if self.reason:
            out["reason"] = self.reason
        return out


def format_title(message: Message) -> str:
    return f"From: {message.sender}@{message.topic}"


def safe_filename(filename: str) -> str:
    sanitized = re.sub(r"[^\w\-. ]", "_", filename).strip(" .")
    return sanitized or "attachment"


class AppriseNotifier:
    """Sends a Message to one recipient through apprise.

    Each recipient becomes one apprise target with a private tag, so a
    notify() call reaches exactly that recipient. Plain ids are Telegram
    chat ids; ids that already look like apprise URLs are used as they are.
    """

    def __init__(self, secret: str, recipients: Iterable[str]) -> None:
        self.logger = logging.getLogger("relay-gateway.apprise")
        self.secret = secret
        self.apobj = apprise.Apprise()
        self._tags: dict[str, str] = {}

        for recipient in recipients:
            self.add_recipient(recipient)

    def recipient_url(self, recipient: str) -> str:
        if "://" in recipient:
            return recipient
        return f"tgram://{self.secret}/{recipient}"

    def add_recipient(self, recipient: str) -> bool:
        if recipient in self._tags:
            return True

        tag = f"recipient-{len(self._tags)}"
        if not self.apobj.add(self.recipient_url(recipient), tag=tag):
            self.logger.warning("failed to load apprise target", extra={"recipient": recipient})
            return False

        self._tags[recipient] = tag
        return True

    def has_recipient(self, recipient: str) -> bool:
        return recipient in self._tags

    def notify_recipient(self, recipient: str, message: Message) -> str:
        tag = self._tags.get(recipient)
        if tag is None:
            return "skipped"

        with tempfile.TemporaryDirectory(prefix="relay-gateway-") as workdir:
            attach = None
            if message.attachment is not None:
                attach = os.path.join(workdir, safe_filename(message.attachment.filename))
                with open(attach, "wb") as handle:
                    handle.write(message.attachment.content)

            result = self.apobj.notify(
                title=format_title(message),
                body=message.text or "",
                notify_type=apprise.NotifyType.INFO,
                body_format=apprise.NotifyFormat.TEXT,
                tag=tag,
                attach=attach,
            )

        if result is None:
            return "skipped"
        if result is False:
            raise DeliveryError(f"apprise notify failed for recipient={recipient}")
        return SENT


async def send_with_retry(
    recipient: str,
    message: Message,
    notifier: AppriseNotifier,
    retry_schedule_ms: list[int],
    logger: logging.Logger,
) -> str:
    last_error: Exception | None = None

    for attempt in range(len(retry_schedule_ms) + 1):
        try:
            return await asyncio.to_thread(notifier.notify_recipient, recipient, message)
        except Exception as exc:
            last_error = exc
            logger.warning(
                "send attempt failed",
                extra={
                    "recipient": recipient,
                    "attempt": attempt + 1,
                    "maxAttempt": len(retry_schedule_ms) + 1,
                    "error": str(exc),
                },
            )
            if attempt < len(retry_schedule_ms):
                await asyncio.sleep(retry_schedule_ms[attempt] / 1000)

    raise DeliveryError(str(last_error or "send failed without explicit error"))


class Dispatcher:
    """Best-effort delivery of one message to one recipient.

    ``send`` never raises; every failure comes back as a failed outcome.
    """

    def __init__(
        self,
        notifier: AppriseNotifier,
        retry_schedule_ms: list[int],
        logger: logging.Logger | None = None,
    ) -> None:
        self.notifier = notifier
        self.retry_schedule_ms = list(retry_schedule_ms)
        self.logger = logger or logging.getLogger("relay-gateway.delivery")

    def register_recipients(self, recipients: Iterable[str]) -> list[str]:
        """Add delivery targets for recipients; return those apprise rejected."""
        return [recipient for recipient in recipients if not self.notifier.add_recipient(recipient)]

    async def send(self, recipient: str, message: Message) -> DeliveryOutcome:
        try:
            result = await send_with_retry(recipient, message, self.notifier, self.retry_schedule_ms, self.logger)
        except DeliveryError as exc:
            return DeliveryOutcome.failed(recipient, str(exc))

        if result == "skipped":
            return DeliveryOutcome.failed(recipient, "no delivery target for recipient")
        return DeliveryOutcome.sent(recipient)
