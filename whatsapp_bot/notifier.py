"""
Outbound delivery to the messaging platform.

Delivery is fire-and-forget for the pipeline: send() reports failure through
its SendResult and never raises.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional

from whatsapp_bot.metrics import record_outbound_message

logger = logging.getLogger(__name__)


@dataclass
class SendResult:
    ok: bool
    error: Optional[str] = None

    @staticmethod
    def success() -> "SendResult":
        return SendResult(ok=True)

    @staticmethod
    def failure(error: str) -> "SendResult":
        return SendResult(ok=False, error=error)


class Notifier(ABC):
    @abstractmethod
    def send(self, address: str, text: str) -> SendResult:
        """Send text to address."""


class LoggingNotifier(Notifier):
    """Stand-in for the platform send API: logs the message instead of sending it."""

    def __init__(self, phone_number_id: Optional[str] = None):
        self.phone_number_id = phone_number_id

    def send(self, address: str, text: str) -> SendResult:
        if not address:
            record_outbound_message("failed")
            return SendResult.failure("missing destination address")
        logger.info(
            "Bot response",
            extra={"to": address, "sender_id": self.phone_number_id, "chars": len(text)},
        )
        logger.debug(f"Bot response to {address}: {text}")
        record_outbound_message("sent")
        return SendResult.success()
