import logging
import time
from typing import Optional

from whatsapp_bot.commands import parse_command
from whatsapp_bot.conversations import ConversationTracker
from whatsapp_bot.metrics import record_message_outcome
from whatsapp_bot.notifier import Notifier
from whatsapp_bot.responder import ResponseResolver
from whatsapp_bot.schemas import InboundUnit, MessageCreate, MessageRecord, WebhookPayload
from whatsapp_bot.storage import DuplicateKeyError, Storage

logger = logging.getLogger(__name__)


def extract_units(payload: WebhookPayload) -> list[InboundUnit]:
    """
    Flatten a webhook delivery into inbound units.

    Every message of every change of every entry becomes one unit addressed to
    the change's display phone number; changes without messages (status
    callbacks) contribute nothing.
    """
    units = []
    for entry in payload.entry:
        for change in entry.changes:
            if not change.value.messages:
                continue
            recipient = change.value.metadata.display_phone_number
            for message in change.value.messages:
                units.append(
                    InboundUnit(
                        external_id=message.id,
                        sender=message.from_number,
                        recipient=recipient,
                        body=message.text.body if message.text is not None else None,
                        kind=message.type,
                        external_timestamp=message.timestamp,
                    )
                )
    return units


class MessageProcessor:
    """
    Runs one inbound unit through the pipeline:

    1. classify the body as command or plain text
    2. store the message as "received"
    3. update the sender's conversation
    4. resolve the response text
    5. mark the message "responded" with latency and response
    6. hand the response to the notifier

    Failures in steps 1-5 are logged and the unit is dropped, leaving any
    stored message at "received". Delivery failures never touch the stored
    message.
    """

    def __init__(self, storage: Storage, notifier: Notifier):
        self.storage = storage
        self.notifier = notifier
        self.tracker = ConversationTracker(storage)
        self.resolver = ResponseResolver(storage)

    def process(self, unit: InboundUnit) -> Optional[MessageRecord]:
        """
        Process one inbound unit.

        Returns:
            The responded message, or None if the unit was a duplicate or
            processing failed.
        """
        try:
            if self.storage.get_message_by_external_id(unit.external_id) is not None:
                logger.info(f"Duplicate message ignored: {unit.external_id}")
                record_message_outcome("duplicate")
                return None

            is_command, command_name = parse_command(unit.body)
            started = time.perf_counter()

            try:
                message = self.storage.create_message(
                    MessageCreate(
                        whatsapp_message_id=unit.external_id,
                        from_number=unit.sender,
                        to_number=unit.recipient,
                        message_text=unit.body,
                        message_type=unit.kind,
                        status="received",
                        is_command=is_command,
                        command_name=command_name,
                        message_metadata={"timestamp": unit.external_timestamp},
                    )
                )
            except DuplicateKeyError:
                # lost a race with a concurrent delivery of the same id
                logger.info(f"Duplicate message ignored: {unit.external_id}")
                record_message_outcome("duplicate")
                return None

            self.tracker.touch(unit.sender, command_name)

            if is_command and command_name:
                response = self.resolver.resolve_command(command_name)
            else:
                response = self.resolver.resolve_default()

            response_time = int((time.perf_counter() - started) * 1000)
            updated = self.storage.update_message_status(
                message.id, "responded", response_time=response_time, bot_response=response
            )
            if updated is None:
                raise LookupError(f"message {message.id} disappeared before status update")
        except Exception:
            logger.exception(f"Error processing message {unit.external_id} from {unit.sender}")
            record_message_outcome("failed")
            return None

        logger.info(
            f"Message {unit.external_id} responded in {response_time}ms"
            f" (command={command_name if is_command else None})"
        )
        record_message_outcome("responded", response_time)
        self._deliver(unit.sender, response)
        return updated

    def process_payload(self, payload: WebhookPayload) -> int:
        """Process every unit of a webhook delivery; returns the number of units seen."""
        units = extract_units(payload)
        for unit in units:
            self.process(unit)
        return len(units)

    def broadcast(self, text: str) -> int:
        """Send text to every active conversation; returns the recipient count."""
        recipients = self.storage.get_active_conversations()
        logger.info(f"Broadcasting to {len(recipients)} active conversations")
        for conversation in recipients:
            self._deliver(conversation.phone_number, text)
        return len(recipients)

    def _deliver(self, address: str, text: str) -> None:
        try:
            result = self.notifier.send(address, text)
        except Exception:
            logger.exception(f"Notifier raised while sending to {address}")
            return
        if not result.ok:
            logger.warning(f"Delivery to {address} failed: {result.error}")
