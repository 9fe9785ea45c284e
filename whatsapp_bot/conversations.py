import logging
import threading
from collections import defaultdict
from typing import Optional

from whatsapp_bot.schemas import ConversationCreate, ConversationRecord, ConversationUpdate
from whatsapp_bot.storage import Storage

logger = logging.getLogger(__name__)


class ConversationTracker:
    """
    Keeps one conversation per sender up to date.

    The read-increment-write in touch() runs under a per-sender lock so two
    units from the same sender cannot lose a count.
    """

    def __init__(self, storage: Storage):
        self.storage = storage
        self._locks: defaultdict[str, threading.Lock] = defaultdict(threading.Lock)
        self._locks_guard = threading.Lock()

    def _lock_for(self, sender: str) -> threading.Lock:
        with self._locks_guard:
            return self._locks[sender]

    def touch(self, sender: str, command_name: Optional[str] = None) -> ConversationRecord:
        """
        Record one more message from sender.

        A new sender gets a fresh active conversation. For a known sender the
        count goes up by one and last_command only changes when this message
        carried a command.
        """
        with self._lock_for(sender):
            existing = self.storage.get_conversation(sender)
            if existing is None:
                logger.info(f"New conversation: {sender}")
                return self.storage.create_conversation(
                    ConversationCreate(
                        phone_number=sender,
                        message_count=1,
                        is_active=True,
                        last_command=command_name or None,
                        conversation_state="active",
                    )
                )

            updated = self.storage.update_conversation(
                sender,
                ConversationUpdate(
                    message_count=existing.message_count + 1,
                    last_command=command_name or existing.last_command,
                ),
            )
            if updated is None:
                raise LookupError(f"conversation {sender} vanished during update")
            return updated
