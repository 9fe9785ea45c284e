"""
Response resolution for commands and plain messages.

Operator overrides live in bot configuration under "<command>_message" and
"default_response". When no active override exists the built-in texts below
are used.
"""

import logging
from typing import Optional

from whatsapp_bot.storage import Storage

logger = logging.getLogger(__name__)


DEFAULT_RESPONSE_KEY = "default_response"

DEFAULT_RESPONSE = "I'm sorry, I didn't understand that. Type /help to see available commands."

UNKNOWN_COMMAND_RESPONSE = "Command not recognized. Type /help for available commands."

FALLBACK_RESPONSES = {
    "help": "Available commands:\n/help - Show this help message\n/info - Company information\n/contact - Contact details",
    "info": "We are a leading company providing excellent services.",
    "contact": "Contact us at support@company.com or +1 (555) 123-4567",
    "order": "To check your order status, please provide your order number.",
}


def config_key_for(command_name: str) -> str:
    return f"{command_name}_message"


class ResponseResolver:
    """Looks up response text by logical key. Never writes to storage."""

    def __init__(self, storage: Storage):
        self.storage = storage

    def _override(self, key: str) -> Optional[str]:
        config = self.storage.get_bot_config_by_key(key)
        if config is None or not config.is_active:
            return None
        return config.value

    def resolve_command(self, command_name: str) -> str:
        override = self._override(config_key_for(command_name))
        if override is not None:
            return override
        fallback = FALLBACK_RESPONSES.get(command_name)
        if fallback is None:
            logger.info(f"Unrecognized command: /{command_name}")
            return UNKNOWN_COMMAND_RESPONSE
        return fallback

    def resolve_default(self) -> str:
        override = self._override(DEFAULT_RESPONSE_KEY)
        return override if override is not None else DEFAULT_RESPONSE
