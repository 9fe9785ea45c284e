"""
Command classification for inbound message text.

A body is a command when it starts with "/". The command name is the text
between the slash and the first whitespace, lower-cased.
"""

import re
from typing import NamedTuple, Optional

COMMAND_PREFIX = "/"

_COMMAND_NAME = re.compile(r"/(\S*)")


class ParsedCommand(NamedTuple):
    is_command: bool
    command_name: Optional[str]


def parse_command(body: Optional[str]) -> ParsedCommand:
    """
    Classify a message body.

    Returns:
        ParsedCommand(is_command, command_name); command_name is None exactly
        when is_command is False. A bare "/" yields an empty command name.
    """
    if not body or not body.startswith(COMMAND_PREFIX):
        return ParsedCommand(False, None)
    match = _COMMAND_NAME.match(body)
    return ParsedCommand(True, match.group(1).lower())
