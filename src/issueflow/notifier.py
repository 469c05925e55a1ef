from __future__ import annotations

import logging
import shlex
import subprocess
from enum import StrEnum
from typing import Protocol

from issueflow.config import NotifyConfig
from issueflow.errors import CollaboratorError

logger = logging.getLogger(__name__)

_SUBPROCESS_TIMEOUT = 30


class Channel(StrEnum):
    SMS = "sms"
    EMAIL = "email"


class Notifier(Protocol):
    def send(self, channel: Channel, message: str) -> None: ...


class CommandNotifier:
    """Deliver messages by piping them to a configured shell command per channel.

    A channel without a command only logs the message.
    """

    def __init__(self, commands: dict[Channel, str]) -> None:
        self._commands = commands

    @classmethod
    def from_config(cls, config: NotifyConfig) -> CommandNotifier:
        return cls(
            {
                Channel.SMS: config.sms_command,
                Channel.EMAIL: config.email_command,
            }
        )

    def send(self, channel: Channel, message: str) -> None:
        command = self._commands.get(channel, "")
        if not command:
            logger.warning("[notify:%s] %s", channel, message)
            return
        try:
            subprocess.run(
                shlex.split(command),
                input=message,
                capture_output=True,
                text=True,
                check=True,
                timeout=_SUBPROCESS_TIMEOUT,
            )
        except (subprocess.CalledProcessError, subprocess.TimeoutExpired, FileNotFoundError) as exc:
            raise CollaboratorError(f"notify:{channel}", str(exc)) from exc
        logger.info("Sent %s notification", channel)
