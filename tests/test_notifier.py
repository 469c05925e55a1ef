from __future__ import annotations

import logging
import subprocess
from unittest.mock import patch

import pytest

from issueflow.config import NotifyConfig
from issueflow.errors import CollaboratorError
from issueflow.notifier import Channel, CommandNotifier


class TestCommandNotifier:
    def test_pipes_message_to_channel_command(self) -> None:
        notifier = CommandNotifier.from_config(
            NotifyConfig(channel="sms", sms_command="twilio-send --to ops", email_command="")
        )
        with patch("issueflow.notifier.subprocess.run") as mock_run:
            notifier.send(Channel.SMS, "gate exhausted")
        assert mock_run.call_args.args[0] == ["twilio-send", "--to", "ops"]
        assert mock_run.call_args.kwargs["input"] == "gate exhausted"

    def test_unconfigured_channel_only_logs(self, caplog: pytest.LogCaptureFixture) -> None:
        notifier = CommandNotifier({Channel.EMAIL: ""})
        with (
            caplog.at_level(logging.WARNING, logger="issueflow.notifier"),
            patch("issueflow.notifier.subprocess.run") as mock_run,
        ):
            notifier.send(Channel.EMAIL, "hello")
        mock_run.assert_not_called()
        assert "hello" in caplog.text

    def test_command_failure_raises(self) -> None:
        notifier = CommandNotifier({Channel.SMS: "send-sms"})
        with (
            patch(
                "issueflow.notifier.subprocess.run",
                side_effect=subprocess.CalledProcessError(2, "send-sms"),
            ),
            pytest.raises(CollaboratorError) as excinfo,
        ):
            notifier.send(Channel.SMS, "x")
        assert excinfo.value.operation == "notify:sms"
