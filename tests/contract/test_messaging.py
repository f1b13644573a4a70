"""
Contract tests for outbound message hand-off
"""

import pytest

from seminar_coordinator.integrations.messaging import (
    MESSAGE_TEMPLATES, LoggingMessageSender, MessageSender
)


class BrokenSender(MessageSender):
    async def send(self, message):
        raise ConnectionError("relay refused")


def speaker_invitation(**overrides):
    values = {
        "full_name": "Ada Lovelace",
        "host": "Hana Host",
        "response_deadline": "2025-03-08",
        "organizer_name": "Olivia Organizer",
    }
    values.update(overrides)
    return MESSAGE_TEMPLATES["speaker_invitation"].render(
        recipient="ada@example.org",
        link="https://seminars.example.org/?token=abc",
        **values
    )


class TestTemplates:
    """Test template rendering"""

    def test_speaker_invitation(self):
        message = speaker_invitation()

        assert message.recipient == "ada@example.org"
        assert message.subject == "Invitation to give a seminar"
        assert message.body.startswith("Dear Ada Lovelace,")
        assert "https://seminars.example.org/?token=abc" in message.body
        assert "before 2025-03-08" in message.body
        assert message.link == "https://seminars.example.org/?token=abc"

    def test_signup_invitation_subject(self):
        message = MESSAGE_TEMPLATES["signup_invitation"].render(
            recipient="kenji@example.org",
            link="https://seminars.example.org/?signup=xyz",
            full_name="Kenji Fellow",
            role="Fellow",
            affiliation="-",
            valid_days="30",
            organizer_name="Olivia Organizer"
        )

        assert message.subject == "Invitation to join as Fellow"
        assert "valid for 30 days" in message.body

    def test_missing_variable(self):
        with pytest.raises(KeyError):
            MESSAGE_TEMPLATES["speaker_invitation"].render(recipient="ada@example.org", full_name="Ada")


class TestHandOff:
    """Test hand-off to the delivery channel"""

    @pytest.mark.asyncio
    async def test_logging_sender_records_message(self):
        sender = LoggingMessageSender()

        assert await sender.hand_off(speaker_invitation()) is True
        assert [m.recipient for m in sender.sent] == ["ada@example.org"]

    @pytest.mark.asyncio
    async def test_failure_is_logged_not_raised(self, caplog):
        assert await BrokenSender().hand_off(speaker_invitation()) is False
        assert "ada@example.org" in caplog.text
