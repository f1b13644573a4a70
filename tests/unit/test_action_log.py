"""
Unit tests for the action log
"""

from datetime import timedelta

import pytest

from seminar_coordinator.errors import AuthorizationError, IndexOutOfRangeError, NotFoundError, ValidationError
from seminar_coordinator.models.action import ActionKind
from seminar_coordinator.models.user import CallerIdentity, UserRoleType


class TestActionLog:
    """Test appending and completing log entries"""

    @pytest.mark.asyncio
    async def test_append_returns_index(self, coordinator, fellow, invite_speaker):
        speaker = await invite_speaker()

        index = await coordinator.action_log.append(
            fellow, speaker.speaker_id, ActionKind.CUSTOM, label="Book hotel"
        )

        assert index == 1
        entries = await coordinator.action_log.entries(speaker.speaker_id)
        assert [entry.display_label for entry in entries] == ["Invitation drafted", "Book hotel"]
        assert entries[1].completed is False
        assert entries[1].actor == "Hana Host"

    @pytest.mark.asyncio
    async def test_append_requires_actor(self, coordinator, invite_speaker):
        speaker = await invite_speaker()
        nameless = CallerIdentity(user_id="fellow_009", display_name=" ", role=UserRoleType.FELLOW)

        with pytest.raises(ValidationError):
            await coordinator.action_log.append(nameless, speaker.speaker_id, ActionKind.TRAVEL_ARRANGEMENTS)

    @pytest.mark.asyncio
    async def test_anonymous_caller_cannot_change_log(self, coordinator, invite_speaker):
        speaker = await invite_speaker()

        with pytest.raises(AuthorizationError):
            await coordinator.action_log.append(None, speaker.speaker_id, ActionKind.TRAVEL_ARRANGEMENTS)
        with pytest.raises(AuthorizationError):
            await coordinator.action_log.set_completed(None, speaker.speaker_id, 0, True)

        entries = await coordinator.action_log.entries(speaker.speaker_id)
        assert len(entries) == 1
        assert entries[0].completed is False

    @pytest.mark.asyncio
    async def test_custom_entry_requires_label(self, coordinator, organizer, invite_speaker):
        speaker = await invite_speaker()

        with pytest.raises(ValidationError):
            await coordinator.action_log.append(organizer, speaker.speaker_id, ActionKind.CUSTOM)

        assert len(await coordinator.action_log.entries(speaker.speaker_id)) == 1

    @pytest.mark.asyncio
    async def test_append_to_unknown_speaker(self, coordinator, organizer):
        with pytest.raises(NotFoundError):
            await coordinator.action_log.append(organizer, "missing", ActionKind.TRAVEL_ARRANGEMENTS)

    @pytest.mark.asyncio
    async def test_set_completed_sets_and_clears_timestamp(self, coordinator, fellow, invite_speaker, clock):
        speaker = await invite_speaker()
        clock.advance(hours=2)

        completed = await coordinator.action_log.set_completed(fellow, speaker.speaker_id, 0, True)
        assert completed.completed is True
        assert completed.completed_at == clock.current

        cleared = await coordinator.action_log.set_completed(fellow, speaker.speaker_id, 0, False)
        assert cleared.completed is False
        assert cleared.completed_at is None

        stored = (await coordinator.action_log.entries(speaker.speaker_id))[0]
        assert stored.completed is False
        assert stored.kind == ActionKind.INVITATION_DRAFTED

    @pytest.mark.asyncio
    async def test_set_completed_out_of_range(self, coordinator, fellow, invite_speaker):
        speaker = await invite_speaker()

        with pytest.raises(IndexOutOfRangeError) as exc_info:
            await coordinator.action_log.set_completed(fellow, speaker.speaker_id, 5, True)

        assert exc_info.value.context["length"] == 1
        with pytest.raises(IndexOutOfRangeError):
            await coordinator.action_log.set_completed(fellow, speaker.speaker_id, -1, True)

    @pytest.mark.asyncio
    async def test_is_overdue(self, coordinator, organizer, invite_speaker, clock):
        speaker = await invite_speaker()

        assert await coordinator.action_log.is_overdue(speaker.speaker_id) is False
        clock.advance(days=7, seconds=1)
        assert await coordinator.action_log.is_overdue(speaker.speaker_id) is True

        # 再送で期限が延びる
        resent = await coordinator.lifecycle.resend(organizer, speaker.speaker_id)
        assert resent.response_deadline == clock.current + timedelta(days=7)
        assert await coordinator.action_log.is_overdue(speaker.speaker_id) is False
