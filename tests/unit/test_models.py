"""
Unit tests for entity models
Tests validation rules, state helpers and Firestore dict conversion
"""

from datetime import date, datetime, time, timedelta, timezone

import pytest
from freezegun import freeze_time
from pydantic import ValidationError as PydanticValidationError

from seminar_coordinator.errors import DateLockedError, DateUnavailableError
from seminar_coordinator.models.action import Action, ActionKind, ResponseOutcome
from seminar_coordinator.models.agenda import Agenda, Meeting, MeetingKind
from seminar_coordinator.models.available_date import AvailableDate, DateLock, LockState
from seminar_coordinator.models.speaker import (
    SPEAKER_TRANSITIONS, ProposedBy, Speaker, SpeakerStatus
)
from seminar_coordinator.services.base_service import utc_now

NOW = datetime(2025, 3, 1, 9, 0, tzinfo=timezone.utc)


def make_speaker(**overrides) -> Speaker:
    fields = {
        "full_name": "Ada Lovelace",
        "email": "ada@example.org",
        "proposed_by": ProposedBy(user_id="org_001", display_name="Olivia Organizer"),
    }
    fields.update(overrides)
    return Speaker(**fields)


class TestAction:
    """Test action log entries"""

    def test_custom_action_requires_label(self):
        with pytest.raises(PydanticValidationError):
            Action(kind=ActionKind.CUSTOM, actor="Olivia")

        action = Action(kind=ActionKind.CUSTOM, label="  Book hotel ", actor="Olivia")
        assert action.display_label == "Book hotel"

    def test_outcome_only_for_responses(self):
        with pytest.raises(PydanticValidationError):
            Action(kind=ActionKind.TRAVEL_ARRANGEMENTS, actor="Ada", outcome=ResponseOutcome.ACCEPTED)

        Action(kind=ActionKind.SPEAKER_RESPONDED, actor="Ada", outcome=ResponseOutcome.DECLINED)

    def test_mark_completed(self):
        action = Action(kind=ActionKind.TRAVEL_ARRANGEMENTS, actor="Ada", timestamp=NOW)

        action.mark_completed(True, NOW + timedelta(hours=1))
        assert action.completed is True
        assert action.completed_at == NOW + timedelta(hours=1)

        # 完了済みのまま再設定しても完了時刻は変わらない
        action.mark_completed(True, NOW + timedelta(hours=2))
        assert action.completed_at == NOW + timedelta(hours=1)

        action.mark_completed(False, NOW + timedelta(hours=3))
        assert action.completed is False
        assert action.completed_at is None

    def test_dict_conversion(self):
        action = Action(
            kind=ActionKind.SPEAKER_RESPONDED, actor="Ada", timestamp=NOW,
            outcome=ResponseOutcome.ACCEPTED, completed=True, completed_at=NOW
        )

        assert Action.from_dict(action.to_dict()) == action


class TestSpeaker:
    """Test speaker validation and workflow helpers"""

    def test_transition_table_covers_every_status(self):
        assert set(SPEAKER_TRANSITIONS) == set(SpeakerStatus)
        assert SPEAKER_TRANSITIONS[SpeakerStatus.ACCEPTED] == []
        assert SPEAKER_TRANSITIONS[SpeakerStatus.DECLINED] == []

    @pytest.mark.parametrize("current,target,allowed", [
        (SpeakerStatus.PROPOSED, SpeakerStatus.INVITED, True),
        (SpeakerStatus.PROPOSED, SpeakerStatus.DECLINED, True),
        (SpeakerStatus.PROPOSED, SpeakerStatus.ACCEPTED, False),
        (SpeakerStatus.INVITED, SpeakerStatus.ACCEPTED, True),
        (SpeakerStatus.INVITED, SpeakerStatus.PROPOSED, False),
        (SpeakerStatus.ACCEPTED, SpeakerStatus.DECLINED, False),
        (SpeakerStatus.DECLINED, SpeakerStatus.INVITED, False),
    ])
    def test_can_transition_to(self, current, target, allowed):
        assert make_speaker(status=current).can_transition_to(target) is allowed

    def test_invalid_email_rejected(self):
        with pytest.raises(PydanticValidationError):
            make_speaker(email="ada-at-example")

    def test_blank_name_rejected(self):
        with pytest.raises(PydanticValidationError):
            make_speaker(full_name="   ")

    def test_assignment_is_validated(self):
        speaker = make_speaker()

        with pytest.raises(PydanticValidationError):
            speaker.email = "broken"

    def test_is_overdue(self):
        speaker = make_speaker(status=SpeakerStatus.INVITED, response_deadline=NOW)

        assert speaker.is_overdue(NOW) is False
        assert speaker.is_overdue(NOW + timedelta(seconds=1)) is True

        speaker.status = SpeakerStatus.DECLINED
        assert speaker.is_overdue(NOW + timedelta(days=30)) is False

    def test_toggle_vote(self):
        speaker = make_speaker()

        assert speaker.toggle_vote("u1", "User One", NOW) is True
        assert speaker.toggle_vote("u2", "User Two", NOW) is True
        assert speaker.toggle_vote("u1", "User One", NOW) is False
        assert [vote.user_id for vote in speaker.votes] == ["u2"]

    def test_dict_conversion(self):
        speaker = make_speaker(
            status=SpeakerStatus.ACCEPTED,
            assigned_date=date(2025, 3, 10),
            assigned_date_id="date_1",
            actions=[Action(kind=ActionKind.INVITATION_DRAFTED, actor="Olivia", timestamp=NOW)],
            created_at=NOW,
            updated_at=NOW
        )
        speaker.toggle_vote("u1", "User One", NOW)

        restored = Speaker.from_dict(speaker.to_dict())

        assert restored == speaker


class TestAvailableDate:
    """Test the date lock state machine"""

    def make_date(self) -> AvailableDate:
        return AvailableDate(calendar_date=date(2025, 3, 10), host="Hana Host", created_at=NOW)

    def test_lock_and_unlock(self):
        available_date = self.make_date()
        fresh = available_date.to_dict()

        available_date.lock_to("speaker_1", "Talk")
        assert available_date.available is False
        assert available_date.locked_by == DateLock.for_speaker("speaker_1")
        assert available_date.to_dict()["locked_by_id"] == "speaker_1"

        available_date.unlock()
        assert available_date.to_dict() == fresh

    def test_double_lock_rejected(self):
        available_date = self.make_date()
        available_date.lock_to("speaker_1", "Talk")

        with pytest.raises(DateUnavailableError) as exc_info:
            available_date.lock_to("speaker_2", "Other")

        assert exc_info.value.context["locked_by"] == "speaker_1"
        assert available_date.is_locked_by("speaker_1")

    def test_unlock_requires_speaker_lock(self):
        with pytest.raises(DateUnavailableError):
            self.make_date().unlock()

    def test_delete_only_when_open(self):
        available_date = self.make_date()
        available_date.lock_to("speaker_1", "Talk")

        with pytest.raises(DateLockedError):
            available_date.mark_deleted()

        available_date.unlock()
        available_date.mark_deleted()
        assert available_date.is_active is False
        with pytest.raises(DateUnavailableError):
            available_date.lock_to("speaker_1", "Talk")

    def test_inconsistent_state_rejected(self):
        with pytest.raises(PydanticValidationError):
            AvailableDate(calendar_date=date(2025, 3, 10), available=True, locked_by=DateLock.deleted())
        with pytest.raises(PydanticValidationError):
            AvailableDate(calendar_date=date(2025, 3, 10), available=False)
        with pytest.raises(PydanticValidationError):
            DateLock(state=LockState.SPEAKER)

    def test_dict_conversion(self):
        available_date = self.make_date()
        available_date.lock_to("speaker_1", "Talk")

        assert AvailableDate.from_dict(available_date.to_dict()) == available_date


class TestAgenda:
    """Test agenda helpers"""

    def make_agenda(self) -> Agenda:
        seminar_date = date(2025, 3, 10)
        return Agenda(
            speaker_id="speaker_1",
            seminar_date=seminar_date,
            start_date=seminar_date - timedelta(days=1),
            end_date=seminar_date + timedelta(days=1),
            meetings=[
                Meeting(title="Talk", kind=MeetingKind.SEMINAR, date=seminar_date,
                        start_time=time(10), end_time=time(11), is_locked=True),
                Meeting(title="Lunch", kind=MeetingKind.SOCIAL, date=seminar_date,
                        start_time=time(13), end_time=time(14)),
                Meeting(title="Breakfast", kind=MeetingKind.SOCIAL, date=seminar_date,
                        start_time=time(7, 30), end_time=time(8, 15)),
            ],
            created_at=NOW
        )

    def test_visit_window(self):
        agenda = self.make_agenda()

        assert agenda.visit_days == [date(2025, 3, 9), date(2025, 3, 10), date(2025, 3, 11)]
        assert agenda.covers(date(2025, 3, 11)) is True
        assert agenda.covers(date(2025, 3, 12)) is False

    def test_seminar_meeting_and_counts(self):
        agenda = self.make_agenda()

        assert agenda.seminar_meeting().title == "Talk"
        assert agenda.locked_meeting_count() == 1
        assert [m.title for m in agenda.meetings_on(date(2025, 3, 10))] == ["Breakfast", "Talk", "Lunch"]

    def test_hour_grid_clamps_early_meetings(self):
        grid = self.make_agenda().hour_grid()

        seminar_day = grid[date(2025, 3, 10)]
        assert seminar_day[8] == [2]
        assert seminar_day[10] == [0]
        assert seminar_day[13] == [1]
        assert all(not slots for slots in grid[date(2025, 3, 9)].values())

    def test_meeting_duration(self):
        meeting = self.make_agenda().meetings[2]

        assert meeting.duration_minutes() == 45

    def test_dict_conversion(self):
        agenda = self.make_agenda()

        assert Agenda.from_dict(agenda.to_dict()) == agenda


class TestClock:
    """Test default timestamps"""

    @freeze_time("2025-03-01 09:00:00")
    def test_utc_now(self):
        assert utc_now() == NOW

    @freeze_time("2025-03-01 09:00:00")
    def test_default_created_at(self):
        assert make_speaker().created_at == NOW
        assert AvailableDate(calendar_date=date(2025, 3, 10)).created_at == NOW
