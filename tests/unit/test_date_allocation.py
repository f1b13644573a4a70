"""
Unit tests for the date allocation engine
Tests publishing, exclusive locking, unlocking, reassignment and soft deletion
"""

import asyncio
from datetime import date

import pytest

from seminar_coordinator.errors import (
    AuthorizationError, DateLockedError, DateUnavailableError, DuplicateDateError,
    NotFoundError, ValidationError
)
from seminar_coordinator.models.available_date import AvailableDate, LockState

D1 = date(2025, 3, 10)
D2 = date(2025, 3, 17)


class TestPublish:
    """Test publishing dates"""

    @pytest.mark.asyncio
    async def test_publish_creates_open_date(self, coordinator, organizer):
        available_date = await coordinator.allocation.publish(organizer, D1, host="Hana Host", notes="Room 101")

        assert available_date.available is True
        assert available_date.locked_by.state == LockState.UNSET
        assert available_date.talk_title == ""

        stored = await coordinator.dates.require(available_date.date_id)
        assert stored.calendar_date == D1
        assert stored.notes == "Room 101"

    @pytest.mark.asyncio
    async def test_duplicate_date_rejected(self, coordinator, organizer):
        first = await coordinator.allocation.publish(organizer, D1)

        with pytest.raises(DuplicateDateError) as exc_info:
            await coordinator.allocation.publish(organizer, D1, host="Someone else")

        assert exc_info.value.context["existing_date_id"] == first.date_id
        assert len(await coordinator.read_models.active_dates()) == 1

    @pytest.mark.asyncio
    async def test_concurrent_publish_same_day_creates_one(self, coordinator, organizer):
        results = await asyncio.gather(
            *[coordinator.allocation.publish(organizer, D1) for _ in range(5)],
            return_exceptions=True
        )

        created = [r for r in results if isinstance(r, AvailableDate)]
        assert len(created) == 1
        assert all(isinstance(r, DuplicateDateError) for r in results if r not in created)

    @pytest.mark.asyncio
    async def test_missing_calendar_date(self, coordinator, organizer):
        with pytest.raises(ValidationError):
            await coordinator.allocation.publish(organizer, None)

    @pytest.mark.asyncio
    async def test_only_organizer_can_publish(self, coordinator, senior_fellow):
        with pytest.raises(AuthorizationError) as exc_info:
            await coordinator.allocation.publish(senior_fellow, D1)

        assert exc_info.value.context["operation"] == "publish"
        assert exc_info.value.context["caller_role"] == "Senior Fellow"

    @pytest.mark.asyncio
    async def test_republish_after_soft_delete(self, coordinator, organizer):
        first = await coordinator.allocation.publish(organizer, D1)
        await coordinator.allocation.soft_delete(organizer, first.date_id)

        second = await coordinator.allocation.publish(organizer, D1)

        assert second.date_id != first.date_id
        active = await coordinator.read_models.active_dates()
        assert [d.date_id for d in active] == [second.date_id]


class TestLocking:
    """Test lock / unlock compare-and-swap"""

    @pytest.mark.asyncio
    async def test_lock_then_unlock_restores_fresh_state(self, coordinator, organizer):
        published = await coordinator.allocation.publish(organizer, D1, host="Hana Host", notes="Room 101")
        fresh = (await coordinator.dates.require(published.date_id)).to_dict()

        await coordinator.allocation.lock(published.date_id, "speaker_1", "My Talk")
        locked = await coordinator.dates.require(published.date_id)
        assert locked.available is False
        assert locked.is_locked_by("speaker_1")
        assert locked.talk_title == "My Talk"

        await coordinator.allocation.unlock(published.date_id)
        restored = await coordinator.dates.require(published.date_id)

        assert restored.to_dict() == fresh

    @pytest.mark.asyncio
    async def test_lock_already_locked_date(self, coordinator, organizer):
        published = await coordinator.allocation.publish(organizer, D1)
        await coordinator.allocation.lock(published.date_id, "speaker_1", "First")

        with pytest.raises(DateUnavailableError) as exc_info:
            await coordinator.allocation.lock(published.date_id, "speaker_2", "Second")

        assert exc_info.value.context["locked_by"] == "speaker_1"
        stored = await coordinator.dates.require(published.date_id)
        assert stored.is_locked_by("speaker_1")
        assert stored.talk_title == "First"

    @pytest.mark.asyncio
    async def test_lock_deleted_date(self, coordinator, organizer):
        published = await coordinator.allocation.publish(organizer, D1)
        await coordinator.allocation.soft_delete(organizer, published.date_id)

        with pytest.raises(DateUnavailableError) as exc_info:
            await coordinator.allocation.lock(published.date_id, "speaker_1")

        assert exc_info.value.context["lock_state"] == "deleted"

    @pytest.mark.asyncio
    async def test_lock_unknown_date(self, coordinator):
        with pytest.raises(DateUnavailableError):
            await coordinator.allocation.lock("missing", "speaker_1")

    @pytest.mark.asyncio
    async def test_concurrent_locks_single_winner(self, coordinator, organizer):
        published = await coordinator.allocation.publish(organizer, D1)

        results = await asyncio.gather(
            *[coordinator.allocation.lock(published.date_id, f"speaker_{i}") for i in range(10)],
            return_exceptions=True
        )

        winners = [r for r in results if isinstance(r, AvailableDate)]
        assert len(winners) == 1
        assert sum(isinstance(r, DateUnavailableError) for r in results) == 9
        stored = await coordinator.dates.require(published.date_id)
        assert stored.locked_speaker_id == winners[0].locked_speaker_id

    @pytest.mark.asyncio
    async def test_unlock_open_date(self, coordinator, organizer):
        published = await coordinator.allocation.publish(organizer, D1)

        with pytest.raises(DateUnavailableError):
            await coordinator.allocation.unlock(published.date_id)


class TestReassign:
    """Test moving a lock between dates"""

    @pytest.mark.asyncio
    async def test_reassign_moves_lock(self, coordinator, organizer):
        old, new = await coordinator.allocation.publish(organizer, D1), await coordinator.allocation.publish(organizer, D2)
        await coordinator.allocation.lock(old.date_id, "speaker_1", "Talk")

        await coordinator.allocation.reassign(old.date_id, new.date_id, "speaker_1", "Talk v2")

        old_state = await coordinator.dates.require(old.date_id)
        new_state = await coordinator.dates.require(new.date_id)
        assert old_state.available is True
        assert old_state.talk_title == ""
        assert new_state.is_locked_by("speaker_1")
        assert new_state.talk_title == "Talk v2"

    @pytest.mark.asyncio
    async def test_failed_lock_rolls_back_unlock(self, coordinator, organizer):
        old, new = await coordinator.allocation.publish(organizer, D1), await coordinator.allocation.publish(organizer, D2)
        await coordinator.allocation.lock(old.date_id, "speaker_1", "Talk")
        await coordinator.allocation.lock(new.date_id, "speaker_2", "Other")

        with pytest.raises(DateUnavailableError) as exc_info:
            await coordinator.allocation.reassign(old.date_id, new.date_id, "speaker_1", "Talk")

        context = exc_info.value.context
        assert context["saga"] == "reassign"
        assert context["failed_step"] == "lock"
        assert context["rolled_back"] is True

        # 旧候補日はロックされたまま
        old_state = await coordinator.dates.require(old.date_id)
        assert old_state.is_locked_by("speaker_1")
        assert old_state.talk_title == "Talk"

    @pytest.mark.asyncio
    async def test_reassign_same_date_updates_title(self, coordinator, organizer):
        published = await coordinator.allocation.publish(organizer, D1)
        await coordinator.allocation.lock(published.date_id, "speaker_1", "Talk")

        await coordinator.allocation.reassign(published.date_id, published.date_id, "speaker_1", "Renamed")

        stored = await coordinator.dates.require(published.date_id)
        assert stored.is_locked_by("speaker_1")
        assert stored.talk_title == "Renamed"

    @pytest.mark.asyncio
    async def test_reassign_from_date_not_held(self, coordinator, organizer):
        old, new = await coordinator.allocation.publish(organizer, D1), await coordinator.allocation.publish(organizer, D2)
        await coordinator.allocation.lock(old.date_id, "speaker_2", "Other")

        with pytest.raises(DateUnavailableError):
            await coordinator.allocation.reassign(old.date_id, new.date_id, "speaker_1", "Talk")

        assert (await coordinator.dates.require(new.date_id)).available is True


class TestSoftDelete:
    """Test soft deletion"""

    @pytest.mark.asyncio
    async def test_locked_date_cannot_be_deleted_until_unlocked(self, coordinator, organizer):
        published = await coordinator.allocation.publish(organizer, D1)
        await coordinator.allocation.lock(published.date_id, "speaker_1")

        with pytest.raises(DateLockedError):
            await coordinator.allocation.soft_delete(organizer, published.date_id)

        await coordinator.allocation.unlock(published.date_id)
        deleted = await coordinator.allocation.soft_delete(organizer, published.date_id)

        assert deleted.locked_by.state == LockState.DELETED
        assert deleted.available is False
        assert published.date_id not in [d.date_id for d in await coordinator.read_models.active_dates()]

    @pytest.mark.asyncio
    async def test_delete_twice(self, coordinator, organizer):
        published = await coordinator.allocation.publish(organizer, D1)
        await coordinator.allocation.soft_delete(organizer, published.date_id)

        with pytest.raises(DateLockedError) as exc_info:
            await coordinator.allocation.soft_delete(organizer, published.date_id)

        assert exc_info.value.context["lock_state"] == "deleted"

    @pytest.mark.asyncio
    async def test_delete_unknown_date(self, coordinator, organizer):
        with pytest.raises(NotFoundError):
            await coordinator.allocation.soft_delete(organizer, "missing")

    @pytest.mark.asyncio
    async def test_deleted_record_is_kept(self, coordinator, organizer):
        published = await coordinator.allocation.publish(organizer, D1)
        await coordinator.allocation.soft_delete(organizer, published.date_id)

        stored = await coordinator.dates.get_by_id(published.date_id)
        assert stored is not None
        assert stored.is_active is False

    @pytest.mark.asyncio
    async def test_only_organizer_can_delete(self, coordinator, organizer, fellow):
        published = await coordinator.allocation.publish(organizer, D1)

        with pytest.raises(AuthorizationError):
            await coordinator.allocation.soft_delete(fellow, published.date_id)
