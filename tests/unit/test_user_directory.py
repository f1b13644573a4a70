"""
Unit tests for the user directory
Tests sign-up invitations, role management and fellow availability
"""

from datetime import date, timedelta

import pytest

from seminar_coordinator.errors import AuthorizationError, NotFoundError, ValidationError
from seminar_coordinator.models.user import UserRoleType

D1 = date(2025, 3, 10)


class TestInvitations:
    """Test sign-up invitations"""

    @pytest.mark.asyncio
    async def test_create_invitation_hands_off_message(self, coordinator, organizer, clock):
        invitation = await coordinator.directory.create_invitation(
            organizer, "kenji@example.org", "Kenji Fellow", "Math Dept", UserRoleType.SENIOR_FELLOW
        )

        assert invitation.used is False
        assert invitation.expires_at == clock.current + timedelta(days=30)
        message = coordinator.sender.sent[-1]
        assert message.recipient == "kenji@example.org"
        assert message.subject == "Invitation to join as Senior Fellow"
        assert message.link == f"http://localhost:8000/?signup={invitation.token}"

    @pytest.mark.asyncio
    async def test_only_organizer_invites(self, coordinator, fellow):
        with pytest.raises(AuthorizationError):
            await coordinator.directory.create_invitation(fellow, "kenji@example.org", "Kenji Fellow")

    @pytest.mark.asyncio
    async def test_redeem_creates_user_once(self, coordinator, organizer):
        invitation = await coordinator.directory.create_invitation(
            organizer, "kenji@example.org", "Kenji Fellow", role=UserRoleType.SENIOR_FELLOW
        )

        user = await coordinator.directory.redeem_invitation(invitation.token, "fellow_002")

        assert user.role == UserRoleType.SENIOR_FELLOW
        assert user.email == "kenji@example.org"
        assert (await coordinator.directory.get_user("fellow_002")).full_name == "Kenji Fellow"
        with pytest.raises(NotFoundError):
            await coordinator.directory.redeem_invitation(invitation.token, "fellow_003")
        assert await coordinator.directory.list_invitations(organizer) == []

    @pytest.mark.asyncio
    async def test_expired_invitation(self, coordinator, organizer, clock):
        invitation = await coordinator.directory.create_invitation(organizer, "kenji@example.org", "Kenji Fellow")
        clock.advance(days=31)

        with pytest.raises(NotFoundError):
            await coordinator.directory.find_invitation(invitation.token)

    @pytest.mark.asyncio
    async def test_redeem_for_existing_user(self, coordinator, organizer):
        first = await coordinator.directory.create_invitation(organizer, "kenji@example.org", "Kenji Fellow")
        second = await coordinator.directory.create_invitation(organizer, "kenji2@example.org", "Kenji Again")
        await coordinator.directory.redeem_invitation(first.token, "fellow_002")

        with pytest.raises(ValidationError):
            await coordinator.directory.redeem_invitation(second.token, "fellow_002")

        # 失敗した招待は未使用のまま
        pending = await coordinator.directory.list_invitations(organizer)
        assert [inv.invitation_id for inv in pending] == [second.invitation_id]

    @pytest.mark.asyncio
    async def test_list_invitations_newest_first(self, coordinator, organizer, clock):
        first = await coordinator.directory.create_invitation(organizer, "a@example.org", "A Person")
        clock.advance(minutes=5)
        second = await coordinator.directory.create_invitation(organizer, "b@example.org", "B Person")

        pending = await coordinator.directory.list_invitations(organizer)

        assert [inv.invitation_id for inv in pending] == [second.invitation_id, first.invitation_id]
        assert pending[0].email == "b@example.org"


class TestUsers:
    """Test user management"""

    @pytest.fixture
    async def registered(self, coordinator, organizer):
        invitation = await coordinator.directory.create_invitation(organizer, "kenji@example.org", "Kenji Fellow")
        return await coordinator.directory.redeem_invitation(invitation.token, "fellow_002")

    @pytest.mark.asyncio
    async def test_edit_user_changes_role(self, coordinator, organizer, registered):
        updated = await coordinator.directory.edit_user(organizer, registered.user_id, role=UserRoleType.ORGANIZER)

        assert updated.role == UserRoleType.ORGANIZER
        assert updated.full_name == "Kenji Fellow"

    @pytest.mark.asyncio
    async def test_edit_profile_keeps_role(self, coordinator, other_fellow, registered):
        updated = await coordinator.directory.edit_profile(other_fellow, full_name="Kenji F.", affiliation="Physics")

        assert updated.full_name == "Kenji F."
        assert updated.role == UserRoleType.FELLOW

    @pytest.mark.asyncio
    async def test_blank_name_rejected(self, coordinator, other_fellow, registered):
        with pytest.raises(ValidationError):
            await coordinator.directory.edit_profile(other_fellow, full_name="  ")

    @pytest.mark.asyncio
    async def test_fellow_cannot_list_users(self, coordinator, fellow, registered):
        with pytest.raises(AuthorizationError):
            await coordinator.directory.list_users(fellow)

    @pytest.mark.asyncio
    async def test_delete_user(self, coordinator, organizer, registered):
        await coordinator.directory.delete_user(organizer, registered.user_id)

        assert await coordinator.directory.list_users(organizer) == []
        with pytest.raises(NotFoundError):
            await coordinator.directory.delete_user(organizer, registered.user_id)

    @pytest.mark.asyncio
    async def test_cannot_delete_self(self, coordinator, organizer):
        with pytest.raises(ValidationError):
            await coordinator.directory.delete_user(organizer, organizer.user_id)


class TestAvailability:
    """Test fellow availability for dates"""

    @pytest.mark.asyncio
    async def test_availability_overwrites_per_user(self, coordinator, fellow, other_fellow, publish_dates):
        available_date, = await publish_dates(D1)

        await coordinator.directory.set_availability(fellow, available_date.date_id, False)
        await coordinator.directory.set_availability(fellow, available_date.date_id, True)
        await coordinator.directory.set_availability(other_fellow, available_date.date_id, False)

        summary = await coordinator.directory.availability_for_date(available_date.date_id)
        assert summary.available == ["Hana Host"]
        assert summary.unavailable == ["Kenji Fellow"]

    @pytest.mark.asyncio
    async def test_deleted_date_rejected(self, coordinator, organizer, fellow, publish_dates):
        available_date, = await publish_dates(D1)
        await coordinator.allocation.soft_delete(organizer, available_date.date_id)

        with pytest.raises(NotFoundError):
            await coordinator.directory.set_availability(fellow, available_date.date_id, True)

    @pytest.mark.asyncio
    async def test_anonymous_caller_rejected(self, coordinator, publish_dates):
        available_date, = await publish_dates(D1)

        with pytest.raises(AuthorizationError):
            await coordinator.directory.set_availability(None, available_date.date_id, True)

        summary = await coordinator.directory.availability_for_date(available_date.date_id)
        assert summary.available == []
