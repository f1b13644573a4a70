"""
ユーザーディレクトリ

登録招待の発行と利用、ユーザーロールの管理、フェローの候補日ごとの都合を扱います。
"""

import logging
from datetime import timedelta
from typing import Callable, List, Optional

from pydantic import BaseModel, Field

from ..errors import NotFoundError, ValidationError
from ..integrations.firestore_client import FirestoreClient, QueryFilter, TransactionManager
from ..integrations.messaging import MESSAGE_TEMPLATES, MessageSender
from ..models.repository import (
    AvailabilityRepository, AvailableDateRepository, InvitationRepository, UserRepository
)
from ..models.user import CallerIdentity, UserAvailability, UserInvitation, UserRecord, UserRoleType
from .base_service import BaseService, Clock
from .token_issuer import TokenIssuer

logger = logging.getLogger(__name__)


class DateAvailability(BaseModel):
    """候補日ごとのフェローの都合"""
    date_id: str
    available: List[str] = Field(default_factory=list, description="都合の良いフェロー")
    unavailable: List[str] = Field(default_factory=list, description="都合の悪いフェロー")


class UserDirectory(BaseService):
    """ユーザーディレクトリ"""

    def __init__(
        self,
        client: FirestoreClient,
        users: UserRepository,
        invitations: InvitationRepository,
        availability: AvailabilityRepository,
        dates: AvailableDateRepository,
        tokens: TokenIssuer,
        sender: Optional[MessageSender] = None,
        signup_invitation_days: int = 30,
        signup_link: Optional[Callable[[str], str]] = None,
        clock: Optional[Clock] = None
    ):
        super().__init__("user_directory", clock)
        self.client = client
        self.users = users
        self.invitations = invitations
        self.availability = availability
        self.dates = dates
        self.tokens = tokens
        self.sender = sender
        self.signup_invitation_days = signup_invitation_days
        self.signup_link = signup_link or (lambda token: token)

    # 登録招待

    async def create_invitation(
        self,
        caller: CallerIdentity,
        email: str,
        full_name: str,
        affiliation: str = "",
        role: UserRoleType = UserRoleType.FELLOW
    ) -> UserInvitation:
        """登録招待を発行して招待メッセージを引き渡す"""
        self.require_organizer(caller, "create_invitation")
        if not email or not full_name:
            raise ValidationError("メールアドレスと氏名は必須です", operation="create_invitation")

        now = self.now()
        invitation = self.build(
            UserInvitation,
            email=email,
            full_name=full_name,
            affiliation=affiliation,
            role=role,
            token=await self.tokens.issue(),
            invited_by_id=caller.user_id,
            invited_by_name=caller.display_name,
            expires_at=now + timedelta(days=self.signup_invitation_days),
            created_at=now
        )
        try:
            await self.invitations.create(invitation)
        except Exception as e:
            self.failed("create_invitation", e)
            raise
        self.succeeded("create_invitation", invitation_id=invitation.invitation_id, role=role.value)

        if self.sender is not None:
            message = MESSAGE_TEMPLATES["signup_invitation"].render(
                recipient=email,
                link=self.signup_link(invitation.token),
                full_name=full_name,
                role=role.value,
                affiliation=affiliation or "-",
                valid_days=str(self.signup_invitation_days),
                organizer_name=caller.display_name
            )
            await self.sender.hand_off(message)
        return invitation

    async def find_invitation(self, token: str) -> UserInvitation:
        """利用可能な招待をトークンから取得（期限切れ・使用済みは NotFoundError）"""
        found = await self.invitations.find_by_field("token", token, limit=1) if token else []
        if not found or not found[0].is_redeemable(self.now()):
            raise NotFoundError("招待が見つからないか、期限切れまたは使用済みです")
        return found[0]

    async def redeem_invitation(self, token: str, user_id: str) -> UserRecord:
        """招待を利用してユーザーロールを登録"""
        invitation = await self.find_invitation(token)

        async def _redeem(tx: TransactionManager) -> UserRecord:
            current = await self.invitations.require_in(tx, invitation.invitation_id)
            now = self.now()
            if not current.is_redeemable(now):
                raise NotFoundError("招待は既に使用されています", invitation_id=current.invitation_id)
            if await self.users.get_in(tx, user_id) is not None:
                raise ValidationError("このユーザーは既に登録されています", user_id=user_id)
            user = self.build(
                UserRecord,
                user_id=user_id,
                email=current.email,
                full_name=current.full_name,
                affiliation=current.affiliation,
                role=current.role,
                created_at=now
            )
            current.used = True
            current.used_at = now
            await self.users.put_in(tx, user)
            await self.invitations.put_in(tx, current)
            return user

        try:
            user = await self.client.run_transaction(_redeem)
        except Exception as e:
            self.failed("redeem_invitation", e)
            raise
        self.succeeded("redeem_invitation", user_id=user_id, role=user.role.value)
        return user

    async def list_invitations(self, caller: CallerIdentity) -> List[UserInvitation]:
        """未使用の招待一覧"""
        self.require_organizer(caller, "list_invitations")
        return await self.invitations.find_where(
            [QueryFilter(field="used", operator="==", value=False)],
            order_by="created_at",
            ascending=False
        )

    # ユーザー管理

    async def get_user(self, user_id: str) -> UserRecord:
        return await self.users.require(user_id)

    async def list_users(self, caller: CallerIdentity) -> List[UserRecord]:
        self.require_organizer(caller, "list_users")
        return await self.users.list_all(order_by="full_name")

    async def edit_user(
        self,
        caller: CallerIdentity,
        user_id: str,
        full_name: Optional[str] = None,
        affiliation: Optional[str] = None,
        role: Optional[UserRoleType] = None
    ) -> UserRecord:
        """ユーザー情報とロールを変更（主催者のみ）"""
        self.require_organizer(caller, "edit_user")
        return await self._update_user("edit_user", user_id, full_name, affiliation, role)

    async def edit_profile(
        self,
        caller: CallerIdentity,
        full_name: Optional[str] = None,
        affiliation: Optional[str] = None
    ) -> UserRecord:
        """自分のプロフィールを変更（ロールは変更不可）"""
        self.require_caller(caller, "edit_profile")
        return await self._update_user("edit_profile", caller.user_id, full_name, affiliation, None)

    async def delete_user(self, caller: CallerIdentity, user_id: str) -> None:
        """ユーザーを削除（自分自身は削除不可）"""
        self.require_organizer(caller, "delete_user")
        if user_id == caller.user_id:
            raise ValidationError("自分自身は削除できません", user_id=user_id)

        async def _delete(tx: TransactionManager) -> None:
            await self.users.require_in(tx, user_id)
            await self.users.delete_in(tx, user_id)

        try:
            await self.client.run_transaction(_delete)
        except Exception as e:
            self.failed("delete_user", e)
            raise
        self.succeeded("delete_user", user_id=user_id)

    async def _update_user(
        self,
        operation: str,
        user_id: str,
        full_name: Optional[str],
        affiliation: Optional[str],
        role: Optional[UserRoleType]
    ) -> UserRecord:
        changes = {
            key: value for key, value in
            {"full_name": full_name, "affiliation": affiliation, "role": role}.items()
            if value is not None
        }
        if "full_name" in changes and not changes["full_name"].strip():
            raise ValidationError("氏名は必須です", user_id=user_id)

        async def _update(tx: TransactionManager) -> UserRecord:
            user = await self.users.require_in(tx, user_id)
            updated = self.build(UserRecord, **{**user.dict(), **changes})
            await self.users.put_in(tx, updated)
            return updated

        try:
            user = await self.client.run_transaction(_update)
        except Exception as e:
            self.failed(operation, e)
            raise
        self.succeeded(operation, user_id=user_id, fields=sorted(changes))
        return user

    # フェローの都合

    async def set_availability(self, caller: CallerIdentity, date_id: str, available: bool) -> UserAvailability:
        """公開中の候補日に対する自分の都合を記録"""
        self.require_caller(caller, "set_availability")

        async def _set(tx: TransactionManager) -> UserAvailability:
            available_date = await self.dates.get_in(tx, date_id)
            if available_date is None or not available_date.is_active:
                raise NotFoundError("候補日が見つかりません", date_id=date_id)
            record = UserAvailability(
                user_id=caller.user_id,
                user_name=caller.display_name,
                date_id=date_id,
                available=available,
                updated_at=self.now()
            )
            await self.availability.put_in(tx, record)
            return record

        try:
            record = await self.client.run_transaction(_set)
        except Exception as e:
            self.failed("set_availability", e)
            raise
        self.succeeded("set_availability", user_id=caller.user_id, date_id=date_id, available=available)
        return record

    async def availability_for_date(self, date_id: str) -> DateAvailability:
        result = DateAvailability(date_id=date_id)
        for record in await self.availability.find_by_field("date_id", date_id):
            (result.available if record.available else result.unavailable).append(record.user_name)
        result.available.sort()
        result.unavailable.sort()
        return result
