"""
ユーザー関連エンティティモデル

呼び出し元の識別情報、ロール、登録招待、フェローの日程可否を表現します。
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional
from uuid import uuid4

from pydantic import BaseModel, Field


class UserRoleType(str, Enum):
    """ユーザーロール"""
    ORGANIZER = "Organizer"
    SENIOR_FELLOW = "Senior Fellow"
    FELLOW = "Fellow"


class CallerIdentity(BaseModel):
    """認証済みの呼び出し元（外部の認証基盤が提供）"""
    user_id: str
    display_name: str
    role: UserRoleType

    @property
    def is_organizer(self) -> bool:
        return self.role == UserRoleType.ORGANIZER


class UserRecord(BaseModel):
    """登録済みユーザー（user_roles）"""
    user_id: str = Field(..., description="認証基盤のユーザーID")
    email: str = Field(..., description="メールアドレス")
    full_name: str = Field(..., description="氏名")
    affiliation: str = Field(default="", description="所属")
    role: UserRoleType = Field(default=UserRoleType.FELLOW, description="ロール")
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    def to_identity(self) -> CallerIdentity:
        return CallerIdentity(user_id=self.user_id, display_name=self.full_name, role=self.role)

    def to_dict(self) -> Dict[str, Any]:
        """辞書形式に変換（Firestore保存用）"""
        return {
            "user_id": self.user_id,
            "email": self.email,
            "full_name": self.full_name,
            "affiliation": self.affiliation,
            "role": self.role.value,
            "created_at": self.created_at.isoformat()
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "UserRecord":
        data = dict(data)
        if data.get("created_at"):
            data["created_at"] = datetime.fromisoformat(data["created_at"])
        return cls(**data)


class UserInvitation(BaseModel):
    """ユーザー登録招待"""
    invitation_id: str = Field(default_factory=lambda: str(uuid4()))
    email: str
    full_name: str
    affiliation: str = ""
    role: UserRoleType = UserRoleType.FELLOW
    token: str
    invited_by_id: str
    invited_by_name: str
    used: bool = False
    used_at: Optional[datetime] = None
    expires_at: datetime
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    def is_redeemable(self, now: datetime) -> bool:
        return not self.used and now <= self.expires_at

    def to_dict(self) -> Dict[str, Any]:
        """辞書形式に変換（Firestore保存用）"""
        return {
            "invitation_id": self.invitation_id,
            "email": self.email,
            "full_name": self.full_name,
            "affiliation": self.affiliation,
            "role": self.role.value,
            "token": self.token,
            "invited_by_id": self.invited_by_id,
            "invited_by_name": self.invited_by_name,
            "used": self.used,
            "used_at": self.used_at.isoformat() if self.used_at else None,
            "expires_at": self.expires_at.isoformat(),
            "created_at": self.created_at.isoformat()
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "UserInvitation":
        data = dict(data)
        for field in ["used_at", "expires_at", "created_at"]:
            if data.get(field):
                data[field] = datetime.fromisoformat(data[field])
        return cls(**data)


class UserAvailability(BaseModel):
    """フェローの候補日ごとの都合"""
    user_id: str
    user_name: str
    date_id: str
    available: bool = True
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def availability_id(self) -> str:
        return f"{self.user_id}_{self.date_id}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "availability_id": self.availability_id,
            "user_id": self.user_id,
            "user_name": self.user_name,
            "date_id": self.date_id,
            "available": self.available,
            "updated_at": self.updated_at.isoformat()
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "UserAvailability":
        data = dict(data)
        data.pop("availability_id", None)
        if data.get("updated_at"):
            data["updated_at"] = datetime.fromisoformat(data["updated_at"])
        return cls(**data)
