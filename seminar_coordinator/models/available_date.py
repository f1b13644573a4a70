"""
AvailableDate エンティティモデル

主催者が公開した講演候補日と、その排他ロック状態を表現します。
locked_by は「未ロック／講演者がロック／削除済み」の3状態です。
"""

from datetime import date, datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, root_validator, validator

from ..errors import DateLockedError, DateUnavailableError


class LockState(str, Enum):
    """ロック状態列挙"""
    UNSET = "unset"        # 未ロック（公開中）
    SPEAKER = "speaker"    # 講演者がロック中
    DELETED = "deleted"    # 論理削除済み（終了状態）


class DateLock(BaseModel):
    """locked_by の値"""
    state: LockState = LockState.UNSET
    speaker_id: Optional[str] = None

    @validator('speaker_id', always=True)
    def validate_speaker_id(cls, v, values):
        """講演者IDは SPEAKER 状態のときのみ"""
        state = values.get('state')
        if state == LockState.SPEAKER and not v:
            raise ValueError('講演者ロックには講演者IDが必要です')
        if state != LockState.SPEAKER and v is not None:
            raise ValueError('講演者ID はロック中のみ設定できます')
        return v

    @classmethod
    def unset(cls) -> "DateLock":
        return cls()

    @classmethod
    def for_speaker(cls, speaker_id: str) -> "DateLock":
        return cls(state=LockState.SPEAKER, speaker_id=speaker_id)

    @classmethod
    def deleted(cls) -> "DateLock":
        return cls(state=LockState.DELETED)


class AvailableDate(BaseModel):
    """講演候補日エンティティ"""

    date_id: str = Field(default_factory=lambda: str(uuid4()))
    calendar_date: date = Field(..., description="日付")
    host: str = Field(default="", description="担当ホスト")
    notes: str = Field(default="", description="備考（会場など）")
    available: bool = Field(default=True, description="公開中で確保可能か")
    locked_by: DateLock = Field(default_factory=DateLock.unset, description="ロック状態")
    talk_title: str = Field(default="", description="講演タイトル（非正規化コピー）")
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @root_validator(skip_on_failure=True)
    def validate_lock_consistency(cls, values):
        """available と locked_by の整合性"""
        available = values.get('available')
        lock = values.get('locked_by')
        if available and lock.state != LockState.UNSET:
            raise ValueError('公開中の候補日はロックできません')
        if not available and lock.state == LockState.UNSET:
            raise ValueError('非公開の候補日にはロック状態が必要です')
        return values

    @property
    def is_active(self) -> bool:
        """論理削除されていないか"""
        return self.locked_by.state != LockState.DELETED

    @property
    def locked_speaker_id(self) -> Optional[str]:
        return self.locked_by.speaker_id

    def is_locked_by(self, speaker_id: str) -> bool:
        return self.locked_by.state == LockState.SPEAKER and self.locked_by.speaker_id == speaker_id

    def lock_to(self, speaker_id: str, talk_title: str) -> None:
        """講演者にロック（公開中 → ロック中）"""
        if not self.available or self.locked_by.state != LockState.UNSET:
            raise DateUnavailableError(
                "候補日は確保できません",
                date_id=self.date_id,
                calendar_date=self.calendar_date.isoformat(),
                lock_state=self.locked_by.state.value,
                locked_by=self.locked_by.speaker_id,
                requested_by=speaker_id
            )
        self.available = False
        self.locked_by = DateLock.for_speaker(speaker_id)
        self.talk_title = talk_title

    def unlock(self) -> None:
        """ロック解除（ロック中 → 公開中）"""
        if self.locked_by.state != LockState.SPEAKER:
            raise DateUnavailableError(
                "ロックされていない候補日は解除できません",
                date_id=self.date_id,
                lock_state=self.locked_by.state.value
            )
        self.available = True
        self.locked_by = DateLock.unset()
        self.talk_title = ""

    def mark_deleted(self) -> None:
        """論理削除（公開中のみ可能）"""
        if not self.available:
            raise DateLockedError(
                "ロック中または削除済みの候補日は削除できません",
                date_id=self.date_id,
                calendar_date=self.calendar_date.isoformat(),
                lock_state=self.locked_by.state.value,
                locked_by=self.locked_by.speaker_id
            )
        self.available = False
        self.locked_by = DateLock.deleted()

    def to_dict(self) -> Dict[str, Any]:
        """辞書形式に変換（Firestore保存用）"""
        return {
            "date_id": self.date_id,
            "calendar_date": self.calendar_date.isoformat(),
            "host": self.host,
            "notes": self.notes,
            "available": self.available,
            "lock_state": self.locked_by.state.value,
            "locked_by_id": self.locked_by.speaker_id,
            "talk_title": self.talk_title,
            "created_at": self.created_at.isoformat()
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AvailableDate":
        """辞書から AvailableDate インスタンスを作成"""
        data = dict(data)
        data["calendar_date"] = date.fromisoformat(data["calendar_date"])
        if data.get("created_at"):
            data["created_at"] = datetime.fromisoformat(data["created_at"])
        data["locked_by"] = DateLock(
            state=LockState(data.pop("lock_state", LockState.UNSET.value)),
            speaker_id=data.pop("locked_by_id", None)
        )
        return cls(**data)
