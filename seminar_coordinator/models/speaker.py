"""
Speaker エンティティモデル

招待候補・確定済みの講演者と、その招待ワークフロー状態を表現します。
"""

import re
from datetime import date, datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, validator

from .action import Action


class SpeakerStatus(str, Enum):
    """講演者ステータス列挙"""
    PROPOSED = "Proposed"    # 推薦済み
    INVITED = "Invited"      # 招待中
    ACCEPTED = "Accepted"    # 承諾（終了状態）
    DECLINED = "Declined"    # 辞退・却下（終了状態）


class SpeakerRanking(str, Enum):
    """推薦優先度"""
    HIGH = "High Priority"
    MEDIUM = "Medium Priority"
    LOW = "Low Priority"


# 許可される遷移（全ステータスを網羅すること）
SPEAKER_TRANSITIONS: Dict[SpeakerStatus, List[SpeakerStatus]] = {
    SpeakerStatus.PROPOSED: [SpeakerStatus.INVITED, SpeakerStatus.DECLINED],
    SpeakerStatus.INVITED: [SpeakerStatus.ACCEPTED, SpeakerStatus.DECLINED],
    SpeakerStatus.ACCEPTED: [],  # 終了状態
    SpeakerStatus.DECLINED: [],  # 終了状態
}

EDITABLE_PROPOSAL_FIELDS = (
    "full_name", "email", "affiliation", "country",
    "area_of_expertise", "ranking", "host",
)

_EMAIL_PATTERN = re.compile(r'^[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}$')


class ProposedBy(BaseModel):
    """推薦者"""
    user_id: str = Field(..., description="推薦者のユーザーID")
    display_name: str = Field(..., description="推薦者の表示名")


class SpeakerVote(BaseModel):
    """推薦への賛成票"""
    user_id: str
    user_name: str
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class Speaker(BaseModel):
    """講演者エンティティ"""

    # 基本識別情報
    speaker_id: str = Field(default_factory=lambda: str(uuid4()))
    full_name: str = Field(..., description="氏名")
    email: str = Field(..., description="メールアドレス")
    affiliation: str = Field(default="", description="所属")
    country: str = Field(default="", description="国")
    area_of_expertise: str = Field(default="", description="専門分野")
    ranking: SpeakerRanking = Field(default=SpeakerRanking.MEDIUM, description="優先度")
    host: str = Field(default="", description="受け入れ担当フェローの名前")

    # ワークフロー状態
    status: SpeakerStatus = Field(default=SpeakerStatus.PROPOSED, description="ステータス")
    access_token: Optional[str] = Field(None, description="セルフサービス用アクセストークン")
    invitation_sent_date: Optional[datetime] = Field(None, description="招待送信日時")
    response_deadline: Optional[datetime] = Field(None, description="回答期限")

    # 確定情報
    assigned_date: Optional[date] = Field(None, description="確保した日付")
    assigned_date_id: Optional[str] = Field(None, description="確保した候補日ID")
    talk_title: str = Field(default="", description="講演タイトル")
    talk_abstract: str = Field(default="", description="講演要旨")

    # 監査ログ・推薦情報
    actions: List[Action] = Field(default_factory=list, description="アクションログ（時系列順）")
    proposed_by: ProposedBy = Field(..., description="推薦者")
    votes: List[SpeakerVote] = Field(default_factory=list, description="賛成票")

    # メタデータ
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    class Config:
        """Pydantic設定"""
        validate_assignment = True

    @validator('full_name')
    def validate_full_name(cls, v):
        """氏名の検証"""
        if not v or not v.strip():
            raise ValueError('氏名は必須です')
        return v.strip()

    @validator('email')
    def validate_email(cls, v):
        """メールアドレスの形式検証"""
        if not _EMAIL_PATTERN.match(v or ""):
            raise ValueError('有効なメールアドレス形式である必要があります')
        return v

    def update_timestamp(self, now: Optional[datetime] = None) -> None:
        """更新タイムスタンプを設定"""
        self.updated_at = now or datetime.now(timezone.utc)

    def can_transition_to(self, new_status: SpeakerStatus) -> bool:
        """ステータス遷移が可能かチェック"""
        return new_status in SPEAKER_TRANSITIONS[self.status]

    def has_date(self) -> bool:
        return self.assigned_date is not None and self.assigned_date_id is not None

    def is_overdue(self, now: datetime) -> bool:
        """回答期限切れの招待中講演者か（保存しない派生値）"""
        return (
            self.status == SpeakerStatus.INVITED and
            self.response_deadline is not None and
            now > self.response_deadline
        )

    def toggle_vote(self, user_id: str, user_name: str, now: datetime) -> bool:
        """賛成票を切り替え。追加した場合 True"""
        for index, vote in enumerate(self.votes):
            if vote.user_id == user_id:
                self.votes = self.votes[:index] + self.votes[index + 1:]
                return False
        self.votes = self.votes + [SpeakerVote(user_id=user_id, user_name=user_name, timestamp=now)]
        return True

    def to_dict(self) -> Dict[str, Any]:
        """辞書形式に変換（Firestore保存用）"""
        return {
            "speaker_id": self.speaker_id,
            "full_name": self.full_name,
            "email": self.email,
            "affiliation": self.affiliation,
            "country": self.country,
            "area_of_expertise": self.area_of_expertise,
            "ranking": self.ranking.value,
            "host": self.host,
            "status": self.status.value,
            "access_token": self.access_token,
            "invitation_sent_date": self.invitation_sent_date.isoformat() if self.invitation_sent_date else None,
            "response_deadline": self.response_deadline.isoformat() if self.response_deadline else None,
            "assigned_date": self.assigned_date.isoformat() if self.assigned_date else None,
            "assigned_date_id": self.assigned_date_id,
            "talk_title": self.talk_title,
            "talk_abstract": self.talk_abstract,
            "actions": [action.to_dict() for action in self.actions],
            "proposed_by": self.proposed_by.dict(),
            "votes": [
                {**vote.dict(), "timestamp": vote.timestamp.isoformat()}
                for vote in self.votes
            ],
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat()
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Speaker":
        """辞書から Speaker インスタンスを作成"""
        data = dict(data)

        # datetimeフィールドの変換
        for field in ["invitation_sent_date", "response_deadline", "created_at", "updated_at"]:
            if data.get(field):
                data[field] = datetime.fromisoformat(data[field])
        if data.get("assigned_date"):
            data["assigned_date"] = date.fromisoformat(data["assigned_date"])

        # ネストしたエンティティの変換
        data["actions"] = [Action.from_dict(action) for action in data.get("actions") or []]
        data["votes"] = [
            SpeakerVote(**{**vote, "timestamp": datetime.fromisoformat(vote["timestamp"])})
            for vote in data.get("votes") or []
        ]

        return cls(**data)
