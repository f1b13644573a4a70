"""
Action エンティティモデル

講演者ごとのワークフロー監査ログの1エントリを表現します。
エントリは追記のみで、並べ替え・削除は行いません。
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field, validator


class ActionKind(str, Enum):
    """アクション種別列挙"""
    INVITATION_DRAFTED = "invitation_drafted"        # 招待状作成
    SPEAKER_RESPONDED = "speaker_responded"          # 講演者回答
    TRAVEL_ARRANGEMENTS = "travel_arrangements"      # 出張手配
    CUSTOM = "custom"                                # 手動追加（ラベル付き）


class ResponseOutcome(str, Enum):
    """講演者の回答結果"""
    ACCEPTED = "accepted"
    DECLINED = "declined"


ACTION_LABELS = {
    ActionKind.INVITATION_DRAFTED: "Invitation drafted",
    ActionKind.SPEAKER_RESPONDED: "Speaker responded",
    ActionKind.TRAVEL_ARRANGEMENTS: "Travel arrangements",
}


class Action(BaseModel):
    """アクションエントリ"""

    kind: ActionKind = Field(..., description="アクション種別")
    label: Optional[str] = Field(None, description="custom種別の表示ラベル")
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    completed: bool = Field(default=False, description="完了済みか")
    completed_at: Optional[datetime] = Field(None, description="完了時刻")
    actor: str = Field(..., description="実行者の表示名")
    outcome: Optional[ResponseOutcome] = Field(None, description="speaker_respondedの回答結果")

    class Config:
        """Pydantic設定"""
        validate_assignment = True

    @validator('label', always=True)
    def validate_label(cls, v, values):
        """custom種別にはラベルが必須"""
        kind = values.get('kind')
        if kind == ActionKind.CUSTOM:
            if not v or not v.strip():
                raise ValueError('custom アクションにはラベルが必要です')
            return v.strip()
        return v

    @validator('outcome', always=True)
    def validate_outcome(cls, v, values):
        """回答結果は speaker_responded のみ"""
        if v is not None and values.get('kind') != ActionKind.SPEAKER_RESPONDED:
            raise ValueError('回答結果は speaker_responded アクションにのみ設定できます')
        return v

    @property
    def display_label(self) -> str:
        if self.kind == ActionKind.CUSTOM:
            return self.label
        return ACTION_LABELS[self.kind]

    def mark_completed(self, completed: bool, now: datetime) -> None:
        """完了フラグを切り替え（false→trueでのみ完了時刻を設定、falseでクリア）"""
        if completed and not self.completed:
            self.completed_at = now
        elif not completed:
            self.completed_at = None
        self.completed = completed

    def to_dict(self) -> Dict[str, Any]:
        """辞書形式に変換（Firestore保存用）"""
        return {
            "kind": self.kind.value,
            "label": self.label,
            "timestamp": self.timestamp.isoformat(),
            "completed": self.completed,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "actor": self.actor,
            "outcome": self.outcome.value if self.outcome else None
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Action":
        """辞書から Action インスタンスを作成"""
        data = dict(data)
        if data.get("timestamp"):
            data["timestamp"] = datetime.fromisoformat(data["timestamp"])
        if data.get("completed_at"):
            data["completed_at"] = datetime.fromisoformat(data["completed_at"])
        return cls(**data)
