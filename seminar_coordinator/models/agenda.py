"""
Agenda エンティティモデル

承諾した講演者の3日間の訪問スケジュールとミーティングを表現します。
"""

import datetime as dt
from datetime import date, datetime, time, timedelta, timezone
from enum import Enum
from typing import Any, Dict, List, Optional
from uuid import uuid4

from pydantic import BaseModel, Field

# 時間グリッドの表示範囲（時）
GRID_START_HOUR = 8
GRID_END_HOUR = 20


class MeetingKind(str, Enum):
    """ミーティング種別列挙"""
    SEMINAR = "seminar"        # セミナー本体
    ONE_TO_ONE = "1-to-1"      # 個別面談
    GROUP = "group"            # グループミーティング
    SOCIAL = "social"          # 食事・懇親


class Meeting(BaseModel):
    """アジェンダ内のミーティング"""
    title: str = Field(..., description="タイトル")
    kind: MeetingKind = Field(..., description="種別")
    date: dt.date = Field(..., description="日付")
    start_time: time = Field(..., description="開始時刻")
    end_time: time = Field(..., description="終了時刻")
    location: str = Field(default="", description="場所")
    notes: str = Field(default="", description="備考")
    attendees: List[str] = Field(default_factory=list, description="参加者名")
    is_locked: bool = Field(default=False, description="変更・削除不可か")

    def duration_minutes(self) -> int:
        """ミーティングの長さ（分）"""
        start = datetime.combine(self.date, self.start_time)
        end = datetime.combine(self.date, self.end_time)
        return int((end - start).total_seconds() / 60)

    def slot_key(self) -> tuple:
        """不変部分（日付・開始・終了）"""
        return (self.date, self.start_time, self.end_time)

    def to_dict(self) -> Dict[str, Any]:
        """辞書形式に変換"""
        return {
            "title": self.title,
            "kind": self.kind.value,
            "date": self.date.isoformat(),
            "start_time": self.start_time.strftime("%H:%M"),
            "end_time": self.end_time.strftime("%H:%M"),
            "location": self.location,
            "notes": self.notes,
            "attendees": list(self.attendees),
            "is_locked": self.is_locked
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Meeting":
        """辞書から Meeting インスタンスを作成"""
        data = dict(data)
        data["date"] = date.fromisoformat(data["date"])
        data["start_time"] = time.fromisoformat(data["start_time"])
        data["end_time"] = time.fromisoformat(data["end_time"])
        return cls(**data)


class Agenda(BaseModel):
    """アジェンダエンティティ"""

    agenda_id: str = Field(default_factory=lambda: str(uuid4()))
    speaker_id: str = Field(..., description="講演者ID（1対1）")
    speaker_name: str = Field(default="", description="講演者名")
    speaker_email: str = Field(default="", description="講演者メールアドレス")
    host: str = Field(default="", description="担当ホスト")
    seminar_date: date = Field(..., description="セミナー日")
    start_date: date = Field(..., description="訪問開始日（セミナー前日）")
    end_date: date = Field(..., description="訪問終了日（セミナー翌日）")
    meetings: List[Meeting] = Field(default_factory=list, description="ミーティング（追加順）")
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def visit_days(self) -> List[date]:
        days = []
        current = self.start_date
        while current <= self.end_date:
            days.append(current)
            current += timedelta(days=1)
        return days

    def covers(self, day: date) -> bool:
        """訪問期間内の日付か"""
        return self.start_date <= day <= self.end_date

    def seminar_meeting(self) -> Optional[Meeting]:
        for meeting in self.meetings:
            if meeting.is_locked and meeting.kind == MeetingKind.SEMINAR:
                return meeting
        return None

    def locked_meeting_count(self) -> int:
        return sum(1 for meeting in self.meetings if meeting.is_locked)

    def meetings_on(self, day: date) -> List[Meeting]:
        """指定日のミーティングを開始時刻順に取得"""
        return sorted(
            (meeting for meeting in self.meetings if meeting.date == day),
            key=lambda meeting: meeting.start_time
        )

    def hour_grid(self) -> Dict[date, Dict[int, List[int]]]:
        """
        時間グリッド（日付 → 時 → その時間帯に開始するミーティングのインデックス）

        グリッドは GRID_START_HOUR〜GRID_END_HOUR 時。範囲外に開始する
        ミーティングは端の時間帯にまとめます。
        """
        grid = {
            day: {hour: [] for hour in range(GRID_START_HOUR, GRID_END_HOUR + 1)}
            for day in self.visit_days
        }
        for index, meeting in enumerate(self.meetings):
            if meeting.date not in grid:
                continue
            hour = min(max(meeting.start_time.hour, GRID_START_HOUR), GRID_END_HOUR)
            grid[meeting.date][hour].append(index)
        return grid

    def to_dict(self) -> Dict[str, Any]:
        """辞書形式に変換（Firestore保存用）"""
        return {
            "agenda_id": self.agenda_id,
            "speaker_id": self.speaker_id,
            "speaker_name": self.speaker_name,
            "speaker_email": self.speaker_email,
            "host": self.host,
            "seminar_date": self.seminar_date.isoformat(),
            "start_date": self.start_date.isoformat(),
            "end_date": self.end_date.isoformat(),
            "meetings": [meeting.to_dict() for meeting in self.meetings],
            "created_at": self.created_at.isoformat()
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Agenda":
        """辞書から Agenda インスタンスを作成"""
        data = dict(data)
        for field in ["seminar_date", "start_date", "end_date"]:
            data[field] = date.fromisoformat(data[field])
        if data.get("created_at"):
            data["created_at"] = datetime.fromisoformat(data["created_at"])
        data["meetings"] = [Meeting.from_dict(meeting) for meeting in data.get("meetings") or []]
        return cls(**data)
