"""
読み取りモデル

周辺アプリケーションへ公開する一覧・派生ビュー。保存される状態は持ちません。
"""

import logging
from datetime import date, datetime, timedelta
from typing import Dict, List, Optional

from ..integrations.firestore_client import QueryFilter
from ..models.agenda import Agenda
from ..models.available_date import AvailableDate, LockState
from ..models.repository import AgendaRepository, AvailableDateRepository, SpeakerRepository
from ..models.speaker import Speaker, SpeakerStatus
from ..models.user import CallerIdentity
from .base_service import BaseService, Clock

logger = logging.getLogger(__name__)

_ACTIVE_LOCK_STATES = [LockState.UNSET.value, LockState.SPEAKER.value]


class ReadModels(BaseService):
    """読み取りモデル"""

    def __init__(
        self,
        speakers: SpeakerRepository,
        dates: AvailableDateRepository,
        agendas: AgendaRepository,
        lunch_reminder_days: int = 7,
        clock: Optional[Clock] = None
    ):
        super().__init__("read_models", clock)
        self.speakers = speakers
        self.dates = dates
        self.agendas = agendas
        self.lunch_reminder_days = lunch_reminder_days

    def _today(self) -> date:
        return self.now().date()

    async def speakers_by_status(self) -> Dict[SpeakerStatus, List[Speaker]]:
        """ステータスごとの講演者（すべてのステータスをキーに持つ、作成順）"""
        grouped: Dict[SpeakerStatus, List[Speaker]] = {status: [] for status in SpeakerStatus}
        for speaker in await self.speakers.list_all(order_by="created_at"):
            grouped[speaker.status].append(speaker)
        return grouped

    async def speakers_with_status(self, status: SpeakerStatus) -> List[Speaker]:
        return await self.speakers.find_where(
            [QueryFilter(field="status", operator="==", value=status.value)],
            order_by="created_at"
        )

    async def active_dates(self) -> List[AvailableDate]:
        """論理削除されていない候補日（日付順）"""
        return await self.dates.find_where(
            [QueryFilter(field="lock_state", operator="in", value=_ACTIVE_LOCK_STATES)],
            order_by="calendar_date"
        )

    async def open_dates(self, today: Optional[date] = None) -> List[AvailableDate]:
        """招待中の講演者が選択できる候補日（公開中かつ今日以降）"""
        today = today or self._today()
        return [
            available_date for available_date in await self.active_dates()
            if available_date.available and available_date.calendar_date >= today
        ]

    async def agenda_by_speaker(self, speaker_id: str) -> Optional[Agenda]:
        return await self.agendas.find_by_speaker(speaker_id)

    async def overdue_invited_speakers(self, now: Optional[datetime] = None) -> List[Speaker]:
        """回答期限を過ぎた招待中の講演者（保存しない派生値）"""
        now = now or self.now()
        return [
            speaker for speaker in await self.speakers_with_status(SpeakerStatus.INVITED)
            if speaker.is_overdue(now)
        ]

    async def lunch_reminders(self, caller: CallerIdentity, today: Optional[date] = None) -> List[Speaker]:
        """
        昼食予約リマインダー

        セミナーがちょうど lunch_reminder_days 日後の確定済み講演者。
        主催者はすべて、それ以外はホストを務める講演者のみ。
        """
        target = (today or self._today()) + timedelta(days=self.lunch_reminder_days)
        reminders = []
        for speaker in await self.speakers_with_status(SpeakerStatus.ACCEPTED):
            if speaker.assigned_date != target:
                continue
            if caller.is_organizer or speaker.host == caller.display_name:
                reminders.append(speaker)
        if reminders:
            logger.info(f"昼食予約リマインダー: {len(reminders)}件 ({target.isoformat()})")
        return reminders

    async def past_speakers(self, today: Optional[date] = None) -> List[Speaker]:
        """セミナー日が過ぎた確定済み講演者（新しい順）"""
        today = today or self._today()
        past = [
            speaker for speaker in await self.speakers_with_status(SpeakerStatus.ACCEPTED)
            if speaker.assigned_date is not None and speaker.assigned_date < today
        ]
        return sorted(past, key=lambda speaker: speaker.assigned_date, reverse=True)
