"""
アジェンダスケジューラ

承諾時にロックした候補日から3日間の訪問期間を算出し、
セミナー本体（ロック）と昼食の2件を初期配置します。
以降は非ロックのミーティングのみ追加・削除できます。
"""

import logging
from datetime import time, timedelta
from typing import Any, List, Optional

from ..errors import (
    AuthorizationError, IndexOutOfRangeError, InvalidTimeRangeError,
    LockedMeetingError, ValidationError
)
from ..integrations.firestore_client import FirestoreClient, TransactionManager
from ..models.agenda import Agenda, Meeting, MeetingKind
from ..models.available_date import AvailableDate
from ..models.repository import AgendaRepository
from ..models.speaker import Speaker
from ..models.user import CallerIdentity
from .base_service import BaseService, Clock

logger = logging.getLogger(__name__)

SEMINAR_START = time(10, 0)
SEMINAR_END = time(11, 0)
LUNCH_START = time(13, 0)
LUNCH_END = time(14, 0)
DEFAULT_TALK_TITLE = "(TBC)"
DEFAULT_LOCATION = "TBD"


class AgendaScheduler(BaseService):
    """アジェンダスケジューラ"""

    def __init__(self, client: FirestoreClient, agendas: AgendaRepository, clock: Optional[Clock] = None):
        super().__init__("agenda_scheduler", clock)
        self.client = client
        self.agendas = agendas

    def seed(self, speaker: Speaker, locked_date: AvailableDate) -> Agenda:
        """訪問期間と初期ミーティングを持つアジェンダを構築（保存しない）"""
        seminar_date = locked_date.calendar_date
        seminar = Meeting(
            title=speaker.talk_title or DEFAULT_TALK_TITLE,
            kind=MeetingKind.SEMINAR,
            date=seminar_date,
            start_time=SEMINAR_START,
            end_time=SEMINAR_END,
            location=locked_date.notes or DEFAULT_LOCATION,
            notes="Main seminar presentation",
            is_locked=True
        )
        lunch = Meeting(
            title="Lunch",
            kind=MeetingKind.SOCIAL,
            date=seminar_date,
            start_time=LUNCH_START,
            end_time=LUNCH_END,
            notes="Lunch break"
        )
        return Agenda(
            speaker_id=speaker.speaker_id,
            speaker_name=speaker.full_name,
            speaker_email=speaker.email,
            host=locked_date.host or speaker.host,
            seminar_date=seminar_date,
            start_date=seminar_date - timedelta(days=1),
            end_date=seminar_date + timedelta(days=1),
            meetings=[seminar, lunch],
            created_at=self.now()
        )

    async def create_in(self, tx: TransactionManager, speaker: Speaker, locked_date: AvailableDate) -> Agenda:
        """トランザクション内でアジェンダを作成（講演者ごとに1件のみ）"""
        existing = await self.agendas.find_in(tx, "speaker_id", speaker.speaker_id)
        if existing:
            raise ValidationError(
                "この講演者のアジェンダは既に存在します",
                speaker_id=speaker.speaker_id,
                agenda_id=existing[0].agenda_id
            )
        agenda = self.seed(speaker, locked_date)
        await self.agendas.put_in(tx, agenda)
        logger.info(f"アジェンダ作成: {agenda.agenda_id} ({agenda.start_date} 〜 {agenda.end_date})")
        return agenda

    async def create(self, speaker: Speaker, locked_date: AvailableDate) -> Agenda:
        """アジェンダを作成"""
        try:
            agenda = await self.client.run_transaction(lambda tx: self.create_in(tx, speaker, locked_date))
        except Exception as e:
            self.failed("create", e)
            raise
        self.succeeded("create", agenda_id=agenda.agenda_id, speaker_id=speaker.speaker_id)
        return agenda

    async def get(self, agenda_id: str) -> Agenda:
        return await self.agendas.require(agenda_id)

    async def add_meeting(self, caller: CallerIdentity, agenda_id: str, **fields: Any) -> int:
        """
        非ロックのミーティングを末尾に追加

        Args:
            caller: 主催者またはアジェンダのホスト
            agenda_id: アジェンダID
            **fields: title, kind, date, start_time, end_time, location, notes, attendees

        Returns:
            追加したミーティングのインデックス

        Raises:
            InvalidTimeRangeError: 終了時刻が開始時刻以前、または訪問期間外
        """
        fields["is_locked"] = False
        meeting = self.build(Meeting, **fields)

        async def _add(tx: TransactionManager) -> int:
            agenda = await self.agendas.require_in(tx, agenda_id)
            self._require_host(caller, agenda, "add_meeting")
            self._check_time_range(agenda, meeting)
            agenda.meetings.append(meeting)
            await self.agendas.put_in(tx, agenda)
            return len(agenda.meetings) - 1

        try:
            index = await self.client.run_transaction(_add)
        except Exception as e:
            self.failed("add_meeting", e)
            raise
        self.succeeded("add_meeting", agenda_id=agenda_id, index=index, title=meeting.title)
        return index

    async def remove_meeting(self, caller: CallerIdentity, agenda_id: str, index: int) -> Meeting:
        """
        ミーティングを削除（残りの順序は維持）

        Raises:
            IndexOutOfRangeError: インデックスが範囲外
            LockedMeetingError: ロックされたミーティング
        """

        async def _remove(tx: TransactionManager) -> Meeting:
            agenda = await self.agendas.require_in(tx, agenda_id)
            self._require_host(caller, agenda, "remove_meeting")
            if index < 0 or index >= len(agenda.meetings):
                raise IndexOutOfRangeError(
                    "ミーティングのインデックスが範囲外です",
                    agenda_id=agenda_id,
                    index=index,
                    length=len(agenda.meetings)
                )
            target = agenda.meetings[index]
            if target.is_locked:
                raise LockedMeetingError(
                    "ロックされたミーティングは削除できません",
                    agenda_id=agenda_id,
                    index=index,
                    title=target.title,
                    kind=target.kind.value
                )
            agenda.meetings = agenda.meetings[:index] + agenda.meetings[index + 1:]
            await self.agendas.put_in(tx, agenda)
            return target

        try:
            removed = await self.client.run_transaction(_remove)
        except Exception as e:
            self.failed("remove_meeting", e)
            raise
        self.succeeded("remove_meeting", agenda_id=agenda_id, index=index, title=removed.title)
        return removed

    async def find_for_speaker_in(self, tx: TransactionManager, speaker_id: str) -> List[Agenda]:
        return await self.agendas.find_in(tx, "speaker_id", speaker_id)

    async def retitle_seminar_in(self, tx: TransactionManager, speaker_id: str, talk_title: str) -> Optional[Agenda]:
        """セミナー本体のタイトルのみ更新（日付・時刻は不変）"""
        agendas = await self.find_for_speaker_in(tx, speaker_id)
        if not agendas:
            return None
        agenda = agendas[0]
        seminar = agenda.seminar_meeting()
        if seminar is not None:
            seminar.title = talk_title or DEFAULT_TALK_TITLE
            await self.agendas.put_in(tx, agenda)
        return agenda

    async def move_in(self, tx: TransactionManager, speaker: Speaker, locked_date: AvailableDate) -> Agenda:
        """
        セミナー日の変更に合わせてアジェンダを移動

        agenda_id は維持し、訪問期間と全ミーティングを同じ日数だけずらします。
        セミナー本体は新しい日付のタイトル・場所に合わせます。
        アジェンダが存在しない場合は新規作成します。
        """
        agendas = await self.find_for_speaker_in(tx, speaker.speaker_id)
        if not agendas:
            return await self.create_in(tx, speaker, locked_date)

        agenda = agendas[0]
        offset = locked_date.calendar_date - agenda.seminar_date
        agenda.seminar_date = locked_date.calendar_date
        agenda.start_date += offset
        agenda.end_date += offset
        agenda.host = locked_date.host or speaker.host
        for meeting in agenda.meetings:
            meeting.date += offset

        seminar = agenda.seminar_meeting()
        if seminar is not None:
            seminar.title = speaker.talk_title or DEFAULT_TALK_TITLE
            seminar.location = locked_date.notes or DEFAULT_LOCATION
        await self.agendas.put_in(tx, agenda)
        logger.info(f"アジェンダ移動: {agenda.agenda_id} ({offset.days:+d}日, ミーティング {len(agenda.meetings)}件)")
        return agenda

    def _require_host(self, caller: CallerIdentity, agenda: Agenda, operation: str) -> None:
        if caller is not None and (caller.is_organizer or (agenda.host and caller.display_name == agenda.host)):
            return
        error = AuthorizationError(
            "アジェンダを編集できるのは主催者かホストのみです",
            operation=operation,
            agenda_id=agenda.agenda_id,
            caller_id=caller.user_id if caller else None,
            caller_role=caller.role.value if caller else None
        )
        self.metrics.record_error(error)
        raise error

    def _check_time_range(self, agenda: Agenda, meeting: Meeting) -> None:
        if meeting.end_time <= meeting.start_time:
            raise InvalidTimeRangeError(
                "終了時刻は開始時刻より後である必要があります",
                agenda_id=agenda.agenda_id,
                start_time=meeting.start_time.strftime("%H:%M"),
                end_time=meeting.end_time.strftime("%H:%M")
            )
        if not agenda.covers(meeting.date):
            raise InvalidTimeRangeError(
                "ミーティング日は訪問期間内である必要があります",
                agenda_id=agenda.agenda_id,
                date=meeting.date.isoformat(),
                start_date=agenda.start_date.isoformat(),
                end_date=agenda.end_date.isoformat()
            )
