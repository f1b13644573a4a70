"""
アクションログ

講演者ごとの追記専用ワークフロー監査ログ。
既存エントリで変更できるのは completed / completed_at のみです。
"""

import logging
from datetime import datetime
from typing import List, Optional

from ..errors import IndexOutOfRangeError, ValidationError
from ..integrations.firestore_client import FirestoreClient, TransactionManager
from ..models.action import Action, ActionKind, ResponseOutcome
from ..models.repository import SpeakerRepository
from ..models.speaker import Speaker
from ..models.user import CallerIdentity
from .base_service import BaseService, Clock

logger = logging.getLogger(__name__)


class ActionLog(BaseService):
    """アクションログ"""

    def __init__(self, client: FirestoreClient, speakers: SpeakerRepository, clock: Optional[Clock] = None):
        super().__init__("action_log", clock)
        self.client = client
        self.speakers = speakers

    def record(
        self,
        speaker: Speaker,
        kind: ActionKind,
        actor: str,
        now: datetime,
        outcome: Optional[ResponseOutcome] = None,
        label: Optional[str] = None,
        completed: bool = False
    ) -> int:
        """
        講演者エンティティにエントリを追記（保存は呼び出し側のトランザクションで行う）

        Returns:
            追記したエントリのインデックス
        """
        action = self.build(
            Action,
            kind=kind,
            label=label,
            timestamp=now,
            completed=completed,
            completed_at=now if completed else None,
            actor=actor,
            outcome=outcome
        )
        speaker.actions.append(action)
        speaker.update_timestamp(now)
        return len(speaker.actions) - 1

    async def append(
        self,
        caller: CallerIdentity,
        speaker_id: str,
        kind: ActionKind,
        outcome: Optional[ResponseOutcome] = None,
        label: Optional[str] = None
    ) -> int:
        """エントリを追記してインデックスを返す（実行者は呼び出し元の表示名）"""
        self.require_caller(caller, "append")
        actor = caller.display_name
        if not actor or not actor.strip():
            raise ValidationError("実行者の表示名は必須です", speaker_id=speaker_id, kind=kind.value)

        async def _append(tx: TransactionManager) -> int:
            speaker = await self.speakers.require_in(tx, speaker_id)
            index = self.record(speaker, kind, actor, self.now(), outcome=outcome, label=label)
            await self.speakers.put_in(tx, speaker)
            return index

        try:
            index = await self.client.run_transaction(_append)
        except Exception as e:
            self.failed("append", e)
            raise
        self.succeeded("append", speaker_id=speaker_id, kind=kind.value, index=index)
        return index

    async def set_completed(self, caller: CallerIdentity, speaker_id: str, index: int, completed: bool) -> Action:
        """完了フラグを切り替え（false→trueで完了時刻を設定、falseでクリア）"""
        self.require_caller(caller, "set_completed")

        async def _set_completed(tx: TransactionManager) -> Action:
            speaker = await self.speakers.require_in(tx, speaker_id)
            if index < 0 or index >= len(speaker.actions):
                raise IndexOutOfRangeError(
                    "アクションのインデックスが範囲外です",
                    speaker_id=speaker_id,
                    index=index,
                    length=len(speaker.actions)
                )
            now = self.now()
            action = speaker.actions[index]
            action.mark_completed(completed, now)
            speaker.update_timestamp(now)
            await self.speakers.put_in(tx, speaker)
            return action

        try:
            action = await self.client.run_transaction(_set_completed)
        except Exception as e:
            self.failed("set_completed", e)
            raise
        self.succeeded("set_completed", speaker_id=speaker_id, index=index, completed=completed)
        return action

    async def entries(self, speaker_id: str) -> List[Action]:
        """時系列順のエントリ一覧"""
        speaker = await self.speakers.require(speaker_id)
        return list(speaker.actions)

    async def is_overdue(self, speaker_id: str) -> bool:
        """招待中かつ回答期限切れか（派生値）"""
        speaker = await self.speakers.require(speaker_id)
        return speaker.is_overdue(self.now())
