"""
候補日割り当てエンジン

講演候補日のプールを管理し、候補日を講演者へ排他的にロック・解除します。
ロックは date_id をキーとしたトランザクション内の比較交換で、同じ候補日を
同時に確保できるのは最大1件です。

同一日付の重複は date_index/{ISO日付} ドキュメントで防止します。
アクティブな候補日が存在する間だけ索引ドキュメントが存在し、
論理削除で解放されます。
"""

import logging
from datetime import date
from typing import Optional

from ..errors import (
    DateUnavailableError, DuplicateDateError, ValidationError
)
from ..integrations.firestore_client import (
    DocumentReference, FirestoreClient, TransactionManager
)
from ..models.available_date import AvailableDate
from ..models.repository import AvailableDateRepository
from ..models.user import CallerIdentity
from .base_service import BaseService, Clock

logger = logging.getLogger(__name__)

DATE_INDEX_COLLECTION = "date_index"


def date_index_ref(calendar_date: date) -> DocumentReference:
    return DocumentReference(collection=DATE_INDEX_COLLECTION, document_id=calendar_date.isoformat())


class DateAllocationEngine(BaseService):
    """候補日割り当てエンジン"""

    def __init__(
        self,
        client: FirestoreClient,
        dates: AvailableDateRepository,
        clock: Optional[Clock] = None
    ):
        super().__init__("date_allocation", clock)
        self.client = client
        self.dates = dates

    # 公開操作

    async def publish(
        self,
        caller: CallerIdentity,
        calendar_date: Optional[date],
        host: str = "",
        notes: str = ""
    ) -> AvailableDate:
        """
        候補日を公開

        Raises:
            ValidationError: 日付が未指定
            DuplicateDateError: 同じ日付のアクティブな候補日が既に存在
        """
        self.require_organizer(caller, "publish")
        if calendar_date is None:
            raise ValidationError("日付は必須です", operation="publish")

        async def _publish(tx: TransactionManager) -> AvailableDate:
            index = await tx.get(date_index_ref(calendar_date))
            if index.exists:
                raise DuplicateDateError(
                    "同じ日付の候補日が既に存在します",
                    calendar_date=calendar_date.isoformat(),
                    existing_date_id=index.data.get("date_id")
                )
            available_date = self.build(
                AvailableDate,
                calendar_date=calendar_date,
                host=host,
                notes=notes,
                created_at=self.now()
            )
            await self.dates.put_in(tx, available_date)
            await tx.set(date_index_ref(calendar_date), {
                "date_id": available_date.date_id,
                "calendar_date": calendar_date.isoformat()
            })
            return available_date

        try:
            available_date = await self.client.run_transaction(_publish)
        except Exception as e:
            self.failed("publish", e)
            raise
        self.succeeded("publish", date_id=available_date.date_id, calendar_date=calendar_date.isoformat())
        return available_date

    async def soft_delete(self, caller: CallerIdentity, date_id: str) -> AvailableDate:
        """
        候補日を論理削除（唯一の削除経路）

        Raises:
            NotFoundError: 存在しない
            DateLockedError: 講演者がロック中、または削除済み（available = false）
        """
        self.require_organizer(caller, "soft_delete")

        async def _soft_delete(tx: TransactionManager) -> AvailableDate:
            available_date = await self.dates.require_in(tx, date_id)
            available_date.mark_deleted()
            await self.dates.put_in(tx, available_date)

            # 索引が自分を指している場合のみ解放
            index_ref = date_index_ref(available_date.calendar_date)
            index = await tx.get(index_ref)
            if index.exists and index.data.get("date_id") == date_id:
                await tx.delete(index_ref)
            return available_date

        try:
            available_date = await self.client.run_transaction(_soft_delete)
        except Exception as e:
            self.failed("soft_delete", e)
            raise
        self.succeeded("soft_delete", date_id=date_id, calendar_date=available_date.calendar_date.isoformat())
        return available_date

    async def lock(self, date_id: str, speaker_id: str, talk_title: str = "") -> AvailableDate:
        """候補日を講演者にロック（原子的な比較交換）"""
        try:
            available_date = await self.client.run_transaction(
                lambda tx: self.lock_in(tx, date_id, speaker_id, talk_title)
            )
        except Exception as e:
            self.failed("lock", e)
            raise
        self.succeeded("lock", date_id=date_id, speaker_id=speaker_id)
        return available_date

    async def unlock(self, date_id: str) -> AvailableDate:
        """候補日のロックを解除"""
        try:
            available_date = await self.client.run_transaction(lambda tx: self.unlock_in(tx, date_id))
        except Exception as e:
            self.failed("unlock", e)
            raise
        self.succeeded("unlock", date_id=date_id)
        return available_date

    async def reassign(
        self,
        old_date_id: str,
        new_date_id: str,
        speaker_id: str,
        talk_title: str = ""
    ) -> AvailableDate:
        """
        ロックを別の候補日へ移動（解除とロックを一つのトランザクションで実行）

        ロックに失敗した場合は解除もコミットされず、旧候補日はロックされたままです。
        """
        try:
            available_date = await self.client.run_transaction(
                lambda tx: self.reassign_in(tx, old_date_id, new_date_id, speaker_id, talk_title)
            )
        except Exception as e:
            self.failed("reassign", e)
            raise
        self.succeeded("reassign", old_date_id=old_date_id, new_date_id=new_date_id, speaker_id=speaker_id)
        return available_date

    # トランザクション内操作（ライフサイクルから再利用）

    async def lock_in(
        self,
        tx: TransactionManager,
        date_id: str,
        speaker_id: str,
        talk_title: str = ""
    ) -> AvailableDate:
        available_date = await self.dates.get_in(tx, date_id)
        if available_date is None:
            raise DateUnavailableError(
                "候補日が存在しません",
                date_id=date_id,
                requested_by=speaker_id
            )
        available_date.lock_to(speaker_id, talk_title)
        await self.dates.put_in(tx, available_date)
        logger.debug(f"候補日ロック: {date_id} -> {speaker_id} ({tx.transaction_id})")
        return available_date

    async def unlock_in(
        self,
        tx: TransactionManager,
        date_id: str,
        expected_speaker_id: Optional[str] = None
    ) -> AvailableDate:
        available_date = await self.dates.require_in(tx, date_id)
        if expected_speaker_id is not None and not available_date.is_locked_by(expected_speaker_id):
            raise DateUnavailableError(
                "候補日は指定した講演者にロックされていません",
                date_id=date_id,
                lock_state=available_date.locked_by.state.value,
                locked_by=available_date.locked_speaker_id,
                expected_speaker_id=expected_speaker_id
            )
        available_date.unlock()
        await self.dates.put_in(tx, available_date)
        logger.debug(f"候補日ロック解除: {date_id} ({tx.transaction_id})")
        return available_date

    async def retitle_in(self, tx: TransactionManager, date_id: str, speaker_id: str, talk_title: str) -> AvailableDate:
        """ロック中の候補日の講演タイトル（非正規化コピー）を更新"""
        available_date = await self.dates.require_in(tx, date_id)
        if not available_date.is_locked_by(speaker_id):
            raise DateUnavailableError(
                "候補日は指定した講演者にロックされていません",
                date_id=date_id,
                lock_state=available_date.locked_by.state.value,
                locked_by=available_date.locked_speaker_id,
                expected_speaker_id=speaker_id
            )
        available_date.talk_title = talk_title
        await self.dates.put_in(tx, available_date)
        return available_date

    async def reassign_in(
        self,
        tx: TransactionManager,
        old_date_id: str,
        new_date_id: str,
        speaker_id: str,
        talk_title: str = ""
    ) -> AvailableDate:
        if old_date_id == new_date_id:
            return await self.retitle_in(tx, new_date_id, speaker_id, talk_title)

        await self.unlock_in(tx, old_date_id, expected_speaker_id=speaker_id)
        try:
            return await self.lock_in(tx, new_date_id, speaker_id, talk_title)
        except DateUnavailableError as e:
            # 例外の伝播でトランザクションが破棄され、解除は反映されない
            raise DateUnavailableError(
                "移動先の候補日を確保できないため、割り当て変更を取り消しました",
                saga="reassign",
                failed_step="lock",
                completed_steps=["unlock"],
                rolled_back=True,
                old_date_id=old_date_id,
                new_date_id=new_date_id,
                speaker_id=speaker_id,
                cause=e.context
            ) from e
