"""
講演者ライフサイクル状態機械

Proposed → Invited → Accepted / Declined の遷移を管理し、
副作用として候補日のロック、アクションログへの追記、アジェンダ作成を行います。

respond と edit_confirmed は一つのトランザクションで実行され、途中で失敗した場合は
何も保存されません。delete_confirmed はステップごとに永続化するサガで、
途中のステップが失敗した場合は補償処理を実行して SagaError を送出します。
"""

import logging
from datetime import timedelta
from typing import Any, Callable, Dict, List, Optional

from pydantic import BaseModel, Field

from ..errors import (
    AuthorizationError, DateUnavailableError, InvalidTransitionError, NotFoundError,
    SagaError, ValidationError
)
from ..integrations.firestore_client import FirestoreClient, QueryFilter, TransactionManager
from ..integrations.messaging import MESSAGE_TEMPLATES, MessageSender
from ..models.action import ActionKind, ResponseOutcome
from ..models.agenda import Agenda
from ..models.repository import AgendaRepository, AvailableDateRepository, SpeakerRepository
from ..models.speaker import (
    EDITABLE_PROPOSAL_FIELDS, ProposedBy, Speaker, SpeakerStatus
)
from ..models.user import CallerIdentity, UserRoleType
from .action_log import ActionLog
from .agenda_scheduler import AgendaScheduler
from .base_service import BaseService, Clock
from .date_allocation import DateAllocationEngine
from .token_issuer import TokenIssuer

logger = logging.getLogger(__name__)

DEFAULT_RESPONSE_WINDOW_DAYS = 7


class DeletionResult(BaseModel):
    """確定済み講演者の削除結果"""
    speaker_id: str
    released_date_ids: List[str] = Field(default_factory=list)
    deleted_agenda_ids: List[str] = Field(default_factory=list)
    completed_steps: List[str] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list, description="再照会で回復した場合の警告")

    @property
    def degraded(self) -> bool:
        """再照会による回復を伴う成功か"""
        return bool(self.warnings)


class SpeakerLifecycle(BaseService):
    """講演者ライフサイクル"""

    def __init__(
        self,
        client: FirestoreClient,
        speakers: SpeakerRepository,
        dates: AvailableDateRepository,
        agendas: AgendaRepository,
        allocation: DateAllocationEngine,
        scheduler: AgendaScheduler,
        action_log: ActionLog,
        tokens: TokenIssuer,
        sender: Optional[MessageSender] = None,
        response_window_days: int = DEFAULT_RESPONSE_WINDOW_DAYS,
        speaker_link: Optional[Callable[[str], str]] = None,
        clock: Optional[Clock] = None
    ):
        super().__init__("speaker_lifecycle", clock)
        self.client = client
        self.speakers = speakers
        self.dates = dates
        self.agendas = agendas
        self.allocation = allocation
        self.scheduler = scheduler
        self.action_log = action_log
        self.tokens = tokens
        self.sender = sender
        self.response_window = timedelta(days=response_window_days)
        self.speaker_link = speaker_link or (lambda token: token)

    # 推薦

    async def propose(self, caller: CallerIdentity, **fields: Any) -> Speaker:
        """講演者を推薦（Proposed で作成し、トークンを発行）"""
        self.require_role(caller, "propose", [UserRoleType.ORGANIZER, UserRoleType.SENIOR_FELLOW])
        self._check_editable_fields(fields, "propose")

        now = self.now()
        speaker = self.build(
            Speaker,
            **fields,
            status=SpeakerStatus.PROPOSED,
            access_token=await self.tokens.issue(),
            proposed_by=ProposedBy(user_id=caller.user_id, display_name=caller.display_name),
            created_at=now,
            updated_at=now
        )
        try:
            await self.speakers.create(speaker)
        except Exception as e:
            self.failed("propose", e)
            raise
        self.succeeded("propose", speaker_id=speaker.speaker_id, proposed_by=caller.user_id)
        return speaker

    async def edit_proposal(self, caller: CallerIdentity, speaker_id: str, **fields: Any) -> Speaker:
        """推薦内容を編集（Proposed のみ）"""
        self._check_editable_fields(fields, "edit_proposal")

        async def _edit(tx: TransactionManager) -> Speaker:
            speaker = await self.speakers.require_in(tx, speaker_id)
            self._require_organizer_or_proposer(caller, speaker, "edit_proposal")
            self._require_status(speaker, [SpeakerStatus.PROPOSED], "edit_proposal")
            updated = self.build(Speaker, **{**speaker.dict(), **fields})
            updated.update_timestamp(self.now())
            await self.speakers.put_in(tx, updated)
            return updated

        speaker = await self._run("edit_proposal", _edit)
        self.succeeded("edit_proposal", speaker_id=speaker_id, fields=sorted(fields))
        return speaker

    async def delete_proposed(self, caller: CallerIdentity, speaker_id: str) -> None:
        """推薦を削除（日付を保持しない Proposed / Declined のみ）"""

        async def _delete(tx: TransactionManager) -> None:
            speaker = await self.speakers.require_in(tx, speaker_id)
            self._require_organizer_or_proposer(caller, speaker, "delete_proposed")
            self._require_status(speaker, [SpeakerStatus.PROPOSED, SpeakerStatus.DECLINED], "delete_proposed")
            await self.speakers.delete_in(tx, speaker_id)

        await self._run("delete_proposed", _delete)
        self.succeeded("delete_proposed", speaker_id=speaker_id)

    async def vote(self, caller: CallerIdentity, speaker_id: str) -> bool:
        """賛成票を切り替え。票を追加した場合 True"""
        if caller is None:
            raise AuthorizationError("投票には認証済みの呼び出し元が必要です", operation="vote")

        async def _vote(tx: TransactionManager) -> bool:
            speaker = await self.speakers.require_in(tx, speaker_id)
            added = speaker.toggle_vote(caller.user_id, caller.display_name, self.now())
            await self.speakers.put_in(tx, speaker)
            return added

        added = await self._run("vote", _vote)
        self.succeeded("vote", speaker_id=speaker_id, user_id=caller.user_id, added=added)
        return added

    # 招待

    async def accept_proposal(self, caller: CallerIdentity, speaker_id: str) -> Speaker:
        """推薦を承認して招待（Proposed → Invited）"""
        self.require_organizer(caller, "accept_proposal")

        async def _accept(tx: TransactionManager) -> Speaker:
            speaker = await self.speakers.require_in(tx, speaker_id)
            self._require_transition(speaker, SpeakerStatus.INVITED, "accept_proposal")
            now = self.now()
            if not speaker.access_token:
                speaker.access_token = await self.tokens.issue()
            speaker.status = SpeakerStatus.INVITED
            speaker.invitation_sent_date = now
            speaker.response_deadline = now + self.response_window
            self.action_log.record(speaker, ActionKind.INVITATION_DRAFTED, caller.display_name, now)
            await self.speakers.put_in(tx, speaker)
            return speaker

        speaker = await self._run("accept_proposal", _accept)
        self.succeeded(
            "accept_proposal",
            speaker_id=speaker_id,
            transition="Proposed->Invited",
            response_deadline=speaker.response_deadline.isoformat()
        )
        await self._send_invitation(speaker, caller)
        return speaker

    async def resend(self, caller: CallerIdentity, speaker_id: str) -> Speaker:
        """招待を再送（送信日時と回答期限のみ更新、トークンとログは変更しない）"""
        self.require_organizer(caller, "resend")

        async def _resend(tx: TransactionManager) -> Speaker:
            speaker = await self.speakers.require_in(tx, speaker_id)
            self._require_status(speaker, [SpeakerStatus.INVITED], "resend")
            now = self.now()
            speaker.invitation_sent_date = now
            speaker.response_deadline = now + self.response_window
            speaker.update_timestamp(now)
            await self.speakers.put_in(tx, speaker)
            return speaker

        speaker = await self._run("resend", _resend)
        self.succeeded("resend", speaker_id=speaker_id, response_deadline=speaker.response_deadline.isoformat())
        await self._send_invitation(speaker, caller)
        return speaker

    async def reject_proposal(self, caller: CallerIdentity, speaker_id: str) -> Speaker:
        """推薦を却下（Proposed → Declined）"""
        self.require_organizer(caller, "reject_proposal")

        async def _reject(tx: TransactionManager) -> Speaker:
            speaker = await self.speakers.require_in(tx, speaker_id)
            self._require_transition(speaker, SpeakerStatus.DECLINED, "reject_proposal")
            speaker.status = SpeakerStatus.DECLINED
            speaker.update_timestamp(self.now())
            await self.speakers.put_in(tx, speaker)
            return speaker

        speaker = await self._run("reject_proposal", _reject)
        self.succeeded("reject_proposal", speaker_id=speaker_id, transition="Proposed->Declined")
        return speaker

    # 講演者の回答

    async def find_by_token(self, access_token: str) -> Speaker:
        """アクセストークンから講演者を取得"""
        speaker = await self.speakers.find_by_token(access_token) if access_token else None
        if speaker is None:
            raise NotFoundError("アクセストークンが無効です")
        return speaker

    async def respond_with_token(
        self,
        access_token: str,
        outcome: ResponseOutcome,
        date_id: Optional[str] = None,
        talk_title: str = "",
        talk_abstract: str = ""
    ) -> Speaker:
        """トークン保持者による回答（招待中の講演者のみ）"""
        speaker = await self.find_by_token(access_token)
        if speaker.status != SpeakerStatus.INVITED:
            raise NotFoundError(
                "この招待は既に使用されています",
                speaker_id=speaker.speaker_id,
                status=speaker.status.value
            )
        return await self.respond(speaker.speaker_id, outcome, date_id, talk_title, talk_abstract)

    async def respond(
        self,
        speaker_id: str,
        outcome: ResponseOutcome,
        date_id: Optional[str] = None,
        talk_title: str = "",
        talk_abstract: str = ""
    ) -> Speaker:
        """
        招待への回答（Invited → Accepted / Declined）

        承諾の場合、候補日のロック、講演者の更新、アジェンダ作成を一つの
        トランザクションで行います。ロックに失敗した場合は何も保存されず、
        講演者は Invited のままです。

        Raises:
            DateUnavailableError: 候補日が他の講演者に確保済み、または削除済み
            InvalidTransitionError: 招待中ではない
        """
        if outcome == ResponseOutcome.ACCEPTED and not date_id:
            raise ValidationError("承諾には候補日の指定が必要です", speaker_id=speaker_id)
        target = SpeakerStatus.ACCEPTED if outcome == ResponseOutcome.ACCEPTED else SpeakerStatus.DECLINED

        async def _respond(tx: TransactionManager) -> Speaker:
            speaker = await self.speakers.require_in(tx, speaker_id)
            self._require_status(speaker, [SpeakerStatus.INVITED], "respond")
            self._require_transition(speaker, target, "respond")
            now = self.now()

            if outcome == ResponseOutcome.DECLINED:
                speaker.status = SpeakerStatus.DECLINED
                self.action_log.record(
                    speaker, ActionKind.SPEAKER_RESPONDED, speaker.full_name, now,
                    outcome=ResponseOutcome.DECLINED, completed=True
                )
                await self.speakers.put_in(tx, speaker)
                return speaker

            locked_date = await self.allocation.lock_in(tx, date_id, speaker_id, talk_title)
            speaker.status = SpeakerStatus.ACCEPTED
            speaker.assigned_date = locked_date.calendar_date
            speaker.assigned_date_id = locked_date.date_id
            speaker.talk_title = talk_title
            speaker.talk_abstract = talk_abstract
            self.action_log.record(
                speaker, ActionKind.SPEAKER_RESPONDED, speaker.full_name, now,
                outcome=ResponseOutcome.ACCEPTED, completed=True
            )
            self.action_log.record(speaker, ActionKind.TRAVEL_ARRANGEMENTS, speaker.full_name, now)
            await self.speakers.put_in(tx, speaker)
            await self.scheduler.create_in(tx, speaker, locked_date)
            return speaker

        speaker = await self._run("respond", _respond)
        self.succeeded(
            "respond",
            speaker_id=speaker_id,
            transition=f"Invited->{speaker.status.value}",
            date_id=speaker.assigned_date_id
        )
        return speaker

    # 確定済み講演者

    async def edit_confirmed(
        self,
        caller: CallerIdentity,
        speaker_id: str,
        talk_title: str,
        talk_abstract: str,
        host: str,
        new_date_id: Optional[str] = None
    ) -> Speaker:
        """
        確定済み講演者を編集

        日付を変更する場合は旧候補日の解除と新候補日のロックを同じトランザクションで行い、
        新しい日付でアジェンダを作り直します（追加済みのミーティングは破棄されます）。
        日付を変更しない場合は候補日とセミナー本体のタイトルのみ更新します。
        """
        self.require_organizer(caller, "edit_confirmed")

        async def _edit(tx: TransactionManager) -> Speaker:
            speaker = await self.speakers.require_in(tx, speaker_id)
            self._require_status(speaker, [SpeakerStatus.ACCEPTED], "edit_confirmed")
            current_date_id = speaker.assigned_date_id
            target_date_id = new_date_id or current_date_id

            speaker.talk_title = talk_title
            speaker.talk_abstract = talk_abstract
            speaker.host = host
            speaker.update_timestamp(self.now())

            if target_date_id is None:
                raise ValidationError("確定済み講演者に候補日がありません", speaker_id=speaker_id)
            if current_date_id is None:
                locked_date = await self.allocation.lock_in(tx, target_date_id, speaker_id, talk_title)
            else:
                locked_date = await self.allocation.reassign_in(
                    tx, current_date_id, target_date_id, speaker_id, talk_title
                )
            if target_date_id != current_date_id:
                speaker.assigned_date = locked_date.calendar_date
                speaker.assigned_date_id = locked_date.date_id
                await self.scheduler.move_in(tx, speaker, locked_date)
            else:
                await self.scheduler.retitle_seminar_in(tx, speaker_id, talk_title)

            await self.speakers.put_in(tx, speaker)
            return speaker

        speaker = await self._run("edit_confirmed", _edit)
        self.succeeded("edit_confirmed", speaker_id=speaker_id, date_id=speaker.assigned_date_id)
        return speaker

    async def delete_confirmed(self, caller: CallerIdentity, speaker_id: str) -> DeletionResult:
        """
        確定済み講演者を削除するサガ

        ステップ: unlock → delete_agenda → delete_speaker
        講演者を削除する前に必ず候補日を解除します。候補日の参照が不整合な場合は
        ロック中の候補日を再照会して解除し、警告付きの成功として報告します。
        アジェンダの照会は unlock より前に行います。

        Raises:
            SagaError: unlock / delete_agenda / delete_speaker の失敗（補償処理の結果を含む）
        """
        self.require_organizer(caller, "delete_confirmed")
        speaker = await self.speakers.require(speaker_id)
        self._require_status(speaker, [SpeakerStatus.ACCEPTED], "delete_confirmed")
        result = DeletionResult(speaker_id=speaker_id)

        # 照会のみ: 失敗しても何も変更されていない
        try:
            agendas = await self._agendas_for(speaker_id, result)
        except Exception as e:
            self.failed("delete_confirmed", e)
            raise

        # unlock: 途中まで解除した候補日は再ロックする
        try:
            await self._release_dates(speaker, result)
        except Exception as e:
            await self._compensate(speaker, result, agendas, "unlock", e)
        result.completed_steps.append("unlock")
        logger.info(f"delete_confirmed: unlock 完了 {speaker_id} dates={result.released_date_ids}")

        # delete_agenda
        try:
            for agenda in agendas:
                await self.agendas.delete(agenda.agenda_id)
                result.deleted_agenda_ids.append(agenda.agenda_id)
        except Exception as e:
            await self._compensate(speaker, result, agendas, "delete_agenda", e)
        result.completed_steps.append("delete_agenda")
        logger.info(f"delete_confirmed: delete_agenda 完了 {speaker_id} agendas={result.deleted_agenda_ids}")

        # delete_speaker
        try:
            await self.speakers.delete(speaker_id)
        except Exception as e:
            await self._compensate(speaker, result, agendas, "delete_speaker", e)
        result.completed_steps.append("delete_speaker")

        if result.degraded:
            for warning in result.warnings:
                logger.warning(f"delete_confirmed: {speaker_id} {warning}")
        self.succeeded(
            "delete_confirmed",
            speaker_id=speaker_id,
            released=result.released_date_ids,
            degraded=result.degraded
        )
        return result

    async def delete_invited(self, caller: CallerIdentity, speaker_id: str) -> None:
        """招待中の講演者を削除（日付を保持していないため補償は不要）"""
        self.require_organizer(caller, "delete_invited")

        async def _delete(tx: TransactionManager) -> None:
            speaker = await self.speakers.require_in(tx, speaker_id)
            self._require_status(speaker, [SpeakerStatus.INVITED], "delete_invited")
            await self.speakers.delete_in(tx, speaker_id)

        await self._run("delete_invited", _delete)
        self.succeeded("delete_invited", speaker_id=speaker_id)

    # 内部処理

    async def _run(self, operation: str, func: Callable[[TransactionManager], Any]) -> Any:
        try:
            return await self.client.run_transaction(func)
        except Exception as e:
            self.failed(operation, e)
            raise

    def _check_editable_fields(self, fields: Dict[str, Any], operation: str) -> None:
        unknown = sorted(set(fields) - set(EDITABLE_PROPOSAL_FIELDS))
        if unknown:
            raise ValidationError("編集できないフィールドが含まれています", operation=operation, fields=unknown)

    def _require_status(self, speaker: Speaker, allowed: List[SpeakerStatus], operation: str) -> None:
        if speaker.status not in allowed:
            raise InvalidTransitionError(
                "現在のステータスではこの操作はできません",
                operation=operation,
                speaker_id=speaker.speaker_id,
                status=speaker.status.value,
                allowed=[status.value for status in allowed]
            )

    def _require_transition(self, speaker: Speaker, target: SpeakerStatus, operation: str) -> None:
        if not speaker.can_transition_to(target):
            raise InvalidTransitionError(
                "許可されないステータス遷移です",
                operation=operation,
                speaker_id=speaker.speaker_id,
                transition=f"{speaker.status.value}->{target.value}",
                status=speaker.status.value
            )

    def _require_organizer_or_proposer(self, caller: CallerIdentity, speaker: Speaker, operation: str) -> None:
        if caller is not None and (caller.is_organizer or caller.user_id == speaker.proposed_by.user_id):
            return
        error = AuthorizationError(
            "主催者または推薦者のみが実行できます",
            operation=operation,
            speaker_id=speaker.speaker_id,
            caller_id=caller.user_id if caller else None,
            caller_role=caller.role.value if caller else None
        )
        self.metrics.record_error(error)
        raise error

    async def _release_dates(self, speaker: Speaker, result: DeletionResult) -> None:
        """講演者の候補日を解除。参照が不整合な場合はロック中の候補日を再照会する"""
        if speaker.assigned_date_id:
            try:
                await self.client.run_transaction(
                    lambda tx: self.allocation.unlock_in(tx, speaker.assigned_date_id, speaker.speaker_id)
                )
                result.released_date_ids.append(speaker.assigned_date_id)
                return
            except (NotFoundError, DateUnavailableError) as e:
                result.warnings.append(
                    f"assigned date {speaker.assigned_date_id} was not locked to the speaker ({e.message}); "
                    f"re-queried locked dates"
                )
        else:
            result.warnings.append("speaker had no assigned date; re-queried locked dates")

        locked = await self.dates.find_where(
            [QueryFilter(field="locked_by_id", operator="==", value=speaker.speaker_id)]
        )
        for available_date in locked:
            await self.client.run_transaction(
                lambda tx, date_id=available_date.date_id: self.allocation.unlock_in(tx, date_id, speaker.speaker_id)
            )
            result.released_date_ids.append(available_date.date_id)
        if not locked:
            result.warnings.append("no date was locked to the speaker")

    async def _agendas_for(self, speaker_id: str, result: DeletionResult) -> List[Agenda]:
        agendas = await self.agendas.find_by_field("speaker_id", speaker_id)
        if not agendas:
            result.warnings.append("speaker had no agenda")
        return agendas

    async def _compensate(
        self,
        speaker: Speaker,
        result: DeletionResult,
        agendas: List[Agenda],
        failed_step: str,
        cause: Exception
    ) -> None:
        """途中失敗時の補償（アジェンダの復元と解除済み候補日の再ロック）を行い SagaError を送出"""
        logger.error(f"delete_confirmed: {failed_step} 失敗 {speaker.speaker_id} - {cause}")
        compensated = True
        compensation_errors = []

        for agenda in agendas:
            if agenda.agenda_id in result.deleted_agenda_ids:
                try:
                    await self.agendas.save(agenda)
                except Exception as e:
                    compensated = False
                    compensation_errors.append(f"restore agenda {agenda.agenda_id}: {e}")

        for date_id in result.released_date_ids:
            try:
                await self.allocation.lock(date_id, speaker.speaker_id, speaker.talk_title)
            except Exception as e:
                compensated = False
                compensation_errors.append(f"relock date {date_id}: {e}")

        error = SagaError(
            "確定済み講演者の削除が途中で失敗しました",
            saga="delete_confirmed",
            failed_step=failed_step,
            completed_steps=result.completed_steps,
            compensated=compensated,
            cause=cause,
            speaker_id=speaker.speaker_id,
            released_date_ids=result.released_date_ids,
            compensation_errors=compensation_errors
        )
        self.failed("delete_confirmed", error)
        raise error from cause

    async def _send_invitation(self, speaker: Speaker, caller: CallerIdentity) -> bool:
        """招待メッセージを引き渡す（コミット後に実行し、失敗しても操作は成功）"""
        if self.sender is None:
            return False
        message = MESSAGE_TEMPLATES["speaker_invitation"].render(
            recipient=speaker.email,
            link=self.speaker_link(speaker.access_token),
            full_name=speaker.full_name,
            host=speaker.host or caller.display_name,
            response_deadline=speaker.response_deadline.strftime("%Y-%m-%d"),
            organizer_name=caller.display_name
        )
        return await self.sender.hand_off(message)
