"""
Seminar Coordinator CLI - 講演者招待・候補日管理用CLI
"""

import asyncio
import logging
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional

import typer
from cryptography.fernet import Fernet
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from ..config import load_settings
from ..errors import SeminarError
from ..integrations.firestore_client import StoreBackend
from ..models.action import ActionKind, ResponseOutcome
from ..models.agenda import MeetingKind
from ..models.speaker import SpeakerRanking, SpeakerStatus
from ..models.user import CallerIdentity, UserRoleType
from ..services.coordinator import SeminarCoordinator

console = Console()
app = typer.Typer(help="Seminar Coordinator CLI - 講演者招待・候補日管理ツール")
dates_app = typer.Typer(help="候補日の公開・一覧・削除")
speakers_app = typer.Typer(help="講演者の推薦・招待・回答")
agenda_app = typer.Typer(help="訪問アジェンダの表示・編集")
users_app = typer.Typer(help="ユーザー登録招待・一覧")
app.add_typer(dates_app, name="dates")
app.add_typer(speakers_app, name="speakers")
app.add_typer(agenda_app, name="agenda")
app.add_typer(users_app, name="users")

logger = logging.getLogger(__name__)

DEFAULT_SNAPSHOT_PATH = ".seminar_snapshot.json"

STATUS_STYLES = {
    SpeakerStatus.PROPOSED: "yellow",
    SpeakerStatus.INVITED: "cyan",
    SpeakerStatus.ACCEPTED: "green",
    SpeakerStatus.DECLINED: "red",
}

_state: Dict[str, Any] = {"config": None, "caller": None}


@app.callback()
def main(
    config: Optional[str] = typer.Option(None, help="設定ファイル (YAML)"),
    user_id: str = typer.Option("cli-organizer", "--as-user", help="実行者のユーザーID"),
    display_name: str = typer.Option("CLI Organizer", "--as-name", help="実行者の表示名"),
    role: UserRoleType = typer.Option(UserRoleType.ORGANIZER, "--as-role", help="実行者のロール")
):
    """呼び出し元の識別情報と設定ファイルを指定"""
    _state["config"] = config
    _state["caller"] = CallerIdentity(user_id=user_id, display_name=display_name, role=role)


def _caller() -> CallerIdentity:
    return _state["caller"]


def _run(func: Callable[[SeminarCoordinator], Awaitable[Any]]) -> Any:
    """設定を読み込み、コーディネーターに接続して func を実行"""

    async def _execute():
        settings = load_settings(_state["config"])
        logging.basicConfig(level=settings.log_level)
        if settings.firestore.backend == StoreBackend.MEMORY and not settings.firestore.snapshot_path:
            settings.firestore.snapshot_path = DEFAULT_SNAPSHOT_PATH
        if not settings.encryption_key:
            console.print("❌ ENCRYPTION_KEY が設定されていません（`seminar-cli keygen` で生成）", style="red")
            raise typer.Exit(code=1)
        async with SeminarCoordinator(settings) as coordinator:
            return await func(coordinator)

    try:
        return asyncio.run(_execute())
    except SeminarError as e:
        console.print(f"❌ {type(e).__name__}: {e}", style="red")
        raise typer.Exit(code=1)


@app.command()
def keygen():
    """暗号化キーを生成"""
    console.print(Fernet.generate_key().decode())


@app.command()
def status():
    """システム状態表示"""

    async def _status(coordinator: SeminarCoordinator):
        info = coordinator.get_status_info()
        table = Table(title="System Status")
        table.add_column("Service", style="cyan")
        table.add_column("Operations")
        table.add_column("Errors")
        for service in info["services"]:
            metrics = service["metrics"]
            table.add_row(service["service"], str(metrics["operations"]), str(metrics["errors_count"]))
        console.print(table)
        console.print(f"Firestore: {info['firestore']['backend']} ({info['firestore']['connection_status']})")

    _run(_status)


# 候補日

@dates_app.command("publish")
def dates_publish(
    calendar_date: datetime = typer.Argument(..., formats=["%Y-%m-%d"], help="日付 (YYYY-MM-DD)"),
    host: str = typer.Option("", help="担当ホスト"),
    notes: str = typer.Option("", help="備考（会場など）")
):
    """候補日を公開"""

    async def _publish(coordinator: SeminarCoordinator):
        available_date = await coordinator.allocation.publish(_caller(), calendar_date.date(), host, notes)
        console.print(f"✅ 候補日を公開しました: {available_date.calendar_date} ({available_date.date_id})", style="green")

    _run(_publish)


@dates_app.command("list")
def dates_list(
    open_only: bool = typer.Option(False, "--open", help="選択可能な候補日のみ")
):
    """アクティブな候補日を一覧表示"""

    async def _list(coordinator: SeminarCoordinator):
        if open_only:
            dates = await coordinator.read_models.open_dates()
        else:
            dates = await coordinator.read_models.active_dates()
        table = Table(title="Available Dates")
        table.add_column("ID", style="dim")
        table.add_column("Date", style="cyan")
        table.add_column("Host")
        table.add_column("Notes")
        table.add_column("Status")
        table.add_column("Talk")
        for available_date in dates:
            state = "open" if available_date.available else f"locked by {available_date.locked_speaker_id}"
            table.add_row(
                available_date.date_id,
                available_date.calendar_date.isoformat(),
                available_date.host,
                available_date.notes,
                state,
                available_date.talk_title
            )
        console.print(table)

    _run(_list)


@dates_app.command("delete")
def dates_delete(date_id: str = typer.Argument(..., help="候補日ID")):
    """候補日を論理削除"""

    async def _delete(coordinator: SeminarCoordinator):
        available_date = await coordinator.allocation.soft_delete(_caller(), date_id)
        console.print(f"🗑  候補日を削除しました: {available_date.calendar_date}", style="green")

    _run(_delete)


# 講演者

@speakers_app.command("propose")
def speakers_propose(
    full_name: str = typer.Argument(..., help="氏名"),
    email: str = typer.Argument(..., help="メールアドレス"),
    affiliation: str = typer.Option("", help="所属"),
    country: str = typer.Option("", help="国"),
    expertise: str = typer.Option("", help="専門分野"),
    ranking: SpeakerRanking = typer.Option(SpeakerRanking.MEDIUM, help="優先度"),
    host: str = typer.Option("", help="受け入れ担当フェロー")
):
    """講演者を推薦"""

    async def _propose(coordinator: SeminarCoordinator):
        speaker = await coordinator.lifecycle.propose(
            _caller(),
            full_name=full_name,
            email=email,
            affiliation=affiliation,
            country=country,
            area_of_expertise=expertise,
            ranking=ranking,
            host=host
        )
        console.print(f"✅ 推薦しました: {speaker.full_name} ({speaker.speaker_id})", style="green")

    _run(_propose)


@speakers_app.command("list")
def speakers_list(
    status_filter: Optional[SpeakerStatus] = typer.Option(None, "--status", help="ステータスで絞り込み")
):
    """ステータスごとに講演者を一覧表示"""

    async def _list(coordinator: SeminarCoordinator):
        grouped = await coordinator.read_models.speakers_by_status()
        overdue = {speaker.speaker_id for speaker in await coordinator.read_models.overdue_invited_speakers()}
        table = Table(title="Speakers")
        table.add_column("ID", style="dim")
        table.add_column("Name", style="cyan")
        table.add_column("Affiliation")
        table.add_column("Host")
        table.add_column("Status")
        table.add_column("Date")
        table.add_column("Votes")
        for status_value, speakers in grouped.items():
            if status_filter is not None and status_value != status_filter:
                continue
            for speaker in speakers:
                label = status_value.value + (" (overdue)" if speaker.speaker_id in overdue else "")
                table.add_row(
                    speaker.speaker_id,
                    speaker.full_name,
                    speaker.affiliation,
                    speaker.host,
                    f"[{STATUS_STYLES[status_value]}]{label}[/]",
                    speaker.assigned_date.isoformat() if speaker.assigned_date else "",
                    str(len(speaker.votes))
                )
        console.print(table)

    _run(_list)


@speakers_app.command("invite")
def speakers_invite(speaker_id: str = typer.Argument(..., help="講演者ID")):
    """推薦を承認して招待"""

    async def _invite(coordinator: SeminarCoordinator):
        speaker = await coordinator.lifecycle.accept_proposal(_caller(), speaker_id)
        console.print(Panel.fit(
            f"講演者: {speaker.full_name}\n"
            f"回答期限: {speaker.response_deadline:%Y-%m-%d}\n"
            f"リンク: {coordinator.settings.speaker_link(speaker.access_token)}",
            title="📨 招待しました"
        ))

    _run(_invite)


@speakers_app.command("resend")
def speakers_resend(speaker_id: str = typer.Argument(..., help="講演者ID")):
    """招待を再送"""

    async def _resend(coordinator: SeminarCoordinator):
        speaker = await coordinator.lifecycle.resend(_caller(), speaker_id)
        console.print(f"📨 再送しました。新しい回答期限: {speaker.response_deadline:%Y-%m-%d}", style="green")

    _run(_resend)


@speakers_app.command("reject")
def speakers_reject(speaker_id: str = typer.Argument(..., help="講演者ID")):
    """推薦を却下"""

    async def _reject(coordinator: SeminarCoordinator):
        speaker = await coordinator.lifecycle.reject_proposal(_caller(), speaker_id)
        console.print(f"推薦を却下しました: {speaker.full_name}", style="yellow")

    _run(_reject)


@speakers_app.command("respond")
def speakers_respond(
    token: str = typer.Argument(..., help="講演者のアクセストークン"),
    accept: bool = typer.Option(True, "--accept/--decline", help="承諾または辞退"),
    date_id: Optional[str] = typer.Option(None, help="選択する候補日ID（承諾時）"),
    title: str = typer.Option("", help="講演タイトル"),
    abstract: str = typer.Option("", help="講演要旨")
):
    """講演者として招待に回答"""

    async def _respond(coordinator: SeminarCoordinator):
        outcome = ResponseOutcome.ACCEPTED if accept else ResponseOutcome.DECLINED
        speaker = await coordinator.lifecycle.respond_with_token(token, outcome, date_id, title, abstract)
        if speaker.status == SpeakerStatus.ACCEPTED:
            console.print(f"✅ {speaker.assigned_date} に講演が確定しました", style="green")
        else:
            console.print("招待を辞退しました", style="yellow")

    _run(_respond)


@speakers_app.command("show")
def speakers_show(speaker_id: str = typer.Argument(..., help="講演者ID")):
    """講演者の詳細表示"""

    async def _show(coordinator: SeminarCoordinator):
        speaker = await coordinator.speakers.require(speaker_id)
        lines = [
            f"Email: {speaker.email}",
            f"Affiliation: {speaker.affiliation}",
            f"Expertise: {speaker.area_of_expertise}",
            f"Ranking: {speaker.ranking.value}",
            f"Host: {speaker.host}",
            f"Status: {speaker.status.value}",
            f"Proposed by: {speaker.proposed_by.display_name}",
        ]
        if speaker.response_deadline:
            lines.append(f"Response deadline: {speaker.response_deadline:%Y-%m-%d}")
        if speaker.assigned_date:
            lines.append(f"Date: {speaker.assigned_date}")
            lines.append(f"Talk: {speaker.talk_title}")
        console.print(Panel.fit("\n".join(lines), title=speaker.full_name))

    _run(_show)


@speakers_app.command("actions")
def speakers_actions(speaker_id: str = typer.Argument(..., help="講演者ID")):
    """アクションログ表示"""

    async def _actions(coordinator: SeminarCoordinator):
        _print_actions(await coordinator.action_log.entries(speaker_id))

    _run(_actions)


@speakers_app.command("add-action")
def speakers_add_action(
    speaker_id: str = typer.Argument(..., help="講演者ID"),
    label: str = typer.Argument(..., help="アクション名")
):
    """カスタムアクションを追加"""

    async def _add(coordinator: SeminarCoordinator):
        index = await coordinator.action_log.append(_caller(), speaker_id, ActionKind.CUSTOM, label=label)
        console.print(f"✅ アクションを追加しました (#{index})", style="green")

    _run(_add)


@speakers_app.command("complete")
def speakers_complete(
    speaker_id: str = typer.Argument(..., help="講演者ID"),
    index: int = typer.Argument(..., help="アクション番号"),
    undo: bool = typer.Option(False, "--undo", help="未完了に戻す")
):
    """アクションの完了状態を切り替え"""

    async def _complete(coordinator: SeminarCoordinator):
        action = await coordinator.action_log.set_completed(_caller(), speaker_id, index, not undo)
        console.print(f"{'☑' if action.completed else '☐'} {action.display_label}")

    _run(_complete)


def _print_actions(actions: List) -> None:
    table = Table(title="Actions")
    table.add_column("#", style="dim")
    table.add_column("Action", style="cyan")
    table.add_column("Actor")
    table.add_column("Timestamp")
    table.add_column("Done")
    for index, action in enumerate(actions):
        label = action.display_label + (f" ({action.outcome.value})" if action.outcome else "")
        table.add_row(
            str(index),
            label,
            action.actor,
            f"{action.timestamp:%Y-%m-%d %H:%M}",
            "✅" if action.completed else ""
        )
    console.print(table)


# アジェンダ

@agenda_app.command("show")
def agenda_show(speaker_id: str = typer.Argument(..., help="講演者ID")):
    """講演者のアジェンダを表示"""

    async def _show(coordinator: SeminarCoordinator):
        agenda = await coordinator.read_models.agenda_by_speaker(speaker_id)
        if agenda is None:
            console.print("アジェンダはありません", style="yellow")
            return
        table = Table(title=f"{agenda.speaker_name} ({agenda.start_date} 〜 {agenda.end_date})")
        table.add_column("#", style="dim")
        table.add_column("Date", style="cyan")
        table.add_column("Time")
        table.add_column("Title")
        table.add_column("Kind")
        table.add_column("Location")
        for index, meeting in enumerate(agenda.meetings):
            table.add_row(
                str(index),
                meeting.date.isoformat(),
                f"{meeting.start_time:%H:%M}-{meeting.end_time:%H:%M}",
                ("🔒 " if meeting.is_locked else "") + meeting.title,
                meeting.kind.value,
                meeting.location
            )
        console.print(table)
        console.print(f"Agenda ID: {agenda.agenda_id}", style="dim")

    _run(_show)


@agenda_app.command("add-meeting")
def agenda_add_meeting(
    agenda_id: str = typer.Argument(..., help="アジェンダID"),
    title: str = typer.Argument(..., help="タイトル"),
    meeting_date: str = typer.Option(..., "--date", help="日付 (YYYY-MM-DD)"),
    start: str = typer.Option(..., help="開始時刻 (HH:MM)"),
    end: str = typer.Option(..., help="終了時刻 (HH:MM)"),
    kind: MeetingKind = typer.Option(MeetingKind.ONE_TO_ONE, help="種別"),
    location: str = typer.Option("", help="場所"),
    attendee: List[str] = typer.Option([], help="参加者（複数指定可）")
):
    """ミーティングを追加"""

    async def _add(coordinator: SeminarCoordinator):
        index = await coordinator.scheduler.add_meeting(
            _caller(),
            agenda_id,
            title=title,
            kind=kind,
            date=meeting_date,
            start_time=start,
            end_time=end,
            location=location,
            attendees=list(attendee)
        )
        console.print(f"✅ ミーティングを追加しました (#{index})", style="green")

    _run(_add)


@agenda_app.command("remove-meeting")
def agenda_remove_meeting(
    agenda_id: str = typer.Argument(..., help="アジェンダID"),
    index: int = typer.Argument(..., help="ミーティング番号")
):
    """ミーティングを削除"""

    async def _remove(coordinator: SeminarCoordinator):
        meeting = await coordinator.scheduler.remove_meeting(_caller(), agenda_id, index)
        console.print(f"🗑  削除しました: {meeting.title}", style="green")

    _run(_remove)


# ユーザー

@users_app.command("invite")
def users_invite(
    email: str = typer.Argument(..., help="メールアドレス"),
    full_name: str = typer.Argument(..., help="氏名"),
    affiliation: str = typer.Option("", help="所属"),
    role: UserRoleType = typer.Option(UserRoleType.FELLOW, help="ロール")
):
    """ユーザー登録招待を発行"""

    async def _invite(coordinator: SeminarCoordinator):
        invitation = await coordinator.directory.create_invitation(_caller(), email, full_name, affiliation, role)
        console.print(Panel.fit(
            f"{invitation.full_name} ({invitation.role.value})\n"
            f"有効期限: {invitation.expires_at:%Y-%m-%d}\n"
            f"リンク: {coordinator.settings.signup_link(invitation.token)}",
            title="📨 登録招待を発行しました"
        ))

    _run(_invite)


@users_app.command("redeem")
def users_redeem(
    token: str = typer.Argument(..., help="登録招待トークン"),
    user_id: str = typer.Argument(..., help="認証基盤のユーザーID")
):
    """登録招待を利用"""

    async def _redeem(coordinator: SeminarCoordinator):
        user = await coordinator.directory.redeem_invitation(token, user_id)
        console.print(f"✅ 登録しました: {user.full_name} ({user.role.value})", style="green")

    _run(_redeem)


@users_app.command("list")
def users_list():
    """ユーザー一覧"""

    async def _list(coordinator: SeminarCoordinator):
        table = Table(title="Users")
        table.add_column("ID", style="dim")
        table.add_column("Name", style="cyan")
        table.add_column("Email")
        table.add_column("Affiliation")
        table.add_column("Role")
        for user in await coordinator.directory.list_users(_caller()):
            table.add_row(user.user_id, user.full_name, user.email, user.affiliation, user.role.value)
        console.print(table)

    _run(_list)


if __name__ == "__main__":
    app()
