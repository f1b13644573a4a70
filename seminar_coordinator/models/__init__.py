"""
データモデル - Seminar Coordinator

このパッケージには、講演者招待と候補日管理のためのコアエンティティモデルが含まれています。
"""

from .action import Action, ActionKind, ResponseOutcome
from .speaker import Speaker, SpeakerStatus, SpeakerRanking, ProposedBy, SpeakerVote
from .available_date import AvailableDate, DateLock, LockState
from .agenda import Agenda, Meeting, MeetingKind
from .user import CallerIdentity, UserRecord, UserRoleType, UserInvitation, UserAvailability

__all__ = [
    # Action関連
    "Action",
    "ActionKind",
    "ResponseOutcome",

    # Speaker関連
    "Speaker",
    "SpeakerStatus",
    "SpeakerRanking",
    "ProposedBy",
    "SpeakerVote",

    # AvailableDate関連
    "AvailableDate",
    "DateLock",
    "LockState",

    # Agenda関連
    "Agenda",
    "Meeting",
    "MeetingKind",

    # User関連
    "CallerIdentity",
    "UserRecord",
    "UserRoleType",
    "UserInvitation",
    "UserAvailability",
]
