"""
サービスパッケージ - Seminar Coordinator

トークン発行、アクションログ、候補日割り当て、講演者ライフサイクル、
アジェンダスケジューラ、読み取りモデル、ユーザーディレクトリを提供します。
"""

from .base_service import BaseService, ServiceMetrics
from .token_issuer import TokenIssuer
from .action_log import ActionLog
from .date_allocation import DateAllocationEngine
from .agenda_scheduler import AgendaScheduler
from .lifecycle import SpeakerLifecycle, DeletionResult
from .read_models import ReadModels
from .user_directory import UserDirectory, DateAvailability
from .coordinator import SeminarCoordinator

__all__ = [
    # 基底クラス
    "BaseService",
    "ServiceMetrics",

    # コンポーネント
    "TokenIssuer",
    "ActionLog",
    "DateAllocationEngine",
    "AgendaScheduler",
    "SpeakerLifecycle",
    "DeletionResult",
    "ReadModels",
    "UserDirectory",
    "DateAvailability",

    # ファサード
    "SeminarCoordinator",
]
