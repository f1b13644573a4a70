"""
セミナー調整ファサード

設定からFirestoreクライアント、リポジトリ、各サービスを組み立てます。
"""

import logging
from typing import Any, Dict, Optional

from ..config import Settings
from ..integrations.firestore_client import FirestoreClient
from ..integrations.messaging import LoggingMessageSender, MessageSender
from ..models.repository import (
    AgendaRepository, AvailabilityRepository, AvailableDateRepository, EncryptionManager,
    InvitationRepository, SpeakerRepository, UserRepository
)
from .action_log import ActionLog
from .agenda_scheduler import AgendaScheduler
from .base_service import Clock
from .date_allocation import DateAllocationEngine
from .lifecycle import SpeakerLifecycle
from .read_models import ReadModels
from .token_issuer import TokenIssuer
from .user_directory import UserDirectory

logger = logging.getLogger(__name__)


class SeminarCoordinator:
    """セミナー調整エンジンのエントリポイント"""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        client: Optional[FirestoreClient] = None,
        sender: Optional[MessageSender] = None,
        clock: Optional[Clock] = None
    ):
        self.settings = settings or Settings()
        self.client = client or FirestoreClient(self.settings.firestore)
        self.sender = sender or LoggingMessageSender()

        # 暗号化キーは全リポジトリで共有
        self.encryption = EncryptionManager(self.settings.encryption_key)
        self.speakers = SpeakerRepository(self.client, self.encryption)
        self.dates = AvailableDateRepository(self.client, self.encryption)
        self.agendas = AgendaRepository(self.client, self.encryption)
        self.users = UserRepository(self.client, self.encryption)
        self.invitations = InvitationRepository(self.client, self.encryption)
        self.availability = AvailabilityRepository(self.client, self.encryption)

        self.tokens = TokenIssuer(self.settings.token_bytes, exists=self._token_exists)
        self.action_log = ActionLog(self.client, self.speakers, clock)
        self.allocation = DateAllocationEngine(self.client, self.dates, clock)
        self.scheduler = AgendaScheduler(self.client, self.agendas, clock)
        self.lifecycle = SpeakerLifecycle(
            self.client,
            self.speakers,
            self.dates,
            self.agendas,
            self.allocation,
            self.scheduler,
            self.action_log,
            self.tokens,
            sender=self.sender,
            response_window_days=self.settings.response_window_days,
            speaker_link=self.settings.speaker_link,
            clock=clock
        )
        self.read_models = ReadModels(
            self.speakers,
            self.dates,
            self.agendas,
            lunch_reminder_days=self.settings.lunch_reminder_days,
            clock=clock
        )
        self.directory = UserDirectory(
            self.client,
            self.users,
            self.invitations,
            self.availability,
            self.dates,
            self.tokens,
            sender=self.sender,
            signup_invitation_days=self.settings.signup_invitation_days,
            signup_link=self.settings.signup_link,
            clock=clock
        )

    async def connect(self) -> "SeminarCoordinator":
        await self.client.connect()
        return self

    async def disconnect(self) -> None:
        await self.client.disconnect()

    async def __aenter__(self) -> "SeminarCoordinator":
        return await self.connect()

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.disconnect()

    async def _token_exists(self, token: str) -> bool:
        """講演者トークンと登録招待トークンの両方で衝突を確認"""
        if await self.speakers.find_by_field("access_token", token, limit=1):
            return True
        return bool(await self.invitations.find_by_field("token", token, limit=1))

    def get_status_info(self) -> Dict[str, Any]:
        """各サービスのステータス情報"""
        services = [
            self.tokens, self.action_log, self.allocation, self.scheduler,
            self.lifecycle, self.read_models, self.directory
        ]
        return {
            "firestore": self.client.get_stats(),
            "services": [service.get_status_info() for service in services],
        }
