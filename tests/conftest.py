"""
共通フィクスチャ

エミュレートバックエンド上のコーディネーターと、固定時刻のクロックを提供します。
"""

from datetime import date, datetime, timedelta, timezone

import pytest
from cryptography.fernet import Fernet

from seminar_coordinator.config import Settings
from seminar_coordinator.models.user import CallerIdentity, UserRoleType
from seminar_coordinator.services.coordinator import SeminarCoordinator

FIXED_NOW = datetime(2025, 3, 1, 9, 0, tzinfo=timezone.utc)
D1 = date(2025, 3, 10)
D2 = date(2025, 3, 17)


class FixedClock:
    """テスト用の進められるクロック"""

    def __init__(self, now: datetime):
        self.current = now

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **kwargs) -> None:
        self.current += timedelta(**kwargs)


@pytest.fixture
def clock():
    return FixedClock(FIXED_NOW)


@pytest.fixture
def organizer():
    return CallerIdentity(user_id="org_001", display_name="Olivia Organizer", role=UserRoleType.ORGANIZER)


@pytest.fixture
def senior_fellow():
    return CallerIdentity(user_id="sf_001", display_name="Sam Senior", role=UserRoleType.SENIOR_FELLOW)


@pytest.fixture
def fellow():
    return CallerIdentity(user_id="fellow_001", display_name="Hana Host", role=UserRoleType.FELLOW)


@pytest.fixture
def other_fellow():
    return CallerIdentity(user_id="fellow_002", display_name="Kenji Fellow", role=UserRoleType.FELLOW)


@pytest.fixture
def settings():
    return Settings(encryption_key=Fernet.generate_key().decode())


@pytest.fixture
async def coordinator(settings, clock):
    """エミュレートバックエンドに接続済みのコーディネーター"""
    coordinator = SeminarCoordinator(settings, clock=clock)
    await coordinator.connect()
    yield coordinator
    await coordinator.disconnect()


@pytest.fixture
def publish_dates(coordinator, organizer):
    """候補日をまとめて公開"""

    async def _publish(*days):
        return [
            await coordinator.allocation.publish(organizer, day, host="Hana Host", notes="Room 101")
            for day in days
        ]

    return _publish


@pytest.fixture
def invite_speaker(coordinator, organizer):
    """推薦から招待まで進めた講演者を作成"""

    async def _invite(full_name="Ada Lovelace", email="ada@example.org", host="Hana Host"):
        speaker = await coordinator.lifecycle.propose(
            organizer,
            full_name=full_name,
            email=email,
            affiliation="Analytical Engine Lab",
            host=host
        )
        return await coordinator.lifecycle.accept_proposal(organizer, speaker.speaker_id)

    return _invite
