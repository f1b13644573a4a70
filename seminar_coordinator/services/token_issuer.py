"""
トークン発行

講演者セルフサービスリンクとユーザー登録リンク用の、推測不能なアクセストークンを発行します。
"""

import logging
import secrets
from typing import Awaitable, Callable, Optional

from ..errors import PersistenceError
from .base_service import BaseService

logger = logging.getLogger(__name__)

TokenExists = Callable[[str], Awaitable[bool]]

MAX_ISSUE_ATTEMPTS = 5


class TokenIssuer(BaseService):
    """推測不能なベアラートークンの発行"""

    def __init__(self, token_bytes: int = 24, exists: Optional[TokenExists] = None):
        """
        Args:
            token_bytes: 乱数バイト数
            exists: 既存トークンとの衝突確認（システム全体での一意性）
        """
        super().__init__("token_issuer")
        self.token_bytes = token_bytes
        self.exists = exists

    async def issue(self) -> str:
        """システム全体で一意なトークンを発行"""
        for attempt in range(1, MAX_ISSUE_ATTEMPTS + 1):
            token = secrets.token_urlsafe(self.token_bytes)
            if self.exists is None or not await self.exists(token):
                self.metrics.record_operation()
                return token
            logger.warning(f"トークン衝突を検出（試行 {attempt}/{MAX_ISSUE_ATTEMPTS}）")

        error = PersistenceError("一意なトークンを発行できませんでした", attempts=MAX_ISSUE_ATTEMPTS)
        self.failed("issue", error)
        raise error
