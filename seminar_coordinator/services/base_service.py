"""
ベースサービスクラス

各コンポーネント共通の時刻取得、権限チェック、モデル構築、メトリクスを提供します。
"""

import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, Optional, Type, TypeVar

from pydantic import BaseModel, Field
from pydantic import ValidationError as PydanticValidationError

from ..errors import AuthorizationError, SeminarError, ValidationError
from ..models.user import CallerIdentity, UserRoleType

# ログ設定
logger = logging.getLogger(__name__)

M = TypeVar('M', bound=BaseModel)

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class ServiceMetrics(BaseModel):
    """サービスメトリクス"""
    service_name: str = Field(..., description="サービス名")
    operations: int = Field(default=0, description="成功した操作数")
    errors_count: int = Field(default=0, description="失敗した操作数")
    errors_by_type: Dict[str, int] = Field(default_factory=dict, description="エラー種別ごとの件数")
    last_activity: Optional[datetime] = Field(None, description="最後の活動時刻")

    def record_operation(self) -> None:
        """成功した操作を記録"""
        self.operations += 1
        self.last_activity = utc_now()

    def record_error(self, error: Exception) -> None:
        """エラーを記録"""
        self.errors_count += 1
        error_type = type(error).__name__
        self.errors_by_type[error_type] = self.errors_by_type.get(error_type, 0) + 1
        self.last_activity = utc_now()


class BaseService:
    """ベースサービスクラス"""

    def __init__(self, name: str, clock: Optional[Clock] = None):
        """
        サービスを初期化

        Args:
            name: サービス名（ログ・メトリクス用）
            clock: 現在時刻を返す関数（テストで固定可能）
        """
        self.name = name
        self.clock: Clock = clock or utc_now
        self.metrics = ServiceMetrics(service_name=name)

    def now(self) -> datetime:
        return self.clock()

    def require_role(
        self,
        caller: Optional[CallerIdentity],
        operation: str,
        roles: Iterable[UserRoleType]
    ) -> CallerIdentity:
        """呼び出し元が指定ロールのいずれかを持つか確認"""
        allowed = list(roles)
        if caller is None or caller.role not in allowed:
            error = AuthorizationError(
                "この操作を行う権限がありません",
                operation=operation,
                caller_id=caller.user_id if caller else None,
                caller_role=caller.role.value if caller else None,
                allowed_roles=[role.value for role in allowed]
            )
            self.metrics.record_error(error)
            logger.warning(f"権限エラー: {self.name}.{operation} - {caller.user_id if caller else 'anonymous'}")
            raise error
        return caller

    def require_organizer(self, caller: Optional[CallerIdentity], operation: str) -> CallerIdentity:
        return self.require_role(caller, operation, [UserRoleType.ORGANIZER])

    def require_caller(self, caller: Optional[CallerIdentity], operation: str) -> CallerIdentity:
        """認証済みの呼び出し元であれば任意のロールで可"""
        return self.require_role(caller, operation, UserRoleType)

    def build(self, model_class: Type[M], **fields: Any) -> M:
        """モデルを構築し、検証エラーを ValidationError に変換"""
        try:
            return model_class(**fields)
        except PydanticValidationError as e:
            raise ValidationError(
                f"{model_class.__name__} の入力が不正です",
                model=model_class.__name__,
                errors=[f"{'.'.join(str(loc) for loc in err['loc'])}: {err['msg']}" for err in e.errors()]
            ) from e

    def succeeded(self, operation: str, **details: Any) -> None:
        """操作成功を記録してログ出力"""
        self.metrics.record_operation()
        detail_text = " ".join(f"{key}={value}" for key, value in details.items())
        logger.info(f"{self.name}.{operation} 完了 {detail_text}".rstrip())

    def failed(self, operation: str, error: Exception) -> None:
        """操作失敗を記録してログ出力（例外は呼び出し側で再送出）"""
        self.metrics.record_error(error)
        if isinstance(error, SeminarError):
            logger.error(f"{self.name}.{operation} 失敗: {type(error).__name__} {error}")
        else:
            logger.exception(f"{self.name}.{operation} 予期しないエラー: {error}")

    def get_status_info(self) -> Dict[str, Any]:
        """ステータス情報を取得"""
        return {
            "service": self.name,
            "metrics": self.metrics.dict(),
        }
