"""
エラー定義

セミナー調整エンジン全体で使用する例外階層です。
すべての例外は context（エンティティID、試行した遷移、実際の状態）を保持します。
"""

from typing import Any, Dict, List, Optional


class SeminarError(Exception):
    """セミナー調整エラー基底クラス"""

    def __init__(self, message: str, **context: Any):
        super().__init__(message)
        self.message = message
        self.context: Dict[str, Any] = context

    def __str__(self) -> str:
        if not self.context:
            return self.message
        details = ", ".join(f"{key}={value!r}" for key, value in sorted(self.context.items()))
        return f"{self.message} ({details})"

    def to_dict(self) -> Dict[str, Any]:
        """呼び出し側への報告用に辞書化"""
        return {
            "error_type": type(self).__name__,
            "message": self.message,
            "context": dict(self.context),
        }


class ValidationError(SeminarError):
    """必須フィールド欠落・不正な値"""
    pass


class InvalidTransitionError(ValidationError):
    """現在のステータスからは許可されない遷移"""
    pass


class DuplicateDateError(SeminarError):
    """同じ日付のアクティブな候補日が既に存在する"""
    pass


class DateUnavailableError(SeminarError):
    """候補日がロック済み・削除済みで確保できない"""
    pass


class DateLockedError(SeminarError):
    """ロック中の候補日を削除しようとした"""
    pass


class LockedMeetingError(SeminarError):
    """ロックされたミーティング（セミナー本体）の変更・削除"""
    pass


class InvalidTimeRangeError(SeminarError):
    """終了時刻が開始時刻以前、または訪問期間外"""
    pass


class IndexOutOfRangeError(SeminarError):
    """アクション・ミーティングのインデックスが範囲外"""
    pass


class NotFoundError(SeminarError):
    """ID・トークンが見つからない（期限切れ・使用済みトークンを含む）"""
    pass


class AuthorizationError(SeminarError):
    """ロール・所有者チェックの失敗"""
    pass


class PersistenceError(SeminarError):
    """永続化層の失敗（タイムアウト・キャンセルを含む）"""
    pass


class SagaError(SeminarError):
    """複数エンティティにまたがる操作の途中失敗"""

    def __init__(
        self,
        message: str,
        saga: str,
        failed_step: str,
        completed_steps: Optional[List[str]] = None,
        compensated: bool = False,
        cause: Optional[BaseException] = None,
        **context: Any
    ):
        super().__init__(
            message,
            saga=saga,
            failed_step=failed_step,
            completed_steps=list(completed_steps or []),
            compensated=compensated,
            **context
        )
        self.saga = saga
        self.failed_step = failed_step
        self.completed_steps = list(completed_steps or [])
        self.compensated = compensated
        self.cause = cause
