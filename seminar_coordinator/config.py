"""
設定読み込み

デフォルト値 ← YAMLファイル ← 環境変数 の順に上書きして Settings を構築します。
"""

import logging
import os
from pathlib import Path
from typing import Any, Dict, Optional

import yaml
from pydantic import BaseModel, Field, validator
from pydantic import ValidationError as PydanticValidationError

from .errors import ValidationError
from .integrations.firestore_client import FirestoreConfig

logger = logging.getLogger(__name__)

CONFIG_ENV_VAR = "SEMINAR_CONFIG"

# 環境変数 → 設定キー
_ENV_OVERRIDES = {
    "SEMINAR_RESPONSE_WINDOW_DAYS": ("response_window_days",),
    "SEMINAR_SIGNUP_INVITATION_DAYS": ("signup_invitation_days",),
    "SEMINAR_LUNCH_REMINDER_DAYS": ("lunch_reminder_days",),
    "SEMINAR_TOKEN_BYTES": ("token_bytes",),
    "SEMINAR_LOG_LEVEL": ("log_level",),
    "SEMINAR_SENDER_ADDRESS": ("sender_address",),
    "SEMINAR_PUBLIC_BASE_URL": ("public_base_url",),
    "ENCRYPTION_KEY": ("encryption_key",),
    "GCP_PROJECT_ID": ("firestore", "project_id"),
    "FIRESTORE_EMULATOR_HOST": ("firestore", "emulator_host"),
    "SEMINAR_STORE_BACKEND": ("firestore", "backend"),
    "SEMINAR_SNAPSHOT_PATH": ("firestore", "snapshot_path"),
    "SEMINAR_FIRESTORE_TIMEOUT": ("firestore", "timeout_seconds"),
}


class Settings(BaseModel):
    """アプリケーション設定"""
    firestore: FirestoreConfig = Field(default_factory=FirestoreConfig)
    response_window_days: int = 7
    signup_invitation_days: int = 30
    lunch_reminder_days: int = 7
    token_bytes: int = 24
    encryption_key: Optional[str] = None
    log_level: str = "INFO"
    sender_address: str = "seminars@example.org"
    public_base_url: str = "http://localhost:8000"

    @validator('response_window_days', 'signup_invitation_days', 'lunch_reminder_days')
    def validate_days(cls, v):
        if v < 1:
            raise ValueError('日数は1以上である必要があります')
        return v

    @validator('token_bytes')
    def validate_token_bytes(cls, v):
        """推測不能なトークンには最低16バイト必要"""
        if v < 16:
            raise ValueError('トークン長は16バイト以上である必要があります')
        return v

    @validator('log_level')
    def validate_log_level(cls, v):
        level = v.upper()
        if not isinstance(logging.getLevelName(level), int):
            raise ValueError(f'不明なログレベルです: {v}')
        return level

    def speaker_link(self, access_token: str) -> str:
        return f"{self.public_base_url.rstrip('/')}/?token={access_token}"

    def signup_link(self, token: str) -> str:
        return f"{self.public_base_url.rstrip('/')}/?signup={token}"


def _apply_env_overrides(data: Dict[str, Any], environ: Dict[str, str]) -> Dict[str, Any]:
    for env_name, path in _ENV_OVERRIDES.items():
        value = environ.get(env_name)
        if value is None or value == "":
            continue
        target = data
        for key in path[:-1]:
            target = target.setdefault(key, {})
        target[path[-1]] = value
    return data


def load_settings(path: Optional[str] = None, environ: Optional[Dict[str, str]] = None) -> Settings:
    """
    設定を読み込む

    Args:
        path: YAML設定ファイル（省略時は SEMINAR_CONFIG 環境変数）
        environ: 環境変数（テスト用に差し替え可能）
    """
    environ = dict(os.environ) if environ is None else environ
    data: Dict[str, Any] = {}

    config_path = path or environ.get(CONFIG_ENV_VAR)
    if config_path:
        file_path = Path(config_path)
        if not file_path.exists():
            raise ValidationError("設定ファイルが見つかりません", path=str(file_path))
        loaded = yaml.safe_load(file_path.read_text(encoding="utf-8")) or {}
        if not isinstance(loaded, dict):
            raise ValidationError("設定ファイルの形式が不正です", path=str(file_path))
        data.update(loaded)
        logger.info(f"設定ファイル読み込み: {file_path}")

    data = _apply_env_overrides(data, environ)

    try:
        return Settings(**data)
    except PydanticValidationError as e:
        raise ValidationError("設定値が不正です", errors=str(e)) from e
