"""
Firestore Repository 基底クラス

CRUD操作、トランザクション内操作、暗号化機能を提供します。
"""

import base64
import logging
import os
from abc import ABC, abstractmethod
from typing import Any, Dict, Generic, List, Optional, Type, TypeVar

from cryptography.fernet import Fernet, InvalidToken
from pydantic import BaseModel

from ..errors import NotFoundError, PersistenceError, ValidationError
from ..integrations.firestore_client import (
    DocumentReference, FirestoreClient, FirestoreQuery, QueryFilter, QueryOrder,
    TransactionManager
)
from .agenda import Agenda
from .available_date import AvailableDate
from .speaker import Speaker
from .user import UserAvailability, UserInvitation, UserRecord

# ログ設定
logger = logging.getLogger(__name__)

# 型変数
T = TypeVar('T', bound=BaseModel)


class EncryptionError(PersistenceError):
    """暗号化エラー"""
    pass


class EncryptionManager:
    """暗号化・復号化管理"""

    def __init__(self, encryption_key: Optional[str] = None):
        """
        暗号化マネージャーを初期化

        Args:
            encryption_key: Fernet形式の暗号化キー
        """
        if encryption_key is None:
            encryption_key = os.getenv('ENCRYPTION_KEY')

        if not encryption_key:
            # 開発環境用の一時キー（本番では必ず環境変数を設定）
            logger.warning("暗号化キーが設定されていません。一時キーを使用します。")
            encryption_key = Fernet.generate_key().decode()

        try:
            self.fernet = Fernet(encryption_key.encode() if isinstance(encryption_key, str) else encryption_key)
        except (ValueError, TypeError) as e:
            raise EncryptionError(f"暗号化キーの初期化に失敗しました: {e}")

    def encrypt(self, data: str) -> str:
        """文字列を暗号化"""
        encrypted_bytes = self.fernet.encrypt(data.encode('utf-8'))
        return base64.b64encode(encrypted_bytes).decode('utf-8')

    def decrypt(self, encrypted_data: str) -> str:
        """暗号化された文字列を復号化"""
        try:
            encrypted_bytes = base64.b64decode(encrypted_data.encode('utf-8'))
            return self.fernet.decrypt(encrypted_bytes).decode('utf-8')
        except (InvalidToken, ValueError) as e:
            raise EncryptionError(f"復号化に失敗しました: {e}")

    def encrypt_dict(self, data: Dict[str, Any], encrypt_fields: List[str]) -> Dict[str, Any]:
        """辞書の指定フィールドを暗号化"""
        result = data.copy()
        for field in encrypt_fields:
            if field in result and result[field] is not None:
                result[field] = self.encrypt(str(result[field]))
        return result

    def decrypt_dict(self, data: Dict[str, Any], encrypt_fields: List[str]) -> Dict[str, Any]:
        """辞書の指定フィールドを復号化"""
        result = data.copy()
        for field in encrypt_fields:
            if field in result and result[field] is not None:
                result[field] = self.decrypt(result[field])
        return result


class BaseRepository(ABC, Generic[T]):
    """Firestore リポジトリ基底クラス"""

    def __init__(
        self,
        client: FirestoreClient,
        collection_name: str,
        model_class: Type[T],
        encryption_manager: Optional[EncryptionManager] = None
    ):
        """
        リポジトリを初期化

        Args:
            client: Firestoreクライアント
            collection_name: Firestoreコレクション名
            model_class: エンティティのPydanticモデルクラス
            encryption_manager: 暗号化マネージャー
        """
        self.client = client
        self.collection_name = collection_name
        self.model_class = model_class

        # モデル固有の設定
        self.id_field = self._get_id_field()
        self.encrypted_fields = self._get_encrypted_fields()
        self.encryption_manager = encryption_manager
        if self.encrypted_fields and self.encryption_manager is None:
            self.encryption_manager = EncryptionManager()

    @abstractmethod
    def _get_id_field(self) -> str:
        """IDフィールド名を返す（継承クラスで実装）"""
        pass

    def _get_encrypted_fields(self) -> List[str]:
        """暗号化対象フィールドのリストを返す（オーバーライド可能）"""
        return []

    def _ref(self, entity_id: str) -> DocumentReference:
        return DocumentReference(collection=self.collection_name, document_id=entity_id)

    def _prepare_data_for_storage(self, entity: T) -> Dict[str, Any]:
        """ストレージ用にデータを準備"""
        data = entity.to_dict()
        if self.encrypted_fields:
            data = self.encryption_manager.encrypt_dict(data, self.encrypted_fields)
        return data

    def _prepare_data_from_storage(self, data: Dict[str, Any]) -> T:
        """ストレージからデータを復元"""
        if self.encrypted_fields:
            data = self.encryption_manager.decrypt_dict(data, self.encrypted_fields)
        return self.model_class.from_dict(data)

    def _entity_id(self, entity: T) -> str:
        return getattr(entity, self.id_field)

    # 単発操作

    async def create(self, entity: T) -> T:
        """エンティティを作成（既存IDは ValidationError）"""
        entity_id = self._entity_id(entity)

        async def _create(tx: TransactionManager) -> T:
            snapshot = await tx.get(self._ref(entity_id))
            if snapshot.exists:
                raise ValidationError(
                    f"ID {entity_id} のドキュメントは既に存在します",
                    collection=self.collection_name
                )
            await tx.set(self._ref(entity_id), self._prepare_data_for_storage(entity))
            return entity

        result = await self.client.run_transaction(_create)
        logger.info(f"{self.collection_name}に新しいドキュメントを作成: {entity_id}")
        return result

    async def get_by_id(self, entity_id: str) -> Optional[T]:
        """IDでエンティティを取得"""
        snapshot = await self.client.get_document(self._ref(entity_id))
        if not snapshot.exists:
            return None
        return self._prepare_data_from_storage(snapshot.data)

    async def require(self, entity_id: str) -> T:
        """IDでエンティティを取得（存在しない場合は NotFoundError）"""
        entity = await self.get_by_id(entity_id)
        if entity is None:
            raise NotFoundError(
                f"{self.collection_name} が見つかりません",
                collection=self.collection_name,
                entity_id=entity_id
            )
        return entity

    async def save(self, entity: T) -> T:
        """エンティティを保存（全フィールド上書き）"""
        entity_id = self._entity_id(entity)
        await self.client.set_document(self._ref(entity_id), self._prepare_data_for_storage(entity))
        logger.debug(f"{self.collection_name}ドキュメントを保存: {entity_id}")
        return entity

    async def delete(self, entity_id: str) -> None:
        """エンティティを削除"""
        await self.client.delete_document(self._ref(entity_id))
        logger.info(f"{self.collection_name}ドキュメントを削除: {entity_id}")

    async def list_all(
        self,
        order_by: Optional[str] = None,
        ascending: bool = True,
        limit: Optional[int] = None
    ) -> List[T]:
        """全エンティティを一覧取得"""
        return await self.find_where([], order_by=order_by, ascending=ascending, limit=limit)

    async def find_by_field(self, field_name: str, value: Any, limit: Optional[int] = None) -> List[T]:
        """指定フィールドでエンティティを検索"""
        return await self.find_where([QueryFilter(field=field_name, operator="==", value=value)], limit=limit)

    async def find_where(
        self,
        filters: List[QueryFilter],
        order_by: Optional[str] = None,
        ascending: bool = True,
        limit: Optional[int] = None
    ) -> List[T]:
        """フィルタ条件でエンティティを検索"""
        query = FirestoreQuery(
            collection=self.collection_name,
            filters=filters,
            orders=[QueryOrder(field=order_by, direction="asc" if ascending else "desc")] if order_by else [],
            limit=limit
        )
        snapshots = await self.client.query_documents(query)
        return [self._prepare_data_from_storage(snapshot.data) for snapshot in snapshots]

    # トランザクション内操作

    async def get_in(self, tx: TransactionManager, entity_id: str) -> Optional[T]:
        """トランザクション内でIDによりエンティティを取得"""
        snapshot = await tx.get(self._ref(entity_id))
        if not snapshot.exists:
            return None
        return self._prepare_data_from_storage(snapshot.data)

    async def require_in(self, tx: TransactionManager, entity_id: str) -> T:
        """トランザクション内でIDによりエンティティを取得（存在しない場合は NotFoundError）"""
        entity = await self.get_in(tx, entity_id)
        if entity is None:
            raise NotFoundError(
                f"{self.collection_name} が見つかりません",
                collection=self.collection_name,
                entity_id=entity_id
            )
        return entity

    async def find_in(self, tx: TransactionManager, field_name: str, value: Any) -> List[T]:
        """トランザクション内でフィールド一致検索"""
        query = FirestoreQuery(
            collection=self.collection_name,
            filters=[QueryFilter(field=field_name, operator="==", value=value)]
        )
        snapshots = await tx.query(query)
        return [self._prepare_data_from_storage(snapshot.data) for snapshot in snapshots]

    async def put_in(self, tx: TransactionManager, entity: T) -> T:
        """トランザクション内で保存"""
        await tx.set(self._ref(self._entity_id(entity)), self._prepare_data_for_storage(entity))
        return entity

    async def delete_in(self, tx: TransactionManager, entity_id: str) -> None:
        """トランザクション内で削除"""
        await tx.delete(self._ref(entity_id))


class SpeakerRepository(BaseRepository[Speaker]):
    """Speaker エンティティ用リポジトリ"""

    def __init__(self, client: FirestoreClient, encryption_manager: Optional[EncryptionManager] = None):
        super().__init__(client, "speakers", Speaker, encryption_manager)

    def _get_id_field(self) -> str:
        return "speaker_id"

    def _get_encrypted_fields(self) -> List[str]:
        return ["email"]

    async def find_by_token(self, access_token: str) -> Optional[Speaker]:
        speakers = await self.find_by_field("access_token", access_token, limit=1)
        return speakers[0] if speakers else None


class AvailableDateRepository(BaseRepository[AvailableDate]):
    """AvailableDate エンティティ用リポジトリ"""

    def __init__(self, client: FirestoreClient, encryption_manager: Optional[EncryptionManager] = None):
        super().__init__(client, "available_dates", AvailableDate, encryption_manager)

    def _get_id_field(self) -> str:
        return "date_id"


class AgendaRepository(BaseRepository[Agenda]):
    """Agenda エンティティ用リポジトリ"""

    def __init__(self, client: FirestoreClient, encryption_manager: Optional[EncryptionManager] = None):
        super().__init__(client, "agendas", Agenda, encryption_manager)

    def _get_id_field(self) -> str:
        return "agenda_id"

    def _get_encrypted_fields(self) -> List[str]:
        return ["speaker_email"]

    async def find_by_speaker(self, speaker_id: str) -> Optional[Agenda]:
        agendas = await self.find_by_field("speaker_id", speaker_id, limit=1)
        return agendas[0] if agendas else None


class UserRepository(BaseRepository[UserRecord]):
    """UserRecord エンティティ用リポジトリ"""

    def __init__(self, client: FirestoreClient, encryption_manager: Optional[EncryptionManager] = None):
        super().__init__(client, "user_roles", UserRecord, encryption_manager)

    def _get_id_field(self) -> str:
        return "user_id"


class InvitationRepository(BaseRepository[UserInvitation]):
    """UserInvitation エンティティ用リポジトリ"""

    def __init__(self, client: FirestoreClient, encryption_manager: Optional[EncryptionManager] = None):
        super().__init__(client, "invitations", UserInvitation, encryption_manager)

    def _get_id_field(self) -> str:
        return "invitation_id"

    def _get_encrypted_fields(self) -> List[str]:
        return ["email"]


class AvailabilityRepository(BaseRepository[UserAvailability]):
    """UserAvailability エンティティ用リポジトリ"""

    def __init__(self, client: FirestoreClient, encryption_manager: Optional[EncryptionManager] = None):
        super().__init__(client, "user_availability", UserAvailability, encryption_manager)

    def _get_id_field(self) -> str:
        return "availability_id"
