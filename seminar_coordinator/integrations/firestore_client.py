"""
Firestore接続・トランザクション処理

本番ではgoogle-cloud-firestoreの非同期クライアントを使用し、
開発・CLI・テストではプロセス内のエミュレートバックエンドを使用します。
どちらのバックエンドでも run_transaction() の中の読み取りと書き込みは
一つの原子的な単位としてコミットされます。
"""

import asyncio
import copy
import json
import logging
import operator
import os
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple, TypeVar

from google.cloud import firestore
from google.cloud.firestore_v1 import FieldFilter
from pydantic import BaseModel, Field

from ..errors import PersistenceError, SeminarError

logger = logging.getLogger(__name__)

T = TypeVar('T')


class TransactionStatus(str, Enum):
    """トランザクション状態"""
    PENDING = "pending"
    COMMITTED = "committed"
    ROLLED_BACK = "rolled_back"


class StoreBackend(str, Enum):
    """ストレージバックエンド"""
    MEMORY = "memory"          # プロセス内エミュレーション（開発・テスト用）
    FIRESTORE = "firestore"    # Cloud Firestore / Firestoreエミュレータ


class FirestoreConfig(BaseModel):
    """Firestore設定"""
    project_id: str = "seminar-coordinator"
    database_id: str = "(default)"
    credentials_path: Optional[str] = None
    emulator_host: Optional[str] = None  # 開発環境用
    backend: StoreBackend = StoreBackend.MEMORY
    snapshot_path: Optional[str] = None  # memoryバックエンドの永続化先（JSON）
    max_transaction_attempts: int = 5
    timeout_seconds: int = 30


class DocumentReference(BaseModel):
    """ドキュメント参照"""
    collection: str
    document_id: str

    @property
    def full_path(self) -> str:
        """完全パス取得"""
        return f"{self.collection}/{self.document_id}"


class QueryFilter(BaseModel):
    """クエリフィルタ"""
    field: str
    operator: str  # ==, !=, <, <=, >, >=, in, not-in, array-contains
    value: Any


class QueryOrder(BaseModel):
    """クエリ順序"""
    field: str
    direction: str = "asc"  # asc, desc


class FirestoreQuery(BaseModel):
    """Firestoreクエリ"""
    collection: str
    filters: List[QueryFilter] = Field(default_factory=list)
    orders: List[QueryOrder] = Field(default_factory=list)
    limit: Optional[int] = None


class DocumentSnapshot(BaseModel):
    """ドキュメントスナップショット"""
    document_id: str
    data: Dict[str, Any] = Field(default_factory=dict)
    exists: bool
    read_time: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class BatchWrite(BaseModel):
    """書き込み操作"""
    operation_type: str  # set, update, delete
    document_ref: DocumentReference
    data: Optional[Dict[str, Any]] = None


class TransactionContext(BaseModel):
    """トランザクションコンテキスト"""
    transaction_id: str
    status: TransactionStatus
    operations: List[BatchWrite] = Field(default_factory=list)
    read_documents: Dict[str, DocumentSnapshot] = Field(default_factory=dict)
    created_at: datetime
    committed_at: Optional[datetime] = None


_OPERATORS: Dict[str, Callable[[Any, Any], bool]] = {
    "==": operator.eq,
    "!=": operator.ne,
    "<": operator.lt,
    "<=": operator.le,
    ">": operator.gt,
    ">=": operator.ge,
    "in": lambda actual, expected: actual in expected,
    "not-in": lambda actual, expected: actual not in expected,
    "array-contains": lambda actual, expected: isinstance(actual, list) and expected in actual,
}


def matches_filters(data: Dict[str, Any], filters: List[QueryFilter]) -> bool:
    """ドキュメントがすべてのフィルタ条件を満たすか（Firestore同様、欠落フィールドは不一致）"""
    for query_filter in filters:
        compare = _OPERATORS.get(query_filter.operator)
        if compare is None:
            raise PersistenceError("未対応のクエリ演算子です", operator=query_filter.operator)
        if query_filter.field not in data:
            return False
        try:
            if not compare(data[query_filter.field], query_filter.value):
                return False
        except TypeError:
            return False
    return True


def _sort_key(value: Any) -> Tuple[bool, Any]:
    # Noneは常に末尾
    return (value is None, value if value is not None else "")


def sort_snapshots(snapshots: List[DocumentSnapshot], orders: List[QueryOrder]) -> List[DocumentSnapshot]:
    """並び順を適用（後ろの順序キーから安定ソート）"""
    result = list(snapshots)
    for order in reversed(orders):
        result.sort(
            key=lambda snap: _sort_key(snap.data.get(order.field)),
            reverse=order.direction == "desc"
        )
    return result


class FirestoreClient:
    """
    Firestore接続クライアント
    - 非同期接続管理
    - トランザクション制御（読み取り→条件判定→書き込みを原子的に実行）
    - タイムアウトと例外を PersistenceError に変換
    """

    def __init__(self, config: FirestoreConfig):
        self.config = config
        self.is_connected = False

        # 本番用ネイティブクライアント
        self._native: Optional[firestore.AsyncClient] = None

        # 開発用エミュレーション: collection -> document_id -> data
        self._documents: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._lock = asyncio.Lock()
        self._transaction_counter = 0

        # 統計情報
        self.stats = {
            "reads": 0,
            "writes": 0,
            "transactions": 0,
            "rollbacks": 0,
            "errors": 0
        }

    @property
    def uses_native_backend(self) -> bool:
        return self.config.backend == StoreBackend.FIRESTORE

    async def connect(self) -> bool:
        """Firestore接続確立"""
        if self.is_connected:
            return True

        logger.info(f"Firestore接続開始: {self.config.project_id} ({self.config.backend.value})")
        try:
            if self.uses_native_backend:
                if self.config.emulator_host:
                    os.environ["FIRESTORE_EMULATOR_HOST"] = self.config.emulator_host
                    logger.info(f"Firestoreエミュレータ接続: {self.config.emulator_host}")
                if self.config.credentials_path:
                    os.environ.setdefault("GOOGLE_APPLICATION_CREDENTIALS", self.config.credentials_path)
                self._native = firestore.AsyncClient(
                    project=self.config.project_id,
                    database=self.config.database_id
                )
            else:
                self._load_snapshot()
        except Exception as e:
            self.stats["errors"] += 1
            logger.error(f"Firestore接続エラー: {str(e)}")
            raise PersistenceError("Firestoreに接続できません", project_id=self.config.project_id) from e

        self.is_connected = True
        logger.info("Firestore接続成功")
        return True

    async def disconnect(self) -> None:
        """接続切断"""
        if not self.is_connected:
            return
        logger.info("Firestore接続切断")
        if self._native is not None:
            self._native = None
        else:
            self._save_snapshot()
        self.is_connected = False

    # 公開API

    async def get_document(self, doc_ref: DocumentReference) -> DocumentSnapshot:
        """ドキュメント取得"""
        return await self._guard("get", doc_ref.full_path, lambda: self._read_document(doc_ref))

    async def set_document(self, doc_ref: DocumentReference, data: Dict[str, Any], merge: bool = False) -> None:
        """ドキュメント設定"""
        write = BatchWrite(
            operation_type="update" if merge else "set",
            document_ref=doc_ref,
            data=data
        )
        await self._guard("set", doc_ref.full_path, lambda: self._write_documents([write]))

    async def update_document(self, doc_ref: DocumentReference, data: Dict[str, Any]) -> None:
        """ドキュメント更新（マージ）"""
        await self.set_document(doc_ref, data, merge=True)

    async def delete_document(self, doc_ref: DocumentReference) -> None:
        """ドキュメント削除"""
        write = BatchWrite(operation_type="delete", document_ref=doc_ref)
        await self._guard("delete", doc_ref.full_path, lambda: self._write_documents([write]))

    async def query_documents(self, query: FirestoreQuery) -> List[DocumentSnapshot]:
        """ドキュメントクエリ"""
        return await self._guard("query", query.collection, lambda: self._execute_query(query))

    async def batch_write(self, operations: List[BatchWrite]) -> None:
        """バッチ書き込み（原子的）"""
        if len(operations) > 500:  # Firestore制限
            raise PersistenceError("バッチ操作は500件まで", count=len(operations))
        await self._guard("batch", "*", lambda: self._write_documents(operations))

    async def run_transaction(self, func: Callable[["TransactionManager"], Awaitable[T]]) -> T:
        """
        トランザクション内で func を実行

        func の中で発生した例外はロールバック後そのまま伝播します。
        バックエンドの失敗・タイムアウトは PersistenceError になります。
        """
        return await self._guard("transaction", "*", lambda: self._run_transaction(func))

    def get_stats(self) -> Dict[str, Any]:
        """統計情報取得"""
        return {
            **self.stats,
            "backend": self.config.backend.value,
            "connection_status": "connected" if self.is_connected else "disconnected"
        }

    # 内部処理

    async def _guard(self, operation: str, path: str, factory: Callable[[], Awaitable[T]]) -> T:
        """接続確認・タイムアウト・例外変換"""
        if not self.is_connected:
            raise PersistenceError("Firestoreに接続されていません", operation=operation, path=path)

        try:
            return await asyncio.wait_for(factory(), timeout=self.config.timeout_seconds)
        except SeminarError:
            raise
        except asyncio.TimeoutError as e:
            self.stats["errors"] += 1
            logger.error(f"Firestore操作タイムアウト: {operation} {path}")
            raise PersistenceError(
                "永続化層がタイムアウトしました",
                operation=operation,
                path=path,
                timeout_seconds=self.config.timeout_seconds
            ) from e
        except Exception as e:
            self.stats["errors"] += 1
            logger.error(f"Firestore操作エラー: {operation} {path} - {str(e)}")
            raise PersistenceError(
                f"永続化層の操作に失敗しました: {e}",
                operation=operation,
                path=path
            ) from e

    def _new_context(self) -> TransactionContext:
        self._transaction_counter += 1
        return TransactionContext(
            transaction_id=f"txn_{int(datetime.now().timestamp())}_{self._transaction_counter}",
            status=TransactionStatus.PENDING,
            created_at=datetime.now(timezone.utc)
        )

    async def _run_transaction(self, func: Callable[["TransactionManager"], Awaitable[T]]) -> T:
        if self._native is not None:
            return await self._run_native_transaction(func)

        async with self._lock:
            context = self._new_context()
            manager = TransactionManager(self, context)
            logger.debug(f"トランザクション開始: {context.transaction_id}")
            try:
                result = await func(manager)
            except BaseException:
                context.status = TransactionStatus.ROLLED_BACK
                context.operations.clear()
                self.stats["rollbacks"] += 1
                logger.debug(f"トランザクションロールバック: {context.transaction_id}")
                raise

            self._apply_operations(context.operations)
            context.status = TransactionStatus.COMMITTED
            context.committed_at = datetime.now(timezone.utc)
            self.stats["transactions"] += 1
            self.stats["writes"] += len(context.operations)
            logger.debug(f"トランザクションコミット: {context.transaction_id} ({len(context.operations)}件)")
            return result

    async def _run_native_transaction(self, func: Callable[["TransactionManager"], Awaitable[T]]) -> T:
        transaction = self._native.transaction(max_attempts=self.config.max_transaction_attempts)

        @firestore.async_transactional
        async def _in_transaction(native_transaction) -> T:
            context = self._new_context()
            manager = TransactionManager(self, context, native_transaction)
            result = await func(manager)
            for write in context.operations:
                self._apply_native_write(native_transaction, write)
            self.stats["writes"] += len(context.operations)
            return result

        try:
            result = await _in_transaction(transaction)
        except BaseException:
            self.stats["rollbacks"] += 1
            raise
        self.stats["transactions"] += 1
        return result

    def _native_document(self, doc_ref: DocumentReference):
        return self._native.collection(doc_ref.collection).document(doc_ref.document_id)

    def _apply_native_write(self, target, write: BatchWrite) -> None:
        """ネイティブのトランザクション／バッチに書き込みを積む"""
        native_ref = self._native_document(write.document_ref)
        if write.operation_type == "delete":
            target.delete(native_ref)
        elif write.operation_type == "update":
            target.set(native_ref, write.data, merge=True)
        else:
            target.set(native_ref, write.data)

    async def _read_document(self, doc_ref: DocumentReference, transaction=None) -> DocumentSnapshot:
        self.stats["reads"] += 1
        if self._native is not None:
            snap = await self._native_document(doc_ref).get(transaction=transaction)
            return DocumentSnapshot(
                document_id=doc_ref.document_id,
                data=snap.to_dict() or {},
                exists=snap.exists
            )

        data = self._documents.get(doc_ref.collection, {}).get(doc_ref.document_id)
        return DocumentSnapshot(
            document_id=doc_ref.document_id,
            data=copy.deepcopy(data) if data is not None else {},
            exists=data is not None
        )

    async def _execute_query(self, query: FirestoreQuery, transaction=None) -> List[DocumentSnapshot]:
        if self._native is not None:
            native_query = self._native.collection(query.collection)
            for query_filter in query.filters:
                native_query = native_query.where(
                    filter=FieldFilter(query_filter.field, query_filter.operator, query_filter.value)
                )
            for order in query.orders:
                direction = firestore.Query.DESCENDING if order.direction == "desc" else firestore.Query.ASCENDING
                native_query = native_query.order_by(order.field, direction=direction)
            if query.limit:
                native_query = native_query.limit(query.limit)

            results = []
            async for snap in native_query.stream(transaction=transaction):
                results.append(DocumentSnapshot(document_id=snap.id, data=snap.to_dict() or {}, exists=True))
            self.stats["reads"] += len(results)
            return results

        results = [
            DocumentSnapshot(document_id=document_id, data=copy.deepcopy(data), exists=True)
            for document_id, data in self._documents.get(query.collection, {}).items()
            if matches_filters(data, query.filters)
        ]
        results = sort_snapshots(results, query.orders)
        if query.limit:
            results = results[:query.limit]
        self.stats["reads"] += len(results)
        return results

    async def _write_documents(self, operations: List[BatchWrite]) -> None:
        if self._native is not None:
            batch = self._native.batch()
            for write in operations:
                self._apply_native_write(batch, write)
            await batch.commit()
            self.stats["writes"] += len(operations)
            return

        async with self._lock:
            self._apply_operations(operations)
        self.stats["writes"] += len(operations)

    def _apply_operations(self, operations: List[BatchWrite]) -> None:
        """エミュレーション用ストアへ書き込みを反映"""
        for write in operations:
            collection = self._documents.setdefault(write.document_ref.collection, {})
            document_id = write.document_ref.document_id
            if write.operation_type == "delete":
                collection.pop(document_id, None)
            elif write.operation_type == "update" and document_id in collection:
                collection[document_id].update(copy.deepcopy(write.data or {}))
            else:
                collection[document_id] = copy.deepcopy(write.data or {})

    def _load_snapshot(self) -> None:
        if not self.config.snapshot_path:
            return
        path = Path(self.config.snapshot_path)
        if path.exists():
            self._documents = json.loads(path.read_text(encoding="utf-8"))
            logger.info(f"スナップショット読み込み: {path}")

    def _save_snapshot(self) -> None:
        if not self.config.snapshot_path:
            return
        path = Path(self.config.snapshot_path)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps(self._documents, ensure_ascii=False, indent=2), encoding="utf-8")
        logger.info(f"スナップショット保存: {path}")


class TransactionManager:
    """
    トランザクション管理クラス
    - トランザクション内操作
    - 読み取り整合性保証（同じドキュメントは同じスナップショット）
    - 書き込み操作バッファリング（自分の書き込みは後続の読み取りに反映）
    """

    def __init__(self, client: FirestoreClient, context: TransactionContext, native_transaction=None):
        self.client = client
        self.context = context
        self._native_transaction = native_transaction
        self._pending: Dict[str, Tuple[str, Optional[Dict[str, Any]]]] = {}

    @property
    def transaction_id(self) -> str:
        return self.context.transaction_id

    async def get(self, doc_ref: DocumentReference) -> DocumentSnapshot:
        """トランザクション内ドキュメント取得"""
        document_path = doc_ref.full_path

        if document_path in self._pending:
            return self._pending_snapshot(doc_ref)

        # 既に読み取り済みの場合は同じスナップショットを返す（一貫性保証）
        if document_path in self.context.read_documents:
            return self.context.read_documents[document_path]

        snapshot = await self.client._read_document(doc_ref, transaction=self._native_transaction)
        self.context.read_documents[document_path] = snapshot
        return snapshot

    async def query(self, query: FirestoreQuery) -> List[DocumentSnapshot]:
        """トランザクション内クエリ（バッファ済みの書き込みを重ねた結果）"""
        results = await self.client._execute_query(query, transaction=self._native_transaction)
        by_path = {f"{query.collection}/{snap.document_id}": snap for snap in results}

        for document_path, (operation_type, _) in self._pending.items():
            collection, document_id = document_path.split("/", 1)
            if collection != query.collection:
                continue
            by_path.pop(document_path, None)
            if operation_type == "delete":
                continue
            snapshot = self._pending_snapshot(DocumentReference(collection=collection, document_id=document_id))
            if snapshot.exists and matches_filters(snapshot.data, query.filters):
                by_path[document_path] = snapshot

        merged = sort_snapshots(list(by_path.values()), query.orders)
        if query.limit:
            merged = merged[:query.limit]
        return merged

    async def set(self, doc_ref: DocumentReference, data: Dict[str, Any], merge: bool = False) -> None:
        """トランザクション内ドキュメント設定"""
        if merge:
            await self.update(doc_ref, data)
            return
        self._pending[doc_ref.full_path] = ("set", copy.deepcopy(data))
        self.context.operations.append(BatchWrite(operation_type="set", document_ref=doc_ref, data=data))

    async def update(self, doc_ref: DocumentReference, data: Dict[str, Any]) -> None:
        """トランザクション内ドキュメント更新（マージ）"""
        base = await self.get(doc_ref)
        merged = {**base.data, **copy.deepcopy(data)} if base.exists else copy.deepcopy(data)
        self._pending[doc_ref.full_path] = ("set", merged)
        self.context.operations.append(BatchWrite(operation_type="update", document_ref=doc_ref, data=data))

    async def delete(self, doc_ref: DocumentReference) -> None:
        """トランザクション内ドキュメント削除"""
        self._pending[doc_ref.full_path] = ("delete", None)
        self.context.operations.append(BatchWrite(operation_type="delete", document_ref=doc_ref))

    def get_operations_count(self) -> int:
        """操作数取得"""
        return len(self.context.operations)

    def _pending_snapshot(self, doc_ref: DocumentReference) -> DocumentSnapshot:
        operation_type, data = self._pending[doc_ref.full_path]
        if operation_type == "delete":
            return DocumentSnapshot(document_id=doc_ref.document_id, exists=False)
        return DocumentSnapshot(document_id=doc_ref.document_id, data=copy.deepcopy(data), exists=True)
