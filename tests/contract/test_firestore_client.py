"""
Contract tests for the Firestore client (emulated backend)
Tests transactional atomicity, read-your-writes, query overlay and error conversion
"""

import asyncio
from unittest.mock import AsyncMock, patch

import pytest

from seminar_coordinator.errors import DateUnavailableError, PersistenceError
from seminar_coordinator.integrations.firestore_client import (
    BatchWrite, DocumentReference, FirestoreClient, FirestoreConfig, FirestoreQuery,
    QueryFilter, QueryOrder
)


def ref(document_id: str, collection: str = "items") -> DocumentReference:
    return DocumentReference(collection=collection, document_id=document_id)


@pytest.fixture
async def client():
    client = FirestoreClient(FirestoreConfig())
    await client.connect()
    yield client
    await client.disconnect()


class TestTransactions:
    """Test commit and rollback behaviour"""

    @pytest.mark.asyncio
    async def test_commit_applies_all_writes(self, client):
        async def _write(tx):
            await tx.set(ref("a"), {"value": 1})
            await tx.set(ref("b"), {"value": 2})
            return "done"

        assert await client.run_transaction(_write) == "done"
        assert (await client.get_document(ref("a"))).data == {"value": 1}
        assert (await client.get_document(ref("b"))).data == {"value": 2}
        assert client.get_stats()["transactions"] == 1

    @pytest.mark.asyncio
    async def test_domain_error_rolls_back_and_passes_through(self, client):
        async def _fail(tx):
            await tx.set(ref("a"), {"value": 1})
            raise DateUnavailableError("taken", date_id="a")

        with pytest.raises(DateUnavailableError):
            await client.run_transaction(_fail)

        assert (await client.get_document(ref("a"))).exists is False
        assert client.get_stats()["rollbacks"] == 1

    @pytest.mark.asyncio
    async def test_unexpected_error_becomes_persistence_error(self, client):
        async def _fail(tx):
            await tx.set(ref("a"), {"value": 1})
            raise RuntimeError("backend exploded")

        with pytest.raises(PersistenceError) as exc_info:
            await client.run_transaction(_fail)

        assert exc_info.value.context["operation"] == "transaction"
        assert (await client.get_document(ref("a"))).exists is False

    @pytest.mark.asyncio
    async def test_read_your_writes(self, client):
        await client.set_document(ref("a"), {"value": 1, "name": "first"})

        async def _update(tx):
            await tx.update(ref("a"), {"value": 2})
            snapshot = await tx.get(ref("a"))
            await tx.delete(ref("b"))
            deleted = await tx.get(ref("b"))
            return snapshot.data, deleted.exists

        data, deleted_exists = await client.run_transaction(_update)

        assert data == {"value": 2, "name": "first"}
        assert deleted_exists is False
        assert (await client.get_document(ref("a"))).data == {"value": 2, "name": "first"}

    @pytest.mark.asyncio
    async def test_query_overlays_pending_writes(self, client):
        await client.set_document(ref("a"), {"kind": "x", "rank": 2})
        await client.set_document(ref("b"), {"kind": "x", "rank": 1})

        async def _query(tx):
            await tx.delete(ref("a"))
            await tx.set(ref("c"), {"kind": "x", "rank": 3})
            await tx.set(ref("d"), {"kind": "y", "rank": 0})
            return await tx.query(FirestoreQuery(
                collection="items",
                filters=[QueryFilter(field="kind", operator="==", value="x")],
                orders=[QueryOrder(field="rank")]
            ))

        results = await client.run_transaction(_query)

        assert [snap.document_id for snap in results] == ["b", "c"]

    @pytest.mark.asyncio
    async def test_transactions_are_serialized(self, client):
        await client.set_document(ref("counter"), {"value": 0})

        async def _increment(tx):
            snapshot = await tx.get(ref("counter"))
            await asyncio.sleep(0)
            await tx.set(ref("counter"), {"value": snapshot.data["value"] + 1})

        await asyncio.gather(*[client.run_transaction(_increment) for _ in range(10)])

        assert (await client.get_document(ref("counter"))).data["value"] == 10


class TestQueries:
    """Test non-transactional queries"""

    @pytest.mark.asyncio
    async def test_filters_orders_and_limit(self, client):
        for index, state in enumerate(["unset", "speaker", "deleted", "unset"]):
            await client.set_document(ref(f"d{index}"), {"state": state, "day": f"2025-03-{10 - index:02d}"})

        results = await client.query_documents(FirestoreQuery(
            collection="items",
            filters=[QueryFilter(field="state", operator="in", value=["unset", "speaker"])],
            orders=[QueryOrder(field="day", direction="asc")],
            limit=2
        ))

        assert [snap.document_id for snap in results] == ["d3", "d1"]

    @pytest.mark.asyncio
    async def test_missing_field_does_not_match(self, client):
        await client.set_document(ref("a"), {"other": 1})

        results = await client.query_documents(FirestoreQuery(
            collection="items",
            filters=[QueryFilter(field="state", operator="!=", value="deleted")]
        ))

        assert results == []

    @pytest.mark.asyncio
    async def test_unknown_operator(self, client):
        await client.set_document(ref("a"), {"state": "x"})

        with pytest.raises(PersistenceError):
            await client.query_documents(FirestoreQuery(
                collection="items",
                filters=[QueryFilter(field="state", operator="~=", value="x")]
            ))


class TestFailures:
    """Test connection, timeout and batch limits"""

    @pytest.mark.asyncio
    async def test_not_connected(self):
        client = FirestoreClient(FirestoreConfig())

        with pytest.raises(PersistenceError):
            await client.get_document(ref("a"))

    @pytest.mark.asyncio
    async def test_timeout_becomes_persistence_error(self, client):
        with patch.object(client, "_read_document", AsyncMock(side_effect=asyncio.TimeoutError)):
            with pytest.raises(PersistenceError) as exc_info:
                await client.get_document(ref("a"))

        assert exc_info.value.context["timeout_seconds"] == 30
        assert client.get_stats()["errors"] == 1

    @pytest.mark.asyncio
    async def test_batch_limit(self, client):
        writes = [BatchWrite(operation_type="set", document_ref=ref(str(i)), data={}) for i in range(501)]

        with pytest.raises(PersistenceError):
            await client.batch_write(writes)

    @pytest.mark.asyncio
    async def test_batch_write(self, client):
        await client.set_document(ref("old"), {"value": 1})

        await client.batch_write([
            BatchWrite(operation_type="set", document_ref=ref("new"), data={"value": 2}),
            BatchWrite(operation_type="delete", document_ref=ref("old")),
        ])

        assert (await client.get_document(ref("new"))).exists is True
        assert (await client.get_document(ref("old"))).exists is False


class TestSnapshot:
    """Test persisting the emulated store between runs"""

    @pytest.mark.asyncio
    async def test_snapshot_round_trip(self, tmp_path):
        snapshot_path = str(tmp_path / "store.json")

        first = FirestoreClient(FirestoreConfig(snapshot_path=snapshot_path))
        await first.connect()
        await first.set_document(ref("a"), {"value": "保存"})
        await first.disconnect()

        second = FirestoreClient(FirestoreConfig(snapshot_path=snapshot_path))
        await second.connect()
        assert (await second.get_document(ref("a"))).data == {"value": "保存"}
        await second.disconnect()
