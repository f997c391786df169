"""
Test Recharge Batch Inserter
Idempotent master/detail writes keyed on the provider folio
"""

import pytest

from models import RechargeBatch, RechargeDetail
from services.recharge_batch_inserter import RechargeBatchInserter

from tests.recharge_test_foundation import batch_rows, count_rows, detail_rows, make_item


class TestBatchInsert:

    @pytest.mark.asyncio
    async def test_batch_writes_master_and_details(self, session_factory):
        inserter = RechargeBatchInserter(session_factory)
        items = [make_item(sim="5550000001", folio="F1"), make_item(sim="5550000002", folio="F2")]

        result = await inserter.insert_batch_recharges(items, "GPS")

        assert (result.processed, result.success, result.failed, result.duplicates) == (2, 2, 0, 0)
        assert result.batch_id is not None
        assert sorted(result.persisted_keys) == sorted(item.key for item in items)

        batches = await batch_rows(session_factory)
        assert len(batches) == 1
        assert batches[0].tipo == "GPS"
        assert batches[0].total == 20.0
        assert batches[0].resumen["folios"] == ["F1", "F2"]
        details = await detail_rows(session_factory)
        assert [(d.sim, d.folio, d.id_recarga) for d in details] == [
            ("5550000001", "F1", batches[0].id),
            ("5550000002", "F2", batches[0].id),
        ]

    @pytest.mark.asyncio
    async def test_duplicate_folio_within_batch_is_success(self, session_factory):
        """Two items sharing folio ABC123: one insert, one no-op success, no failures"""
        inserter = RechargeBatchInserter(session_factory)
        items = [make_item(sim="5551234567", folio="ABC123"), make_item(sim="5559876543", folio="ABC123")]

        result = await inserter.insert_batch_recharges(items, "GPS")

        assert result.processed == 2
        assert result.success == 2
        assert result.duplicates == 1
        assert result.failed == 0
        assert result.per_item_errors == []
        assert await inserter.count_details_for_folio("ABC123") == 1

    @pytest.mark.asyncio
    async def test_replay_is_idempotent(self, session_factory):
        inserter = RechargeBatchInserter(session_factory)
        item = make_item(folio="ABC123")

        await inserter.insert_batch_recharges([item], "GPS")
        replay = await inserter.insert_batch_recharges([item], "GPS", is_recovery=True)

        assert (replay.success, replay.duplicates, replay.failed) == (1, 1, 0)
        assert replay.persisted_keys == [item.key]
        assert await count_rows(session_factory, RechargeDetail) == 1
        assert await count_rows(session_factory, RechargeBatch) == 1, "No empty master row for a full replay"

    @pytest.mark.asyncio
    async def test_one_master_per_provider(self, session_factory):
        inserter = RechargeBatchInserter(session_factory)
        items = [
            make_item(sim="5550000001", folio="T1", provider="TAECEL"),
            make_item(sim="5550000002", folio="M1", provider="MST"),
            make_item(sim="5550000003", folio="T2", provider="TAECEL"),
        ]

        await inserter.insert_batch_recharges(items, "ELIOT")

        batches = await batch_rows(session_factory)
        assert sorted((b.proveedor, b.resumen["count"]) for b in batches) == [("MST", 1), ("TAECEL", 2)]

    @pytest.mark.asyncio
    async def test_same_folio_different_provider_is_not_duplicate(self, session_factory):
        inserter = RechargeBatchInserter(session_factory)
        items = [make_item(sim="5550000001", folio="777", provider="TAECEL"),
                 make_item(sim="5550000002", folio="777", provider="MST")]

        result = await inserter.insert_batch_recharges(items, "GPS")

        assert result.duplicates == 0
        assert await inserter.count_details_for_folio("777") == 2

    @pytest.mark.asyncio
    async def test_recovery_batch_is_tagged(self, session_factory):
        inserter = RechargeBatchInserter(session_factory)

        await inserter.insert_batch_recharges([make_item()], "GPS", is_recovery=True)

        batch = (await batch_rows(session_factory))[0]
        assert batch.notas.startswith("[RECOVERY]")
        assert batch.resumen["is_recovery"] is True

    @pytest.mark.asyncio
    async def test_after_insert_hook_runs_for_new_rows_only(self, session_factory):
        inserter = RechargeBatchInserter(session_factory)
        touched = []

        async def hook(session, item):
            touched.append(item.sim)

        await inserter.insert_batch_recharges([make_item(sim="5550000001", folio="F1")], "GPS")
        await inserter.insert_batch_recharges(
            [make_item(sim="5550000001", folio="F1"), make_item(sim="5550000002", folio="F2")],
            "GPS", after_insert=hook,
        )

        assert touched == ["5550000002"]

    @pytest.mark.asyncio
    async def test_empty_batch(self, session_factory):
        result = await RechargeBatchInserter(session_factory).insert_batch_recharges([], "GPS")
        assert (result.processed, result.success, result.failed) == (0, 0, 0)


class TestSingleInsert:

    @pytest.mark.asyncio
    async def test_single_insert_and_duplicate(self, session_factory):
        inserter = RechargeBatchInserter(session_factory)
        item = make_item(sim="5551234567", folio="ABC123")

        first = await inserter.insert_single_recharge(item, "VOZ")
        second = await inserter.insert_single_recharge(item, "VOZ")

        assert (first.success, first.duplicates) == (1, 0)
        assert first.batch_id is not None
        assert (second.success, second.duplicates, second.failed) == (1, 1, 0)
        assert await inserter.count_details_for_folio("ABC123", "TAECEL") == 1


class TestFolioExists:

    @pytest.mark.asyncio
    async def test_folio_exists_is_scoped_to_fleet(self, session_factory):
        inserter = RechargeBatchInserter(session_factory)
        item = make_item(fleet_type="GPS", folio="ABC123")

        assert not await inserter.folio_exists(item)
        await inserter.insert_batch_recharges([item], "GPS")

        assert await inserter.folio_exists(item)
        assert await inserter.folio_exists(item, "gps")
        assert not await inserter.folio_exists(item, "VOZ")
