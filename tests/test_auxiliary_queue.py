"""
Test Auxiliary Persistence Queue
Durable write-ahead queue: atomic snapshots, ordering, confirmation rules
"""

import asyncio
import json

import pytest

from models import QueueItemStatus
from services.auxiliary_queue import AuxiliaryPersistenceQueue
from utils.recharge_exceptions import QueueWriteError

from tests.recharge_test_foundation import make_item


def always(result):
    async def verifier(item):
        return result
    return verifier


class TestAuxiliaryQueueDurability:

    @pytest.mark.asyncio
    async def test_append_writes_snapshot_atomically(self, queue_dir):
        queue = AuxiliaryPersistenceQueue("GPS", data_dir=str(queue_dir))

        await queue.append(make_item())

        assert queue.path.name == "gps_auxiliary_queue.json"
        assert [p.name for p in queue_dir.iterdir() if p != queue.lock_path] == [queue.path.name], \
            "No temporary files left behind"
        payload = json.loads(queue.path.read_text(encoding="utf-8"))
        assert payload["fleet_type"] == "GPS"
        assert len(payload["items"]) == 1
        assert payload["items"][0]["transaction"]["folio"] == "ABC123"
        assert payload["items"][0]["status"] == QueueItemStatus.PENDING_DB.value

    @pytest.mark.asyncio
    async def test_reload_after_restart(self, queue_dir):
        original = make_item(sim="5551234567", folio="ABC123")
        await AuxiliaryPersistenceQueue("GPS", data_dir=str(queue_dir)).append(original)

        restarted = AuxiliaryPersistenceQueue("GPS", data_dir=str(queue_dir))
        pending = await restarted.drain()

        assert len(pending) == 1
        assert pending[0].id == original.id
        assert pending[0].transaction.folio == "ABC123"
        assert pending[0].transaction.timestamp == original.transaction.timestamp
        assert pending[0].candidate["sim"] == "5551234567"

    @pytest.mark.asyncio
    async def test_corrupt_file_is_quarantined(self, queue_dir):
        queue = AuxiliaryPersistenceQueue("VOZ", data_dir=str(queue_dir))
        queue.path.write_text("{not valid json", encoding="utf-8")

        assert await queue.drain() == []
        assert not queue.path.exists()
        quarantined = [p for p in queue_dir.iterdir() if ".corrupt-" in p.name]
        assert len(quarantined) == 1, "Unreadable queue must be kept for manual recovery"
        assert quarantined[0].read_text(encoding="utf-8") == "{not valid json"

    @pytest.mark.asyncio
    async def test_write_failure_raises_and_keeps_memory_unchanged(self, tmp_path):
        blocker = tmp_path / "not_a_directory"
        blocker.write_text("x")
        queue = AuxiliaryPersistenceQueue("GPS", data_dir=str(blocker))

        with pytest.raises(QueueWriteError):
            await queue.append(make_item())

        assert await queue.drain() == []


class TestAuxiliaryQueueOperations:

    @pytest.mark.asyncio
    async def test_append_is_deduplicated_by_sim_and_folio(self, queue_dir):
        queue = AuxiliaryPersistenceQueue("GPS", data_dir=str(queue_dir))
        first = await queue.append(make_item())
        again = await queue.append(make_item())

        assert again.id == first.id
        assert len(await queue.drain()) == 1

    @pytest.mark.asyncio
    async def test_drain_keeps_insertion_order(self, queue_dir):
        queue = AuxiliaryPersistenceQueue("GPS", data_dir=str(queue_dir))
        for index, sim in enumerate(["5550000001", "5550000002", "5550000003"]):
            await queue.append(make_item(sim=sim, folio=f"F{index}"))

        assert [item.sim for item in await queue.drain()] == ["5550000001", "5550000002", "5550000003"]
        assert len(await queue.drain()) == 3, "drain() does not remove anything"

    @pytest.mark.asyncio
    async def test_unconfirmed_item_stays_queued(self, queue_dir):
        queue = AuxiliaryPersistenceQueue("GPS", data_dir=str(queue_dir))
        item = await queue.append(make_item())

        assert not await queue.confirm_and_remove(item, always(False))

        async def broken(_item):
            raise RuntimeError("database down")

        assert not await queue.confirm_and_remove(item, broken), "Verifier errors never remove items"
        assert len(await queue.drain()) == 1

    @pytest.mark.asyncio
    async def test_confirmed_item_is_removed_durably(self, queue_dir):
        queue = AuxiliaryPersistenceQueue("GPS", data_dir=str(queue_dir))
        keep = await queue.append(make_item(sim="5550000001", folio="KEEP"))
        done = await queue.append(make_item(sim="5550000002", folio="DONE"))

        assert await queue.confirm_and_remove(done, always(True))

        restarted = AuxiliaryPersistenceQueue("GPS", data_dir=str(queue_dir))
        assert [item.id for item in await restarted.drain()] == [keep.id]

    @pytest.mark.asyncio
    async def test_mark_completed_moves_item_out_of_pending(self, queue_dir):
        queue = AuxiliaryPersistenceQueue("GPS", data_dir=str(queue_dir))
        item = await queue.append(make_item())

        updated = await queue.mark_completed(item)

        assert updated.status == QueueItemStatus.COMPLETED
        assert await queue.drain() == []
        assert [i.id for i in await queue.completed_items()] == [item.id]
        assert await queue.pending_sims() == set()

    @pytest.mark.asyncio
    async def test_record_attempt_persists_metadata(self, queue_dir):
        queue = AuxiliaryPersistenceQueue("GPS", data_dir=str(queue_dir), max_recovery_attempts=2)
        item = await queue.append(make_item())

        await queue.record_attempt(item, "database is locked")
        await queue.record_attempt(item, "database is locked again")

        restarted = AuxiliaryPersistenceQueue("GPS", data_dir=str(queue_dir), max_recovery_attempts=2)
        stored = (await restarted.drain())[0]
        assert stored.attempts == 2
        assert stored.last_error == "database is locked again"
        assert stored.last_attempt_at is not None

        stats = await restarted.get_queue_stats()
        assert stats["pending"] == 1
        assert stats["max_attempts_reached"] == 1

    @pytest.mark.asyncio
    async def test_queues_are_per_fleet(self, queue_dir):
        gps = AuxiliaryPersistenceQueue("GPS", data_dir=str(queue_dir))
        voz = AuxiliaryPersistenceQueue("VOZ", data_dir=str(queue_dir))
        await gps.append(make_item(fleet_type="GPS"))

        assert await voz.drain() == []
        assert await gps.pending_sims() == {"5551234567"}


class TestAuxiliaryQueueSharedFile:
    """Several workers (or a maintenance script) sharing one queue directory"""

    @pytest.mark.asyncio
    async def test_interleaved_writers_never_drop_items(self, queue_dir):
        worker_a = AuxiliaryPersistenceQueue("GPS", data_dir=str(queue_dir))
        worker_b = AuxiliaryPersistenceQueue("GPS", data_dir=str(queue_dir))

        assert await worker_a.drain() == []
        await worker_b.append(make_item(sim="5551234567", folio="ABC123"))
        await worker_a.append(make_item(sim="5559876543", folio="XYZ999"))

        folios = [item.folio for item in await AuxiliaryPersistenceQueue("GPS", data_dir=str(queue_dir)).drain()]
        assert folios == ["ABC123", "XYZ999"]

    @pytest.mark.asyncio
    async def test_removal_keeps_items_added_by_another_worker(self, queue_dir):
        worker_a = AuxiliaryPersistenceQueue("GPS", data_dir=str(queue_dir))
        worker_b = AuxiliaryPersistenceQueue("GPS", data_dir=str(queue_dir))
        done = await worker_a.append(make_item(sim="5550000001", folio="DONE"))
        await worker_b.append(make_item(sim="5550000002", folio="NEW"))

        assert await worker_a.confirm_and_remove(done, always(True))
        await worker_a.record_attempt(done, "already gone")

        assert [item.folio for item in await worker_b.drain()] == ["NEW"]

    @pytest.mark.asyncio
    async def test_updates_from_another_worker_are_visible(self, queue_dir):
        worker_a = AuxiliaryPersistenceQueue("GPS", data_dir=str(queue_dir))
        worker_b = AuxiliaryPersistenceQueue("GPS", data_dir=str(queue_dir))
        item = await worker_a.append(make_item())
        assert len(await worker_b.drain()) == 1

        await worker_a.mark_completed(item)
        await worker_b.record_attempt(item, "verify pending")

        assert await worker_b.drain() == []
        stored = (await worker_a.completed_items())[0]
        assert stored.attempts == 1, "Attempt counted on top of the other worker's status change"
        assert (await worker_b.get_queue_stats())["completed"] == 1

    @pytest.mark.asyncio
    async def test_concurrent_appends_all_land(self, queue_dir):
        workers = [AuxiliaryPersistenceQueue("GPS", data_dir=str(queue_dir)) for _ in range(4)]

        await asyncio.gather(*(
            worker.append(make_item(sim=f"555000000{index}", folio=f"F{index}"))
            for index, worker in enumerate(workers)
        ))

        stored = await AuxiliaryPersistenceQueue("GPS", data_dir=str(queue_dir)).drain()
        assert sorted(item.folio for item in stored) == ["F0", "F1", "F2", "F3"]
