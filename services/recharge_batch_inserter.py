"""
Recharge Batch Inserter
Idempotent writes of provider-confirmed charges into recargas/detalle_recargas.

(proveedor, folio) is unique in detalle_recargas. An item whose folio is
already stored counts as a success, so replays after a crash never write a
second row and never fail.
"""

import logging
import time
from collections import OrderedDict
from typing import Awaitable, Callable, List, Optional, Sequence, Set, Tuple

from sqlalchemy import select, func
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from models import (
    AuxiliaryQueueItem, BatchInsertResult, RechargeBatch, RechargeDetail, RechargeErrorCode,
)
from services.recharge_error_classifier import RechargeErrorClassifier
from utils.recharge_exceptions import PersistenceFatalError, PersistenceTransientError

logger = logging.getLogger(__name__)

AfterInsertHook = Callable[[AsyncSession, AuxiliaryQueueItem], Awaitable[None]]


def to_persistence_error(error: SQLAlchemyError):
    """Lost connections are fatal for the cycle; anything else may be retried"""
    classification = RechargeErrorClassifier.classify(error)
    if classification.error_code == RechargeErrorCode.DATABASE_CONNECTION_LOST:
        return PersistenceFatalError(f"Database connection lost: {error}")
    return PersistenceTransientError(f"Database write failed: {error}")


class RechargeBatchInserter:
    """Writes master + detail rows for queue items"""

    def __init__(self, session_factory: async_sessionmaker = None, operator: str = "system"):
        if session_factory is None:
            from database import AsyncSessionLocal
            session_factory = AsyncSessionLocal
        self.session_factory = session_factory
        self.operator = operator

    # --------------------------------------------------------------- builders

    def _build_master(self, items: Sequence[AuxiliaryQueueItem], fleet_type: str, provider: str,
                      notes: Optional[str], is_recovery: bool) -> RechargeBatch:
        total = round(sum(item.transaction.amount for item in items), 2)
        default_notes = f"{len(items)} recarga(s) {fleet_type} via {provider}"
        if is_recovery:
            default_notes = f"[RECOVERY] {default_notes}"
        return RechargeBatch(
            fecha=int(time.time()),
            total=total,
            proveedor=provider,
            tipo=fleet_type,
            notas=notes or default_notes,
            quien=self.operator,
            resumen={
                "count": len(items),
                "folios": [item.folio for item in items],
                "is_recovery": is_recovery,
            },
        )

    @staticmethod
    def _build_detail(batch_id: int, item: AuxiliaryQueueItem) -> RechargeDetail:
        candidate = item.candidate or {}
        txn = item.transaction
        return RechargeDetail(
            id_recarga=batch_id,
            sim=item.sim,
            importe=txn.amount,
            dispositivo=candidate.get("device_id"),
            vehiculo=candidate.get("vehicle_label"),
            detalle=(
                f"[ {txn.provider} ] folio={txn.folio} trans={txn.transaction_id} "
                f"{candidate.get('eligibility_reason', '')}".strip()
            ),
            folio=txn.folio,
            proveedor=txn.provider,
            status=1,
        )

    async def _existing_folios(self, session: AsyncSession,
                               items: Sequence[AuxiliaryQueueItem]) -> Set[Tuple[str, str]]:
        pairs = {(item.transaction.provider, item.folio) for item in items}
        if not pairs:
            return set()
        result = await session.execute(
            select(RechargeDetail.proveedor, RechargeDetail.folio).where(
                RechargeDetail.folio.in_(sorted({folio for _, folio in pairs}))
            )
        )
        return {(row[0], row[1]) for row in result.all()} & pairs

    # ------------------------------------------------------------ operations

    async def insert_batch_recharges(
        self,
        items: Sequence[AuxiliaryQueueItem],
        fleet_type: str,
        *,
        notes: Optional[str] = None,
        is_recovery: bool = False,
        after_insert: Optional[AfterInsertHook] = None,
    ) -> BatchInsertResult:
        """
        Persist items in one transaction, one master row per provider

        Returns counts where already-present folios appear in both success and
        duplicates. A unique-constraint race rolls the batch back and falls
        back to one-at-a-time inserts.

        Raises:
            PersistenceFatalError: database connection lost
            PersistenceTransientError: any other database failure
        """
        result = BatchInsertResult(processed=len(items))
        if not items:
            return result

        async with self.session_factory() as session:
            try:
                seen = await self._existing_folios(session, items)
                fresh: "OrderedDict[str, List[AuxiliaryQueueItem]]" = OrderedDict()
                for item in items:
                    pair = (item.transaction.provider, item.folio)
                    if pair in seen:
                        result.success += 1
                        result.duplicates += 1
                        result.persisted_keys.append(item.key)
                        logger.info(f"♻️ RECHARGE_DUPLICATE_FOLIO: {item.folio} ({item.transaction.provider}) already stored")
                        continue
                    seen.add(pair)
                    fresh.setdefault(item.transaction.provider, []).append(item)

                batch_ids = []
                for provider, provider_items in fresh.items():
                    master = self._build_master(provider_items, fleet_type, provider, notes, is_recovery)
                    session.add(master)
                    await session.flush()
                    batch_ids.append(master.id)
                    for item in provider_items:
                        session.add(self._build_detail(master.id, item))
                        if after_insert is not None:
                            await after_insert(session, item)
                await session.commit()

            except IntegrityError as e:
                await session.rollback()
                logger.warning(f"⚠️ RECHARGE_BATCH_CONFLICT: {fleet_type} batch rolled back, inserting one by one: {e.orig}")
                return await self._insert_individually(items, fleet_type, notes, is_recovery, after_insert)

            except SQLAlchemyError as e:
                await session.rollback()
                logger.error(f"❌ RECHARGE_BATCH_FAILED: {fleet_type} {len(items)} item(s): {e}")
                raise to_persistence_error(e) from e

        for provider_items in fresh.values():
            for item in provider_items:
                result.success += 1
                result.persisted_keys.append(item.key)
        result.batch_id = batch_ids[0] if batch_ids else None

        logger.info(
            f"💾 RECHARGE_BATCH_INSERTED: {fleet_type} processed={result.processed} "
            f"new={result.success - result.duplicates} duplicates={result.duplicates} batches={batch_ids}"
        )
        return result

    async def _insert_individually(self, items, fleet_type, notes, is_recovery, after_insert) -> BatchInsertResult:
        result = BatchInsertResult()
        for item in items:
            result.merge(await self.insert_single_recharge(
                item, fleet_type, notes=notes, is_recovery=is_recovery, after_insert=after_insert,
            ))
        return result

    async def insert_single_recharge(
        self,
        item: AuxiliaryQueueItem,
        fleet_type: str,
        *,
        notes: Optional[str] = None,
        is_recovery: bool = False,
        after_insert: Optional[AfterInsertHook] = None,
    ) -> BatchInsertResult:
        """
        One item, same duplicate-tolerant semantics as the batch path

        Per-item failures are reported in per_item_errors; only a lost
        connection raises.
        """
        result = BatchInsertResult(processed=1)
        async with self.session_factory() as session:
            try:
                if await self._existing_folios(session, [item]):
                    result.success = 1
                    result.duplicates = 1
                    result.persisted_keys.append(item.key)
                    logger.info(f"♻️ RECHARGE_DUPLICATE_FOLIO: {item.folio} ({item.transaction.provider}) already stored")
                    return result

                master = self._build_master([item], fleet_type, item.transaction.provider, notes, is_recovery)
                session.add(master)
                await session.flush()
                session.add(self._build_detail(master.id, item))
                if after_insert is not None:
                    await after_insert(session, item)
                await session.commit()
                result.batch_id = master.id

            except IntegrityError:
                await session.rollback()
                result.success = 1
                result.duplicates = 1
                result.persisted_keys.append(item.key)
                logger.info(f"♻️ RECHARGE_DUPLICATE_FOLIO: {item.folio} inserted concurrently, treated as stored")
                return result

            except SQLAlchemyError as e:
                await session.rollback()
                error = to_persistence_error(e)
                if isinstance(error, PersistenceFatalError):
                    raise error from e
                result.failed = 1
                result.per_item_errors.append({"key": item.key, "sim": item.sim, "folio": item.folio, "error": str(e)})
                logger.error(f"❌ RECHARGE_INSERT_FAILED: sim={item.sim} folio={item.folio}: {e}")
                return result

        result.success = 1
        result.persisted_keys.append(item.key)
        logger.info(f"💾 RECHARGE_INSERTED: {fleet_type} sim={item.sim} folio={item.folio} batch={result.batch_id}")
        return result

    async def folio_exists(self, item: AuxiliaryQueueItem, fleet_type: str = None) -> bool:
        """True when a detail row holds this item's provider folio for its fleet"""
        fleet = (fleet_type or item.fleet_type).upper()
        async with self.session_factory() as session:
            result = await session.execute(
                select(func.count(RechargeDetail.id))
                .join(RechargeBatch, RechargeBatch.id == RechargeDetail.id_recarga)
                .where(
                    RechargeDetail.folio == item.folio,
                    RechargeDetail.proveedor == item.transaction.provider,
                    RechargeBatch.tipo == fleet,
                )
            )
            return int(result.scalar() or 0) > 0

    async def count_details_for_folio(self, folio: str, provider: str = None) -> int:
        async with self.session_factory() as session:
            query = select(func.count(RechargeDetail.id)).where(RechargeDetail.folio == folio)
            if provider:
                query = query.where(RechargeDetail.proveedor == provider)
            result = await session.execute(query)
            return int(result.scalar() or 0)
