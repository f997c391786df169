"""
Fleet Processors
One processor per fleet, each supplying candidates, the product to charge and
the fleet-side expiration update. The orchestrator talks to them only through
the FleetProcessor protocol.
"""

import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Mapping, Optional, Protocol, runtime_checkable
from zoneinfo import ZoneInfo

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from config import Config, FleetSettings
from models import AuxiliaryQueueItem, RechargeCandidate, RechargeProduct

logger = logging.getLogger(__name__)


@runtime_checkable
class FleetProcessor(Protocol):
    """Capabilities the orchestrator needs from a fleet"""

    fleet_type: str
    settings: FleetSettings

    async def get_candidates(self) -> List[RechargeCandidate]:
        ...

    def product_for(self, candidate: RechargeCandidate) -> RechargeProduct:
        ...

    async def after_insert(self, session: AsyncSession, item: AuxiliaryQueueItem) -> None:
        ...

    def describe(self, candidate: RechargeCandidate) -> str:
        ...


def local_day_start(now: datetime = None, tz_name: str = None) -> datetime:
    """Midnight today in the operating timezone"""
    tz = ZoneInfo(tz_name or Config.TIMEZONE)
    current = now.astimezone(tz) if now else datetime.now(tz)
    return current.replace(hour=0, minute=0, second=0, microsecond=0)


def _as_datetime(value: Any) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return value
    try:
        return datetime.fromisoformat(str(value))
    except ValueError:
        return None


class SqlCandidateSource:
    """Runs a fleet's selection query and hands back plain row mappings"""

    def __init__(self, session_factory: async_sessionmaker, query: str,
                 params_factory: Callable[[], Dict[str, Any]] = None):
        self.session_factory = session_factory
        self.query = query
        self.params_factory = params_factory or dict

    async def fetch_rows(self) -> List[Mapping[str, Any]]:
        async with self.session_factory() as session:
            result = await session.execute(text(self.query), self.params_factory())
            return [dict(row) for row in result.mappings().all()]


GPS_CANDIDATE_QUERY = """
SELECT v.descripcion AS descripcion, e.nombre AS empresa, d.nombre AS dispositivo,
       d.sim AS sim, d.unix_saldo AS unix_saldo, MAX(t.fecha) AS ultimo_registro
FROM vehiculos v
JOIN empresas e ON v.empresa = e.id
JOIN dispositivos d ON v.dispositivo = d.id
LEFT JOIN track t ON t.dispositivo = d.nombre AND t.fecha >= :report_window_start
WHERE v.status = 1 AND e.status = 1 AND d.status = 1
  AND d.unix_saldo <= :now_unix
  AND d.sim NOT IN (
      SELECT dr.sim FROM detalle_recargas dr
      JOIN recargas r ON dr.id_recarga = r.id
      WHERE r.fecha >= :day_start_unix AND r.tipo = :fleet_type AND dr.status = 1
  )
GROUP BY v.descripcion, e.nombre, d.nombre, d.sim, d.unix_saldo
ORDER BY MAX(t.fecha) ASC
LIMIT 300
"""

VOZ_CANDIDATE_QUERY = """
SELECT p.sim AS sim, p.descripcion AS descripcion, p.codigo_paquete AS codigo_paquete,
       p.fecha_expira_saldo AS fecha_expira_saldo
FROM prepagos_automaticos p
WHERE p.status = 1
  AND p.fecha_expira_saldo <= :expires_before
  AND p.sim NOT IN (
      SELECT dr.sim FROM detalle_recargas dr
      JOIN recargas r ON dr.id_recarga = r.id
      WHERE r.fecha >= :day_start_unix AND r.tipo = :fleet_type AND dr.status = 1
  )
ORDER BY p.fecha_expira_saldo ASC
"""

ELIOT_CANDIDATE_QUERY = """
SELECT a.descripcion AS descripcion, a.nombreEmpresa AS empresa, a.uuid AS uuid, a.sim AS sim,
       a.fecha_saldo AS fecha_saldo, a.importe_recarga AS importe_recarga, a.dias_recarga AS dias_recarga
FROM agentesEmpresa_view a
WHERE a.prepago = 1 AND a.status = 1 AND a.estadoEmpresa = 1
  AND a.fecha_saldo IS NOT NULL AND a.comunicacion = 'gsm'
  AND a.fecha_saldo <= :expires_before_unix
ORDER BY a.fecha_saldo ASC
"""


class GpsRechargeProcessor:
    """Tracking units: recharge when expired and silent for N minutes"""

    fleet_type = "GPS"

    def __init__(self, session_factory: async_sessionmaker, settings: FleetSettings = None,
                 query: str = None, minutes_without_report: int = None, clock: Callable[[], datetime] = None):
        self.settings = settings or Config.fleet_settings("GPS")
        self.minutes_without_report = (
            Config.GPS_MINUTES_WITHOUT_REPORT if minutes_without_report is None else minutes_without_report
        )
        self._clock = clock or (lambda: datetime.now(ZoneInfo(Config.TIMEZONE)))
        self.source = SqlCandidateSource(
            session_factory, query or Config.GPS_CANDIDATE_QUERY or GPS_CANDIDATE_QUERY, self._query_params
        )

    def _query_params(self) -> Dict[str, Any]:
        now = self._clock()
        return {
            "now_unix": int(now.timestamp()),
            "report_window_start": (now - timedelta(days=14)).replace(tzinfo=None),
            "day_start_unix": int(local_day_start(now).timestamp()),
            "fleet_type": self.fleet_type,
        }

    def select_candidates(self, rows: List[Mapping[str, Any]]) -> List[RechargeCandidate]:
        """Keep expired units that stopped reporting; skip the ones still talking"""
        now = self._clock()
        now_unix = int(now.timestamp())
        candidates, still_reporting = [], 0

        for row in rows:
            if int(row.get("unix_saldo") or 0) > now_unix:
                continue
            last_report = _as_datetime(row.get("ultimo_registro"))
            if last_report is None:
                minutes_silent = 999999
            else:
                if last_report.tzinfo is None:
                    last_report = last_report.replace(tzinfo=now.tzinfo)
                minutes_silent = int((now - last_report).total_seconds() // 60)

            if minutes_silent < self.minutes_without_report:
                still_reporting += 1
                continue

            candidates.append(RechargeCandidate(
                sim=str(row["sim"]),
                fleet_type=self.fleet_type,
                eligibility_reason=f"saldo vencido, sin reportar {minutes_silent} min",
                device_id=row.get("dispositivo"),
                vehicle_label=f"{row.get('empresa') or ''} - {row.get('descripcion') or ''}".strip(" -").upper(),
                extra={"minutes_without_report": minutes_silent},
            ))

        logger.info(
            f"📊 GPS_CANDIDATES: rows={len(rows)} to_recharge={len(candidates)} "
            f"expired_but_reporting={still_reporting}"
        )
        return candidates

    async def get_candidates(self) -> List[RechargeCandidate]:
        return self.select_candidates(await self.source.fetch_rows())

    def product_for(self, candidate: RechargeCandidate) -> RechargeProduct:
        return RechargeProduct(self.settings.product_code, self.settings.amount, self.settings.validity_days)

    async def after_insert(self, session: AsyncSession, item: AuxiliaryQueueItem) -> None:
        expires = local_day_start(self._clock()) + timedelta(days=self.settings.validity_days + 1) - timedelta(seconds=1)
        await session.execute(
            text("UPDATE dispositivos SET unix_saldo = :unix_saldo WHERE sim = :sim"),
            {"unix_saldo": int(expires.timestamp()), "sim": item.sim},
        )

    def describe(self, candidate: RechargeCandidate) -> str:
        return f"GPS {candidate.sim} ({candidate.vehicle_label or candidate.device_id})"


class VozRechargeProcessor:
    """Voice lines: package chosen per line, charged one by one"""

    fleet_type = "VOZ"

    def __init__(self, session_factory: async_sessionmaker, settings: FleetSettings = None,
                 query: str = None, clock: Callable[[], datetime] = None):
        self.settings = settings or Config.fleet_settings("VOZ")
        self._clock = clock or (lambda: datetime.now(ZoneInfo(Config.TIMEZONE)))
        self.source = SqlCandidateSource(
            session_factory, query or Config.VOZ_CANDIDATE_QUERY or VOZ_CANDIDATE_QUERY, self._query_params
        )

    def _query_params(self) -> Dict[str, Any]:
        now = self._clock()
        return {
            "expires_before": (local_day_start(now) + timedelta(days=2)).replace(tzinfo=None),
            "day_start_unix": int(local_day_start(now).timestamp()),
            "fleet_type": self.fleet_type,
        }

    def select_candidates(self, rows: List[Mapping[str, Any]]) -> List[RechargeCandidate]:
        candidates = []
        for row in rows:
            package_code = str(row.get("codigo_paquete") or "")
            if package_code not in self.settings.packages:
                logger.warning(f"⚠️ VOZ_UNKNOWN_PACKAGE: {package_code!r} for sim={row.get('sim')}, skipped")
                continue
            candidates.append(RechargeCandidate(
                sim=str(row["sim"]),
                fleet_type=self.fleet_type,
                eligibility_reason=f"paquete {package_code} por vencer",
                vehicle_label=row.get("descripcion") or f"VOZ-{row['sim']}",
                extra={"package_code": package_code},
            ))
        return candidates

    async def get_candidates(self) -> List[RechargeCandidate]:
        return self.select_candidates(await self.source.fetch_rows())

    def product_for(self, candidate: RechargeCandidate) -> RechargeProduct:
        package = self.settings.packages[candidate.extra["package_code"]]
        return RechargeProduct(package["code"], float(package["amount"]), int(package["days"]))

    async def after_insert(self, session: AsyncSession, item: AuxiliaryQueueItem) -> None:
        package = self.settings.packages.get((item.candidate.get("extra") or {}).get("package_code"), {})
        days = int(package.get("days", self.settings.validity_days))
        await session.execute(
            text("UPDATE prepagos_automaticos SET fecha_expira_saldo = :expires WHERE sim = :sim"),
            {"expires": (self._clock() + timedelta(days=days)).replace(tzinfo=None), "sim": item.sim},
        )

    def describe(self, candidate: RechargeCandidate) -> str:
        return f"VOZ {candidate.sim} paquete {candidate.extra.get('package_code')}"


class EliotRechargeProcessor:
    """IoT modules living in their own database"""

    fleet_type = "ELIOT"

    def __init__(self, session_factory: async_sessionmaker, settings: FleetSettings = None,
                 query: str = None, fleet_session_factory: async_sessionmaker = None,
                 clock: Callable[[], datetime] = None):
        self.settings = settings or Config.fleet_settings("ELIOT")
        self._clock = clock or (lambda: datetime.now(ZoneInfo(Config.TIMEZONE)))
        # Agents table lives in the fleet database, not beside recargas
        self.fleet_session_factory = fleet_session_factory or session_factory
        self.source = SqlCandidateSource(
            self.fleet_session_factory, query or Config.ELIOT_CANDIDATE_QUERY or ELIOT_CANDIDATE_QUERY,
            self._query_params,
        )

    def _query_params(self) -> Dict[str, Any]:
        tomorrow_end = local_day_start(self._clock()) + timedelta(days=2) - timedelta(seconds=1)
        return {"expires_before_unix": int(tomorrow_end.timestamp())}

    def select_candidates(self, rows: List[Mapping[str, Any]]) -> List[RechargeCandidate]:
        return [
            RechargeCandidate(
                sim=str(row["sim"]),
                fleet_type=self.fleet_type,
                eligibility_reason="saldo vence antes de mañana",
                device_id=row.get("uuid"),
                vehicle_label=f"{row.get('empresa') or ''} - {row.get('descripcion') or ''}".strip(" -"),
                extra={
                    "amount": row.get("importe_recarga"),
                    "days": row.get("dias_recarga"),
                },
            )
            for row in rows
        ]

    async def get_candidates(self) -> List[RechargeCandidate]:
        return self.select_candidates(await self.source.fetch_rows())

    def product_for(self, candidate: RechargeCandidate) -> RechargeProduct:
        amount = candidate.extra.get("amount") or self.settings.amount
        days = candidate.extra.get("days") or self.settings.validity_days
        return RechargeProduct(self.settings.product_code, float(amount), int(days))

    async def after_insert(self, session: AsyncSession, item: AuxiliaryQueueItem) -> None:
        extra = item.candidate.get("extra") or {}
        days = int(extra.get("days") or self.settings.validity_days)
        expires = local_day_start(self._clock()) + timedelta(days=days + 1) - timedelta(seconds=1)
        statement = text("UPDATE agentes SET fecha_saldo = :fecha_saldo WHERE sim = :sim")
        params = {"fecha_saldo": int(expires.timestamp()), "sim": item.sim}
        if self._same_database(session):
            await session.execute(statement, params)
            return
        async with self.fleet_session_factory() as fleet_session:
            await fleet_session.execute(statement, params)
            await fleet_session.commit()

    def _same_database(self, session: AsyncSession) -> bool:
        fleet_engine = getattr(self.fleet_session_factory, "kw", {}).get("bind")
        return fleet_engine is None or fleet_engine is session.bind

    def describe(self, candidate: RechargeCandidate) -> str:
        return f"ELIOT {candidate.sim} ({candidate.vehicle_label})"


def build_fleet_processor(fleet_type: str, session_factory: async_sessionmaker,
                          fleet_session_factory: async_sessionmaker = None) -> FleetProcessor:
    fleet_type = fleet_type.upper()
    # Devices and voice lines share the recargas database; IoT agents may not
    if fleet_type == "GPS":
        return GpsRechargeProcessor(session_factory)
    if fleet_type == "VOZ":
        return VozRechargeProcessor(session_factory)
    if fleet_type == "ELIOT":
        return EliotRechargeProcessor(session_factory, fleet_session_factory=fleet_session_factory)
    raise ValueError(f"Unknown fleet type: {fleet_type}")
