"""
Test Fleet Processors
Candidate filtering and product selection per fleet, no database required
"""

from datetime import datetime, timedelta
from zoneinfo import ZoneInfo

import pytest

from config import Config
from models import RechargeProduct
from services.fleet_processors import (
    EliotRechargeProcessor, FleetProcessor, GpsRechargeProcessor, VozRechargeProcessor,
    build_fleet_processor, local_day_start,
)

from tests.recharge_test_foundation import make_candidate

TZ = ZoneInfo("America/Mazatlan")
NOW = datetime(2024, 5, 10, 12, 0, 0, tzinfo=TZ)


def fixed_clock():
    return NOW


class TestGpsProcessor:

    def build(self):
        return GpsRechargeProcessor(None, clock=fixed_clock, minutes_without_report=10)

    def test_only_expired_and_silent_units_are_candidates(self):
        processor = self.build()
        expired = int((NOW - timedelta(days=1)).timestamp())
        rows = [
            {"sim": "5550000001", "unix_saldo": expired, "ultimo_registro": NOW - timedelta(minutes=30),
             "dispositivo": "GPS-1", "empresa": "Transportes", "descripcion": "Unidad 1"},
            {"sim": "5550000002", "unix_saldo": expired, "ultimo_registro": NOW - timedelta(minutes=5),
             "dispositivo": "GPS-2", "empresa": "Transportes", "descripcion": "Unidad 2"},
            {"sim": "5550000003", "unix_saldo": int((NOW + timedelta(days=3)).timestamp()),
             "ultimo_registro": NOW - timedelta(hours=5), "dispositivo": "GPS-3"},
            {"sim": "5550000004", "unix_saldo": expired, "ultimo_registro": None, "dispositivo": "GPS-4"},
        ]

        candidates = processor.select_candidates(rows)

        assert [c.sim for c in candidates] == ["5550000001", "5550000004"]
        assert candidates[0].extra["minutes_without_report"] == 30
        assert candidates[0].vehicle_label == "TRANSPORTES - UNIDAD 1"
        assert candidates[0].device_id == "GPS-1"

    def test_naive_report_timestamps_use_local_time(self):
        processor = self.build()
        rows = [{"sim": "5550000001", "unix_saldo": 0,
                 "ultimo_registro": (NOW - timedelta(minutes=11)).replace(tzinfo=None)}]

        candidates = processor.select_candidates(rows)

        assert candidates[0].extra["minutes_without_report"] == 11

    def test_product_uses_fleet_defaults(self):
        processor = self.build()
        product = processor.product_for(make_candidate())
        assert product == RechargeProduct(
            processor.settings.product_code, processor.settings.amount, processor.settings.validity_days,
        )


class TestVozProcessor:

    def test_packages_drive_candidates_and_products(self):
        processor = VozRechargeProcessor(None, clock=fixed_clock)
        rows = [
            {"sim": "5551110001", "codigo_paquete": "150005", "descripcion": "Linea ventas"},
            {"sim": "5551110002", "codigo_paquete": "200006", "descripcion": None},
            {"sim": "5551110003", "codigo_paquete": "999999", "descripcion": "Paquete raro"},
        ]

        candidates = processor.select_candidates(rows)

        assert [c.sim for c in candidates] == ["5551110001", "5551110002"], "Unknown packages are skipped"
        assert candidates[1].vehicle_label == "VOZ-5551110002"
        assert processor.product_for(candidates[0]) == RechargeProduct("PSL150", 150.0, 25)
        assert processor.product_for(candidates[1]) == RechargeProduct("PSL200", 200.0, 30)

    def test_voz_persists_one_by_one(self):
        assert VozRechargeProcessor(None).settings.batch_processing is False


class TestEliotProcessor:

    def test_product_uses_agent_amount_or_defaults(self):
        processor = EliotRechargeProcessor(None, clock=fixed_clock)
        custom, plain = processor.select_candidates([
            {"sim": "5552220001", "uuid": "a-1", "empresa": "Agro", "descripcion": "Bomba",
             "importe_recarga": 50, "dias_recarga": 30},
            {"sim": "5552220002", "uuid": "a-2", "importe_recarga": None, "dias_recarga": None},
        ])

        assert processor.product_for(custom) == RechargeProduct(processor.settings.product_code, 50.0, 30)
        assert processor.product_for(plain) == RechargeProduct(
            processor.settings.product_code, processor.settings.amount, processor.settings.validity_days,
        )
        assert custom.device_id == "a-1"
        assert custom.vehicle_label == "Agro - Bomba"


class TestFactory:

    @pytest.mark.parametrize("fleet,cls", [
        ("GPS", GpsRechargeProcessor),
        ("voz", VozRechargeProcessor),
        ("Eliot", EliotRechargeProcessor),
    ])
    def test_build_fleet_processor(self, fleet, cls):
        processor = build_fleet_processor(fleet, None)
        assert isinstance(processor, cls)
        assert isinstance(processor, FleetProcessor)
        assert processor.settings.fleet_type == fleet.upper()

    def test_unknown_fleet(self):
        with pytest.raises(ValueError):
            build_fleet_processor("BOAT", None)


class TestSettings:

    def test_fleet_settings(self):
        assert Config.fleet_settings("gps").batch_processing is True
        assert Config.fleet_settings("VOZ").cron_hours == Config.VOZ_CRON_HOURS
        with pytest.raises(ValueError):
            Config.fleet_settings("BOAT")

    def test_local_day_start(self):
        start = local_day_start(NOW, "America/Mazatlan")
        assert (start.hour, start.minute, start.second) == (0, 0, 0)
        assert start.date() == NOW.date()
