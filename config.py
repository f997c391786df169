"""Configuration management for the prepaid recharge engine"""

import os
import logging
from dataclasses import dataclass, field
from typing import Dict, Any, Optional

from dotenv import load_dotenv

load_dotenv()

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FleetSettings:
    """Per-fleet processing knobs"""

    fleet_type: str
    amount: float
    validity_days: int
    product_code: str
    min_balance_threshold: float
    batch_processing: bool
    max_retries: int = 3
    retry_base_delay: float = 1.0
    retry_backoff_multiplier: float = 2.0
    delay_between_calls: float = 0.5
    webservice_timeout: float = 30.0
    interval_minutes: Optional[int] = None
    cron_hours: Optional[str] = None
    packages: Dict[str, Any] = field(default_factory=dict)


class Config:
    """Application configuration"""

    ENVIRONMENT = os.getenv("ENVIRONMENT", "development").lower().strip()
    IS_PRODUCTION = ENVIRONMENT == "production"
    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
    TIMEZONE = os.getenv("TIMEZONE", "America/Mazatlan")

    # Database: system of record for recharge batches and locks
    DATABASE_URL = os.getenv("DATABASE_URL", "sqlite+aiosqlite:///./recharge_engine.db")
    # Fleet database holding devices/lines; defaults to the main database
    FLEET_DATABASE_URL = os.getenv("FLEET_DATABASE_URL") or DATABASE_URL
    DATABASE_TIMEOUT_SECONDS = float(os.getenv("DATABASE_TIMEOUT_SECONDS", "30"))

    # Locking
    LOCK_EXPIRATION_MINUTES = int(os.getenv("LOCK_EXPIRATION_MINUTES", "60"))
    LOCK_ACQUIRE_TIMEOUT_SECONDS = float(os.getenv("LOCK_ACQUIRE_TIMEOUT_SECONDS", "10"))

    # Auxiliary queue
    AUXILIARY_QUEUE_DIR = os.getenv("AUXILIARY_QUEUE_DIR", "data")
    MAX_RECOVERY_ATTEMPTS = int(os.getenv("MAX_RECOVERY_ATTEMPTS", "5"))
    BLOCK_ON_PENDING_RECOVERY = os.getenv("BLOCK_ON_PENDING_RECOVERY", "false").lower() == "true"

    # Retry policy shared by every fleet
    RECHARGE_MAX_RETRIES = int(os.getenv("RECHARGE_MAX_RETRIES", "3"))
    RECHARGE_RETRY_BASE_DELAY = float(os.getenv("RECHARGE_RETRY_BASE_DELAY", "1.0"))
    RECHARGE_RETRY_BACKOFF_MULTIPLIER = float(os.getenv("RECHARGE_RETRY_BACKOFF_MULTIPLIER", "2"))
    UNKNOWN_ERROR_MAX_ATTEMPTS = int(os.getenv("UNKNOWN_ERROR_MAX_ATTEMPTS", "2"))
    DELAY_BETWEEN_CALLS = float(os.getenv("DELAY_BETWEEN_CALLS", "0.5"))
    WEBSERVICE_TIMEOUT = float(os.getenv("WEBSERVICE_TIMEOUT", "30"))

    # Providers
    TAECEL_URL = os.getenv("TAECEL_URL", "https://taecel.com/app/api")
    TAECEL_KEY = os.getenv("TAECEL_KEY")
    TAECEL_NIP = os.getenv("TAECEL_NIP")
    MST_URL = os.getenv("MST_URL", "https://www.ventatelcel.com/ws/index.php?wsdl")
    MST_USER = os.getenv("MST_USER")
    MST_PASSWORD = os.getenv("MST_PASSWORD")
    # Lower number wins when balances tie
    PROVIDER_PRIORITY = {"TAECEL": 1, "MST": 2}

    # GPS fleet
    GPS_AMOUNT = float(os.getenv("GPS_DEFAULT_AMOUNT", "10"))
    GPS_DAYS = int(os.getenv("GPS_DEFAULT_DAYS", "7"))
    GPS_PRODUCT_CODE = os.getenv("GPS_PRODUCT_CODE", "TEL010")
    GPS_MIN_BALANCE_THRESHOLD = float(os.getenv("GPS_MIN_BALANCE_THRESHOLD", "10"))
    GPS_MINUTES_WITHOUT_REPORT = int(os.getenv("GPS_MINUTOS_SIN_REPORTAR", "10"))
    GPS_INTERVAL_MINUTES = int(os.getenv("GPS_INTERVAL_MINUTES", "6"))

    # VOZ fleet
    VOZ_MIN_BALANCE_THRESHOLD = float(os.getenv("VOZ_MIN_BALANCE_THRESHOLD", "100"))
    VOZ_CRON_HOURS = os.getenv("VOZ_CRON_HOURS", "1,4")
    VOZ_PACKAGES = {
        "150005": {"amount": 150, "days": 25, "code": "PSL150"},
        "200006": {"amount": 200, "days": 30, "code": "PSL200"},
    }
    VOZ_DEFAULT_PACKAGE = os.getenv("VOZ_DEFAULT_PACKAGE", "150005")

    # ELIOT fleet
    ELIOT_AMOUNT = float(os.getenv("ELIOT_DEFAULT_AMOUNT", "10"))
    ELIOT_DAYS = int(os.getenv("ELIOT_DEFAULT_DAYS", "7"))
    ELIOT_PRODUCT_CODE = os.getenv("ELIOT_PRODUCT_CODE", "TEL010")
    ELIOT_MIN_BALANCE_THRESHOLD = float(os.getenv("ELIOT_MIN_BALANCE_THRESHOLD", "50"))
    ELIOT_INTERVAL_MINUTES = int(os.getenv("ELIOT_INTERVAL_MINUTES", "10"))

    # Candidate queries, overridable per deployment
    GPS_CANDIDATE_QUERY = os.getenv("GPS_CANDIDATE_QUERY")
    VOZ_CANDIDATE_QUERY = os.getenv("VOZ_CANDIDATE_QUERY")
    ELIOT_CANDIDATE_QUERY = os.getenv("ELIOT_CANDIDATE_QUERY")

    # Alerts
    ALERTS_ENABLED = os.getenv("ALERTS_ENABLED", "true").lower() == "true"
    ALERT_TELEGRAM_BOT_TOKEN = os.getenv("ALERT_TELEGRAM_BOT_TOKEN")
    ALERT_TELEGRAM_CHAT_ID = os.getenv("ALERT_TELEGRAM_CHAT_ID")
    ALERT_WEBHOOK_URL = os.getenv("ALERT_WEBHOOK_URL")
    ALERT_COOLDOWN_MINUTES = int(os.getenv("ALERT_COOLDOWN_MINUTES", "15"))

    FLEET_TYPES = ("GPS", "VOZ", "ELIOT")

    @classmethod
    def fleet_settings(cls, fleet_type: str) -> FleetSettings:
        """Build the settings for one fleet"""
        fleet_type = fleet_type.upper()
        shared = dict(
            max_retries=cls.RECHARGE_MAX_RETRIES,
            retry_base_delay=cls.RECHARGE_RETRY_BASE_DELAY,
            retry_backoff_multiplier=cls.RECHARGE_RETRY_BACKOFF_MULTIPLIER,
            delay_between_calls=cls.DELAY_BETWEEN_CALLS,
            webservice_timeout=cls.WEBSERVICE_TIMEOUT,
        )

        if fleet_type == "GPS":
            return FleetSettings(
                fleet_type="GPS",
                amount=cls.GPS_AMOUNT,
                validity_days=cls.GPS_DAYS,
                product_code=cls.GPS_PRODUCT_CODE,
                min_balance_threshold=cls.GPS_MIN_BALANCE_THRESHOLD,
                batch_processing=True,
                interval_minutes=cls.GPS_INTERVAL_MINUTES,
                **shared,
            )
        if fleet_type == "VOZ":
            default_package = cls.VOZ_PACKAGES[cls.VOZ_DEFAULT_PACKAGE]
            return FleetSettings(
                fleet_type="VOZ",
                amount=float(default_package["amount"]),
                validity_days=int(default_package["days"]),
                product_code=default_package["code"],
                min_balance_threshold=cls.VOZ_MIN_BALANCE_THRESHOLD,
                batch_processing=False,
                cron_hours=cls.VOZ_CRON_HOURS,
                packages=dict(cls.VOZ_PACKAGES),
                **shared,
            )
        if fleet_type == "ELIOT":
            return FleetSettings(
                fleet_type="ELIOT",
                amount=cls.ELIOT_AMOUNT,
                validity_days=cls.ELIOT_DAYS,
                product_code=cls.ELIOT_PRODUCT_CODE,
                min_balance_threshold=cls.ELIOT_MIN_BALANCE_THRESHOLD,
                batch_processing=True,
                interval_minutes=cls.ELIOT_INTERVAL_MINUTES,
                **shared,
            )
        raise ValueError(f"Unknown fleet type: {fleet_type}")

    @classmethod
    def validate_provider_credentials(cls) -> Dict[str, bool]:
        """Report which providers have credentials configured"""
        status = {
            "TAECEL": bool(cls.TAECEL_KEY and cls.TAECEL_NIP),
            "MST": bool(cls.MST_USER and cls.MST_PASSWORD),
        }
        for provider, configured in status.items():
            if not configured:
                logger.warning(f"⚠️ PROVIDER_CREDENTIALS_MISSING: {provider} will report zero balance")
        return status


logger.info(
    f"🔧 Environment: {Config.ENVIRONMENT} | timezone={Config.TIMEZONE} | "
    f"queue_dir={Config.AUXILIARY_QUEUE_DIR}"
)
