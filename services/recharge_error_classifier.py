"""
Recharge Error Classification Service
Decides whether a failed provider call or database write is worth retrying.

Classification is structural: exception types and the RechargeErrorCode set
at the call site. Provider free-text messages are translated to codes once,
at the client boundary, through PROVIDER_MESSAGE_CODES.
"""

import asyncio
import logging
import re
from dataclasses import dataclass
from typing import Optional, Dict, Any

import aiohttp
from sqlalchemy.exc import DBAPIError, DisconnectionError, IntegrityError, OperationalError

from config import Config
from models import FailureClass, RechargeErrorCode
from utils.recharge_exceptions import (
    RechargeError, ProviderTransientError, ProviderFatalError,
    PersistenceTransientError, PersistenceFatalError,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ErrorClassification:
    failure_class: FailureClass
    error_code: RechargeErrorCode
    # Per-code attempt cap; None defers to the caller's policy
    max_attempts: Optional[int] = None

    @property
    def retryable(self) -> bool:
        return self.failure_class == FailureClass.RETRIABLE


# Legacy provider messages -> typed codes. Used only by provider clients.
PROVIDER_MESSAGE_CODES = {
    r"insufficient.*balance|saldo.*insuficiente|balance.*too.*low": RechargeErrorCode.INSUFFICIENT_BALANCE,
    r"invalid.*sim|sim.*not.*found|n[uú]mero.*inv[aá]lido|tel[eé]fono.*inv[aá]lido": RechargeErrorCode.INVALID_RECORD,
    r"duplicate.*transaction|transacci[oó]n.*duplicada": RechargeErrorCode.DUPLICATE_FOLIO,
    r"invalid.*amount|monto.*inv[aá]lido|carrier.*not.*supported": RechargeErrorCode.MALFORMED_REQUEST,
    r"authentication.*failed|acceso.*denegado|permission.*denied|credenciales": RechargeErrorCode.AUTHENTICATION_FAILED,
    r"service.*busy|temporarily.*unavailable|rate.*limit|no.*disponible": RechargeErrorCode.PROVIDER_UNAVAILABLE,
    r"timeout|timed.*out|tiempo.*agotado": RechargeErrorCode.PROVIDER_TIMEOUT,
}


def map_provider_message(message: Optional[str]) -> RechargeErrorCode:
    """Translate a provider's error text into a typed code"""
    text = (message or "").lower()
    for pattern, code in PROVIDER_MESSAGE_CODES.items():
        if re.search(pattern, text):
            return code
    return RechargeErrorCode.UNKNOWN


class RechargeErrorClassifier:
    """Classifies recharge failures into FATAL or RETRIABLE"""

    RETRY_CONFIG: Dict[RechargeErrorCode, Dict[str, Any]] = {
        RechargeErrorCode.PROVIDER_TIMEOUT: {"retryable": True},
        RechargeErrorCode.CONNECTION_RESET: {"retryable": True},
        RechargeErrorCode.INSUFFICIENT_BALANCE: {"retryable": True},
        RechargeErrorCode.PROVIDER_UNAVAILABLE: {"retryable": True},
        RechargeErrorCode.PERSISTENCE_TRANSIENT: {"retryable": True},
        RechargeErrorCode.AUTHENTICATION_FAILED: {"retryable": False},
        RechargeErrorCode.MALFORMED_REQUEST: {"retryable": False},
        RechargeErrorCode.INVALID_RECORD: {"retryable": False},
        RechargeErrorCode.DUPLICATE_FOLIO: {"retryable": False},
        RechargeErrorCode.MISSING_FOLIO: {"retryable": False},
        RechargeErrorCode.NO_PROVIDER_AVAILABLE: {"retryable": False},
        RechargeErrorCode.DATABASE_CONNECTION_LOST: {"retryable": False},
        RechargeErrorCode.QUEUE_WRITE_FAILED: {"retryable": False},
        RechargeErrorCode.LOCK_DENIED: {"retryable": False},
        RechargeErrorCode.RETRIES_EXHAUSTED: {"retryable": False},
        RechargeErrorCode.UNKNOWN: {"retryable": True, "max_attempts": Config.UNKNOWN_ERROR_MAX_ATTEMPTS},
    }

    @classmethod
    def _from_code(cls, code: RechargeErrorCode, force: Optional[FailureClass] = None) -> ErrorClassification:
        config = cls.RETRY_CONFIG.get(code, cls.RETRY_CONFIG[RechargeErrorCode.UNKNOWN])
        if force is not None:
            failure_class = force
        else:
            failure_class = FailureClass.RETRIABLE if config["retryable"] else FailureClass.FATAL
        return ErrorClassification(failure_class, code, config.get("max_attempts"))

    @classmethod
    def classify(cls, exception: BaseException) -> ErrorClassification:
        """Map an exception to its failure class and code"""
        # Typed errors: the exception class decides the failure class
        if isinstance(exception, (ProviderFatalError, PersistenceFatalError)):
            return cls._from_code(exception.error_code, FailureClass.FATAL)
        if isinstance(exception, (ProviderTransientError, PersistenceTransientError)):
            return cls._from_code(exception.error_code, FailureClass.RETRIABLE)
        if isinstance(exception, RechargeError):
            return cls._from_code(exception.error_code)

        if isinstance(exception, asyncio.TimeoutError):
            return cls._from_code(RechargeErrorCode.PROVIDER_TIMEOUT)

        if isinstance(exception, aiohttp.ClientResponseError):
            status = exception.status
            if status in (401, 403):
                return cls._from_code(RechargeErrorCode.AUTHENTICATION_FAILED)
            if status in (400, 404, 422):
                return cls._from_code(RechargeErrorCode.MALFORMED_REQUEST)
            if status == 429 or status >= 500:
                return cls._from_code(RechargeErrorCode.PROVIDER_UNAVAILABLE)
            return cls._from_code(RechargeErrorCode.UNKNOWN)
        if isinstance(exception, (aiohttp.ClientConnectionError, ConnectionError)):
            return cls._from_code(RechargeErrorCode.CONNECTION_RESET)

        if isinstance(exception, IntegrityError):
            return cls._from_code(RechargeErrorCode.DUPLICATE_FOLIO)
        if isinstance(exception, DisconnectionError):
            return cls._from_code(RechargeErrorCode.DATABASE_CONNECTION_LOST)
        if isinstance(exception, DBAPIError) and exception.connection_invalidated:
            return cls._from_code(RechargeErrorCode.DATABASE_CONNECTION_LOST)
        if isinstance(exception, OperationalError):
            return cls._from_code(RechargeErrorCode.PERSISTENCE_TRANSIENT)

        logger.debug(f"❓ UNCLASSIFIED_ERROR: {type(exception).__name__}: {exception}")
        return cls._from_code(RechargeErrorCode.UNKNOWN)

    @classmethod
    def is_fatal(cls, exception: BaseException) -> bool:
        return cls.classify(exception).failure_class == FailureClass.FATAL
