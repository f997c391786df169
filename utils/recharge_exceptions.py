"""
Recharge exception taxonomy
Every raised error carries a typed RechargeErrorCode so classification never
depends on message text.
"""

from typing import Any, Dict, Optional, List

from models import RechargeErrorCode


class RechargeError(Exception):
    """Base error carrying a structural failure category"""

    default_code = RechargeErrorCode.UNKNOWN

    def __init__(
        self,
        message: str,
        error_code: Optional[RechargeErrorCode] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        self.error_code = error_code or self.default_code
        self.details = details or {}
        super().__init__(message)


class LockDenied(RechargeError):
    """Another worker owns this fleet's cycle"""
    default_code = RechargeErrorCode.LOCK_DENIED


class NoProviderAvailable(RechargeError):
    """No provider has enough balance to absorb a charge"""
    default_code = RechargeErrorCode.NO_PROVIDER_AVAILABLE

    def __init__(self, message: str, balances: Optional[List[Dict[str, Any]]] = None):
        super().__init__(message, details={"balances": balances or []})
        self.balances = balances or []


class ProviderTransientError(RechargeError):
    """Provider failure worth another attempt"""
    default_code = RechargeErrorCode.PROVIDER_UNAVAILABLE

    def __init__(self, message: str, error_code: Optional[RechargeErrorCode] = None,
                 provider: Optional[str] = None, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, error_code, details)
        self.provider = provider


class ProviderFatalError(RechargeError):
    """Provider rejected the request; retrying cannot help"""
    default_code = RechargeErrorCode.MALFORMED_REQUEST

    def __init__(self, message: str, error_code: Optional[RechargeErrorCode] = None,
                 provider: Optional[str] = None, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, error_code, details)
        self.provider = provider


class PersistenceTransientError(RechargeError):
    default_code = RechargeErrorCode.PERSISTENCE_TRANSIENT


class PersistenceFatalError(RechargeError):
    """Database unreachable; persistence is abandoned for this cycle"""
    default_code = RechargeErrorCode.DATABASE_CONNECTION_LOST


class QueueWriteError(RechargeError):
    """Auxiliary queue could not be written to disk"""
    default_code = RechargeErrorCode.QUEUE_WRITE_FAILED


class RetryExhaustedError(RechargeError):
    """Wraps the last error once every attempt has been spent"""
    default_code = RechargeErrorCode.RETRIES_EXHAUSTED

    def __init__(self, operation_name: str, attempts: int, last_error: BaseException):
        super().__init__(
            f"{operation_name} failed after {attempts} attempt(s): {last_error}",
            details={"attempts": attempts, "last_error_type": type(last_error).__name__},
        )
        self.operation_name = operation_name
        self.attempts = attempts
        self.last_error = last_error
