"""
Retry Execution Engine with Exponential Backoff
Runs provider calls and database writes under a bounded retry policy.
"""

import asyncio
import logging
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Deque, Dict, List, Optional

from models import FailureClass, utcnow
from services.recharge_error_classifier import RechargeErrorClassifier
from utils.recharge_exceptions import RetryExhaustedError

logger = logging.getLogger(__name__)

SleepFunc = Callable[[float], Awaitable[Any]]


@dataclass
class AttemptRecord:
    """One attempt of one operation, kept for observability"""
    operation_name: str
    correlation_id: str
    attempt: int
    succeeded: bool
    duration_ms: int
    error_code: Optional[str] = None
    failure_class: Optional[str] = None
    delay_before_next: float = 0.0
    recorded_at: Any = field(default_factory=utcnow)


class RetryExecutionEngine:
    """
    Bounded retry with classification:
    - FATAL: rethrown on the spot, no sleep
    - RETRIABLE: sleep base_delay * backoff_multiplier ** (attempt - 1), then retry
    - exhausted: RetryExhaustedError chained from the last error
    """

    def __init__(
        self,
        classifier: RechargeErrorClassifier = None,
        sleep: SleepFunc = None,
        history_size: int = 200,
    ):
        self.classifier = classifier or RechargeErrorClassifier()
        self._sleep = sleep or asyncio.sleep
        self.attempt_history: Deque[AttemptRecord] = deque(maxlen=history_size)
        self.total_sleep_seconds = 0.0

    async def execute_with_retry(
        self,
        operation: Callable[[], Awaitable[Any]],
        *,
        operation_name: str,
        correlation_id: str,
        max_attempts: int = 3,
        base_delay: float = 1.0,
        backoff_multiplier: float = 2.0,
        timeout: Optional[float] = None,
    ) -> Any:
        """
        Run operation until it succeeds, fails fatally or runs out of attempts

        Args:
            operation: zero-argument coroutine function
            operation_name: label for logs and the exhausted error
            correlation_id: ties every attempt to its candidate/item
            max_attempts: upper bound on calls to operation
            base_delay: seconds before the first retry
            backoff_multiplier: growth factor between retries
            timeout: per-attempt timeout in seconds; a timeout is retriable
        """
        max_attempts = max(1, int(max_attempts))
        attempt = 0

        while True:
            attempt += 1
            started = time.monotonic()
            try:
                if timeout:
                    result = await asyncio.wait_for(operation(), timeout=timeout)
                else:
                    result = await operation()
            except Exception as e:
                duration_ms = int((time.monotonic() - started) * 1000)
                classification = self.classifier.classify(e)

                effective_max = max_attempts
                if classification.max_attempts is not None:
                    effective_max = min(max_attempts, classification.max_attempts)

                record = AttemptRecord(
                    operation_name=operation_name,
                    correlation_id=correlation_id,
                    attempt=attempt,
                    succeeded=False,
                    duration_ms=duration_ms,
                    error_code=classification.error_code.value,
                    failure_class=classification.failure_class.value,
                )
                self.attempt_history.append(record)

                if classification.failure_class == FailureClass.FATAL:
                    logger.error(
                        f"🛑 RETRY_FATAL: {operation_name} [{correlation_id}] attempt {attempt} "
                        f"code={classification.error_code.value}: {e}"
                    )
                    raise

                if attempt >= effective_max:
                    logger.error(
                        f"❌ RETRY_EXHAUSTED: {operation_name} [{correlation_id}] after {attempt} attempt(s) "
                        f"code={classification.error_code.value}: {e}"
                    )
                    raise RetryExhaustedError(operation_name, attempt, e) from e

                delay = self.compute_delay(attempt, base_delay, backoff_multiplier)
                record.delay_before_next = delay
                logger.warning(
                    f"🔄 RETRY_SCHEDULED: {operation_name} [{correlation_id}] attempt {attempt}/{effective_max} "
                    f"code={classification.error_code.value}, retrying in {delay:.2f}s: {e}"
                )
                self.total_sleep_seconds += delay
                await self._sleep(delay)
                continue

            self.attempt_history.append(AttemptRecord(
                operation_name=operation_name,
                correlation_id=correlation_id,
                attempt=attempt,
                succeeded=True,
                duration_ms=int((time.monotonic() - started) * 1000),
            ))
            if attempt > 1:
                logger.info(f"✅ RETRY_SUCCEEDED: {operation_name} [{correlation_id}] on attempt {attempt}")
            return result

    @staticmethod
    def compute_delay(attempt: int, base_delay: float, backoff_multiplier: float) -> float:
        return base_delay * (backoff_multiplier ** (attempt - 1))

    def get_recent_attempts(self, correlation_id: str = None) -> List[AttemptRecord]:
        if correlation_id is None:
            return list(self.attempt_history)
        return [r for r in self.attempt_history if r.correlation_id == correlation_id]

    def get_stats(self) -> Dict[str, Any]:
        records = list(self.attempt_history)
        failures = [r for r in records if not r.succeeded]
        return {
            "attempts_recorded": len(records),
            "failures_recorded": len(failures),
            "average_duration_ms": (sum(r.duration_ms for r in records) / len(records)) if records else 0,
            "total_sleep_seconds": self.total_sleep_seconds,
        }
