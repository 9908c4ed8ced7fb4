"""
Error recovery for calls to unreliable external dependencies.

- CircuitBreaker: fails fast once a dependency has failed repeatedly, then
  probes it again after a cooldown (CLOSED -> OPEN -> HALF_OPEN -> CLOSED).
- retry_with_backoff: bounded retries with exponential delay.
- FailureClassifier: maps a terminal failure to a recovery action.
- WholesalerErrorRecovery / PaymentErrorRecovery: one breaker + retry policy
  + classifier per external dependency.

Breaker state lives in process memory. Instances of the backend running in
parallel each track failures independently.
"""
import asyncio
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone, timedelta
from typing import Any, Awaitable, Callable, Dict, Iterable, Optional

from models import CircuitState, RecoveryStatus

logger = logging.getLogger(__name__)

# Delays in milliseconds
RETRY_CONFIG = {
    "max_retries": 3,
    "base_delay": 1000,
    "max_delay": 10000,
    "backoff_factor": 2,
}


class CircuitOpenError(Exception):
    """Raised without invoking the operation while a breaker is OPEN."""

    def __init__(self, name: str, retry_in_ms: int):
        self.name = name
        self.retry_in_ms = retry_in_ms
        super().__init__(f"Circuit breaker is OPEN for {name}. Next attempt in {retry_in_ms}ms")


class NotificationSendError(Exception):
    """The notification transport reported a failed send."""


def _now_ms() -> int:
    return int(time.time() * 1000)


class CircuitBreaker:
    def __init__(
        self,
        name: str,
        failure_threshold: int = 5,
        reset_timeout: int = 60000,
        clock: Optional[Callable[[], int]] = None,
    ):
        self.name = name
        self.failure_threshold = failure_threshold
        self.reset_timeout = reset_timeout
        self._clock = clock or _now_ms

        self.state = CircuitState.CLOSED
        self.failure_count = 0
        self.last_failure_time: Optional[int] = None
        self.next_attempt: int = self._clock()

    async def execute(self, operation: Callable[[], Awaitable[Any]]) -> Any:
        if self.state == CircuitState.OPEN:
            now = self._clock()
            if now < self.next_attempt:
                raise CircuitOpenError(self.name, self.next_attempt - now)
            self.state = CircuitState.HALF_OPEN
            logger.info(f"Circuit breaker for {self.name} is now HALF_OPEN")

        try:
            result = await operation()
        except Exception:
            self._on_failure()
            raise
        self._on_success()
        return result

    def _on_success(self) -> None:
        self.failure_count = 0
        if self.state == CircuitState.HALF_OPEN:
            self.state = CircuitState.CLOSED
            logger.info(f"Circuit breaker for {self.name} is now CLOSED")

    def _on_failure(self) -> None:
        self.failure_count += 1
        self.last_failure_time = self._clock()
        if self.state == CircuitState.HALF_OPEN or self.failure_count >= self.failure_threshold:
            self.state = CircuitState.OPEN
            self.next_attempt = self._clock() + self.reset_timeout
            logger.warning(
                f"Circuit breaker for {self.name} is now OPEN. Will retry after {self.reset_timeout}ms"
            )

    def get_status(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "state": self.state.value,
            "failureCount": self.failure_count,
            "lastFailureTime": self.last_failure_time,
            "nextAttempt": self.next_attempt,
        }


async def retry_with_backoff(
    operation: Callable[[], Awaitable[Any]],
    context: str = "",
    **options: Any,
) -> Any:
    """
    Run operation up to max_retries times, sleeping
    min(base_delay * backoff_factor ** (attempt - 1), max_delay) ms between
    attempts. The last error is re-raised unchanged.
    """
    config = {**RETRY_CONFIG, **options}
    max_retries = max(1, int(config["max_retries"]))

    for attempt in range(1, max_retries + 1):
        try:
            result = await operation()
        except Exception as e:
            if attempt >= max_retries:
                logger.error(f"{context} failed after {max_retries} attempts: {e}")
                raise
            delay = min(
                config["base_delay"] * config["backoff_factor"] ** (attempt - 1),
                config["max_delay"],
            )
            logger.warning(
                f"{context} failed on attempt {attempt}, retrying in {delay}ms: {e}"
            )
            await asyncio.sleep(delay / 1000)
            continue

        if attempt > 1:
            logger.info(f"{context} succeeded on attempt {attempt}")
        return result


# ============================================
# FAILURE CLASSIFICATION
# ============================================

@dataclass(frozen=True)
class RecoveryAction:
    status: RecoveryStatus
    retry_at: Optional[datetime] = None
    method: Optional[str] = None
    issue_type: Optional[str] = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"status": self.status.value}
        if self.retry_at is not None:
            data["retryAt"] = self.retry_at.isoformat()
        if self.method is not None:
            data["method"] = self.method
        if self.issue_type is not None:
            data["issueType"] = self.issue_type
        if self.error is not None:
            data["error"] = self.error
        return data


class RecoveryStrategy(ABC):
    keywords: tuple = ()

    def matches(self, message: str) -> bool:
        message = message.lower()
        return any(keyword in message for keyword in self.keywords)

    @abstractmethod
    def recover(self, error: Exception) -> RecoveryAction:
        ...


class QueueForRetry(RecoveryStrategy):
    keywords = ("network", "timeout")

    def __init__(self, delay: timedelta):
        self.delay = delay

    def recover(self, error: Exception) -> RecoveryAction:
        return RecoveryAction(
            status=RecoveryStatus.QUEUED_FOR_RETRY,
            retry_at=datetime.now(timezone.utc) + self.delay,
        )


class AlternativeChannel(RecoveryStrategy):
    keywords = ("invalid_email", "bounced")

    def __init__(self, method: str = "webhook"):
        self.method = method

    def recover(self, error: Exception) -> RecoveryAction:
        return RecoveryAction(status=RecoveryStatus.ALTERNATIVE_METHOD_ATTEMPTED, method=self.method)


class NotifyCustomer(RecoveryStrategy):
    keywords = ("insufficient_funds",)

    def recover(self, error: Exception) -> RecoveryAction:
        return RecoveryAction(status=RecoveryStatus.CUSTOMER_NOTIFIED, issue_type="insufficient_funds")


class Escalate(RecoveryStrategy):
    def matches(self, message: str) -> bool:
        return True

    def recover(self, error: Exception) -> RecoveryAction:
        return RecoveryAction(status=RecoveryStatus.ESCALATED, error=str(error))


class FailureClassifier:
    """First matching strategy wins; anything unmatched is escalated."""

    def __init__(self, strategies: Iterable[RecoveryStrategy], fallback: Optional[RecoveryStrategy] = None):
        self.strategies = list(strategies)
        self.fallback = fallback or Escalate()

    def classify(self, error: Exception) -> RecoveryAction:
        message = str(error)
        for strategy in self.strategies:
            if strategy.matches(message):
                return strategy.recover(error)
        return self.fallback.recover(error)


# ============================================
# PER-DEPENDENCY RECOVERY
# ============================================

class WholesalerErrorRecovery:
    def __init__(
        self,
        circuit_breaker: Optional[CircuitBreaker] = None,
        retry_options: Optional[Dict[str, Any]] = None,
        classifier: Optional[FailureClassifier] = None,
    ):
        self.circuit_breaker = circuit_breaker or CircuitBreaker(
            "WholesalerService", failure_threshold=5, reset_timeout=60000
        )
        self.retry_options = {"max_retries": 3, **(retry_options or {})}
        self.classifier = classifier or FailureClassifier([
            QueueForRetry(timedelta(minutes=10)),
            AlternativeChannel("webhook"),
        ])

    async def send_notification(
        self,
        notification_operation: Callable[[Dict[str, Any]], Awaitable[Any]],
        notification_data: Dict[str, Any],
    ) -> Any:
        label = f"Wholesaler notification for order {notification_data.get('orderNumber')}"
        return await self.circuit_breaker.execute(
            lambda: retry_with_backoff(
                lambda: notification_operation(notification_data),
                label,
                **self.retry_options,
            )
        )

    def handle_notification_failure(self, error: Exception, notification_data: Dict[str, Any]) -> Dict[str, Any]:
        """Classify a terminal send failure. Logs and returns a descriptor; nothing is persisted here."""
        logger.error(
            f"Wholesaler notification failed for order {notification_data.get('orderNumber')} "
            f"({notification_data.get('wholesalerEmail')}): {error}"
        )
        action = self.classifier.classify(error)
        if action.status == RecoveryStatus.QUEUED_FOR_RETRY:
            logger.info(f"Wholesaler notification queued for retry at {action.retry_at.isoformat()}")
        elif action.status == RecoveryStatus.ALTERNATIVE_METHOD_ATTEMPTED:
            logger.info(f"Wholesaler notification flagged for alternative contact via {action.method}")
        else:
            logger.error(f"Escalating wholesaler notification error: {error}")
        return action.to_dict()


class PaymentErrorRecovery:
    def __init__(
        self,
        circuit_breaker: Optional[CircuitBreaker] = None,
        retry_options: Optional[Dict[str, Any]] = None,
        classifier: Optional[FailureClassifier] = None,
    ):
        self.circuit_breaker = circuit_breaker or CircuitBreaker(
            "PaymentService", failure_threshold=3, reset_timeout=30000
        )
        self.retry_options = {"max_retries": 2, **(retry_options or {})}
        self.classifier = classifier or FailureClassifier([
            QueueForRetry(timedelta(minutes=5)),
            NotifyCustomer(),
        ])

    async def process_payment(
        self,
        payment_operation: Callable[[Dict[str, Any]], Awaitable[Any]],
        payment_data: Dict[str, Any],
    ) -> Any:
        label = f"Payment processing for order {payment_data.get('orderId')}"
        return await self.circuit_breaker.execute(
            lambda: retry_with_backoff(
                lambda: payment_operation(payment_data),
                label,
                **self.retry_options,
            )
        )

    def handle_payment_failure(self, error: Exception, payment_data: Dict[str, Any]) -> Dict[str, Any]:
        logger.error(
            f"Payment processing failed for order {payment_data.get('orderId')} "
            f"(amount={payment_data.get('amount')}, method={payment_data.get('method')}): {error}"
        )
        return self.classifier.classify(error).to_dict()


class ErrorRecoveryRegistry:
    """Owns the process-wide recovery objects, one breaker per dependency."""

    def __init__(
        self,
        payment: Optional[PaymentErrorRecovery] = None,
        wholesaler: Optional[WholesalerErrorRecovery] = None,
    ):
        self.payment = payment or PaymentErrorRecovery()
        self.wholesaler = wholesaler or WholesalerErrorRecovery()

    def get_circuit_breaker_status(self) -> Dict[str, Dict[str, Any]]:
        return {
            "payment": self.payment.circuit_breaker.get_status(),
            "wholesaler": self.wholesaler.circuit_breaker.get_status(),
        }


error_recovery = ErrorRecoveryRegistry()
