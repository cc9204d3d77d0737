"""
HTTP plumbing shared by the collaborator clients.

Implements:
- Circuit breaker pattern
- Error classification into SideEffectFailure
- Per-call metrics
"""
import time
from typing import Any, Awaitable, Callable, Dict, Optional, TypeVar

import httpx
import structlog

from agency_ledger.core.exceptions import SideEffectFailure
from agency_ledger.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

T = TypeVar("T")


class CircuitBreaker:
    """
    Circuit breaker for collaborator calls.

    Prevents a struggling collaborator from absorbing every fan-out task by
    temporarily refusing calls once failures pass a threshold.
    """

    def __init__(
        self,
        service: str,
        failure_threshold: int = 5,
        timeout: int = 60,
        success_threshold: int = 2,
    ):
        """
        Initialize circuit breaker.

        Args:
            service: Collaborator name, for logs and metrics
            failure_threshold: Number of failures before opening circuit
            timeout: Seconds before attempting to close circuit
            success_threshold: Successful calls needed to close circuit
        """
        self.service = service
        self.failure_threshold = failure_threshold
        self.timeout = timeout
        self.success_threshold = success_threshold
        self.failure_count = 0
        self.success_count = 0
        self.last_failure_time: Optional[float] = None
        self.state = "closed"  # closed, open, half_open

    async def call(self, func: Callable[..., Awaitable[T]], *args: Any, **kwargs: Any) -> T:
        """
        Execute coroutine function with circuit breaker protection.

        Raises:
            SideEffectFailure: If circuit is open
        """
        if self.state == "open":
            if (
                self.last_failure_time
                and time.time() - self.last_failure_time > self.timeout
            ):
                self._set_state("half_open")
                self.success_count = 0
                logger.info("circuit_breaker_half_open", service=self.service)
            else:
                raise SideEffectFailure("Circuit breaker is open", service=self.service)

        try:
            result = await func(*args, **kwargs)
        except Exception:
            self.on_failure()
            raise
        self.on_success()
        return result

    def _set_state(self, state: str) -> None:
        self.state = state
        metrics.set_circuit_breaker_state(self.service, state)

    def on_success(self) -> None:
        """Record successful call."""
        self.failure_count = 0
        if self.state == "half_open":
            self.success_count += 1
            if self.success_count >= self.success_threshold:
                self._set_state("closed")
                logger.info("circuit_breaker_closed", service=self.service)

    def on_failure(self) -> None:
        """Record failed call."""
        self.failure_count += 1
        self.last_failure_time = time.time()
        if self.state == "half_open" or self.failure_count >= self.failure_threshold:
            self._set_state("open")
            logger.warning(
                "circuit_breaker_opened",
                service=self.service,
                failure_count=self.failure_count,
            )


class HttpServiceClient:
    """
    JSON-over-HTTP collaborator client.

    Subclasses set ``service`` and call :meth:`_post`. Every failure is
    surfaced as SideEffectFailure; retrying is the fan-out's job.
    """

    service = "collaborator"

    def __init__(
        self,
        base_url: str,
        timeout: float = 5.0,
        client: Optional[httpx.AsyncClient] = None,
        circuit_breaker: Optional[CircuitBreaker] = None,
    ) -> None:
        self.base_url = base_url
        self.client = client or httpx.AsyncClient(base_url=base_url, timeout=timeout)
        self.circuit_breaker = circuit_breaker or CircuitBreaker(self.service)
        logger.info(f"{self.service}_client_initialized", base_url=base_url)

    async def _send(self, path: str, payload: Dict[str, Any]) -> None:
        start_time = time.time()
        try:
            response = await self.client.post(path, json=payload)
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            metrics.record_collaborator_call(
                self.service, str(e.response.status_code), time.time() - start_time
            )
            raise SideEffectFailure(
                f"{self.service} answered {e.response.status_code}",
                service=self.service,
                status_code=e.response.status_code,
            ) from e
        except httpx.HTTPError as e:
            metrics.record_collaborator_call(self.service, "error", time.time() - start_time)
            raise SideEffectFailure(
                f"{self.service} unreachable: {e}", service=self.service
            ) from e
        metrics.record_collaborator_call(self.service, "success", time.time() - start_time)

    async def _post(self, path: str, payload: Dict[str, Any]) -> None:
        await self.circuit_breaker.call(self._send, path, payload)

    async def aclose(self) -> None:
        """Close the underlying HTTP client."""
        await self.client.aclose()
