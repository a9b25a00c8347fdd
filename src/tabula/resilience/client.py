# src/tabula/resilience/client.py
"""BackoffClient: the only component that talks to the remote table.

Per attempt:
1. Read the shared circuit; fail fast with CircuitOpen while it is open
2. Acquire a pacing slot
3. Send the request through the transport
4. Classify the response:
   - 2xx: close the circuit, return
   - rate limit: count it on the breaker, back off, retry (unless that
     count opened the circuit: then fail with CircuitOpen at once)
   - other non-2xx: raise UpstreamError at once (no retry budget used)
   - transport failure: retry when configured, never touches the circuit
"""

from __future__ import annotations

import time
from collections.abc import Callable

import structlog

from tabula.contracts.errors import QuotaExceeded, TransportFailure, UpstreamError
from tabula.contracts.protocols import TableTransport
from tabula.contracts.table import TableRequest, TableResponse
from tabula.core.rate_limit import NoOpPacer, RequestPacer
from tabula.resilience.circuit import CircuitBreaker
from tabula.resilience.retry import MaxRetriesExceeded, RetryPolicy, execute_with_policy
from tabula.resilience.status import RateLimited, is_rate_limited

logger = structlog.get_logger(__name__)


class BackoffClient:
    """Rate-limit aware wrapper around a TableTransport."""

    def __init__(
        self,
        transport: TableTransport,
        breaker: CircuitBreaker,
        policy: RetryPolicy | None = None,
        *,
        pacer: RequestPacer | NoOpPacer | None = None,
        retry_transport_errors: bool = True,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._transport = transport
        self._breaker = breaker
        self._policy = policy or RetryPolicy()
        self._pacer = pacer or NoOpPacer()
        self._retry_transport_errors = retry_transport_errors
        self._sleep = sleep

    @property
    def breaker(self) -> CircuitBreaker:
        return self._breaker

    @property
    def policy(self) -> RetryPolicy:
        return self._policy

    def _is_retryable(self, error: BaseException) -> bool:
        if isinstance(error, RateLimited):
            # Once this response tripped the breaker, the next attempt cannot run
            return not self._breaker.is_open()
        return isinstance(error, TransportFailure) and self._retry_transport_errors

    def _attempt(self, request: TableRequest) -> TableResponse:
        self._breaker.ensure_closed()
        self._pacer.acquire()

        response = self._transport.send(request)

        if response.ok:
            self._breaker.record_success()
            return response
        if is_rate_limited(response.status_code):
            self._breaker.record_rate_limited()
            raise RateLimited(response.status_code, response.error_detail())
        raise UpstreamError(request.operation.value, response.status_code, response.error_detail())

    def call(self, request: TableRequest) -> TableResponse:
        """Send a request with backoff and circuit breaking.

        Raises:
            CircuitOpen: Circuit open before an attempt (no network call made),
                or opened by this call's own rate limits before its last attempt
            QuotaExceeded: Rate-limit retries exhausted
            UpstreamError: Non-retryable upstream failure, or transport
                failures that outlasted the retry budget
        """
        label = request.describe()
        attempts = 0

        def _run() -> TableResponse:
            nonlocal attempts
            attempts += 1
            return self._attempt(request)

        def _on_retry(retry_index: int, error: BaseException, delay: float) -> None:
            logger.warning(
                "Remote call failed, backing off",
                operation=label,
                retry_index=retry_index,
                delay_ms=int(delay * 1000),
                reason=type(error).__name__,
                status_code=getattr(error, "status_code", None),
            )

        try:
            return execute_with_policy(
                _run,
                self._policy,
                is_retryable=self._is_retryable,
                on_retry=_on_retry,
                sleep=self._sleep,
            )
        except RateLimited as e:
            # Not retried because the circuit opened on this response
            if attempts < self._policy.max_attempts:
                logger.error("Circuit opened mid-call, not backing off", operation=label, attempts=attempts)
                self._breaker.ensure_closed()
            logger.error("Rate-limit retries exhausted", operation=label, attempts=attempts, status_code=e.status_code)
            raise QuotaExceeded(request.operation.value, attempts, e.status_code) from e
        except MaxRetriesExceeded as e:
            last = e.last_error
            if isinstance(last, RateLimited):
                logger.error("Rate-limit retries exhausted", operation=label, attempts=e.attempts, status_code=last.status_code)
                raise QuotaExceeded(request.operation.value, e.attempts, last.status_code) from last
            logger.error("Transport retries exhausted", operation=label, attempts=e.attempts, error=str(last))
            raise UpstreamError(request.operation.value, None, str(last)) from last
        except TransportFailure as e:
            # Only reachable with retry_transport_errors disabled
            logger.error("Transport failure", operation=label, error=str(e))
            raise UpstreamError(request.operation.value, None, str(e)) from e

    def close(self) -> None:
        self._transport.close()
        self._pacer.close()
