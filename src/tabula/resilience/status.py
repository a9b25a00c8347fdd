# src/tabula/resilience/status.py
"""Classification of remote table responses.

HTTP Status Codes:
- 429: Too Many Requests, the values API's per-minute quota response.
  Retried with backoff and counted by the circuit breaker.
- any other non-2xx: structural failure (bad range, auth, server error).
  Surfaced at once as UpstreamError; retrying the same request would
  fail the same way or mask a real bug.
"""

from __future__ import annotations

RATE_LIMIT_STATUS_CODES: frozenset[int] = frozenset({429})


def is_rate_limited(status_code: int) -> bool:
    """Check if an HTTP status code is a rate-limit response."""
    return status_code in RATE_LIMIT_STATUS_CODES


class RateLimited(Exception):
    """Internal signal: one attempt was answered with a rate-limit status.

    Raised inside the retry loop and converted to QuotaExceeded once the
    attempt budget is spent. Never escapes BackoffClient.
    """

    def __init__(self, status_code: int, detail: str = "") -> None:
        self.status_code = status_code
        self.detail = detail
        super().__init__(f"Rate limited ({status_code}): {detail}" if detail else f"Rate limited ({status_code})")
