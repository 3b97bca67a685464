from typing import Optional

from etching_status_client.models import Classification, HttpRequest, RetryPolicy


class RetryScheduler:
    """Decides whether a failed attempt gets another try, and after how long."""

    def __init__(self, policy: Optional[RetryPolicy] = None):
        self.policy = policy or RetryPolicy()

    def should_retry(self, request: HttpRequest, classification: Classification) -> bool:
        """True iff the failure is retryable and the request's counter is under its class ceiling.

        The counter is never reset within a chain, so a request bouncing
        between failure classes cannot retry past the largest ceiling.
        """
        if not classification.retryable:
            return False
        return request.retry_count < self.policy.retries_for(classification.failure_class)

    def resolve_delay(self, classification: Classification) -> float:
        """Seconds to wait before the next attempt"""
        delay_ms = classification.delay_hint_ms
        if classification.server_delay and not self.policy.honor_retry_after:
            delay_ms = None
        if delay_ms is None:
            delay_ms = self.policy.default_delay_ms(classification.failure_class) or 0
        delay_ms = min(delay_ms, self.policy.max_delay_ms)
        return delay_ms / 1000
