"""Reusable retry policy wrapped around every external call."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable

import requests
from tenacity import (
    Retrying,
    before_sleep_log,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from config import PROCESSING
from errors import TransientError

log = logging.getLogger("retry")

RETRYABLE_STATUS = {408, 425, 429, 500, 502, 503, 504}


def is_transient(exc: BaseException) -> bool:
    """Classify an exception as retryable (True) or fatal (False)."""
    if isinstance(exc, TransientError):
        return True
    if isinstance(exc, (requests.ConnectionError, requests.Timeout)):
        return True
    if isinstance(exc, requests.HTTPError):
        response = exc.response
        return response is not None and response.status_code in RETRYABLE_STATUS
    return False


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    backoff_seconds: float = PROCESSING["retry_backoff_seconds"]
    max_backoff_seconds: float = PROCESSING["retry_max_backoff_seconds"]
    is_retryable: Callable[[BaseException], bool] = field(default=is_transient)

    def call(self, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        """Run fn, retrying retryable failures. The last error is re-raised."""
        retryer = Retrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(
                multiplier=self.backoff_seconds, max=self.max_backoff_seconds,
            ),
            retry=retry_if_exception(self.is_retryable),
            before_sleep=before_sleep_log(log, logging.WARNING),
            reraise=True,
        )
        return retryer(fn, *args, **kwargs)
