from __future__ import annotations

import logging
from typing import Any, Callable, TypeVar

from tenacity import (
    RetryError,
    Retrying,
    before_sleep_log,
    retry,
    retry_if_exception_type,
    retry_if_result,
    stop_after_attempt,
    stop_after_delay,
    wait_exponential,
    wait_fixed,
)

from cumulus.errors import ProviderTransientError, WaitTimeoutError
from cumulus.logger import logger

T = TypeVar("T")

TRANSIENT_RETRY_ATTEMPTS = 5


def _not_ready(result: Any) -> bool:
    return not result


def wait_until(
    probe: Callable[[], T],
    interval: float,
    timeout: float,
    description: str,
) -> T:
    """
    Polls `probe` until it returns a truthy value.

    The probe is called right away and then every `interval` seconds. Transient
    provider errors raised by the probe count as "not ready yet". Any other
    error raised by the probe aborts the wait immediately, which is how a probe
    reports that the resource reached a failed state.

    Args:
        probe (Callable): Returns a truthy value once the resource is ready.
        interval (float): Seconds to sleep between two probes.
        timeout (float): Seconds after which the wait gives up.
        description (str): What is being waited for, used in logs and errors.

    Returns:
        The first truthy value returned by the probe.

    Raises:
        WaitTimeoutError: If the probe is still not ready after `timeout` seconds.
    """
    logger.debug(f"Waiting for {description} (timeout {int(timeout)}s)")
    retryer = Retrying(
        stop=stop_after_delay(timeout),
        wait=wait_fixed(interval),
        retry=(
            retry_if_result(_not_ready)
            | retry_if_exception_type(ProviderTransientError)
        ),
    )
    try:
        return retryer(probe)
    except RetryError as e:
        raise WaitTimeoutError(description, timeout) from e.last_attempt.exception()


def retry_transient(func: Callable[..., T]) -> Callable[..., T]:
    """
    Retries a call with exponential backoff while it fails with a transient
    provider error. Only wrap idempotent calls with this.
    """
    return retry(
        retry=retry_if_exception_type(ProviderTransientError),
        wait=wait_exponential(multiplier=1, min=1, max=30),
        stop=stop_after_attempt(TRANSIENT_RETRY_ATTEMPTS),
        before_sleep=before_sleep_log(logger, logging.WARNING),
        reraise=True,
    )(func)
