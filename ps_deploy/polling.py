# Copyright Amazon.com, Inc. or its affiliates. All Rights Reserved.
# SPDX-License-Identifier: MIT-0

"""
Polling Module

One bounded "poll until predicate or exhausted" helper shared by every wait in
the pipeline: instance running, SSM reachability, image available, stack
convergence and target health.
"""

import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Optional, Tuple, Type

logger = logging.getLogger(__name__)

# A check returns (done, value). The value of the last attempt is kept even
# when the poll is exhausted, so callers can report the last observed state.
Check = Callable[[], Tuple[bool, Any]]


@dataclass
class PollOutcome:
    satisfied: bool
    value: Any
    attempts: int


def poll_until(
    check: Check,
    interval: float,
    max_attempts: int,
    description: str = "condition",
    retry_on: Tuple[Type[BaseException], ...] = (),
    on_attempt: Optional[Callable[[int, Any], None]] = None,
) -> PollOutcome:
    """
    Call check until it reports done or max_attempts is reached.

    Sleeps interval seconds between attempts, never after the last one, so the
    total wait is bounded by (max_attempts - 1) * interval plus the time spent
    in check itself.

    Args:
        check: Callable returning (done, value)
        interval: Seconds between attempts
        max_attempts: Maximum number of calls to check
        description: Used in log messages
        retry_on: Exception types treated as "not done yet" instead of propagating
        on_attempt: Optional callback(attempt, value) after every attempt

    Returns:
        PollOutcome with the last observed value
    """
    if max_attempts < 1:
        raise ValueError("max_attempts must be at least 1")

    value = None
    for attempt in range(1, max_attempts + 1):
        try:
            done, value = check()
        except retry_on as e:
            logger.debug(
                f"Waiting for {description}: attempt {attempt}/{max_attempts} raised {e}"
            )
            done, value = False, None

        if on_attempt:
            on_attempt(attempt, value)

        if done:
            logger.debug(f"{description} satisfied after {attempt} attempt(s)")
            return PollOutcome(satisfied=True, value=value, attempts=attempt)

        if attempt < max_attempts:
            time.sleep(interval)

    logger.debug(f"{description} not satisfied after {max_attempts} attempts")
    return PollOutcome(satisfied=False, value=value, attempts=max_attempts)


def attempts_for(timeout: float, interval: float) -> int:
    """Number of attempts that fit a timeout at the given interval"""
    if interval <= 0:
        raise ValueError("interval must be positive")
    return max(1, int(timeout // interval) + 1)
