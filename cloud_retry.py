# MIT License
# Copyright (c) 2025 Gordon Trevorrow
# Permission is hereby granted, free of charge, to any person obtaining a copy
# of this software and associated documentation files (the "Software"), to deal
# in the Software without restriction, including without limitation the rights
# to use, copy, modify, merge, publish, distribute, sublicense, and/or sell
# copies of the Software, and to permit persons to whom the Software is
# furnished to do so, subject to the following conditions:
# The above copyright notice and this permission notice shall be included in all
# copies or substantial portions of the Software.
# THE SOFTWARE IS PROVIDED "AS IS", WITHOUT WARRANTY OF ANY KIND, EXPRESS OR
# IMPLIED, INCLUDING BUT NOT LIMITED TO THE WARRANTIES OF MERCHANTABILITY,
# FITNESS FOR A PARTICULAR PURPOSE AND NONINFRINGEMENT. IN NO EVENT SHALL THE
# AUTHORS OR COPYRIGHT HOLDERS BE LIABLE FOR ANY CLAIM, DAMAGES OR OTHER
# LIABILITY, WHETHER IN AN ACTION OF CONTRACT, TORT OR OTHERWISE, ARISING FROM,
# OUT OF OR IN CONNECTION WITH THE SOFTWARE OR THE USE OR OTHER DEALINGS IN THE
# SOFTWARE.
# Author: Gordon Trevorrow

"""Bounded retry and bounded poll loops.

Both block the calling thread; ``sleep`` and ``clock`` are injectable so callers
(and tests) control time.
"""

import time
from typing import Callable, Optional, TypeVar

from cloud_logging import get_logger

LOG = get_logger("retry")

T = TypeVar("T")


class RetryExhausted(Exception):
    """Every attempt failed with a retryable error; ``last_error`` holds the final one."""

    def __init__(self, attempts: int, last_error: BaseException):
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(f"gave up after {attempts} attempt(s): {last_error}")


def bounded_retry(
    operation: Callable[[int], T],
    is_retryable: Callable[[BaseException], bool],
    max_attempts: int = 5,
    backoff: float = 1.0,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """Run ``operation(attempt)`` until it succeeds or a non-retryable error escapes.

    Non-retryable errors propagate immediately and never consume the remaining budget.
    When every attempt fails with a retryable error, ``RetryExhausted`` is raised from
    the last one.
    """
    if max_attempts < 1:
        raise ValueError("max_attempts must be >= 1")
    attempt = 1
    while True:
        try:
            return operation(attempt)
        except Exception as e:
            if not is_retryable(e):
                raise
            if attempt >= max_attempts:
                raise RetryExhausted(max_attempts, e) from e
            LOG.warning("Attempt %d/%d failed with a transient error (%s); retrying in %ss.",
                        attempt, max_attempts, e, backoff)
        sleep(backoff)
        attempt += 1


def bounded_poll(
    probe: Callable[[int], T],
    is_done: Callable[[T], bool],
    interval: float = 3.0,
    timeout: float = 120.0,
    max_polls: Optional[int] = None,
    on_timeout: Optional[Callable[[], BaseException]] = None,
    clock: Callable[[], float] = time.monotonic,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """Call ``probe(poll_number)`` every ``interval`` seconds until ``is_done`` says so.

    The deadline is computed once, before the first probe. Reaching the deadline (or
    ``max_polls``) raises ``on_timeout()``, or ``TimeoutError`` when no factory is given.
    """
    deadline = clock() + timeout
    polls = 0
    while True:
        polls += 1
        result = probe(polls)
        if is_done(result):
            return result
        if max_polls is not None and polls >= max_polls:
            break
        if clock() + interval > deadline:
            break
        sleep(interval)
    if on_timeout is not None:
        raise on_timeout()
    raise TimeoutError(f"polling did not finish within {timeout}s ({polls} poll(s))")
