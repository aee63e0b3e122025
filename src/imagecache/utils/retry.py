# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

import time
from typing import Callable, TypeVar

T = TypeVar("T")


class RetryError(RuntimeError):
    def __init__(self, message: str, attempts: int):
        super().__init__(message)
        self.attempts = attempts


def call_with_retry(
    fn: Callable[[], T],
    *,
    attempts: int,
    delay: float,
    retry_on: tuple[type[Exception], ...] = (Exception,),
    on_retry: Callable[[int, Exception], None] | None = None,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """
    Call ``fn`` until it returns, at most ``attempts`` times.

    attempts: total number of calls, first one included
    delay: fixed seconds between attempts
    retry_on: exception types to retry
    on_retry: callback(attempt, exception), runs after every failed attempt
    sleep: injectable for tests
    """
    last_exc = None
    for attempt in range(1, attempts + 1):
        try:
            return fn()
        except retry_on as exc:
            last_exc = exc
            if on_retry:
                on_retry(attempt, exc)
            if attempt == attempts:
                break
            sleep(delay)
    name = getattr(fn, "__name__", "call")
    raise RetryError(f"{name} failed after {attempts} attempts", attempts) from last_exc


