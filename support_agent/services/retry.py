"""
Retry state machine for calls to the upstream chat-completion API.

A call moves through::

    Attempting(n) --success--> Succeeded
    Attempting(n) --retriable failure, n < max--> RetriableFailure(delay) --> Attempting(n + 1)
    Attempting(n) --fatal failure or n == max--> FatalFailure

`RetryPolicy` decides the transitions and computes the backoff delay, so the
termination and backoff rules can be tested without performing any I/O.
"""
import random
from dataclasses import dataclass
from typing import Any, Callable, Union

__all__ = [
    "Attempting",
    "Succeeded",
    "RetriableFailure",
    "FatalFailure",
    "RetryState",
    "RetryPolicy",
]


@dataclass(frozen=True)
class Attempting:
    attempt: int


@dataclass(frozen=True)
class Succeeded:
    attempt: int
    value: Any


@dataclass(frozen=True)
class RetriableFailure:
    attempt: int
    delay: float
    error: BaseException

    def next(self) -> Attempting:
        return Attempting(self.attempt + 1)


@dataclass(frozen=True)
class FatalFailure:
    attempt: int
    error: BaseException


RetryState = Union[Attempting, Succeeded, RetriableFailure, FatalFailure]


@dataclass(frozen=True)
class RetryPolicy:
    """
    Bounded retries with capped exponential backoff plus random jitter.

    Args:
        max_attempts: Total attempts including the first one.
        base_delay: Delay in seconds before the second attempt (before jitter).
        max_delay: Cap applied to the exponential part of the delay.
        jitter: Upper bound of the uniform random delay added to every backoff.
        is_retriable: Classifies a failure as transient.
        rng: Source of uniform numbers in [0, 1); injectable for tests.
    """

    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 10.0
    jitter: float = 0.5
    is_retriable: Callable[[BaseException], bool] = lambda error: False
    rng: Callable[[], float] = random.random

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1.")

    def start(self) -> Attempting:
        return Attempting(1)

    def backoff(self, attempt: int) -> float:
        """Delay after failed attempt number `attempt` (1-based)."""
        delay = min(self.base_delay * (2 ** (attempt - 1)), self.max_delay)
        return delay + self.rng() * self.jitter

    def on_success(self, state: Attempting, value: Any) -> Succeeded:
        return Succeeded(state.attempt, value)

    def on_failure(self, state: Attempting, error: BaseException) -> Union[RetriableFailure, FatalFailure]:
        if self.is_retriable(error) and state.attempt < self.max_attempts:
            return RetriableFailure(state.attempt, self.backoff(state.attempt), error)
        return FatalFailure(state.attempt, error)
