"""Polling for asynchronous resources to reach a target state.

A refresh callable is invoked immediately and then on a backing-off
interval. Each returned label is classified as pending, target, failure
or unknown. Only pending labels keep the loop going.

Three outcomes are kept apart so callers can react differently:
- UnexpectedStateError: the resource reported a failure (or unknown) label.
  It will not heal by itself, so there is no retry.
- WaitTimeoutError: the budget ran out while the resource was still pending.
  Waiting again with a fresh budget may succeed.
- RemoteError (from clients): the refresh call itself failed. Propagated as-is.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from .clients import NotFoundError
from .config import DEFAULT_NOT_FOUND_CHECKS

logger = logging.getLogger(__name__)

DEFAULT_FAILURE_STATES: frozenset[str] = frozenset({"failed"})

# Shortest pause between refreshes, whatever the configured bounds
MIN_POLL_WAIT_SECONDS = 1


class StateClass(str, Enum):
    """Classification of a label returned by a refresh."""

    PENDING = "pending"
    TARGET = "target"
    FAILURE = "failure"
    UNKNOWN = "unknown"


class WaitError(Exception):
    """Base class for polling failures."""

    def __init__(self, message: str, *, handle: str | None, last_state: str | None) -> None:
        super().__init__(message)
        self.handle = handle
        self.last_state = last_state


class UnexpectedStateError(WaitError):
    """The resource reached a failure label or a label outside pending/target."""

    def __init__(
        self,
        message: str,
        *,
        handle: str | None,
        last_state: str | None,
        expected: tuple[str, ...] = (),
        reason: str | None = None,
    ) -> None:
        super().__init__(message, handle=handle, last_state=last_state)
        self.expected = expected
        self.reason = reason


class WaitTimeoutError(WaitError):
    """The resource did not reach a target label within the budget."""

    def __init__(
        self,
        message: str,
        *,
        handle: str | None,
        last_state: str | None,
        timeout_seconds: float,
    ) -> None:
        super().__init__(message, handle=handle, last_state=last_state)
        self.timeout_seconds = timeout_seconds


class ResourceGoneError(WaitError):
    """The resource kept reporting not-found while we were not waiting for deletion."""

    pass


@dataclass
class RefreshResult:
    """One observation of a remote resource.

    Attributes:
        snapshot: Raw API representation, None when the resource is gone.
        state: Lifecycle label reported by the service.
        error: Optional explanation the service attached to the label.
    """

    snapshot: Any
    state: str
    error: str | None = None


@dataclass
class StateChangeConf:
    """Parameters of a single wait."""

    pending: frozenset[str]
    target: frozenset[str]
    refresh: Callable[[], RefreshResult]
    timeout_seconds: float
    min_timeout_seconds: float = 5.0
    max_interval_seconds: float = 10.0
    poll_interval_seconds: float | None = None
    failure: frozenset[str] = field(default_factory=lambda: DEFAULT_FAILURE_STATES)
    # Label a NotFoundError from refresh stands for (e.g. "deleted")
    not_found_state: str | None = None
    not_found_checks: int = DEFAULT_NOT_FOUND_CHECKS
    handle: str | None = None
    description: str = "resource"

    def classify(self, state: str) -> StateClass:
        """Classify a label. Failure labels win over every other set."""
        if state in self.failure:
            return StateClass.FAILURE
        if state in self.target:
            return StateClass.TARGET
        if state in self.pending:
            return StateClass.PENDING
        return StateClass.UNKNOWN


def _first_interval(conf: StateChangeConf) -> float:
    if conf.poll_interval_seconds is not None:
        return max(conf.poll_interval_seconds, MIN_POLL_WAIT_SECONDS)
    return max(conf.min_timeout_seconds, MIN_POLL_WAIT_SECONDS)


def _next_interval(conf: StateChangeConf, current: float) -> float:
    if conf.poll_interval_seconds is not None:
        return max(conf.poll_interval_seconds, MIN_POLL_WAIT_SECONDS)
    return min(
        max(current * 2, conf.min_timeout_seconds, MIN_POLL_WAIT_SECONDS),
        max(conf.max_interval_seconds, MIN_POLL_WAIT_SECONDS),
    )


def wait_for_state(
    conf: StateChangeConf,
    *,
    sleep: Callable[[float], None] = time.sleep,
    clock: Callable[[], float] = time.monotonic,
) -> Any:
    """Block until the refreshed label is in conf.target.

    Returns:
        The snapshot from the refresh that reached the target
        (None when not-found counted as the target).

    Raises:
        UnexpectedStateError: Failure or unknown label observed.
        WaitTimeoutError: conf.timeout_seconds elapsed while pending.
        ResourceGoneError: Too many consecutive not-found refreshes.
        RemoteError: The refresh call failed.
    """
    deadline = clock() + conf.timeout_seconds
    interval = _first_interval(conf)
    last_state: str | None = None
    not_found_count = 0
    expected = tuple(sorted(conf.target))

    while True:
        try:
            result = conf.refresh()
        except NotFoundError:
            if conf.not_found_state is not None and conf.not_found_state in conf.target:
                logger.debug(
                    "%s not found, treating as %s",
                    conf.description,
                    conf.not_found_state,
                    extra={"handle": conf.handle},
                )
                return None
            not_found_count += 1
            if not_found_count > conf.not_found_checks:
                raise ResourceGoneError(
                    f"{conf.description} {conf.handle} disappeared while waiting for "
                    f"state {list(expected)} ({not_found_count} consecutive not-found refreshes)",
                    handle=conf.handle,
                    last_state=last_state,
                ) from None
            result = None
        else:
            not_found_count = 0
            last_state = result.state

        if result is not None:
            state_class = conf.classify(result.state)
            logger.debug(
                "Refreshed %s state",
                conf.description,
                extra={
                    "handle": conf.handle,
                    "state": result.state,
                    "state_class": state_class.value,
                },
            )

            if state_class is StateClass.TARGET:
                return result.snapshot

            if state_class in (StateClass.FAILURE, StateClass.UNKNOWN):
                message = (
                    f"{conf.description} {conf.handle} reached unexpected state "
                    f"'{result.state}', wanted {list(expected)}"
                )
                if result.error:
                    message += f": {result.error}"
                raise UnexpectedStateError(
                    message,
                    handle=conf.handle,
                    last_state=result.state,
                    expected=expected,
                    reason=result.error,
                )

        remaining = deadline - clock()
        if remaining <= 0:
            raise WaitTimeoutError(
                f"timeout while waiting for {conf.description} {conf.handle} to reach "
                f"{list(expected)} (last state: '{last_state}', timeout: {conf.timeout_seconds}s)",
                handle=conf.handle,
                last_state=last_state,
                timeout_seconds=conf.timeout_seconds,
            )

        sleep(min(interval, remaining))
        interval = _next_interval(conf, interval)
