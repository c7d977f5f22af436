"""Common plumbing for resource handlers.

A handler owns the create/read/update/delete sequence of one resource kind.
It talks to AWS through the client adapters, waits through the state
poller and writes every observation into the StateStore.
"""

from __future__ import annotations

import logging
import time
from abc import ABC, abstractmethod
from collections.abc import Callable
from typing import Any

from ..clients import NotFoundError, RemoteClients
from ..config import Config
from ..diff import changed_fields
from ..models import BaseSpec
from ..state_store import ResourceRecord, StateStore
from ..waiter import RefreshResult, StateChangeConf, wait_for_state

logger = logging.getLogger(__name__)

# Tag keys managed by AWS itself, never diffed or written
AWS_RESERVED_TAG_PREFIX = "aws:"


class ResourceHandler(ABC):
    """Base class for resource handlers."""

    kind: str = ""
    spec_class: type[BaseSpec] = BaseSpec

    def __init__(
        self,
        config: Config,
        clients: RemoteClients,
        store: StateStore,
        *,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._config = config
        self._clients = clients
        self._store = store
        self._sleep = sleep
        self._clock = clock

    @abstractmethod
    def create(self, address: str, spec: Any) -> dict[str, Any]:
        """Create the resource and return its observed attributes."""

    @abstractmethod
    def read(self, record: ResourceRecord) -> dict[str, Any] | None:
        """Refresh a record. Returns None (and drops the record) when the resource is gone."""

    @abstractmethod
    def update(
        self, address: str, spec: Any, record: ResourceRecord, changed: set[str]
    ) -> dict[str, Any]:
        """Patch the changed fields in place and return the observed attributes."""

    @abstractmethod
    def delete(self, record: ResourceRecord) -> None:
        """Delete the resource and drop its record."""

    def changes(self, spec: BaseSpec, record: ResourceRecord) -> set[str]:
        """Fields whose desired value differs from the last observation."""
        return changed_fields(spec.to_attributes(), record.attributes, spec.diff_fields)

    def requires_replacement(self, spec: BaseSpec, record: ResourceRecord) -> set[str]:
        """Changed fields that cannot be patched in place."""
        desired = spec.to_attributes()
        return {
            name
            for name in spec.replace_fields
            if name in record.attributes and desired.get(name) != record.attributes.get(name)
        }

    def import_resource(self, address: str, handle: str) -> dict[str, Any]:
        """Adopt an existing remote resource under the given address."""
        record = self._store.save(address, self.kind, handle)
        attributes = self.read(record)
        if attributes is None:
            raise NotFoundError(
                f"Cannot import {self.kind} {handle}: resource does not exist",
                operation="Import",
                handle=handle,
            )
        return attributes

    def _reread(self, address: str, operation: str) -> dict[str, Any]:
        """Final read after a mutation. The resource must still exist."""
        record = self._store.get(address)
        attributes = self.read(record) if record is not None else None
        if attributes is None:
            raise NotFoundError(
                f"{self.kind} {address} disappeared after {operation}",
                operation=operation,
                handle=record.handle if record is not None else None,
            )
        return attributes

    def _wait(
        self,
        *,
        handle: str,
        refresh: Callable[[], RefreshResult],
        pending: set[str],
        target: set[str],
        timeout_seconds: int,
        failure: set[str] | None = None,
        not_found_state: str | None = None,
    ) -> Any:
        conf = StateChangeConf(
            pending=frozenset(pending),
            target=frozenset(target),
            refresh=refresh,
            timeout_seconds=timeout_seconds,
            min_timeout_seconds=self._config.poll_min_timeout_seconds,
            max_interval_seconds=self._config.poll_max_interval_seconds,
            not_found_state=not_found_state,
            handle=handle,
            description=self.kind,
        )
        if failure is not None:
            conf.failure = frozenset(failure)
        logger.info(
            "Waiting for %s to reach %s",
            self.kind,
            sorted(target),
            extra={"handle": handle, "timeout_seconds": timeout_seconds},
        )
        return wait_for_state(conf, sleep=self._sleep, clock=self._clock)

    def _filter_tags(self, tags: dict[str, str]) -> dict[str, str]:
        prefixes = (AWS_RESERVED_TAG_PREFIX, *self._config.ignore_tag_prefixes)
        return {k: v for k, v in tags.items() if not k.startswith(prefixes)}

    def _forget(self, record: ResourceRecord, reason: str) -> None:
        logger.warning(
            "%s %s not found, removing from state",
            self.kind,
            record.handle,
            extra={"address": record.address, "handle": record.handle, "reason": reason},
        )
        self._store.delete(record.address)
