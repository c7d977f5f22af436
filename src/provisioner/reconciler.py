"""Core reconciliation of declared resources against AWS.

For every declared resource, in declaration order:
1. No local record: create it
2. Record present: read the live resource (gone remotely: create again)
3. A replace-only field changed: delete, then create
4. Otherwise diff desired against observed and update only what changed

Each resource is reconciled independently. A failure is recorded in the
result and logged with the resource handle and last observed state; the
remaining resources are still processed.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

import boto3

from .clients import RemoteClients, RemoteError, create_session
from .config import Config
from .resources.base import ResourceHandler
from .resources.s3_object_copy import S3ObjectCopyHandler
from .resources.vpc_endpoint_service import VpcEndpointServiceHandler
from .spec_loader import ResourceManifest
from .state_store import FileStateStore, ResourceRecord, StateStore, StateStoreError
from .waiter import WaitError

logger = logging.getLogger(__name__)

HANDLER_CLASSES: dict[str, type[ResourceHandler]] = {
    VpcEndpointServiceHandler.kind: VpcEndpointServiceHandler,
    S3ObjectCopyHandler.kind: S3ObjectCopyHandler,
}

# Failures isolated to a single resource
RESOURCE_ERRORS = (RemoteError, WaitError, StateStoreError)


class Action(str, Enum):
    """What reconciliation does (or did) to a resource."""

    CREATE = "create"
    UPDATE = "update"
    REPLACE = "replace"
    DELETE = "delete"
    NOOP = "noop"
    READ = "read"
    IMPORT = "import"


@dataclass
class PlannedAction:
    """A pending change to one resource."""

    address: str
    kind: str
    action: Action
    handle: str | None = None
    changed: tuple[str, ...] = ()
    manifest: ResourceManifest | None = field(default=None, repr=False)


@dataclass
class ResourceOutcome:
    """Result of reconciling one resource."""

    address: str
    kind: str
    action: Action
    handle: str | None = None
    changed: tuple[str, ...] = ()
    attributes: dict[str, Any] | None = field(default=None, repr=False)
    error: Exception | None = None

    @property
    def success(self) -> bool:
        return self.error is None


@dataclass
class ApplyResult:
    """Result of a reconciliation pass."""

    dry_run: bool = False
    start_time: datetime = field(default_factory=lambda: datetime.now(UTC))
    end_time: datetime | None = None
    outcomes: list[ResourceOutcome] = field(default_factory=list)

    @property
    def duration_seconds(self) -> float:
        """Calculate duration in seconds."""
        if self.end_time is None:
            return 0.0
        return (self.end_time - self.start_time).total_seconds()

    @property
    def success(self) -> bool:
        """True when every resource reconciled without error."""
        return all(outcome.success for outcome in self.outcomes)

    @property
    def failed(self) -> list[ResourceOutcome]:
        return [outcome for outcome in self.outcomes if not outcome.success]

    def count(self, action: Action) -> int:
        return sum(1 for o in self.outcomes if o.action is action and o.success)


class Reconciler:
    """Drives resource handlers to converge AWS on the declared manifests.

    Args:
        config: Validated operator configuration.
        store: Local state; defaults to the JSON file at config.state_file.
        session: boto3 session; created from config when omitted.
        clients: Prebuilt clients, overriding session.
        sleep: Injected into the state poller.
        clock: Injected into the state poller.
    """

    def __init__(
        self,
        config: Config,
        store: StateStore | None = None,
        session: boto3.Session | None = None,
        *,
        clients: RemoteClients | None = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._config = config
        self._store = store if store is not None else FileStateStore(config.state_file)
        if clients is None:
            clients = RemoteClients.from_session(session or create_session(config))
        self._handlers: dict[str, ResourceHandler] = {
            kind: handler_class(config, clients, self._store, sleep=sleep, clock=clock)
            for kind, handler_class in HANDLER_CLASSES.items()
        }

    @property
    def config(self) -> Config:
        """Get the reconciler configuration."""
        return self._config

    @property
    def store(self) -> StateStore:
        return self._store

    def handler(self, kind: str) -> ResourceHandler:
        """Get the handler for a resource kind.

        Raises:
            StateStoreError: If no handler manages the kind.
        """
        handler = self._handlers.get(kind)
        if handler is None:
            raise StateStoreError(f"No handler for resource kind '{kind}'")
        return handler

    # -------------------------------------------------------------------------
    # Planning
    # -------------------------------------------------------------------------

    def plan(self, manifests: Iterable[ResourceManifest]) -> list[PlannedAction]:
        """Compute what apply would do, refreshing local state along the way.

        Issues read calls only.
        """
        manifests = list(manifests)
        actions = [self._plan_resource(manifest) for manifest in manifests]
        actions.extend(self._plan_orphans(manifests))
        return actions

    def _plan_resource(self, manifest: ResourceManifest) -> PlannedAction:
        address = manifest.address
        handler = self.handler(manifest.kind)

        record = self._store.get(address)
        if record is not None and handler.read(record) is not None:
            record = self._store.get(address)
        else:
            record = None

        if record is None:
            return PlannedAction(address, manifest.kind, Action.CREATE, manifest=manifest)

        if replace := handler.requires_replacement(manifest.spec, record):
            return PlannedAction(
                address,
                manifest.kind,
                Action.REPLACE,
                handle=record.handle,
                changed=tuple(sorted(replace)),
                manifest=manifest,
            )

        changed = handler.changes(manifest.spec, record)
        return PlannedAction(
            address,
            manifest.kind,
            Action.UPDATE if changed else Action.NOOP,
            handle=record.handle,
            changed=tuple(sorted(changed)),
            manifest=manifest,
        )

    def _plan_orphans(self, manifests: list[ResourceManifest]) -> list[PlannedAction]:
        declared = {manifest.address for manifest in manifests}
        orphans = sorted(
            (r for r in self._store.records() if r.address not in declared),
            key=lambda r: r.address,
        )
        if not self._config.prune:
            for record in orphans:
                logger.warning(
                    "Recorded resource is no longer declared, leaving it in place",
                    extra={"address": record.address, "handle": record.handle},
                )
            return []
        return [PlannedAction(r.address, r.kind, Action.DELETE, handle=r.handle) for r in orphans]

    # -------------------------------------------------------------------------
    # Apply
    # -------------------------------------------------------------------------

    def apply(self, manifests: Iterable[ResourceManifest]) -> ApplyResult:
        """Reconcile every declared resource and return per-resource outcomes."""
        manifests = list(manifests)
        result = ApplyResult(dry_run=self._config.dry_run)

        logger.info(
            "Starting reconciliation",
            extra={
                "resources": len(manifests),
                "dry_run": self._config.dry_run,
                "prune": self._config.prune,
            },
        )

        for manifest in manifests:
            try:
                planned = self._plan_resource(manifest)
            except RESOURCE_ERRORS as e:
                result.outcomes.append(
                    self._failed(manifest.address, manifest.kind, Action.READ, e)
                )
                continue
            result.outcomes.append(self._execute(planned))

        for planned in self._plan_orphans(manifests):
            result.outcomes.append(self._execute(planned))

        result.end_time = datetime.now(UTC)
        self._log_result(result)
        return result

    def _execute(self, planned: PlannedAction) -> ResourceOutcome:
        outcome = ResourceOutcome(
            planned.address,
            planned.kind,
            planned.action,
            handle=planned.handle,
            changed=planned.changed,
        )

        if planned.action is Action.NOOP:
            logger.debug("No changes", extra={"address": planned.address})
            if self._config.dry_run:
                return outcome
            try:
                self._sync_state_fields(planned)
            except RESOURCE_ERRORS as e:
                return self._failed(planned.address, planned.kind, planned.action, e)
            return outcome

        if self._config.dry_run:
            logger.info(
                "Dry run: would %s %s",
                planned.action.value,
                planned.address,
                extra={"address": planned.address, "changed": list(planned.changed)},
            )
            return outcome

        handler = self.handler(planned.kind)
        try:
            match planned.action:
                case Action.CREATE:
                    outcome.attributes = handler.create(planned.address, planned.manifest.spec)
                case Action.UPDATE:
                    outcome.attributes = handler.update(
                        planned.address,
                        planned.manifest.spec,
                        self._require_record(planned.address),
                        set(planned.changed),
                    )
                case Action.REPLACE:
                    logger.info(
                        "Replacing resource",
                        extra={"address": planned.address, "changed": list(planned.changed)},
                    )
                    handler.delete(self._require_record(planned.address))
                    outcome.attributes = handler.create(planned.address, planned.manifest.spec)
                case Action.DELETE:
                    handler.delete(self._require_record(planned.address))
        except RESOURCE_ERRORS as e:
            return self._failed(planned.address, planned.kind, planned.action, e, planned.changed)

        record = self._store.get(planned.address)
        if record is not None:
            outcome.handle = record.handle
        return outcome

    def _sync_state_fields(self, planned: PlannedAction) -> None:
        """Record local-only fields that changed without touching AWS."""
        record = self._store.get(planned.address)
        if record is None or planned.manifest is None:
            return
        spec = planned.manifest.spec
        desired = {name: getattr(spec, name) for name in spec.state_fields}
        stale = sorted(
            name for name, value in desired.items() if record.attributes.get(name) != value
        )
        if not stale:
            return
        self._store.save(
            record.address, record.kind, record.handle, {**record.attributes, **desired}
        )
        logger.info(
            "Updated local state fields",
            extra={"address": record.address, "handle": record.handle, "changed": stale},
        )

    # -------------------------------------------------------------------------
    # Refresh, destroy, import
    # -------------------------------------------------------------------------

    def refresh(self) -> ApplyResult:
        """Read every recorded resource, dropping the ones that no longer exist."""
        result = ApplyResult()
        for record in sorted(self._store.records(), key=lambda r: r.address):
            outcome = ResourceOutcome(
                record.address, record.kind, Action.READ, handle=record.handle
            )
            try:
                outcome.attributes = self.handler(record.kind).read(record)
            except RESOURCE_ERRORS as e:
                outcome = self._failed(record.address, record.kind, Action.READ, e)
            result.outcomes.append(outcome)
        result.end_time = datetime.now(UTC)
        self._log_result(result)
        return result

    def destroy(self, addresses: Iterable[str] | None = None) -> ApplyResult:
        """Delete recorded resources (all of them when no addresses are given)."""
        result = ApplyResult(dry_run=self._config.dry_run)
        if addresses is None:
            targets = sorted(r.address for r in self._store.records())
        else:
            targets = list(addresses)

        for address in targets:
            record = self._store.get(address)
            if record is None:
                result.outcomes.append(
                    self._failed(
                        address,
                        address.partition(".")[0],
                        Action.DELETE,
                        StateStoreError(f"No recorded resource at {address}"),
                    )
                )
                continue
            result.outcomes.append(
                self._execute(
                    PlannedAction(address, record.kind, Action.DELETE, handle=record.handle)
                )
            )

        result.end_time = datetime.now(UTC)
        self._log_result(result)
        return result

    def import_resource(self, kind: str, name: str, handle: str) -> ResourceOutcome:
        """Start managing an existing remote resource."""
        address = f"{kind}.{name}"
        outcome = ResourceOutcome(address, kind, Action.IMPORT, handle=handle)
        try:
            outcome.attributes = self.handler(kind).import_resource(address, handle)
        except RESOURCE_ERRORS as e:
            # Never keep a record for something that could not be read
            record = self._store.get(address)
            if record is not None and record.handle == handle and not record.attributes:
                self._store.delete(address)
            return self._failed(address, kind, Action.IMPORT, e)
        logger.info("Imported resource", extra={"address": address, "handle": handle})
        return outcome

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    def _require_record(self, address: str) -> ResourceRecord:
        record = self._store.get(address)
        if record is None:
            raise StateStoreError(f"No recorded resource at {address}")
        return record

    def _failed(
        self,
        address: str,
        kind: str,
        action: Action,
        error: Exception,
        changed: tuple[str, ...] = (),
    ) -> ResourceOutcome:
        record = self._store.get(address)
        handle = getattr(error, "handle", None) or (record.handle if record else None)
        logger.error(
            "Failed to %s %s: %s",
            action.value,
            address,
            error,
            extra={
                "address": address,
                "handle": handle,
                "last_state": getattr(error, "last_state", None),
                "error_type": type(error).__name__,
            },
        )
        return ResourceOutcome(address, kind, action, handle=handle, changed=changed, error=error)

    def _log_result(self, result: ApplyResult) -> None:
        """Log reconciliation result with structured data."""
        extra: dict[str, Any] = {
            "duration_seconds": result.duration_seconds,
            "dry_run": result.dry_run,
            "resources": len(result.outcomes),
            "failed": [o.address for o in result.failed],
        }
        for action in Action:
            if count := result.count(action):
                extra[action.value] = count

        if result.failed:
            logger.error("Reconciliation finished with errors", extra=extra)
        else:
            logger.info("Reconciliation result", extra=extra)
