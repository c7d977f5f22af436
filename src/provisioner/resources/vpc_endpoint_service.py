"""VPC Endpoint Service configuration lifecycle.

Create and configuration changes are asynchronous: the service passes
through Pending before it is Available, and through Deleting before it is
Deleted. Principal and tag changes are applied synchronously.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Any

from ..clients import NotFoundError, RemoteClients, RemoteError, VpcEndpointServiceClient
from ..config import Config, FailedResourcePolicy
from ..diff import apply_delta, compute_delta, compute_tag_delta
from ..models import VpcEndpointServiceSpec
from ..state_store import ResourceRecord, StateStore
from ..waiter import RefreshResult, UnexpectedStateError, WaitError
from .base import ResourceHandler

logger = logging.getLogger(__name__)

# ServiceState values reported by EC2
STATE_PENDING = "Pending"
STATE_AVAILABLE = "Available"
STATE_DELETING = "Deleting"
STATE_DELETED = "Deleted"
STATE_FAILED = "Failed"

# A service in one of these states is treated as no longer existing
GONE_STATES = frozenset({STATE_DELETED, STATE_DELETING, STATE_FAILED})

TAG_RESOURCE_TYPE = "vpc-endpoint-service"


def _flatten_private_dns_configuration(value: dict[str, Any] | None) -> dict[str, Any] | None:
    # The API returns an empty structure when no private DNS name is configured
    if not value:
        return None
    return {
        "name": value.get("Name"),
        "state": value.get("State"),
        "type": value.get("Type"),
        "value": value.get("Value"),
    }


class VpcEndpointServiceHandler(ResourceHandler):
    """Handler for VpcEndpointService resources."""

    kind = VpcEndpointServiceSpec.kind
    spec_class = VpcEndpointServiceSpec

    def __init__(
        self, config: Config, clients: RemoteClients, store: StateStore, **kwargs: Any
    ) -> None:
        super().__init__(config, clients, store, **kwargs)
        self._service = VpcEndpointServiceClient(clients.ec2)
        self._account_id: str | None = None

    # -------------------------------------------------------------------------
    # Create
    # -------------------------------------------------------------------------

    def create(self, address: str, spec: VpcEndpointServiceSpec) -> dict[str, Any]:
        request: dict[str, Any] = {"AcceptanceRequired": spec.acceptance_required}
        if spec.gateway_load_balancer_arns:
            request["GatewayLoadBalancerArns"] = list(spec.gateway_load_balancer_arns)
        if spec.network_load_balancer_arns:
            request["NetworkLoadBalancerArns"] = list(spec.network_load_balancer_arns)
        if spec.private_dns_name:
            request["PrivateDnsName"] = spec.private_dns_name
        if tags := self._filter_tags(spec.tags):
            request["TagSpecifications"] = [
                {
                    "ResourceType": TAG_RESOURCE_TYPE,
                    "Tags": [{"Key": k, "Value": v} for k, v in sorted(tags.items())],
                }
            ]

        handle = self._service.create(request)

        # Persist before waiting so an interrupted wait never orphans the service
        self._store.save(address, self.kind, handle)
        logger.info(
            "Created VPC Endpoint Service configuration",
            extra={"address": address, "handle": handle},
        )

        try:
            self._wait_available(handle, self._config.timeouts.create)
        except UnexpectedStateError as e:
            self._handle_failed(address, handle, e)
            raise

        if spec.allowed_principals:
            self._service.modify_permissions(handle, add=spec.allowed_principals)

        return self._reread(address, "Create")

    def _handle_failed(self, address: str, handle: str, error: UnexpectedStateError) -> None:
        if self._config.failed_resource_policy is not FailedResourcePolicy.DELETE:
            logger.error(
                "VPC Endpoint Service reached a failed state, retaining it",
                extra={"address": address, "handle": handle, "state": error.last_state},
            )
            return

        logger.warning(
            "VPC Endpoint Service reached a failed state, deleting it",
            extra={"address": address, "handle": handle, "state": error.last_state},
        )
        try:
            self._delete_handle(handle)
        except (RemoteError, WaitError) as cleanup_error:
            logger.error(
                "Failed to delete failed VPC Endpoint Service: %s",
                cleanup_error,
                extra={"address": address, "handle": handle},
            )
            return
        self._store.delete(address)

    # -------------------------------------------------------------------------
    # Read
    # -------------------------------------------------------------------------

    def read(self, record: ResourceRecord) -> dict[str, Any] | None:
        handle = record.handle
        try:
            configuration = self._service.describe(handle)
        except NotFoundError:
            self._forget(record, "not found")
            return None

        state = configuration.get("ServiceState")
        if state in GONE_STATES:
            self._forget(record, f"state {state}")
            return None

        principals = self._service.describe_permissions(handle)
        attributes = self._flatten(handle, configuration, principals)
        self._store.save(record.address, self.kind, handle, attributes)
        return attributes

    def _flatten(
        self, handle: str, configuration: dict[str, Any], principals: list[str]
    ) -> dict[str, Any]:
        service_types = configuration.get("ServiceType") or [{}]
        tags = {t["Key"]: t["Value"] for t in configuration.get("Tags") or []}
        return {
            "id": handle,
            "arn": self._arn(handle),
            "acceptance_required": configuration.get("AcceptanceRequired"),
            "allowed_principals": sorted(principals),
            "availability_zones": sorted(configuration.get("AvailabilityZones") or []),
            "base_endpoint_dns_names": sorted(configuration.get("BaseEndpointDnsNames") or []),
            "gateway_load_balancer_arns": sorted(
                configuration.get("GatewayLoadBalancerArns") or []
            ),
            "manages_vpc_endpoints": configuration.get("ManagesVpcEndpoints"),
            "network_load_balancer_arns": sorted(
                configuration.get("NetworkLoadBalancerArns") or []
            ),
            "private_dns_name": configuration.get("PrivateDnsName"),
            "private_dns_name_configuration": _flatten_private_dns_configuration(
                configuration.get("PrivateDnsNameConfiguration")
            ),
            "service_name": configuration.get("ServiceName"),
            "service_type": service_types[0].get("ServiceType"),
            "state": configuration.get("ServiceState"),
            "tags": self._filter_tags(tags),
        }

    def _arn(self, handle: str) -> str:
        if self._account_id is None:
            self._account_id = self._clients.account_id()
        return (
            f"arn:{self._config.partition}:ec2:{self._config.region}:"
            f"{self._account_id}:vpc-endpoint-service/{handle}"
        )

    # -------------------------------------------------------------------------
    # Update
    # -------------------------------------------------------------------------

    def changes(self, spec: VpcEndpointServiceSpec, record: ResourceRecord) -> set[str]:
        changed = super().changes(spec, record)
        # An empty private DNS name asks for removal, which is a no-op when none is set
        if spec.private_dns_name == "" and not record.attributes.get("private_dns_name"):
            changed.discard("private_dns_name")
        return changed

    def update(
        self,
        address: str,
        spec: VpcEndpointServiceSpec,
        record: ResourceRecord,
        changed: set[str],
    ) -> dict[str, Any]:
        handle = record.handle
        observed = record.attributes

        if changed & set(spec.configuration_fields):
            patch = self._configuration_patch(spec, observed, changed)
            if patch:
                self._service.modify_configuration(handle, patch)
                self._wait_available(handle, self._config.timeouts.update)

        if "allowed_principals" in changed:
            delta = compute_delta(spec.allowed_principals, observed.get("allowed_principals"))
            self._service.modify_permissions(handle, add=delta.to_add, remove=delta.to_remove)

        if "tags" in changed:
            tag_delta = compute_tag_delta(observed.get("tags"), self._filter_tags(spec.tags))
            if not tag_delta.is_empty:
                self._service.update_tags(handle, tag_delta.to_set, tag_delta.to_remove)

        logger.info(
            "Updated VPC Endpoint Service configuration",
            extra={"address": address, "handle": handle, "changed": sorted(changed)},
        )
        return self._reread(address, "Update")

    def _configuration_patch(
        self, spec: VpcEndpointServiceSpec, observed: dict[str, Any], changed: set[str]
    ) -> dict[str, Any]:
        patch: dict[str, Any] = {}
        if "acceptance_required" in changed:
            patch["AcceptanceRequired"] = spec.acceptance_required
        if "private_dns_name" in changed:
            if spec.private_dns_name:
                patch["PrivateDnsName"] = spec.private_dns_name
            else:
                patch["RemovePrivateDnsName"] = True
        if "gateway_load_balancer_arns" in changed:
            apply_delta(
                patch,
                compute_delta(
                    spec.gateway_load_balancer_arns, observed.get("gateway_load_balancer_arns")
                ),
                "AddGatewayLoadBalancerArns",
                "RemoveGatewayLoadBalancerArns",
            )
        if "network_load_balancer_arns" in changed:
            apply_delta(
                patch,
                compute_delta(
                    spec.network_load_balancer_arns, observed.get("network_load_balancer_arns")
                ),
                "AddNetworkLoadBalancerArns",
                "RemoveNetworkLoadBalancerArns",
            )
        return patch

    # -------------------------------------------------------------------------
    # Delete
    # -------------------------------------------------------------------------

    def delete(self, record: ResourceRecord) -> None:
        self._delete_handle(record.handle)
        self._store.delete(record.address)
        logger.info(
            "Deleted VPC Endpoint Service configuration",
            extra={"address": record.address, "handle": record.handle},
        )

    def _delete_handle(self, handle: str) -> None:
        try:
            self._service.delete(handle)
        except NotFoundError:
            logger.debug("VPC Endpoint Service already gone", extra={"handle": handle})
            return

        self._wait(
            handle=handle,
            refresh=self._refresh(handle),
            pending={STATE_AVAILABLE, STATE_DELETING},
            target={STATE_DELETED},
            timeout_seconds=self._config.timeouts.delete,
            failure={STATE_FAILED},
            not_found_state=STATE_DELETED,
        )

    # -------------------------------------------------------------------------
    # Polling
    # -------------------------------------------------------------------------

    def _refresh(self, handle: str) -> Callable[[], RefreshResult]:
        def refresh() -> RefreshResult:
            configuration = self._service.describe(handle)
            state = configuration.get("ServiceState", "")
            error = None
            if state == STATE_FAILED:
                error = "VPC Endpoint Service is in a failed state"
            return RefreshResult(configuration, state, error)

        return refresh

    def _wait_available(self, handle: str, timeout_seconds: int) -> dict[str, Any]:
        return self._wait(
            handle=handle,
            refresh=self._refresh(handle),
            pending={STATE_PENDING},
            target={STATE_AVAILABLE},
            timeout_seconds=timeout_seconds,
            failure={STATE_FAILED},
        )
