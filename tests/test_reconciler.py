"""Integration tests for the Reconciler against the mock AWS APIs."""

from __future__ import annotations

import dataclasses
from collections.abc import Generator
from typing import Any

import pytest
from aws_mock import FakeClock, MockAwsContext

from provisioner.clients import NotFoundError, RemoteError
from provisioner.config import Config
from provisioner.reconciler import Action, Reconciler
from provisioner.spec_loader import ResourceManifest, parse_manifest
from provisioner.state_store import MemoryStateStore, StateStoreError

NLB_ARN = "arn:aws:elasticloadbalancing:us-east-1:123456789012:loadbalancer/net/web/50dc6c49"
P1 = "arn:aws:iam::111111111111:root"
P2 = "arn:aws:iam::222222222222:root"

SERVICE = "VpcEndpointService.web"
COPY = "S3ObjectCopy.report"


def service_manifest(**spec: Any) -> ResourceManifest:
    return parse_manifest(
        {
            "apiVersion": "provisioner/v1",
            "kind": "VpcEndpointService",
            "metadata": {"name": "web"},
            "spec": {"acceptanceRequired": True, "networkLoadBalancerArns": [NLB_ARN], **spec},
        },
        "test",
    )


def copy_manifest(**spec: Any) -> ResourceManifest:
    return parse_manifest(
        {
            "apiVersion": "provisioner/v1",
            "kind": "S3ObjectCopy",
            "metadata": {"name": "report"},
            "spec": {
                "bucket": "dest",
                "key": "reports/latest.csv",
                "source": "source/a.csv",
                **spec,
            },
        },
        "test",
    )


@pytest.fixture
def aws() -> Generator[MockAwsContext, None, None]:
    with MockAwsContext() as ctx:
        ctx.s3.create_bucket("source")
        ctx.s3.put_object("source", "a.csv", b"id\n1\n")
        ctx.s3.create_bucket("dest")
        yield ctx


@pytest.fixture
def store() -> MemoryStateStore:
    return MemoryStateStore()


def make_reconciler(
    config: Config, aws: MockAwsContext, store: MemoryStateStore, clock: FakeClock
) -> Reconciler:
    return Reconciler(
        config, store=store, session=aws.session(), sleep=clock.sleep, clock=clock.clock
    )


@pytest.fixture
def reconciler(
    config: Config, aws: MockAwsContext, store: MemoryStateStore, clock: FakeClock
) -> Reconciler:
    return make_reconciler(config, aws, store, clock)


def mutating_calls(aws: MockAwsContext) -> list[str]:
    calls = [*aws.ec2.calls, *aws.s3.calls]
    reads = ("Describe", "Head", "Get", "List")
    return [c.operation for c in calls if not c.operation.startswith(reads)]


class TestApply:
    """Tests for Reconciler.apply."""

    def test_creates_declared_resources(
        self, reconciler: Reconciler, aws: MockAwsContext, store: MemoryStateStore
    ) -> None:
        """Test every declared resource is created and recorded."""
        result = reconciler.apply([service_manifest(), copy_manifest()])

        assert result.success
        assert result.count(Action.CREATE) == 2
        assert [o.address for o in result.outcomes] == [SERVICE, COPY]

        service_id = store.get(SERVICE).handle
        assert aws.ec2.services[service_id].state == "Available"
        assert result.outcomes[0].handle == service_id
        assert store.get(COPY).handle == "reports/latest.csv"
        assert aws.s3.get_object("dest", "reports/latest.csv") is not None

    def test_second_apply_is_noop(self, reconciler: Reconciler, aws: MockAwsContext) -> None:
        """Test converged resources are only read on the next pass."""
        manifests = [service_manifest(allowedPrincipals=[P1]), copy_manifest()]
        reconciler.apply(manifests)
        calls_before = len(mutating_calls(aws))

        result = reconciler.apply(manifests)

        assert result.success
        assert result.count(Action.NOOP) == 2
        assert len(mutating_calls(aws)) == calls_before

    def test_updates_changed_fields_in_place(
        self, reconciler: Reconciler, aws: MockAwsContext, store: MemoryStateStore
    ) -> None:
        """Test a changed field is patched without recreating the resource."""
        reconciler.apply([service_manifest(allowedPrincipals=[P1])])
        service_id = store.get(SERVICE).handle

        result = reconciler.apply([service_manifest(allowedPrincipals=[P2])])

        outcome = result.outcomes[0]
        assert outcome.action is Action.UPDATE
        assert outcome.changed == ("allowed_principals",)
        assert outcome.handle == service_id
        assert aws.ec2.calls_to("ModifyVpcEndpointServicePermissions")[-1] == {
            "ServiceId": service_id,
            "AddAllowedPrincipals": [P2],
            "RemoveAllowedPrincipals": [P1],
        }
        assert len(aws.ec2.calls_to("CreateVpcEndpointServiceConfiguration")) == 1

    def test_failure_is_isolated(
        self, reconciler: Reconciler, aws: MockAwsContext, store: MemoryStateStore
    ) -> None:
        """Test one failing resource does not stop the others."""
        aws.ec2.failures.fail_next(
            "CreateVpcEndpointServiceConfiguration", "InvalidParameter", "load balancer busy"
        )

        result = reconciler.apply([service_manifest(), copy_manifest()])

        assert not result.success
        assert [o.address for o in result.failed] == [SERVICE]
        failed = result.failed[0]
        assert failed.action is Action.CREATE
        assert isinstance(failed.error, RemoteError)
        assert failed.error.code == "InvalidParameter"
        assert store.get(SERVICE) is None
        assert store.get(COPY) is not None
        assert result.count(Action.CREATE) == 1

    def test_failed_read_is_isolated(
        self, reconciler: Reconciler, aws: MockAwsContext, store: MemoryStateStore
    ) -> None:
        """Test a read error during planning is reported as a failed read."""
        reconciler.apply([service_manifest(), copy_manifest()])
        aws.s3.failures.fail_next("HeadObject", "InternalError", "try again", 500)

        result = reconciler.apply([service_manifest(), copy_manifest()])

        assert [(o.address, o.action) for o in result.failed] == [(COPY, Action.READ)]
        assert result.count(Action.NOOP) == 1
        assert store.get(COPY) is not None

    def test_recreates_resource_gone_remotely(
        self, reconciler: Reconciler, aws: MockAwsContext, store: MemoryStateStore
    ) -> None:
        """Test a resource deleted outside the operator is created again."""
        reconciler.apply([service_manifest()])
        old_id = store.get(SERVICE).handle
        del aws.ec2.services[old_id]

        result = reconciler.apply([service_manifest()])

        assert result.outcomes[0].action is Action.CREATE
        assert store.get(SERVICE).handle != old_id
        assert len(aws.ec2.calls_to("CreateVpcEndpointServiceConfiguration")) == 2

    def test_replaces_on_key_change(
        self, reconciler: Reconciler, aws: MockAwsContext, store: MemoryStateStore
    ) -> None:
        """Test changing the destination key deletes the old copy and makes a new one."""
        reconciler.apply([copy_manifest()])

        result = reconciler.apply([copy_manifest(key="reports/archive.csv")])

        outcome = result.outcomes[0]
        assert outcome.action is Action.REPLACE
        assert outcome.changed == ("key",)
        assert outcome.handle == "reports/archive.csv"
        assert aws.s3.get_object("dest", "reports/latest.csv") is None
        assert aws.s3.get_object("dest", "reports/archive.csv") is not None
        assert store.get(COPY).handle == "reports/archive.csv"

    def test_dry_run_changes_nothing(
        self, config: Config, aws: MockAwsContext, store: MemoryStateStore, clock: FakeClock
    ) -> None:
        """Test a dry run reports the plan without mutating AWS or state."""
        reconciler = make_reconciler(dataclasses.replace(config, dry_run=True), aws, store, clock)

        result = reconciler.apply([service_manifest(), copy_manifest()])

        assert result.dry_run
        assert result.success
        assert result.count(Action.CREATE) == 2
        assert mutating_calls(aws) == []
        assert store.records() == []

    def test_force_destroy_change_is_recorded(
        self, reconciler: Reconciler, aws: MockAwsContext, store: MemoryStateStore
    ) -> None:
        """Test toggling forceDestroy updates state without copying again."""
        aws.s3.create_bucket("dest", versioning=True)
        reconciler.apply([copy_manifest(objectLockLegalHoldStatus="ON")])

        result = reconciler.apply(
            [copy_manifest(objectLockLegalHoldStatus="ON", forceDestroy=True)]
        )

        assert result.outcomes[0].action is Action.NOOP
        assert result.success
        assert store.get(COPY).attributes["force_destroy"] is True
        assert len(aws.s3.calls_to("CopyObject")) == 1

        result = reconciler.destroy()

        assert result.success
        assert aws.s3.versions("dest", "reports/latest.csv") == []
        assert store.get(COPY) is None

    def test_retention_offset_converges(
        self, reconciler: Reconciler, aws: MockAwsContext, store: MemoryStateStore
    ) -> None:
        """Test a retain-until date written with an offset does not copy on every apply."""
        aws.s3.create_bucket("dest", versioning=True)
        manifest = copy_manifest(
            objectLockMode="GOVERNANCE", objectLockRetainUntilDate="2099-01-01T00:00:00+00:00"
        )

        reconciler.apply([manifest])
        actions = reconciler.plan([manifest])
        result = reconciler.apply([manifest])

        assert [(a.action, a.changed) for a in actions] == [(Action.NOOP, ())]
        assert result.outcomes[0].action is Action.NOOP
        assert len(aws.s3.calls_to("CopyObject")) == 1
        assert store.get(COPY).attributes["object_lock_retain_until_date"] == (
            "2099-01-01T00:00:00Z"
        )

    def test_force_destroy_change_dry_run(
        self, config: Config, aws: MockAwsContext, store: MemoryStateStore, clock: FakeClock
    ) -> None:
        """Test a dry run leaves a changed forceDestroy unrecorded."""
        make_reconciler(config, aws, store, clock).apply([copy_manifest()])
        reconciler = make_reconciler(dataclasses.replace(config, dry_run=True), aws, store, clock)

        result = reconciler.apply([copy_manifest(forceDestroy=True)])

        assert result.outcomes[0].action is Action.NOOP
        assert store.get(COPY).attributes["force_destroy"] is False


class TestPrune:
    """Tests for handling resources that are no longer declared."""

    def test_orphan_kept_without_prune(
        self, reconciler: Reconciler, aws: MockAwsContext, store: MemoryStateStore
    ) -> None:
        """Test undeclared resources are left alone by default."""
        reconciler.apply([service_manifest(), copy_manifest()])

        result = reconciler.apply([copy_manifest()])

        assert [o.address for o in result.outcomes] == [COPY]
        assert store.get(SERVICE) is not None
        assert aws.ec2.calls_to("DeleteVpcEndpointServiceConfigurations") == []

    def test_orphan_deleted_with_prune(
        self, config: Config, aws: MockAwsContext, store: MemoryStateStore, clock: FakeClock
    ) -> None:
        """Test undeclared resources are deleted when pruning."""
        reconciler = make_reconciler(dataclasses.replace(config, prune=True), aws, store, clock)
        reconciler.apply([service_manifest(), copy_manifest()])
        service_id = store.get(SERVICE).handle

        result = reconciler.apply([copy_manifest()])

        assert [(o.address, o.action) for o in result.outcomes] == [
            (COPY, Action.NOOP),
            (SERVICE, Action.DELETE),
        ]
        assert result.success
        assert service_id not in aws.ec2.services
        assert store.get(SERVICE) is None


class TestPlan:
    """Tests for Reconciler.plan."""

    def test_plan_only_reads(self, reconciler: Reconciler, aws: MockAwsContext) -> None:
        """Test planning issues no mutating calls."""
        actions = reconciler.plan([service_manifest(), copy_manifest()])

        assert [(a.address, a.action) for a in actions] == [
            (SERVICE, Action.CREATE),
            (COPY, Action.CREATE),
        ]
        assert mutating_calls(aws) == []

    def test_plan_reports_changed_fields(self, reconciler: Reconciler) -> None:
        """Test updates list the fields that differ."""
        reconciler.apply([service_manifest(), copy_manifest()])

        actions = reconciler.plan(
            [service_manifest(acceptanceRequired=False), copy_manifest(contentType="text/csv")]
        )

        assert [(a.action, a.changed) for a in actions] == [
            (Action.UPDATE, ("acceptance_required",)),
            (Action.UPDATE, ("content_type",)),
        ]

    def test_plan_lists_orphans_when_pruning(
        self, config: Config, aws: MockAwsContext, store: MemoryStateStore, clock: FakeClock
    ) -> None:
        """Test orphans show up as deletions only when pruning."""
        reconciler = make_reconciler(config, aws, store, clock)
        reconciler.apply([copy_manifest()])
        assert reconciler.plan([]) == []

        pruning = make_reconciler(dataclasses.replace(config, prune=True), aws, store, clock)
        actions = pruning.plan([])
        assert [(a.address, a.action) for a in actions] == [(COPY, Action.DELETE)]


class TestRefresh:
    """Tests for Reconciler.refresh."""

    def test_refresh_drops_missing(
        self, reconciler: Reconciler, aws: MockAwsContext, store: MemoryStateStore
    ) -> None:
        """Test refresh reads every record and forgets the ones that are gone."""
        reconciler.apply([service_manifest(), copy_manifest()])
        aws.s3.buckets["dest"].objects.clear()

        result = reconciler.refresh()

        assert result.success
        assert [o.address for o in result.outcomes] == [COPY, SERVICE]
        assert result.outcomes[0].attributes is None
        assert result.outcomes[1].attributes["state"] == "Available"
        assert store.get(COPY) is None
        assert store.get(SERVICE) is not None


class TestDestroy:
    """Tests for Reconciler.destroy."""

    def test_destroy_all(
        self, reconciler: Reconciler, aws: MockAwsContext, store: MemoryStateStore
    ) -> None:
        """Test every recorded resource is deleted."""
        reconciler.apply([service_manifest(), copy_manifest()])

        result = reconciler.destroy()

        assert result.success
        assert result.count(Action.DELETE) == 2
        assert store.records() == []
        assert aws.ec2.services == {}
        assert aws.s3.get_object("dest", "reports/latest.csv") is None

    def test_destroy_single_address(
        self, reconciler: Reconciler, aws: MockAwsContext, store: MemoryStateStore
    ) -> None:
        """Test only the named resource is deleted."""
        reconciler.apply([service_manifest(), copy_manifest()])

        result = reconciler.destroy([COPY])

        assert [o.address for o in result.outcomes] == [COPY]
        assert store.get(COPY) is None
        assert store.get(SERVICE) is not None

    def test_destroy_unknown_address(self, reconciler: Reconciler) -> None:
        """Test an address without a record is reported as failed."""
        result = reconciler.destroy(["VpcEndpointService.missing"])

        assert not result.success
        failed = result.failed[0]
        assert failed.kind == "VpcEndpointService"
        assert isinstance(failed.error, StateStoreError)

    def test_destroy_dry_run(
        self, config: Config, aws: MockAwsContext, store: MemoryStateStore, clock: FakeClock
    ) -> None:
        """Test a dry-run destroy keeps everything."""
        make_reconciler(config, aws, store, clock).apply([copy_manifest()])
        reconciler = make_reconciler(dataclasses.replace(config, dry_run=True), aws, store, clock)

        result = reconciler.destroy()

        assert result.count(Action.DELETE) == 1
        assert store.get(COPY) is not None
        assert aws.s3.calls_to("DeleteObject") == []


class TestImport:
    """Tests for Reconciler.import_resource."""

    def test_import_then_noop(
        self, reconciler: Reconciler, aws: MockAwsContext, store: MemoryStateStore
    ) -> None:
        """Test an imported resource matching its manifest needs no changes."""
        service = aws.ec2.add_service(
            acceptance_required=True, network_load_balancer_arns=[NLB_ARN]
        )

        outcome = reconciler.import_resource("VpcEndpointService", "web", service.service_id)

        assert outcome.success
        assert outcome.action is Action.IMPORT
        assert store.get(SERVICE).handle == service.service_id

        result = reconciler.apply([service_manifest()])
        assert result.outcomes[0].action is Action.NOOP
        assert aws.ec2.calls_to("CreateVpcEndpointServiceConfiguration") == []

    def test_import_missing(self, reconciler: Reconciler, store: MemoryStateStore) -> None:
        """Test importing a missing resource fails and records nothing."""
        outcome = reconciler.import_resource("VpcEndpointService", "web", "vpce-svc-missing")

        assert not outcome.success
        assert isinstance(outcome.error, NotFoundError)
        assert store.get(SERVICE) is None

    def test_import_unknown_kind(self, reconciler: Reconciler) -> None:
        """Test an unknown kind is rejected."""
        outcome = reconciler.import_resource("Ec2Instance", "web", "i-123")

        assert isinstance(outcome.error, StateStoreError)
