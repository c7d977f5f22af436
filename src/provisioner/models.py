"""Pydantic models for resource specifications with validation.

These models provide:
1. Type-safe YAML parsing (camelCase or snake_case keys)
2. Validation at the boundary (fail fast, fail loudly)
3. A plain attribute bag (to_attributes) for diffing against observed state
"""

from __future__ import annotations

import re
from datetime import UTC, datetime
from typing import Annotated, Any, ClassVar, Literal

from pydantic import BaseModel, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

# Matches the general shape of an ARN: arn:partition:service:region:account:resource
ARN_PATTERN = re.compile(r"^arn:aws(-[a-z]+)*:[a-z0-9-]+:[a-z0-9-]*:(\d{12})?:.+$")


def _validate_arn(value: str) -> str:
    if not ARN_PATTERN.match(value):
        raise ValueError(f"invalid ARN: {value}")
    return value


RFC3339_FORMAT = "%Y-%m-%dT%H:%M:%SZ"


def _validate_rfc3339(value: str | None) -> str | None:
    if value is None:
        return value
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError as e:
        raise ValueError(f"must be an RFC3339 timestamp: {value}") from e
    if parsed.tzinfo is None:
        raise ValueError(f"RFC3339 timestamp must include a timezone offset: {value}")
    # Same form S3 timestamps are read back in, so equal instants compare equal
    return parsed.astimezone(UTC).strftime(RFC3339_FORMAT)


def _as_sorted_set(values: list[str] | None) -> list[str] | None:
    if values is None:
        return None
    return sorted(set(values))


# =============================================================================
# Base Model
# =============================================================================


class BaseSpec(BaseModel):
    """Base specification with common fields."""

    model_config = {
        "extra": "forbid",  # Reject unknown fields, typos must not pass silently
        "populate_by_name": True,
        "alias_generator": to_camel,
    }

    kind: ClassVar[str] = ""

    # Fields whose change cannot be patched in place
    replace_fields: ClassVar[tuple[str, ...]] = ()

    # Fields compared against observed state to detect drift
    diff_fields: ClassVar[tuple[str, ...]] = ()

    # Fields kept in local state only, never sent to AWS
    state_fields: ClassVar[tuple[str, ...]] = ()

    tags: dict[str, str] = Field(default_factory=dict)

    def to_attributes(self) -> dict[str, Any]:
        """Return the desired state as a plain attribute bag."""
        return self.model_dump(mode="python")


# =============================================================================
# VPC Endpoint Service
# =============================================================================


class VpcEndpointServiceSpec(BaseSpec):
    """Endpoint service exposing load balancers to other accounts via PrivateLink."""

    kind: ClassVar[str] = "VpcEndpointService"

    configuration_fields: ClassVar[tuple[str, ...]] = (
        "acceptance_required",
        "gateway_load_balancer_arns",
        "network_load_balancer_arns",
        "private_dns_name",
    )
    permission_fields: ClassVar[tuple[str, ...]] = ("allowed_principals",)
    diff_fields: ClassVar[tuple[str, ...]] = (
        *configuration_fields,
        *permission_fields,
        "tags",
    )

    acceptance_required: bool
    allowed_principals: list[str] | None = None
    gateway_load_balancer_arns: Annotated[list[str], Field(min_length=1)] | None = None
    network_load_balancer_arns: Annotated[list[str], Field(min_length=1)] | None = None
    private_dns_name: str | None = None

    @field_validator("gateway_load_balancer_arns", "network_load_balancer_arns")
    @classmethod
    def validate_load_balancer_arns(cls, v: list[str] | None) -> list[str] | None:
        if v is None:
            return v
        for arn in v:
            _validate_arn(arn)
        return _as_sorted_set(v)

    @field_validator("allowed_principals")
    @classmethod
    def validate_principals(cls, v: list[str] | None) -> list[str] | None:
        if v is None:
            return v
        if any(not principal.strip() for principal in v):
            raise ValueError("allowed principals cannot be empty strings")
        return _as_sorted_set(v)

    @model_validator(mode="after")
    def require_load_balancer(self) -> VpcEndpointServiceSpec:
        if not self.gateway_load_balancer_arns and not self.network_load_balancer_arns:
            raise ValueError(
                "one of gatewayLoadBalancerArns or networkLoadBalancerArns is required"
            )
        return self


# =============================================================================
# S3 Object Copy
# =============================================================================

CANNED_ACLS = (
    "private",
    "public-read",
    "public-read-write",
    "authenticated-read",
    "aws-exec-read",
    "bucket-owner-read",
    "bucket-owner-full-control",
)

STORAGE_CLASSES = (
    "STANDARD",
    "REDUCED_REDUNDANCY",
    "STANDARD_IA",
    "ONEZONE_IA",
    "INTELLIGENT_TIERING",
    "GLACIER",
    "DEEP_ARCHIVE",
    "OUTPOSTS",
    "GLACIER_IR",
)

GrantPermission = Literal["FULL_CONTROL", "READ", "READ_ACP", "WRITE_ACP"]


class GrantConfig(BaseModel):
    """Explicit ACL grant for the copied object."""

    model_config = {"extra": "forbid", "populate_by_name": True, "alias_generator": to_camel}

    type: Literal["CanonicalUser", "AmazonCustomerByEmail", "Group"]
    id: str | None = None
    email: str | None = None
    uri: str | None = None
    permissions: Annotated[list[GrantPermission], Field(min_length=1)]

    @field_validator("permissions")
    @classmethod
    def dedupe_permissions(cls, v: list[str]) -> list[str]:
        return sorted(set(v))

    @model_validator(mode="after")
    def require_grantee(self) -> GrantConfig:
        required = {"CanonicalUser": "id", "AmazonCustomerByEmail": "email", "Group": "uri"}
        attribute = required[self.type]
        if not getattr(self, attribute):
            raise ValueError(f"grant of type {self.type} requires {attribute}")
        return self

    def grantee(self) -> str:
        """Grantee in the header syntax CopyObject expects."""
        match self.type:
            case "AmazonCustomerByEmail":
                return f"emailaddress={self.email}"
            case "CanonicalUser":
                return f"id={self.id}"
            case _:
                return f"uri={self.uri}"


class S3ObjectCopySpec(BaseSpec):
    """Server-side copy of an S3 object into a destination bucket/key."""

    kind: ClassVar[str] = "S3ObjectCopy"

    replace_fields: ClassVar[tuple[str, ...]] = ("bucket", "key", "source")

    # Only consulted when deleting
    state_fields: ClassVar[tuple[str, ...]] = ("force_destroy",)

    copy_condition_fields: ClassVar[tuple[str, ...]] = (
        "copy_if_match",
        "copy_if_modified_since",
        "copy_if_none_match",
        "copy_if_unmodified_since",
    )

    # Any change to these triggers a fresh copy
    diff_fields: ClassVar[tuple[str, ...]] = (
        "acl",
        "cache_control",
        "content_disposition",
        "content_encoding",
        "content_language",
        "content_type",
        "customer_algorithm",
        "customer_key",
        "customer_key_md5",
        "expected_bucket_owner",
        "expected_source_bucket_owner",
        "expires",
        "grant",
        "kms_encryption_context",
        "kms_key_id",
        "metadata",
        "metadata_directive",
        "object_lock_legal_hold_status",
        "object_lock_mode",
        "object_lock_retain_until_date",
        "request_payer",
        "server_side_encryption",
        "source_customer_algorithm",
        "source_customer_key",
        "source_customer_key_md5",
        "storage_class",
        "tagging_directive",
        "tags",
        "website_redirect",
    )

    bucket: Annotated[str, Field(min_length=1)]
    key: Annotated[str, Field(min_length=1)]
    source: Annotated[str, Field(min_length=1)]

    acl: str | None = "private"
    grant: list[GrantConfig] | None = None

    cache_control: str | None = None
    content_disposition: str | None = None
    content_encoding: str | None = None
    content_language: str | None = None
    content_type: str | None = None

    copy_if_match: str | None = None
    copy_if_modified_since: str | None = None
    copy_if_none_match: str | None = None
    copy_if_unmodified_since: str | None = None

    customer_algorithm: str | None = None
    customer_key: str | None = Field(None, repr=False)
    customer_key_md5: str | None = None

    expected_bucket_owner: str | None = None
    expected_source_bucket_owner: str | None = None
    expires: str | None = None
    force_destroy: bool = False

    kms_encryption_context: str | None = Field(None, repr=False)
    kms_key_id: str | None = Field(None, repr=False)

    metadata: dict[str, str] | None = None
    metadata_directive: Literal["COPY", "REPLACE"] | None = None

    object_lock_legal_hold_status: Literal["ON", "OFF"] | None = None
    object_lock_mode: Literal["GOVERNANCE", "COMPLIANCE"] | None = None
    object_lock_retain_until_date: str | None = None

    request_payer: Literal["requester"] | None = None
    server_side_encryption: Literal["AES256", "aws:kms", "aws:kms:dsse"] | None = None

    source_customer_algorithm: str | None = None
    source_customer_key: str | None = Field(None, repr=False)
    source_customer_key_md5: str | None = None

    storage_class: str | None = None
    tagging_directive: Literal["COPY", "REPLACE"] | None = None
    website_redirect: str | None = None

    @field_validator("source")
    @classmethod
    def validate_source(cls, v: str) -> str:
        bucket, _, key = v.lstrip("/").partition("?")[0].partition("/")
        if not bucket or not key:
            raise ValueError(f"source must be of the form bucket/key: {v}")
        return v

    @field_validator("acl")
    @classmethod
    def validate_acl(cls, v: str | None) -> str | None:
        if v is not None and v not in CANNED_ACLS:
            raise ValueError(f"acl must be one of {list(CANNED_ACLS)}")
        return v

    @field_validator("storage_class")
    @classmethod
    def validate_storage_class(cls, v: str | None) -> str | None:
        if v is not None and v not in STORAGE_CLASSES:
            raise ValueError(f"storage_class must be one of {list(STORAGE_CLASSES)}")
        return v

    @field_validator("kms_key_id")
    @classmethod
    def validate_kms_key_id(cls, v: str | None) -> str | None:
        return v if v is None else _validate_arn(v)

    @field_validator(
        "copy_if_modified_since",
        "copy_if_unmodified_since",
        "expires",
        "object_lock_retain_until_date",
    )
    @classmethod
    def validate_timestamps(cls, v: str | None) -> str | None:
        return _validate_rfc3339(v)

    @field_validator("metadata")
    @classmethod
    def validate_metadata_keys(cls, v: dict[str, str] | None) -> dict[str, str] | None:
        if v is None:
            return v
        upper = sorted(k for k in v if k != k.lower())
        if upper:
            raise ValueError(f"metadata keys must be lowercase: {upper}")
        return v

    @model_validator(mode="after")
    def acl_conflicts_with_grant(self) -> S3ObjectCopySpec:
        if self.grant:
            if "acl" in self.model_fields_set and self.acl is not None:
                raise ValueError("acl conflicts with grant, set only one of them")
            # Explicit grants replace the default canned ACL
            self.acl = None
        return self

    def has_copy_conditions(self) -> bool:
        return any(getattr(self, name) for name in self.copy_condition_fields)


# =============================================================================
# Kind registry
# =============================================================================

SPEC_CLASSES: dict[str, type[BaseSpec]] = {
    VpcEndpointServiceSpec.kind: VpcEndpointServiceSpec,
    S3ObjectCopySpec.kind: S3ObjectCopySpec,
}


def get_spec_class(kind: str) -> type[BaseSpec]:
    """Get the spec class for a resource kind.

    Raises:
        ValueError: If the kind is not recognized.
    """
    spec_class = SPEC_CLASSES.get(kind)
    if spec_class is None:
        raise ValueError(f"Unknown resource kind '{kind}'. Valid kinds: {list(SPEC_CLASSES)}")
    return spec_class
