"""Thin boto3 adapters for the remote control plane.

Every call goes through call(), which logs the request and translates
botocore failures into RemoteError / NotFoundError so callers never have
to inspect raw ClientError payloads.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass
from typing import Any

import boto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError

from .config import Config

logger = logging.getLogger(__name__)

# Error codes the remote APIs use to say "this resource does not exist"
NOT_FOUND_ERROR_CODES: frozenset[str] = frozenset(
    {
        "InvalidVpcEndpointServiceId.NotFound",
        "InvalidVpcEndpointService.NotFound",
        "NoSuchKey",
        "NoSuchBucket",
        "NoSuchVersion",
        "NotFound",
        "404",
    }
)

# Request fields never written to logs
REDACTED_REQUEST_FIELDS: frozenset[str] = frozenset(
    {
        "SSECustomerKey",
        "CopySourceSSECustomerKey",
        "SSEKMSEncryptionContext",
    }
)

CLIENT_RETRY_CONFIG = BotoConfig(retries={"max_attempts": 5, "mode": "standard"})


class RemoteError(Exception):
    """A remote API call failed.

    Attributes:
        operation: API operation name (e.g. "CreateVpcEndpointServiceConfiguration").
        code: Error code reported by the service, if any.
        handle: Resource handle the call was addressing, if known.
        status_code: HTTP status code, if known.
    """

    def __init__(
        self,
        message: str,
        *,
        operation: str,
        code: str | None = None,
        handle: str | None = None,
        status_code: int | None = None,
    ) -> None:
        super().__init__(message)
        self.operation = operation
        self.code = code
        self.handle = handle
        self.status_code = status_code


class NotFoundError(RemoteError):
    """The addressed remote resource does not exist."""

    pass


def redact_request(request: Mapping[str, Any]) -> dict[str, Any]:
    """Return a copy of a request payload that is safe to log."""
    return {
        key: ("<redacted>" if key in REDACTED_REQUEST_FIELDS else value)
        for key, value in request.items()
    }


def translate_client_error(
    error: ClientError, operation: str, handle: str | None = None
) -> RemoteError:
    """Convert a botocore ClientError into a RemoteError or NotFoundError."""
    details = error.response.get("Error", {})
    code = details.get("Code")
    status_code = error.response.get("ResponseMetadata", {}).get("HTTPStatusCode")
    message = f"{operation} failed"
    if handle:
        message += f" for {handle}"
    message += f": {details.get('Message') or code or error}"

    if code in NOT_FOUND_ERROR_CODES or status_code == 404:
        return NotFoundError(
            message, operation=operation, code=code, handle=handle, status_code=status_code
        )
    return RemoteError(
        message, operation=operation, code=code, handle=handle, status_code=status_code
    )


def call(
    operation: str,
    method: Callable[..., dict[str, Any]],
    *,
    handle: str | None = None,
    **request: Any,
) -> dict[str, Any]:
    """Invoke a boto3 client method with error translation.

    Raises:
        NotFoundError: If the service reports the resource as missing.
        RemoteError: For every other service or transport failure.
    """
    logger.debug(
        "Calling %s",
        operation,
        extra={"operation": operation, "handle": handle, "request": redact_request(request)},
    )
    try:
        return method(**request)
    except ClientError as e:
        raise translate_client_error(e, operation, handle) from e
    except BotoCoreError as e:
        raise RemoteError(
            f"{operation} failed: {e}", operation=operation, handle=handle
        ) from e


def create_session(config: Config) -> boto3.Session:
    """Create the boto3 session used for every client."""
    return boto3.Session(region_name=config.region, profile_name=config.profile)


@dataclass
class RemoteClients:
    """Bundle of low-level boto3 clients."""

    ec2: Any
    s3: Any
    sts: Any

    @classmethod
    def from_session(cls, session: boto3.Session) -> RemoteClients:
        return cls(
            ec2=session.client("ec2", config=CLIENT_RETRY_CONFIG),
            s3=session.client("s3", config=CLIENT_RETRY_CONFIG),
            sts=session.client("sts", config=CLIENT_RETRY_CONFIG),
        )

    def account_id(self) -> str:
        """Return the account the session is authenticated against."""
        response = call("GetCallerIdentity", self.sts.get_caller_identity)
        return response["Account"]


class VpcEndpointServiceClient:
    """EC2 VPC endpoint service configuration API."""

    def __init__(self, ec2: Any) -> None:
        self._ec2 = ec2

    def create(self, request: dict[str, Any]) -> str:
        """Create a service configuration and return its service ID."""
        response = call(
            "CreateVpcEndpointServiceConfiguration",
            self._ec2.create_vpc_endpoint_service_configuration,
            **request,
        )
        return response["ServiceConfiguration"]["ServiceId"]

    def describe(self, handle: str) -> dict[str, Any]:
        """Fetch the service configuration.

        Raises:
            NotFoundError: If the service does not exist.
        """
        response = call(
            "DescribeVpcEndpointServiceConfigurations",
            self._ec2.describe_vpc_endpoint_service_configurations,
            handle=handle,
            ServiceIds=[handle],
        )
        configurations = response.get("ServiceConfigurations") or []
        if not configurations:
            raise NotFoundError(
                f"VPC Endpoint Service {handle} not found",
                operation="DescribeVpcEndpointServiceConfigurations",
                code="InvalidVpcEndpointServiceId.NotFound",
                handle=handle,
            )
        return configurations[0]

    def describe_permissions(self, handle: str) -> list[str]:
        """Return the principals allowed to connect to the service."""
        response = call(
            "DescribeVpcEndpointServicePermissions",
            self._ec2.describe_vpc_endpoint_service_permissions,
            handle=handle,
            ServiceId=handle,
        )
        return [
            p["Principal"] for p in response.get("AllowedPrincipals", []) if p.get("Principal")
        ]

    def modify_configuration(self, handle: str, patch: dict[str, Any]) -> None:
        call(
            "ModifyVpcEndpointServiceConfiguration",
            self._ec2.modify_vpc_endpoint_service_configuration,
            handle=handle,
            ServiceId=handle,
            **patch,
        )

    def modify_permissions(
        self, handle: str, add: Iterable[str] = (), remove: Iterable[str] = ()
    ) -> None:
        """Add and remove allowed principals.

        Empty lists are left out of the request entirely.
        """
        request: dict[str, Any] = {"ServiceId": handle}
        if add := list(add):
            request["AddAllowedPrincipals"] = add
        if remove := list(remove):
            request["RemoveAllowedPrincipals"] = remove
        if len(request) == 1:
            return
        call(
            "ModifyVpcEndpointServicePermissions",
            self._ec2.modify_vpc_endpoint_service_permissions,
            handle=handle,
            **request,
        )

    def update_tags(
        self, handle: str, to_set: Mapping[str, str], to_remove: Iterable[str]
    ) -> None:
        if remove := sorted(to_remove):
            call(
                "DeleteTags",
                self._ec2.delete_tags,
                handle=handle,
                Resources=[handle],
                Tags=[{"Key": key} for key in remove],
            )
        if to_set:
            call(
                "CreateTags",
                self._ec2.create_tags,
                handle=handle,
                Resources=[handle],
                Tags=[{"Key": key, "Value": value} for key, value in sorted(to_set.items())],
            )

    def delete(self, handle: str) -> None:
        """Delete the service configuration.

        The API reports per-ID failures in an "Unsuccessful" list instead of
        raising, so those are translated here.
        """
        response = call(
            "DeleteVpcEndpointServiceConfigurations",
            self._ec2.delete_vpc_endpoint_service_configurations,
            handle=handle,
            ServiceIds=[handle],
        )
        for item in response.get("Unsuccessful") or []:
            error = item.get("Error") or {}
            code = error.get("Code")
            message = (
                f"DeleteVpcEndpointServiceConfigurations failed for {handle}: "
                f"{error.get('Message') or code}"
            )
            error_class = NotFoundError if code in NOT_FOUND_ERROR_CODES else RemoteError
            raise error_class(
                message,
                operation="DeleteVpcEndpointServiceConfigurations",
                code=code,
                handle=handle,
            )


class ObjectCopyClient:
    """S3 object API used by the object copy resource."""

    def __init__(self, s3: Any) -> None:
        self._s3 = s3

    def copy(self, request: dict[str, Any]) -> dict[str, Any]:
        return call("CopyObject", self._s3.copy_object, handle=request.get("Key"), **request)

    def head(self, bucket: str, key: str) -> dict[str, Any]:
        return call("HeadObject", self._s3.head_object, handle=key, Bucket=bucket, Key=key)

    def get_tags(self, bucket: str, key: str) -> dict[str, str]:
        response = call(
            "GetObjectTagging", self._s3.get_object_tagging, handle=key, Bucket=bucket, Key=key
        )
        return {tag["Key"]: tag["Value"] for tag in response.get("TagSet", [])}

    def list_versions(self, bucket: str, key: str) -> list[dict[str, Any]]:
        """List every version and delete marker stored under exactly this key."""
        paginator = self._s3.get_paginator("list_object_versions")
        versions: list[dict[str, Any]] = []
        try:
            for page in paginator.paginate(Bucket=bucket, Prefix=key):
                for entry in [*page.get("Versions", []), *page.get("DeleteMarkers", [])]:
                    if entry.get("Key") == key:
                        versions.append(entry)
        except ClientError as e:
            raise translate_client_error(e, "ListObjectVersions", key) from e
        return versions

    def delete(
        self,
        bucket: str,
        key: str,
        version_id: str | None = None,
        bypass_governance: bool = False,
    ) -> None:
        request: dict[str, Any] = {"Bucket": bucket, "Key": key}
        if version_id:
            request["VersionId"] = version_id
        if bypass_governance:
            request["BypassGovernanceRetention"] = True
        call("DeleteObject", self._s3.delete_object, handle=key, **request)

    def get_legal_hold(self, bucket: str, key: str, version_id: str) -> str | None:
        try:
            response = call(
                "GetObjectLegalHold",
                self._s3.get_object_legal_hold,
                handle=key,
                Bucket=bucket,
                Key=key,
                VersionId=version_id,
            )
        except NotFoundError:
            return None
        return response.get("LegalHold", {}).get("Status")

    def release_legal_hold(self, bucket: str, key: str, version_id: str) -> None:
        call(
            "PutObjectLegalHold",
            self._s3.put_object_legal_hold,
            handle=key,
            Bucket=bucket,
            Key=key,
            VersionId=version_id,
            LegalHold={"Status": "OFF"},
        )
