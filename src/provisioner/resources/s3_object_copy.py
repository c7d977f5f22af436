"""Server-side S3 object copy.

The copy is a single synchronous CopyObject call, so nothing here polls.
Any change to a copy argument is applied by copying again; the source,
destination bucket and key cannot change in place.
"""

from __future__ import annotations

import logging
import re
from datetime import UTC, datetime
from typing import Any
from urllib.parse import parse_qs, urlencode

from ..clients import NotFoundError, ObjectCopyClient, RemoteClients, RemoteError
from ..config import Config
from ..models import RFC3339_FORMAT, S3ObjectCopySpec
from ..state_store import ResourceRecord, StateStore, StateStoreError
from .base import ResourceHandler

logger = logging.getLogger(__name__)

DEFAULT_STORAGE_CLASS = "STANDARD"

# Plain string arguments passed to CopyObject unchanged
COPY_ARGUMENTS = {
    "cache_control": "CacheControl",
    "content_disposition": "ContentDisposition",
    "content_encoding": "ContentEncoding",
    "content_language": "ContentLanguage",
    "content_type": "ContentType",
    "copy_if_match": "CopySourceIfMatch",
    "copy_if_none_match": "CopySourceIfNoneMatch",
    "customer_algorithm": "SSECustomerAlgorithm",
    "customer_key": "SSECustomerKey",
    "customer_key_md5": "SSECustomerKeyMD5",
    "expected_bucket_owner": "ExpectedBucketOwner",
    "expected_source_bucket_owner": "ExpectedSourceBucketOwner",
    "kms_encryption_context": "SSEKMSEncryptionContext",
    "metadata_directive": "MetadataDirective",
    "object_lock_legal_hold_status": "ObjectLockLegalHoldStatus",
    "object_lock_mode": "ObjectLockMode",
    "request_payer": "RequestPayer",
    "source_customer_algorithm": "CopySourceSSECustomerAlgorithm",
    "source_customer_key": "CopySourceSSECustomerKey",
    "source_customer_key_md5": "CopySourceSSECustomerKeyMD5",
    "storage_class": "StorageClass",
    "tagging_directive": "TaggingDirective",
    "website_redirect": "WebsiteRedirectLocation",
}

# RFC3339 arguments sent as datetimes
TIMESTAMP_ARGUMENTS = {
    "copy_if_modified_since": "CopySourceIfModifiedSince",
    "copy_if_unmodified_since": "CopySourceIfUnmodifiedSince",
    "expires": "Expires",
    "object_lock_retain_until_date": "ObjectLockRetainUntilDate",
}

GRANT_HEADERS = {
    "FULL_CONTROL": "GrantFullControl",
    "READ": "GrantRead",
    "READ_ACP": "GrantReadACP",
    "WRITE_ACP": "GrantWriteACP",
}


def parse_copy_source(source: str) -> dict[str, str]:
    """Split "bucket/key[?versionId=...]" into the CopySource mapping boto3 expects."""
    path, _, query = source.lstrip("/").partition("?")
    bucket, _, key = path.partition("/")
    if not bucket or not key:
        raise ValueError(f"copy source must be of the form bucket/key: {source}")
    copy_source = {"Bucket": bucket, "Key": key}
    if version_ids := parse_qs(query).get("versionId"):
        copy_source["VersionId"] = version_ids[0]
    return copy_source


def normalize_key(key: str) -> str:
    """Object key as S3 stores it: no leading slash, no repeated slashes."""
    return re.sub(r"/+", "/", key).lstrip("/")


def _unquote_etag(etag: str | None) -> str | None:
    return etag.strip('"') if etag else etag


def _format_timestamp(value: datetime | None) -> str | None:
    if value is None:
        return None
    return value.astimezone(UTC).strftime(RFC3339_FORMAT)


class S3ObjectCopyHandler(ResourceHandler):
    """Handler for S3ObjectCopy resources."""

    kind = S3ObjectCopySpec.kind
    spec_class = S3ObjectCopySpec

    def __init__(
        self, config: Config, clients: RemoteClients, store: StateStore, **kwargs: Any
    ) -> None:
        super().__init__(config, clients, store, **kwargs)
        self._objects = ObjectCopyClient(clients.s3)

    def create(self, address: str, spec: S3ObjectCopySpec) -> dict[str, Any]:
        return self._copy(address, spec)

    def import_resource(self, address: str, handle: str) -> dict[str, Any]:
        """Adopt an existing object given as "bucket/key"."""
        bucket, _, key = handle.lstrip("/").partition("/")
        if not bucket or not key:
            raise StateStoreError(f"{self.kind} imports take a bucket/key handle, got {handle}")
        record = self._store.save(address, self.kind, key, {"bucket": bucket, "key": key})
        attributes = self.read(record)
        if attributes is None:
            raise NotFoundError(
                f"Cannot import {self.kind} {handle}: object does not exist",
                operation="Import",
                handle=key,
            )
        return attributes

    def update(
        self,
        address: str,
        spec: S3ObjectCopySpec,
        record: ResourceRecord,
        changed: set[str],
    ) -> dict[str, Any]:
        # Copy conditions are evaluated by S3, so they always warrant another attempt
        if spec.has_copy_conditions() or changed:
            return self._copy(address, spec)
        return record.attributes

    # -------------------------------------------------------------------------
    # Copy
    # -------------------------------------------------------------------------

    def build_request(self, spec: S3ObjectCopySpec) -> dict[str, Any]:
        """Translate a spec into CopyObject arguments."""
        request: dict[str, Any] = {
            "Bucket": spec.bucket,
            "Key": spec.key,
            "CopySource": parse_copy_source(spec.source),
        }

        if spec.grant:
            grantees: dict[str, list[str]] = {}
            for grant in spec.grant:
                for permission in grant.permissions:
                    grantees.setdefault(GRANT_HEADERS[permission], []).append(grant.grantee())
            for header, values in grantees.items():
                request[header] = ",".join(values)
        elif spec.acl:
            request["ACL"] = spec.acl

        if spec.kms_key_id:
            request["SSEKMSKeyId"] = spec.kms_key_id
            request["ServerSideEncryption"] = "aws:kms"
        if spec.server_side_encryption:
            request["ServerSideEncryption"] = spec.server_side_encryption

        for field_name, argument in COPY_ARGUMENTS.items():
            if value := getattr(spec, field_name):
                request[argument] = value

        for field_name, argument in TIMESTAMP_ARGUMENTS.items():
            if value := getattr(spec, field_name):
                request[argument] = datetime.fromisoformat(value)

        if spec.metadata:
            request["Metadata"] = dict(spec.metadata)

        if tags := self._filter_tags(spec.tags):
            request["Tagging"] = urlencode(sorted(tags.items()))

        return request

    def _copy(self, address: str, spec: S3ObjectCopySpec) -> dict[str, Any]:
        output = self._objects.copy(self.build_request(spec))
        result = output.get("CopyObjectResult") or {}

        copied = {
            "customer_algorithm": output.get("SSECustomerAlgorithm"),
            "customer_key_md5": output.get("SSECustomerKeyMD5"),
            "etag": _unquote_etag(result.get("ETag")),
            "expiration": output.get("Expiration"),
            "kms_encryption_context": output.get("SSEKMSEncryptionContext"),
            "kms_key_id": output.get("SSEKMSKeyId"),
            "last_modified": _format_timestamp(result.get("LastModified")),
            "request_charged": output.get("RequestCharged") == "requester",
            "server_side_encryption": output.get("ServerSideEncryption"),
            "source_version_id": output.get("CopySourceVersionId"),
            "version_id": output.get("VersionId"),
        }
        attributes = spec.to_attributes()
        attributes.update({k: v for k, v in copied.items() if v is not None})

        # The destination key is the handle
        self._store.save(address, self.kind, spec.key, attributes)
        logger.info(
            "Copied S3 object",
            extra={
                "address": address,
                "handle": spec.key,
                "bucket": spec.bucket,
                "version_id": attributes.get("version_id"),
            },
        )
        return self._reread(address, "Copy")

    # -------------------------------------------------------------------------
    # Read
    # -------------------------------------------------------------------------

    def read(self, record: ResourceRecord) -> dict[str, Any] | None:
        bucket = record.attributes["bucket"]
        key = record.attributes.get("key", record.handle)
        try:
            head = self._objects.head(bucket, key)
        except NotFoundError:
            self._forget(record, "HeadObject returned 404")
            return None

        # HeadObject cannot report grants, conditions or secrets, so the
        # arguments of the last copy are carried over
        attributes = dict(record.attributes)
        attributes.update(
            {
                "cache_control": head.get("CacheControl"),
                "content_disposition": head.get("ContentDisposition"),
                "content_encoding": head.get("ContentEncoding"),
                "content_language": head.get("ContentLanguage"),
                "content_type": head.get("ContentType"),
                "etag": _unquote_etag(head.get("ETag")),
                "metadata": {k.lower(): v for k, v in (head.get("Metadata") or {}).items()},
                "object_lock_legal_hold_status": head.get("ObjectLockLegalHoldStatus"),
                "object_lock_mode": head.get("ObjectLockMode"),
                "object_lock_retain_until_date": _format_timestamp(
                    head.get("ObjectLockRetainUntilDate")
                ),
                "server_side_encryption": head.get("ServerSideEncryption"),
                "storage_class": head.get("StorageClass") or DEFAULT_STORAGE_CLASS,
                "version_id": head.get("VersionId"),
                "website_redirect": head.get("WebsiteRedirectLocation"),
                "tags": self._filter_tags(self._objects.get_tags(bucket, key)),
            }
        )
        if head.get("SSEKMSKeyId"):
            attributes["kms_key_id"] = head["SSEKMSKeyId"]

        self._store.save(record.address, self.kind, record.handle, attributes)
        return attributes

    # -------------------------------------------------------------------------
    # Delete
    # -------------------------------------------------------------------------

    def delete(self, record: ResourceRecord) -> None:
        bucket = record.attributes["bucket"]
        key = normalize_key(record.attributes.get("key", record.handle))

        if record.attributes.get("version_id"):
            self._delete_all_versions(
                bucket, key, force=bool(record.attributes.get("force_destroy"))
            )
        else:
            try:
                self._objects.delete(bucket, key)
            except NotFoundError:
                logger.debug("S3 object already gone", extra={"bucket": bucket, "handle": key})

        self._store.delete(record.address)
        logger.info(
            "Deleted S3 object", extra={"address": record.address, "bucket": bucket, "handle": key}
        )

    def _delete_all_versions(self, bucket: str, key: str, *, force: bool) -> None:
        try:
            versions = self._objects.list_versions(bucket, key)
        except NotFoundError:
            return

        for version in versions:
            version_id = version.get("VersionId")
            try:
                self._objects.delete(bucket, key, version_id)
            except NotFoundError:
                continue
            except RemoteError as e:
                if not force or e.code != "AccessDenied":
                    raise
                # Object lock: lift a legal hold, then bypass governance retention
                if self._objects.get_legal_hold(bucket, key, version_id) == "ON":
                    logger.info(
                        "Removing legal hold before delete",
                        extra={"bucket": bucket, "handle": key, "version_id": version_id},
                    )
                    self._objects.release_legal_hold(bucket, key, version_id)
                self._objects.delete(bucket, key, version_id, bypass_governance=True)
