"""
claims_data.client — TenantScopedDynamoDB and TenantScopedS3.

Enforces the company partition on every DynamoDB and S3 operation.
Raises TenantAccessViolation on any cross-tenant access attempt.

Security guarantees:
  - DynamoDB: any PK prefixed with TENANT# must equal TENANT#{company_id}.
  - DynamoDB: any PK prefixed with OWNER# must equal OWNER#{sub}.
  - DynamoDB: an item written with a companyId attribute must carry the
    caller's company.
  - S3: every object key must be under incident-photos/{company_id}/.
  - On violation: log with tenant ids, emit CW metric, raise.
"""

from __future__ import annotations

import os
import re
from typing import Any

import boto3
from aws_lambda_powertools import Logger
from boto3.dynamodb.conditions import ConditionBase, Key

from claims_data.exceptions import TenantAccessViolation
from claims_data.models import OWNER_PK_PREFIX, PHOTO_PREFIX, TENANT_PK_PREFIX, TenantContext

logger = Logger(service="claims-data-lib")


# ---------------------------------------------------------------------------
# Internal helper: metric emission shared by the DynamoDB and S3 clients
# ---------------------------------------------------------------------------


def _emit_tenant_violation_metric(
    cloudwatch_client: Any,
    *,
    caller_tenant_id: str,
    target_tenant_id: str,
) -> None:
    """Publish a TenantAccessViolation count metric to CloudWatch.

    Never raises. Metric emission failure must not suppress the exception.
    Logs at ERROR level if emission fails.
    """
    try:
        cloudwatch_client.put_metric_data(
            Namespace="claims/security",
            MetricData=[
                {
                    "MetricName": "TenantAccessViolation",
                    "Value": 1,
                    "Unit": "Count",
                    "Dimensions": [
                        {"Name": "caller_tenant_id", "Value": caller_tenant_id},
                        {"Name": "target_tenant_id", "Value": target_tenant_id},
                    ],
                }
            ],
        )
    except Exception:
        logger.exception(
            "Failed to emit TenantAccessViolation metric",
            caller_tenant_id=caller_tenant_id,
            target_tenant_id=target_tenant_id,
        )


class _ViolationReporter:
    """Log, count and raise tenant access violations for one caller."""

    _resource = "unknown"

    _company_id: str
    _sub: str
    _cloudwatch: Any

    def _raise_violation(self, *, target_tenant_id: str, attempted_key: str) -> None:
        """Log, emit metric, then raise TenantAccessViolation. Never returns."""
        logger.error(
            f"TenantAccessViolation: cross-tenant {self._resource} access attempt",
            tenant_id=self._company_id,
            sub=self._sub,
            caller_tenant_id=self._company_id,
            target_tenant_id=target_tenant_id,
            attempted_key=attempted_key,
        )
        _emit_tenant_violation_metric(
            self._cloudwatch,
            caller_tenant_id=self._company_id,
            target_tenant_id=target_tenant_id,
        )
        raise TenantAccessViolation(
            tenant_id=target_tenant_id,
            caller_tenant_id=self._company_id,
            attempted_key=attempted_key,
        )


# ---------------------------------------------------------------------------
# TenantScopedDynamoDB
# ---------------------------------------------------------------------------


class TenantScopedDynamoDB(_ViolationReporter):
    """
    DynamoDB client scoped to a single company partition.

    Enforces that any PK starting with TENANT# equals TENANT#{company_id} and
    any PK starting with OWNER# equals OWNER#{sub}. Written items carrying a
    companyId attribute must name the caller's company.

    On violation:
      1. Logs structured error with tenant ids and attempted_key.
      2. Emits CloudWatch metric: namespace=claims/security, TenantAccessViolation.
      3. Raises TenantAccessViolation.
    """

    _resource = "DynamoDB"

    def __init__(
        self,
        context: TenantContext,
        *,
        dynamodb_resource: Any = None,
        cloudwatch_client: Any = None,
    ) -> None:
        self._company_id = context.company_id
        self._sub = context.sub
        region = os.environ["AWS_REGION"]
        self._dynamodb: Any = dynamodb_resource or boto3.resource("dynamodb", region_name=region)
        self._cloudwatch: Any = cloudwatch_client or boto3.client("cloudwatch", region_name=region)

    def _validate_pk(self, key: dict[str, Any]) -> None:
        """Raise TenantAccessViolation if a TENANT#/OWNER# PK doesn't match the caller.

        Convention: all platform tables use "PK" as the partition key
        attribute name.
        """
        pk = key.get("PK", "")
        if not isinstance(pk, str):
            return
        if pk.startswith(TENANT_PK_PREFIX):
            if pk != f"{TENANT_PK_PREFIX}{self._company_id}":
                self._raise_violation(
                    target_tenant_id=pk.removeprefix(TENANT_PK_PREFIX),
                    attempted_key=repr(key),
                )
        elif pk.startswith(OWNER_PK_PREFIX):
            if pk != f"{OWNER_PK_PREFIX}{self._sub}":
                self._raise_violation(
                    target_tenant_id=f"owner:{pk.removeprefix(OWNER_PK_PREFIX)}",
                    attempted_key=repr(key),
                )

    def _validate_company_attribute(self, item: dict[str, Any]) -> None:
        """Attribute-level check: a written companyId must be the caller's."""
        company_id = item.get("companyId")
        if company_id is not None and str(company_id) != self._company_id:
            self._raise_violation(
                target_tenant_id=str(company_id),
                attempted_key=repr({"PK": item.get("PK"), "SK": item.get("SK")}),
            )

    def _validate_company_update(
        self,
        key: dict[str, Any],
        update_expression: str,
        values: dict[str, Any],
        names: dict[str, str],
    ) -> None:
        """Check every companyId assignment in an update expression.

        The attribute may be referenced literally or through any name
        placeholder. Each mention must be a plain "= :value" assignment whose
        value is the caller's company; anything else is refused.
        """
        refs = [ref for ref, attr_name in names.items() if attr_name == "companyId"]
        refs.append("companyId")
        for ref in refs:
            token = rf"(?<![\w#:]){re.escape(ref)}(?!\w)"
            mentions = re.findall(token, update_expression)
            if not mentions:
                continue
            assigned = re.findall(token + r"\s*=\s*(:\w+)(?!\w|\s*[-+])", update_expression)
            if len(assigned) != len(mentions) or any(v not in values for v in assigned):
                self._raise_violation(
                    target_tenant_id="unknown",
                    attempted_key=repr({"PK": key.get("PK"), "SK": key.get("SK")}),
                )
            for value_ref in assigned:
                self._validate_company_attribute({**key, "companyId": values[value_ref]})

    def get_item(self, table_name: str, key: dict[str, Any]) -> dict[str, Any] | None:
        """Get a single item, enforcing the partition on PK.

        Returns the item dict, or None if the item does not exist.
        """
        self._validate_pk(key)
        table = self._dynamodb.Table(table_name)
        response = table.get_item(Key=key)
        return response.get("Item")

    def put_item(
        self,
        table_name: str,
        item: dict[str, Any],
        *,
        condition_expression: str | None = None,
    ) -> None:
        """Write an item, enforcing the partition on PK and the companyId attribute."""
        self._validate_pk(item)
        self._validate_company_attribute(item)
        table = self._dynamodb.Table(table_name)
        kwargs: dict[str, Any] = {"Item": item}
        if condition_expression is not None:
            kwargs["ConditionExpression"] = condition_expression
        table.put_item(**kwargs)

    def update_item(
        self,
        table_name: str,
        key: dict[str, Any],
        update_expression: str,
        expression_attribute_values: dict[str, Any],
        *,
        expression_attribute_names: dict[str, str] | None = None,
        condition_expression: str | None = None,
    ) -> dict[str, Any]:
        """Update an item, enforcing the partition on PK.

        Returns the raw boto3 response dict.  The updated attributes are
        under the "Attributes" key (ReturnValues=ALL_NEW).
        """
        self._validate_pk(key)
        self._validate_company_update(
            key,
            update_expression,
            expression_attribute_values,
            expression_attribute_names or {},
        )
        table = self._dynamodb.Table(table_name)
        kwargs: dict[str, Any] = {
            "Key": key,
            "UpdateExpression": update_expression,
            "ExpressionAttributeValues": expression_attribute_values,
            "ReturnValues": "ALL_NEW",
        }
        if expression_attribute_names is not None:
            kwargs["ExpressionAttributeNames"] = expression_attribute_names
        if condition_expression is not None:
            kwargs["ConditionExpression"] = condition_expression
        return table.update_item(**kwargs)

    def delete_item(self, table_name: str, key: dict[str, Any]) -> None:
        """Delete an item, enforcing the partition on PK."""
        self._validate_pk(key)
        table = self._dynamodb.Table(table_name)
        table.delete_item(Key=key)

    def query(
        self,
        table_name: str,
        *,
        owner_scoped: bool = False,
        sk_condition: ConditionBase | None = None,
        filter_expression: ConditionBase | None = None,
        limit: int | None = None,
        scan_index_forward: bool = True,
    ) -> list[dict[str, Any]]:
        """Query the caller's partition, following pagination.

        The PK is always forced to TENANT#{company_id}, or OWNER#{sub} when
        owner_scoped is set; the caller cannot supply a different partition
        key. An optional SK condition is ANDed onto the key condition.
        With a limit only the first page is read.
        """
        table = self._dynamodb.Table(table_name)
        if owner_scoped:
            partition = f"{OWNER_PK_PREFIX}{self._sub}"
        else:
            partition = f"{TENANT_PK_PREFIX}{self._company_id}"
        pk_condition = Key("PK").eq(partition)
        key_condition = pk_condition & sk_condition if sk_condition is not None else pk_condition

        kwargs: dict[str, Any] = {
            "KeyConditionExpression": key_condition,
            "ScanIndexForward": scan_index_forward,
        }
        if filter_expression is not None:
            kwargs["FilterExpression"] = filter_expression
        if limit is not None:
            kwargs["Limit"] = limit
            return table.query(**kwargs).get("Items", [])

        items: list[dict[str, Any]] = []
        while True:
            response = table.query(**kwargs)
            items.extend(response.get("Items", []))
            last_key = response.get("LastEvaluatedKey")
            if not last_key:
                return items
            kwargs["ExclusiveStartKey"] = last_key

    def scan(
        self,
        table_name: str,
        *,
        filter_expression: ConditionBase | None = None,
    ) -> list[dict[str, Any]]:
        """Scan a whole table, following pagination.

        SECURITY: Scanning is an administrative operation.  Isolation is
        NOT enforced by this method. It will return items from all
        tenants if they exist in the scanned table.

        Handlers must authorize the caller as a super-admin before calling
        this method.
        """
        table = self._dynamodb.Table(table_name)
        kwargs: dict[str, Any] = {}
        if filter_expression is not None:
            kwargs["FilterExpression"] = filter_expression

        items: list[dict[str, Any]] = []
        while True:
            response = table.scan(**kwargs)
            items.extend(response.get("Items", []))
            last_key = response.get("LastEvaluatedKey")
            if not last_key:
                return items
            kwargs["ExclusiveStartKey"] = last_key


# ---------------------------------------------------------------------------
# TenantScopedS3
# ---------------------------------------------------------------------------


class TenantScopedS3(_ViolationReporter):
    """
    S3 client scoped to a single company prefix.

    Enforces that all object keys are under incident-photos/{company_id}/.
    Raises TenantAccessViolation if the caller attempts to access a different
    company's prefix or a path outside the photo directory entirely.
    """

    _resource = "S3"

    def __init__(
        self,
        context: TenantContext,
        *,
        s3_client: Any = None,
        cloudwatch_client: Any = None,
    ) -> None:
        self._company_id = context.company_id
        self._sub = context.sub
        self._prefix = f"{PHOTO_PREFIX}{self._company_id}/"
        region = os.environ["AWS_REGION"]
        self._s3: Any = s3_client or boto3.client("s3", region_name=region)
        self._cloudwatch: Any = cloudwatch_client or boto3.client("cloudwatch", region_name=region)

    @property
    def prefix(self) -> str:
        return self._prefix

    def _validate_key(self, key: str) -> None:
        """Raise TenantAccessViolation if key is outside the company prefix."""
        if not key.startswith(self._prefix) or ".." in key.split("/"):
            # Best-effort: extract the target company from the key if possible.
            target_tenant_id = "unknown"
            if key.startswith(PHOTO_PREFIX):
                parts = key.split("/")
                if len(parts) >= 2 and parts[1]:
                    target_tenant_id = parts[1]
            self._raise_violation(
                target_tenant_id=target_tenant_id,
                attempted_key=key,
            )

    def get_object(self, bucket: str, key: str) -> dict[str, Any]:
        """Get an S3 object, enforcing the company prefix."""
        self._validate_key(key)
        return self._s3.get_object(Bucket=bucket, Key=key)

    def put_object(self, bucket: str, key: str, body: bytes, **kwargs: Any) -> None:
        """Put an S3 object, enforcing the company prefix."""
        self._validate_key(key)
        self._s3.put_object(Bucket=bucket, Key=key, Body=body, **kwargs)

    def copy_object(
        self,
        bucket: str,
        key: str,
        *,
        source_bucket: str,
        source_key: str,
        content_type: str = "image/jpeg",
    ) -> None:
        """Copy an object into the company prefix.

        Only the destination is checked; the source is typically an
        inference output bucket outside the tenant layout.
        """
        self._validate_key(key)
        self._s3.copy_object(
            Bucket=bucket,
            Key=key,
            CopySource={"Bucket": source_bucket, "Key": source_key},
            ContentType=content_type,
            MetadataDirective="REPLACE",
        )

    def delete_object(self, bucket: str, key: str) -> None:
        """Delete an S3 object, enforcing the company prefix."""
        self._validate_key(key)
        self._s3.delete_object(Bucket=bucket, Key=key)

    def list_objects(self, bucket: str, prefix: str = "") -> list[dict[str, Any]]:
        """List objects under the company prefix.

        The optional prefix is appended to the company prefix, keeping
        the listing inside the company's directory.
        """
        full_prefix = self._prefix + prefix
        response = self._s3.list_objects_v2(Bucket=bucket, Prefix=full_prefix)
        return response.get("Contents", [])

    def generate_presigned_url(
        self,
        bucket: str,
        key: str,
        *,
        expires_in: int = 3600,
        client_method: str = "get_object",
    ) -> str:
        """Generate a presigned URL for an object, enforcing the company prefix."""
        self._validate_key(key)
        return self._s3.generate_presigned_url(
            ClientMethod=client_method,
            Params={"Bucket": bucket, "Key": key},
            ExpiresIn=expires_in,
        )
