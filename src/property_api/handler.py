"""
property_api.handler — Homeowner property REST API Lambda.

Properties belong to a single user, not to a company. Every read and write
goes through the caller's OWNER#{sub} partition, so a property id owned by
someone else is simply not found.
"""

from __future__ import annotations

import os
import uuid
from dataclasses import dataclass
from typing import Any

import boto3
from aws_lambda_powertools import Logger
from boto3.dynamodb.conditions import Key
from botocore.exceptions import ClientError

from claims_data import TenantAccessViolation, TenantContext, TenantScopedDynamoDB
from claims_data.api import (
    build_update_expression,
    caller_from_event,
    ddb_value,
    error,
    http_method,
    iso,
    now_utc,
    path_param,
    request_path,
    require_json_body,
    response,
)
from claims_data.directory import CognitoDirectory
from claims_data.formatting import validate_property
from claims_data.models import property_key
from claims_data.policy import PROPERTY, CallerContext, authorize, resolve_company

logger = Logger(service="property-api")

_PROPERTIES_TABLE_ENV = "PROPERTIES_TABLE_NAME"


@dataclass(frozen=True)
class PropertyApiDependencies:
    directory: Any


def _properties_table_name() -> str:
    return os.environ.get(_PROPERTIES_TABLE_ENV, "claims-properties")


def _dependencies() -> PropertyApiDependencies:
    region = os.environ["AWS_REGION"]
    session = boto3.session.Session(region_name=region)
    return PropertyApiDependencies(
        directory=CognitoDirectory(client=session.client("cognito-idp")),
    )


def _owner_sub(caller: CallerContext) -> str:
    if not caller.sub:
        raise PermissionError("Caller has no subject claim")
    return caller.sub


def _db_for_owner(caller: CallerContext) -> TenantScopedDynamoDB:
    return TenantScopedDynamoDB(
        TenantContext(
            company_id=caller.company_id or "none",
            sub=_owner_sub(caller),
            company_name=caller.company_name,
            groups=caller.groups,
        )
    )


def _serialize_property(item: dict[str, Any]) -> dict[str, Any]:
    record = {k: v for k, v in item.items() if k not in {"PK", "SK", "propertyId"}}
    record["id"] = str(item.get("propertyId", ""))
    return record


def _handle_list(caller: CallerContext) -> dict[str, Any]:
    authorize(caller, PROPERTY, "list")
    db = _db_for_owner(caller)
    items = db.query(
        _properties_table_name(),
        owner_scoped=True,
        sk_condition=Key("SK").begins_with("PROPERTY#"),
    )
    properties = sorted(
        (_serialize_property(item) for item in items),
        key=lambda p: str(p.get("propertyName") or "").lower(),
    )
    return response(200, {"properties": properties})


def _handle_create(event: dict[str, Any], caller: CallerContext) -> dict[str, Any]:
    authorize(caller, PROPERTY, "create")
    attrs = validate_property(require_json_body(event), partial=False)
    owner = _owner_sub(caller)

    property_id = str(uuid.uuid4())
    now = iso(now_utc())
    item = ddb_value(
        {
            **property_key(owner, property_id),
            "propertyId": property_id,
            "ownerSub": owner,
            **{k: v for k, v in attrs.items() if v is not None},
            "createdAt": now,
            "updatedAt": now,
        }
    )
    _db_for_owner(caller).put_item(
        _properties_table_name(),
        item,
        condition_expression="attribute_not_exists(PK) AND attribute_not_exists(SK)",
    )
    logger.info("Property created", extra={"property_id": property_id})
    return response(201, {"property": _serialize_property(item)})


def _handle_read(caller: CallerContext, *, property_id: str) -> dict[str, Any]:
    authorize(caller, PROPERTY, "read")
    item = _db_for_owner(caller).get_item(
        _properties_table_name(), property_key(_owner_sub(caller), property_id)
    )
    if item is None:
        return error(404, "NOT_FOUND", "Property not found")
    return response(200, {"property": _serialize_property(item)})


def _handle_update(
    event: dict[str, Any],
    caller: CallerContext,
    *,
    property_id: str,
) -> dict[str, Any]:
    authorize(caller, PROPERTY, "update")
    body = require_json_body(event)
    body.pop("id", None)
    if not body:
        raise ValueError("No fields to update")
    attrs = validate_property(body, partial=True)

    db = _db_for_owner(caller)
    key = property_key(_owner_sub(caller), property_id)
    if db.get_item(_properties_table_name(), key) is None:
        return error(404, "NOT_FOUND", "Property not found")

    removed = sorted(k for k, v in attrs.items() if v is None)
    attrs = {k: v for k, v in attrs.items() if v is not None}
    attrs["updatedAt"] = iso(now_utc())
    update_expression, expr_names, expr_values = build_update_expression(attrs)
    if removed:
        remove_names = {f"#r{idx}": name for idx, name in enumerate(removed, start=1)}
        expr_names.update(remove_names)
        update_expression += " REMOVE " + ", ".join(remove_names)

    result = db.update_item(
        _properties_table_name(),
        key=key,
        update_expression=update_expression,
        expression_attribute_values=expr_values,
        expression_attribute_names=expr_names,
        condition_expression="attribute_exists(PK) AND attribute_exists(SK)",
    )
    return response(200, {"property": _serialize_property(result.get("Attributes", {}))})


def _handle_delete(caller: CallerContext, *, property_id: str) -> dict[str, Any]:
    authorize(caller, PROPERTY, "delete")
    db = _db_for_owner(caller)
    key = property_key(_owner_sub(caller), property_id)
    if db.get_item(_properties_table_name(), key) is None:
        return error(404, "NOT_FOUND", "Property not found")
    db.delete_item(_properties_table_name(), key)
    return response(200, {"success": True, "message": "Property deleted successfully"})


@logger.inject_lambda_context(clear_state=True, log_event=False)
def lambda_handler(event: dict[str, Any], _context: Any) -> dict[str, Any]:
    deps = _dependencies()
    method = http_method(event)
    path = request_path(event)
    property_id = path_param(event, "propertyId", "id")

    try:
        caller = resolve_company(caller_from_event(event), deps.directory)
        logger.append_keys(companyid=caller.company_id or "none", sub=caller.sub or "unknown")

        if path == "/v1/properties":
            if method == "GET":
                return _handle_list(caller)
            if method == "POST":
                return _handle_create(event, caller)

        if property_id is not None:
            if method == "GET":
                return _handle_read(caller, property_id=property_id)
            if method in {"PATCH", "PUT"}:
                return _handle_update(event, caller, property_id=property_id)
            if method == "DELETE":
                return _handle_delete(caller, property_id=property_id)

        return error(405, "METHOD_NOT_ALLOWED", "Unsupported property route")
    except (PermissionError, TenantAccessViolation) as exc:
        return error(403, "FORBIDDEN", str(exc))
    except ValueError as exc:
        return error(400, "BAD_REQUEST", str(exc))
    except ClientError as exc:
        logger.exception("AWS client error in property API handler")
        return error(502, "AWS_CLIENT_ERROR", exc.response.get("Error", {}).get("Code", "Unknown"))
    except Exception:
        logger.exception("Unhandled property API handler error")
        return error(500, "INTERNAL_ERROR", "Internal server error")
