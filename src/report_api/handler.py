"""
report_api.handler — Incident report REST API Lambda.

CRUD for incident reports plus the AI analysis trigger. Reports live in
their company's partition; non-super-admins only ever read their own
partition, so a report id from another company is simply not found.
Super-admins locate reports through the ReportIdIndex GSI.
"""

from __future__ import annotations

import json
import os
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Any

import boto3
from aws_lambda_powertools import Logger
from boto3.dynamodb.conditions import Attr, Key
from botocore.exceptions import ClientError

from claims_data import TenantAccessViolation, TenantContext, TenantScopedDynamoDB, TenantScopedS3
from claims_data.api import (
    build_update_expression,
    caller_from_event,
    ddb_value,
    error,
    http_method,
    iso,
    now_utc,
    path_param,
    query_params,
    request_path,
    require_json_body,
    response,
    str_or_none,
)
from claims_data.analysis import analyzed_image_keys, parse_analysis
from claims_data.directory import CognitoDirectory
from claims_data.formatting import validate_report
from claims_data.models import (
    ANALYSIS_STALE_SECONDS,
    TENANT_PK_PREFIX,
    AnalysisStatus,
    ReportStatus,
    report_key,
)
from claims_data.policy import (
    INCIDENT_REPORT,
    CallerContext,
    authorize,
    effective_company_id,
    resolve_company,
)

logger = Logger(service="report-api")

_REPORTS_TABLE_ENV = "REPORTS_TABLE_NAME"
_REPORT_ID_INDEX_ENV = "REPORT_ID_INDEX"
_STORAGE_BUCKET_ENV = "STORAGE_BUCKET_NAME"
_ANALYZE_FUNCTION_ENV = "ANALYZE_FUNCTION_NAME"
_IMMUTABLE_FIELDS = ("companyId", "aiAnalysis", "submittedAt", "submittedBy")

_dynamodb_resource = None


@dataclass(frozen=True)
class ReportApiDependencies:
    lambda_client: Any
    directory: Any


def get_dynamodb():
    """Lazy initialization of boto3 resource."""
    global _dynamodb_resource
    if _dynamodb_resource is None:
        _dynamodb_resource = boto3.resource("dynamodb", region_name=os.environ["AWS_REGION"])
    return _dynamodb_resource


def _reports_table_name() -> str:
    return os.environ.get(_REPORTS_TABLE_ENV, "claims-incident-reports")


def _report_id_index() -> str:
    return os.environ.get(_REPORT_ID_INDEX_ENV, "ReportIdIndex")


def _storage_bucket() -> str:
    return os.environ.get(_STORAGE_BUCKET_ENV, "claims-storage")


def _analyze_function_name() -> str:
    return os.environ.get(_ANALYZE_FUNCTION_ENV, "claims-analyze-report")


def _dependencies() -> ReportApiDependencies:
    region = os.environ["AWS_REGION"]
    session = boto3.session.Session(region_name=region)
    return ReportApiDependencies(
        lambda_client=session.client("lambda"),
        directory=CognitoDirectory(client=session.client("cognito-idp")),
    )


def _context_for(company_id: str, caller: CallerContext) -> TenantContext:
    return TenantContext(
        company_id=company_id,
        sub=caller.sub or "system",
        company_name=caller.company_name,
        groups=caller.groups,
    )


def _db_for_company(*, company_id: str, caller: CallerContext) -> TenantScopedDynamoDB:
    return TenantScopedDynamoDB(_context_for(company_id, caller))


def _locate_report_company(report_id: str) -> str | None:
    """Resolve a report's company via the ReportIdIndex GSI.

    Reports are addressed by id alone in the API, so super-admins need a
    system-level lookup before a scoped client can be built.
    """
    table = get_dynamodb().Table(_reports_table_name())
    result = table.query(
        IndexName=_report_id_index(),
        KeyConditionExpression=Key("reportId").eq(report_id),
        Limit=1,
    )
    items = result.get("Items", [])
    if not items:
        return None
    return str(items[0]["PK"]).removeprefix(TENANT_PK_PREFIX)


def _report_company(caller: CallerContext, report_id: str) -> str | None:
    if caller.is_super_admin:
        return _locate_report_company(report_id)
    if not caller.company_id:
        raise PermissionError("Caller has no associated company")
    return caller.company_id


def _read_report(
    caller: CallerContext,
    report_id: str,
) -> tuple[str, dict[str, Any]] | None:
    company_id = _report_company(caller, report_id)
    if company_id is None:
        return None
    db = _db_for_company(company_id=company_id, caller=caller)
    item = db.get_item(_reports_table_name(), report_key(company_id, report_id))
    if item is None:
        return None
    return company_id, item


def _serialize_report(item: dict[str, Any]) -> dict[str, Any]:
    record = {k: v for k, v in item.items() if k not in {"PK", "SK", "reportId"}}
    record["id"] = str(item.get("reportId", ""))
    record["photoUrls"] = list(item.get("photoUrls") or [])
    return record


# ---------------------------------------------------------------------------
# CRUD
# ---------------------------------------------------------------------------


def _handle_list(event: dict[str, Any], caller: CallerContext) -> dict[str, Any]:
    authorize(caller, INCIDENT_REPORT, "list")
    params = query_params(event)
    status_filter = str_or_none(params.get("status"))
    filter_expression = None
    if status_filter is not None:
        filter_expression = Attr("status").eq(ReportStatus(status_filter.lower()).value)

    if caller.is_super_admin:
        scan_filter = Attr("SK").begins_with("REPORT#")
        company_filter = str_or_none(params.get("companyId"))
        if company_filter is not None:
            scan_filter = scan_filter & Attr("companyId").eq(company_filter)
        if filter_expression is not None:
            scan_filter = scan_filter & filter_expression
        db = _db_for_company(company_id=caller.company_id or "system", caller=caller)
        items = db.scan(_reports_table_name(), filter_expression=scan_filter)
    else:
        if not caller.company_id:
            return response(200, {"reports": []})
        db = _db_for_company(company_id=caller.company_id, caller=caller)
        items = db.query(
            _reports_table_name(),
            sk_condition=Key("SK").begins_with("REPORT#"),
            filter_expression=filter_expression,
        )

    reports = sorted(
        (_serialize_report(item) for item in items),
        key=lambda r: str(r.get("submittedAt") or ""),
        reverse=True,
    )
    return response(200, {"reports": reports})


def _handle_create(event: dict[str, Any], caller: CallerContext) -> dict[str, Any]:
    authorize(caller, INCIDENT_REPORT, "create")
    body = require_json_body(event)
    # New reports always start as submitted.
    body.pop("status", None)
    attrs = validate_report(body, partial=False)
    company_id = effective_company_id(caller, str_or_none(body.get("companyId")))
    authorize(caller, INCIDENT_REPORT, "create", company_id=company_id)

    report_id = str(uuid.uuid4())
    item: dict[str, Any] = {
        **report_key(company_id, report_id),
        "reportId": report_id,
        "companyId": company_id,
        **{k: v for k, v in attrs.items() if v is not None},
        "status": ReportStatus.SUBMITTED.value,
        "submittedAt": iso(now_utc()),
        "aiAnalysis": json.dumps({"status": AnalysisStatus.PENDING.value}),
    }
    if "companyName" not in item and caller.company_name and company_id == caller.company_id:
        item["companyName"] = caller.company_name
    if caller.username:
        item["submittedBy"] = caller.username

    item = ddb_value(item)

    db = _db_for_company(company_id=company_id, caller=caller)
    db.put_item(
        _reports_table_name(),
        item,
        condition_expression="attribute_not_exists(PK) AND attribute_not_exists(SK)",
    )
    logger.info("Incident report created", extra={"report_id": report_id})
    return response(201, {"report": _serialize_report(item)})


def _handle_read(caller: CallerContext, *, report_id: str) -> dict[str, Any]:
    authorize(caller, INCIDENT_REPORT, "read")
    found = _read_report(caller, report_id)
    if found is None:
        return error(404, "NOT_FOUND", "Incident report not found")
    company_id, item = found
    authorize(caller, INCIDENT_REPORT, "read", company_id=company_id)
    return response(200, {"report": _serialize_report(item)})


def _handle_update(
    event: dict[str, Any],
    caller: CallerContext,
    *,
    report_id: str,
) -> dict[str, Any]:
    authorize(caller, INCIDENT_REPORT, "update")
    body = require_json_body(event)
    body.pop("id", None)
    if not body:
        raise ValueError("No fields to update")
    immutable = sorted(f for f in _IMMUTABLE_FIELDS if f in body)
    if immutable:
        raise ValueError(f"Field(s) cannot be changed: {', '.join(immutable)}")
    attrs = validate_report(body, partial=True)

    found = _read_report(caller, report_id)
    if found is None:
        return error(404, "NOT_FOUND", "Incident report not found")
    company_id, _ = found
    authorize(caller, INCIDENT_REPORT, "update", company_id=company_id)

    removed = sorted(k for k, v in attrs.items() if v is None)
    attrs = {k: v for k, v in attrs.items() if v is not None}
    attrs["updatedAt"] = iso(now_utc())
    update_expression, expr_names, expr_values = build_update_expression(attrs)
    if removed:
        remove_names = {f"#r{idx}": name for idx, name in enumerate(removed, start=1)}
        expr_names.update(remove_names)
        update_expression += " REMOVE " + ", ".join(remove_names)

    db = _db_for_company(company_id=company_id, caller=caller)
    result = db.update_item(
        _reports_table_name(),
        key=report_key(company_id, report_id),
        update_expression=update_expression,
        expression_attribute_values=expr_values,
        expression_attribute_names=expr_names,
        condition_expression="attribute_exists(PK) AND attribute_exists(SK)",
    )
    return response(200, {"report": _serialize_report(result.get("Attributes", {}))})


def _delete_analyzed_images(
    caller: CallerContext,
    *,
    company_id: str,
    item: dict[str, Any],
) -> None:
    analysis = parse_analysis(item.get("aiAnalysis"))
    bucket = _storage_bucket()
    keys = analyzed_image_keys(analysis, bucket)
    if not keys:
        return
    logger.info("Deleting analyzed images", extra={"count": len(keys)})
    storage = TenantScopedS3(_context_for(company_id, caller))
    for key in keys:
        try:
            storage.delete_object(bucket, key)
        except (ClientError, TenantAccessViolation):
            logger.exception("Failed to delete analyzed image", extra={"key": key})


def _handle_delete(caller: CallerContext, *, report_id: str) -> dict[str, Any]:
    authorize(caller, INCIDENT_REPORT, "delete")
    found = _read_report(caller, report_id)
    if found is None:
        return error(404, "NOT_FOUND", "Incident report not found")
    company_id, item = found
    authorize(caller, INCIDENT_REPORT, "delete", company_id=company_id)

    _delete_analyzed_images(caller, company_id=company_id, item=item)

    db = _db_for_company(company_id=company_id, caller=caller)
    db.delete_item(_reports_table_name(), report_key(company_id, report_id))
    return response(200, {"success": True, "message": "Incident report deleted successfully"})


# ---------------------------------------------------------------------------
# Analysis trigger
# ---------------------------------------------------------------------------


def _analysis_in_progress(analysis: dict[str, Any]) -> bool:
    if analysis.get("status") != AnalysisStatus.ANALYZING.value:
        return False
    start = str_or_none(analysis.get("startTime"))
    if start is None:
        return False
    try:
        started = datetime.fromisoformat(start.replace("Z", "+00:00"))
    except ValueError:
        return False
    return (now_utc() - started).total_seconds() < ANALYSIS_STALE_SECONDS


def _handle_analyze(
    caller: CallerContext,
    deps: ReportApiDependencies,
    *,
    report_id: str,
) -> dict[str, Any]:
    authorize(caller, INCIDENT_REPORT, "update")
    found = _read_report(caller, report_id)
    if found is None:
        return error(404, "NOT_FOUND", "Report not found")
    company_id, item = found
    authorize(caller, INCIDENT_REPORT, "update", company_id=company_id)

    if not item.get("photoUrls"):
        return error(400, "BAD_REQUEST", "No photos to analyze")
    if _analysis_in_progress(parse_analysis(item.get("aiAnalysis"))):
        return error(409, "CONFLICT", "Analysis already in progress")

    blob = {"status": AnalysisStatus.ANALYZING.value, "startTime": iso(now_utc())}
    update_expression, expr_names, expr_values = build_update_expression(
        {"aiAnalysis": json.dumps(blob)}
    )
    db = _db_for_company(company_id=company_id, caller=caller)
    db.update_item(
        _reports_table_name(),
        key=report_key(company_id, report_id),
        update_expression=update_expression,
        expression_attribute_values=expr_values,
        expression_attribute_names=expr_names,
    )

    logger.info(
        "Triggering background analysis",
        extra={"report_id": report_id, "function_name": _analyze_function_name()},
    )
    deps.lambda_client.invoke(
        FunctionName=_analyze_function_name(),
        InvocationType="Event",
        Payload=json.dumps(
            {
                "reportId": report_id,
                "bucket": _storage_bucket(),
                "region": os.environ["AWS_REGION"],
            }
        ),
    )
    return response(202, {"success": True, "message": "Analysis started in background"})


@logger.inject_lambda_context(clear_state=True, log_event=False)
def lambda_handler(event: dict[str, Any], _context: Any) -> dict[str, Any]:
    deps = _dependencies()
    method = http_method(event)
    path = request_path(event)
    report_id = path_param(event, "reportId", "id")

    try:
        caller = resolve_company(caller_from_event(event), deps.directory)
        logger.append_keys(companyid=caller.company_id or "none", sub=caller.sub or "unknown")

        if path == "/v1/incident-reports":
            if method == "GET":
                return _handle_list(event, caller)
            if method == "POST":
                return _handle_create(event, caller)

        if report_id is not None:
            if path.endswith("/analyze"):
                if method == "POST":
                    return _handle_analyze(caller, deps, report_id=report_id)
            elif method == "GET":
                return _handle_read(caller, report_id=report_id)
            elif method in {"PATCH", "PUT"}:
                return _handle_update(event, caller, report_id=report_id)
            elif method == "DELETE":
                return _handle_delete(caller, report_id=report_id)

        return error(405, "METHOD_NOT_ALLOWED", "Unsupported incident report route")
    except (PermissionError, TenantAccessViolation) as exc:
        return error(403, "FORBIDDEN", str(exc))
    except ValueError as exc:
        return error(400, "BAD_REQUEST", str(exc))
    except ClientError as exc:
        logger.exception("AWS client error in incident report handler")
        return error(502, "AWS_CLIENT_ERROR", exc.response.get("Error", {}).get("Code", "Unknown"))
    except Exception:
        logger.exception("Unhandled incident report handler error")
        return error(500, "INTERNAL_ERROR", "Internal server error")
