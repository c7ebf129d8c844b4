"""
analyze_report.handler — Background AI analysis worker Lambda.

Invoked asynchronously by the report API. Sends each report photo to the
external inference endpoint, merges the per-photo results, copies the
annotated output images into the company's photo prefix and writes one
consolidated analysis blob back onto the report.

Best-effort: a photo that fails is skipped and counted; there are no
retries. A failure of the run as a whole is recorded on the report and
re-raised.
"""

import json
import os
import secrets
import time
from typing import Any

import boto3
import requests
from aws_lambda_powertools import Logger, Tracer
from aws_lambda_powertools.utilities.typing import LambdaContext
from boto3.dynamodb.conditions import Key
from botocore.exceptions import ClientError

from claims_data import TenantAccessViolation, TenantContext, TenantScopedDynamoDB, TenantScopedS3
from claims_data.analysis import AnalysisAggregate, build_payload, unwrap_result
from claims_data.api import build_update_expression, iso, now_utc
from claims_data.models import PHOTO_PREFIX, TENANT_PK_PREFIX, AnalysisStatus, report_key

logger = Logger(service="analyze-report")
tracer = Tracer()

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------
REPORTS_TABLE = os.environ.get("REPORTS_TABLE_NAME", "claims-incident-reports")
REPORT_ID_INDEX = os.environ.get("REPORT_ID_INDEX", "ReportIdIndex")
INFERENCE_ENDPOINT_PARAM = os.environ.get(
    "INFERENCE_ENDPOINT_PARAM", "/claims/config/inference-endpoint-url"
)
INFERENCE_TIMEOUT_SECONDS = float(os.environ.get("INFERENCE_TIMEOUT_SECONDS", "120"))
SYSTEM_SUB = "analyze-report"

# ---------------------------------------------------------------------------
# Global clients/cache
# ---------------------------------------------------------------------------
_ssm_client = None
_dynamodb_resource = None

# Cache for SSM parameters (60s TTL)
_config_cache: dict[str, Any] = {}
_config_cache_expiry: float = 0


def get_ssm():
    global _ssm_client
    if _ssm_client is None:
        region = os.environ.get("AWS_REGION", "us-east-1")
        _ssm_client = boto3.client("ssm", region_name=region)
    return _ssm_client


def get_dynamodb():
    global _dynamodb_resource
    if _dynamodb_resource is None:
        region = os.environ.get("AWS_REGION", "us-east-1")
        _dynamodb_resource = boto3.resource("dynamodb", region_name=region)
    return _dynamodb_resource


def get_config() -> dict[str, Any]:
    """Fetch and cache the inference endpoint from the environment or SSM."""
    global _config_cache, _config_cache_expiry
    env_url = os.environ.get("INFERENCE_ENDPOINT_URL")
    if env_url:
        return {"inference_endpoint_url": env_url}

    now = time.time()
    if now < _config_cache_expiry:
        return _config_cache

    try:
        response = get_ssm().get_parameter(Name=INFERENCE_ENDPOINT_PARAM)
        _config_cache = {"inference_endpoint_url": response["Parameter"]["Value"]}
        _config_cache_expiry = now + 60  # 60s cache TTL
        return _config_cache
    except Exception:
        logger.exception("Failed to fetch config from SSM")
        # Return stale cache if available
        return _config_cache or {"inference_endpoint_url": None}


def locate_report(report_id: str) -> dict[str, Any] | None:
    """Find a report by id through the ReportIdIndex GSI.

    The worker is a system-level caller with no tenant of its own; the
    company found here scopes every later read and write.
    """
    table = get_dynamodb().Table(REPORTS_TABLE)
    response = table.query(
        IndexName=REPORT_ID_INDEX,
        KeyConditionExpression=Key("reportId").eq(report_id),
        Limit=1,
    )
    items = response.get("Items", [])
    if not items:
        return None
    company_id = str(items[0]["PK"]).removeprefix(TENANT_PK_PREFIX)
    db = TenantScopedDynamoDB(TenantContext(company_id=company_id, sub=SYSTEM_SUB))
    return db.get_item(REPORTS_TABLE, report_key(company_id, report_id))


def write_analysis(company_id: str, report_id: str, blob: dict[str, Any]) -> None:
    db = TenantScopedDynamoDB(TenantContext(company_id=company_id, sub=SYSTEM_SUB))
    update_expression, expr_names, expr_values = build_update_expression(
        {"aiAnalysis": json.dumps(blob), "updatedAt": iso(now_utc())}
    )
    db.update_item(
        REPORTS_TABLE,
        key=report_key(company_id, report_id),
        update_expression=update_expression,
        expression_attribute_values=expr_values,
        expression_attribute_names=expr_names,
        condition_expression="attribute_exists(PK) AND attribute_exists(SK)",
    )


def _parse_weather(raw: Any) -> dict[str, Any] | None:
    if isinstance(raw, dict):
        return raw
    if isinstance(raw, str) and raw:
        try:
            decoded = json.loads(raw)
        except json.JSONDecodeError:
            logger.warning("Failed to parse weather report")
            return None
        return decoded if isinstance(decoded, dict) else None
    return None


def analyze_photo(url: str, payload: dict[str, Any], path: str) -> dict[str, Any] | None:
    """Call the inference endpoint for one photo. None means skip it."""
    try:
        response = requests.post(url, json=payload, timeout=INFERENCE_TIMEOUT_SECONDS)
    except requests.exceptions.RequestException:
        logger.exception("Inference request failed", extra={"path": path})
        return None
    if not response.ok:
        logger.error(
            "Inference endpoint returned an error",
            extra={"path": path, "status_code": response.status_code, "body": response.text[:500]},
        )
        return None
    try:
        result = unwrap_result(response.json())
    except ValueError:
        logger.error("Inference response is not JSON", extra={"path": path})
        return None
    if result.get("error"):
        logger.error(
            "Inference reported an error", extra={"path": path, "error": result["error"]}
        )
        return None
    return result


def _split_s3_uri(uri: str) -> tuple[str, str]:
    bucket, _, key = uri.removeprefix("s3://").partition("/")
    return bucket, key


def copy_output_images(
    storage: TenantScopedS3,
    *,
    bucket: str,
    company_id: str,
    report_id: str,
    output_uris: list[str],
) -> dict[str, str]:
    """Copy annotated images into the company prefix; failures are skipped."""
    copied: dict[str, str] = {}
    for uri in output_uris:
        source_bucket, source_key = _split_s3_uri(uri)
        if not source_bucket or not source_key:
            logger.warning("Ignoring malformed output URI", extra={"uri": uri})
            continue
        suffix = secrets.token_hex(3)
        target_key = (
            f"{PHOTO_PREFIX}{company_id}/{report_id}/"
            f"analyzed-{int(time.time() * 1000)}-{suffix}.jpeg"
        )
        try:
            storage.copy_object(
                bucket,
                target_key,
                source_bucket=source_bucket,
                source_key=source_key,
            )
        except (ClientError, TenantAccessViolation):
            logger.exception("Failed to copy analyzed image", extra={"uri": uri})
            continue
        copied[uri] = target_key
    return copied


def run_analysis(report: dict[str, Any], *, bucket: str, url: str) -> dict[str, Any]:
    company_id = str(report["companyId"])
    report_id = str(report["reportId"])
    photos = list(report.get("photoUrls") or [])
    weather = _parse_weather(report.get("weatherReport"))

    aggregate = AnalysisAggregate()
    logger.info("Processing images", extra={"count": len(photos)})
    for index, path in enumerate(photos):
        payload = build_payload(report, index=index, path=path, bucket=bucket, weather=weather)
        result = analyze_photo(url, payload, path)
        if result is None:
            aggregate.record_failure()
        else:
            aggregate.add(result)

    storage = TenantScopedS3(TenantContext(company_id=company_id, sub=SYSTEM_SUB))
    copied = copy_output_images(
        storage,
        bucket=bucket,
        company_id=company_id,
        report_id=report_id,
        output_uris=aggregate.output_uris(),
    )
    return {
        **aggregate.to_blob(copied),
        "status": AnalysisStatus.COMPLETE.value,
        "completedAt": iso(now_utc()),
        "photosAnalyzed": aggregate.analyzed,
        "photosFailed": aggregate.failed,
    }


@logger.inject_lambda_context(log_event=True)
@tracer.capture_lambda_handler
def handler(event: dict[str, Any], context: LambdaContext) -> dict[str, Any]:
    """Analysis worker entry point."""
    report_id = str(event.get("reportId") or "")
    if not report_id:
        raise ValueError("reportId is required")
    bucket = os.environ.get("STORAGE_BUCKET_NAME") or event.get("bucket")
    if not bucket:
        raise ValueError("Storage bucket not found in environment or event")

    logger.append_keys(report_id=report_id)
    company_id: str | None = None
    try:
        report = locate_report(report_id)
        if report is None:
            raise LookupError(f"Report {report_id} not found")
        company_id = str(report["companyId"])
        logger.append_keys(companyid=company_id)

        if not report.get("photoUrls"):
            logger.info("No photos to analyze")
            write_analysis(
                company_id,
                report_id,
                {"status": AnalysisStatus.SKIPPED.value, "reason": "No photos to analyze"},
            )
            return {"success": True, "message": "No photos to analyze"}

        url = get_config().get("inference_endpoint_url")
        if not url:
            raise RuntimeError("Inference endpoint URL is not configured")

        blob = run_analysis(report, bucket=bucket, url=url)
        write_analysis(company_id, report_id, blob)
        logger.info(
            "Background analysis complete",
            extra={"analyzed": blob["photosAnalyzed"], "failed": blob["photosFailed"]},
        )
        return {"success": True, "photosAnalyzed": blob["photosAnalyzed"]}
    except Exception as exc:
        logger.exception("Background analysis failed")
        if company_id is not None:
            try:
                write_analysis(
                    company_id,
                    report_id,
                    {"status": AnalysisStatus.FAILED.value, "error": str(exc)},
                )
            except Exception:
                logger.exception("Failed to record analysis failure")
        raise
