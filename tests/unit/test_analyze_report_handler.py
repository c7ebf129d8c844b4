from __future__ import annotations

import json
import sys
from collections.abc import Iterator
from pathlib import Path
from typing import Any

import boto3
import pytest
import requests
from moto import mock_aws

sys.path.insert(0, str(Path(__file__).resolve().parents[2]))

from src.analyze_report import handler as analyze_handler

REGION = "us-east-1"
TABLE_NAME = "claims-incident-reports-test"
BUCKET = "claims-storage-test"
OUTPUT_BUCKET = "inference-output"
ENDPOINT = "https://inference.example.com/analyze"


class FakeResponse:
    def __init__(self, status_code: int = 200, payload: Any = None, text: str = "") -> None:
        self.status_code = status_code
        self.ok = 200 <= status_code < 300
        self._payload = payload
        self.text = text or json.dumps(payload)

    def json(self) -> Any:
        if self._payload is None:
            raise ValueError("No JSON object could be decoded")
        return self._payload


class FakeInference:
    """Replays queued responses for successive requests.post calls."""

    def __init__(self) -> None:
        self.responses: list[Any] = []
        self.calls: list[dict[str, Any]] = []

    def post(self, url: str, *, json: dict[str, Any], timeout: float) -> FakeResponse:
        self.calls.append({"url": url, "json": json, "timeout": timeout})
        outcome = self.responses.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


class FakeLambdaContext:
    function_name = "analyze-report"
    memory_limit_in_mb = 1024
    invoked_function_arn = "arn:aws:lambda:us-east-1:111111111111:function:analyze-report"
    aws_request_id = "req-123"


@pytest.fixture
def fake_state(monkeypatch: pytest.MonkeyPatch) -> Iterator[dict[str, Any]]:
    monkeypatch.setenv("AWS_REGION", REGION)
    monkeypatch.setenv("AWS_DEFAULT_REGION", REGION)
    monkeypatch.setenv("AWS_ACCESS_KEY_ID", "testing")
    monkeypatch.setenv("AWS_SECRET_ACCESS_KEY", "testing")
    monkeypatch.setenv("STORAGE_BUCKET_NAME", BUCKET)
    monkeypatch.setenv("INFERENCE_ENDPOINT_URL", ENDPOINT)
    monkeypatch.setattr(analyze_handler, "REPORTS_TABLE", TABLE_NAME)
    monkeypatch.setattr(analyze_handler, "_dynamodb_resource", None)
    monkeypatch.setattr(analyze_handler, "_ssm_client", None)
    monkeypatch.setattr(analyze_handler, "_config_cache", {})
    monkeypatch.setattr(analyze_handler, "_config_cache_expiry", 0)

    inference = FakeInference()
    monkeypatch.setattr(analyze_handler.requests, "post", inference.post)

    with mock_aws():
        dynamodb = boto3.resource("dynamodb", region_name=REGION)
        table = dynamodb.create_table(
            TableName=TABLE_NAME,
            KeySchema=[
                {"AttributeName": "PK", "KeyType": "HASH"},
                {"AttributeName": "SK", "KeyType": "RANGE"},
            ],
            AttributeDefinitions=[
                {"AttributeName": "PK", "AttributeType": "S"},
                {"AttributeName": "SK", "AttributeType": "S"},
                {"AttributeName": "reportId", "AttributeType": "S"},
            ],
            GlobalSecondaryIndexes=[
                {
                    "IndexName": "ReportIdIndex",
                    "KeySchema": [{"AttributeName": "reportId", "KeyType": "HASH"}],
                    "Projection": {"ProjectionType": "ALL"},
                }
            ],
            BillingMode="PAY_PER_REQUEST",
        )
        s3 = boto3.client("s3", region_name=REGION)
        s3.create_bucket(Bucket=BUCKET)
        s3.create_bucket(Bucket=OUTPUT_BUCKET)
        yield {"table": table, "s3": s3, "inference": inference}


def _put_report(fake_state: dict[str, Any], **extra: Any) -> None:
    item = {
        "PK": "TENANT#co-1",
        "SK": "REPORT#r-1",
        "reportId": "r-1",
        "companyId": "co-1",
        "incidentDate": "2026-04-02",
        "description": "Hail damage on the north slope",
        "aiAnalysis": json.dumps({"status": "analyzing"}),
        **extra,
    }
    fake_state["table"].put_item(Item=item)


def _stored_analysis(fake_state: dict[str, Any]) -> dict[str, Any]:
    item = fake_state["table"].get_item(Key={"PK": "TENANT#co-1", "SK": "REPORT#r-1"})["Item"]
    return json.loads(item["aiAnalysis"])


def _invoke(event: dict[str, Any]) -> dict[str, Any]:
    return analyze_handler.handler(event, FakeLambdaContext())


def test_analysis_merges_results_and_copies_output(fake_state: dict[str, Any]) -> None:
    fake_state["s3"].put_object(Bucket=OUTPUT_BUCKET, Key="out/a.jpg", Body=b"annotated")
    _put_report(
        fake_state,
        photoUrls=["incident-photos/co-1/1-a.jpg", "incident-photos/co-1/2-b.png"],
        weatherReport=json.dumps(
            {
                "reported_hail_size_inches": 1.75,
                "weather_date": "2026-04-02",
                "weather_description": "Severe hail",
            }
        ),
    )
    fake_state["inference"].responses = [
        FakeResponse(
            payload={
                "result": {
                    "detections": [
                        {"label": "hail", "output_s3_uri": f"s3://{OUTPUT_BUCKET}/out/a.jpg"}
                    ],
                    "evidence_bullets": ["Bruised shingles"],
                    "final_assessment": "Consistent with hail",
                    "peril_match": {"match": "yes", "reason": "size"},
                }
            }
        ),
        FakeResponse(status_code=500, text="model crashed"),
    ]

    result = _invoke({"reportId": "r-1", "bucket": "ignored-bucket"})

    assert result == {"success": True, "photosAnalyzed": 1}
    calls = fake_state["inference"].calls
    assert [c["url"] for c in calls] == [ENDPOINT, ENDPOINT]
    first_payload = calls[0]["json"]
    assert first_payload["images"][0]["s3_uri"] == f"s3://{BUCKET}/incident-photos/co-1/1-a.jpg"
    assert first_payload["weather_report"]["reported_hail_size_inches"] == 1.75
    assert calls[1]["json"]["images"][0]["format"] == "image/png"

    analysis = _stored_analysis(fake_state)
    assert analysis["status"] == "complete"
    assert analysis["photosAnalyzed"] == 1
    assert analysis["photosFailed"] == 1
    assert analysis["final_assessment"] == "Consistent with hail"
    assert analysis["peril_match"]["match"] == "yes"
    [local_path] = analysis["all_local_paths"]
    assert local_path.startswith("incident-photos/co-1/r-1/analyzed-")
    assert analysis["detections"][0]["local_output_path"] == local_path

    copied = fake_state["s3"].get_object(Bucket=BUCKET, Key=local_path)
    assert copied["Body"].read() == b"annotated"


def test_missing_output_image_is_skipped(fake_state: dict[str, Any]) -> None:
    _put_report(fake_state, photoUrls=["incident-photos/co-1/1-a.jpg"])
    fake_state["inference"].responses = [
        FakeResponse(
            payload={"detections": [{"output_s3_uri": f"s3://{OUTPUT_BUCKET}/out/missing.jpg"}]}
        )
    ]

    _invoke({"reportId": "r-1"})

    analysis = _stored_analysis(fake_state)
    assert analysis["status"] == "complete"
    assert analysis["all_local_paths"] == []
    assert "local_output_path" not in analysis["detections"][0]


def test_all_photos_failing_still_completes(fake_state: dict[str, Any]) -> None:
    _put_report(
        fake_state,
        photoUrls=["incident-photos/co-1/1-a.jpg", "incident-photos/co-1/2.jpg"],
    )
    fake_state["inference"].responses = [
        requests.exceptions.ConnectTimeout("timed out"),
        FakeResponse(payload={"error": "unsupported image"}),
    ]

    result = _invoke({"reportId": "r-1"})

    assert result["photosAnalyzed"] == 0
    analysis = _stored_analysis(fake_state)
    assert analysis["photosFailed"] == 2
    assert analysis["final_assessment"] == "Assessment Incomplete"


def test_report_without_photos_is_skipped(fake_state: dict[str, Any]) -> None:
    _put_report(fake_state)
    result = _invoke({"reportId": "r-1"})
    assert result == {"success": True, "message": "No photos to analyze"}
    assert _stored_analysis(fake_state) == {
        "status": "skipped",
        "reason": "No photos to analyze",
    }
    assert fake_state["inference"].calls == []


def test_unknown_report_raises(fake_state: dict[str, Any]) -> None:
    with pytest.raises(LookupError):
        _invoke({"reportId": "r-404"})


def test_missing_report_id_raises(fake_state: dict[str, Any]) -> None:
    with pytest.raises(ValueError, match="reportId is required"):
        _invoke({})


def test_missing_bucket_raises(
    fake_state: dict[str, Any], monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.delenv("STORAGE_BUCKET_NAME")
    with pytest.raises(ValueError, match="Storage bucket"):
        _invoke({"reportId": "r-1"})


def test_unconfigured_endpoint_records_failure(
    fake_state: dict[str, Any], monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.delenv("INFERENCE_ENDPOINT_URL")
    _put_report(fake_state, photoUrls=["incident-photos/co-1/1-a.jpg"])

    with pytest.raises(RuntimeError, match="not configured"):
        _invoke({"reportId": "r-1"})

    analysis = _stored_analysis(fake_state)
    assert analysis["status"] == "failed"
    assert "not configured" in analysis["error"]


def test_get_config_reads_and_caches_ssm_parameter(
    fake_state: dict[str, Any], monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.delenv("INFERENCE_ENDPOINT_URL")
    ssm = boto3.client("ssm", region_name=REGION)
    ssm.put_parameter(
        Name=analyze_handler.INFERENCE_ENDPOINT_PARAM, Value=ENDPOINT, Type="String"
    )

    assert analyze_handler.get_config() == {"inference_endpoint_url": ENDPOINT}

    ssm.put_parameter(
        Name=analyze_handler.INFERENCE_ENDPOINT_PARAM,
        Value="https://changed.example.com",
        Type="String",
        Overwrite=True,
    )
    assert analyze_handler.get_config() == {"inference_endpoint_url": ENDPOINT}


def test_analyze_photo_rejects_non_json_response(fake_state: dict[str, Any]) -> None:
    fake_state["inference"].responses = [FakeResponse(payload=None, text="<html>")]
    assert analyze_handler.analyze_photo(ENDPOINT, {}, "p.jpg") is None
