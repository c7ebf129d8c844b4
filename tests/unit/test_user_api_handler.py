from __future__ import annotations

import io
import json
import sys
from pathlib import Path
from typing import Any

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[2]))

from src.user_api import handler as user_api_handler


class FakeLambdaClient:
    """Records invocations and replays a queued admin-actions response."""

    def __init__(self) -> None:
        self.calls: list[dict[str, Any]] = []
        self.result: Any = {}
        self.function_error: str | None = None

    def invoke(self, **kwargs: Any) -> dict[str, Any]:
        self.calls.append({**kwargs, "Payload": json.loads(kwargs["Payload"])})
        response: dict[str, Any] = {
            "StatusCode": 200,
            "Payload": io.BytesIO(json.dumps(self.result).encode("utf-8")),
        }
        if self.function_error:
            response["FunctionError"] = self.function_error
        return response

    def fail_with(self, error_type: str, message: str) -> None:
        self.function_error = "Unhandled"
        self.result = {"errorType": error_type, "errorMessage": message}


class FakeDirectory:
    def __init__(self) -> None:
        self.attributes: dict[str, dict[str, str]] = {}

    def get_user_attributes(self, username: str) -> dict[str, str]:
        return dict(self.attributes.get(username, {}))


class FakeLambdaContext:
    function_name = "user-api"
    memory_limit_in_mb = 256
    invoked_function_arn = "arn:aws:lambda:us-east-1:111111111111:function:user-api"
    aws_request_id = "req-123"


@pytest.fixture
def fake_state(monkeypatch: pytest.MonkeyPatch) -> dict[str, Any]:
    deps = user_api_handler.UserApiDependencies(
        lambda_client=FakeLambdaClient(),
        directory=FakeDirectory(),
    )
    monkeypatch.setenv("AWS_REGION", "us-east-1")
    monkeypatch.setenv("ADMIN_ACTIONS_FUNCTION_NAME", "claims-admin-actions-test")
    monkeypatch.setattr(user_api_handler, "_dependencies", lambda: deps)
    return {"deps": deps, "lambda": deps.lambda_client}


def _event(
    *,
    method: str,
    path: str = "/v1/admin/users",
    username: str | None = None,
    body: dict[str, Any] | None = None,
    groups: list[str] | None = None,
    company_id: str | None = "co-1",
) -> dict[str, Any]:
    authorizer: dict[str, Any] = {
        "sub": "user-123",
        "username": "admin@acme.co",
        "email": "admin@acme.co",
        "groups": json.dumps(groups if groups is not None else ["Admin"]),
    }
    if company_id is not None:
        authorizer["companyid"] = company_id
        authorizer["companyname"] = "Acme Roofing"
    return {
        "httpMethod": method,
        "path": path,
        "pathParameters": {"username": username} if username else None,
        "body": None if body is None else json.dumps(body),
        "requestContext": {"authorizer": authorizer},
    }


def _body(response: dict[str, Any]) -> dict[str, Any]:
    return json.loads(response["body"])


def _invoke(event: dict[str, Any]) -> dict[str, Any]:
    return user_api_handler.lambda_handler(event, FakeLambdaContext())


def _forwarded(fake_state: dict[str, Any]) -> dict[str, Any]:
    calls = fake_state["lambda"].calls
    assert calls, "expected admin-actions invocation"
    assert calls[-1]["FunctionName"] == "claims-admin-actions-test"
    assert calls[-1]["InvocationType"] == "RequestResponse"
    return calls[-1]["Payload"]


def test_list_users_forwards_identity(fake_state: dict[str, Any]) -> None:
    fake_state["lambda"].result = {"users": [{"username": "rep@acme.co"}]}
    response = _invoke(_event(method="GET"))

    assert response["statusCode"] == 200
    assert _body(response) == {"users": [{"username": "rep@acme.co"}]}
    forwarded = _forwarded(fake_state)
    assert forwarded["action"] == "listUsers"
    assert forwarded["identity"] == {
        "username": "admin@acme.co",
        "groups": ["Admin"],
        "claims": {
            "sub": "user-123",
            "email": "admin@acme.co",
            "custom:companyId": "co-1",
            "custom:companyName": "Acme Roofing",
        },
    }


def test_identity_carries_directory_company(fake_state: dict[str, Any]) -> None:
    fake_state["deps"].directory.attributes["admin@acme.co"] = {
        "custom:companyId": "co-7",
        "custom:companyName": "Seven",
    }
    fake_state["lambda"].result = {"users": []}
    response = _invoke(_event(method="GET", company_id=None))
    assert response["statusCode"] == 200
    claims = _forwarded(fake_state)["identity"]["claims"]
    assert claims["custom:companyId"] == "co-7"


def test_admin_without_company_is_forbidden(fake_state: dict[str, Any]) -> None:
    response = _invoke(_event(method="GET", company_id=None))
    assert response["statusCode"] == 403
    assert fake_state["lambda"].calls == []


def test_reporter_cannot_manage_users(fake_state: dict[str, Any]) -> None:
    response = _invoke(_event(method="GET", groups=["IncidentReporter"]))
    assert response["statusCode"] == 403
    assert fake_state["lambda"].calls == []


def test_create_user_validates_and_strips_company_for_admins(fake_state: dict[str, Any]) -> None:
    fake_state["lambda"].result = {"success": True, "user": {"username": "new@acme.co"}}
    response = _invoke(
        _event(
            method="POST",
            body={
                "email": "New@Acme.co",
                "group": "IncidentReporter",
                "companyId": "co-2",
                "sendInvite": 1,
            },
        )
    )

    assert response["statusCode"] == 201
    assert _body(response)["user"]["username"] == "new@acme.co"
    assert _forwarded(fake_state)["payload"] == {
        "email": "new@acme.co",
        "group": "IncidentReporter",
        "sendInvite": True,
    }


def test_super_admin_create_passes_company(fake_state: dict[str, Any]) -> None:
    fake_state["lambda"].result = {"success": True, "user": {}}
    _invoke(
        _event(
            method="POST",
            body={"email": "boss@bravo.co", "group": "SuperAdmin", "companyId": " co-2 "},
            groups=["SuperAdmin"],
            company_id=None,
        )
    )
    payload = _forwarded(fake_state)["payload"]
    assert payload["group"] == "SuperAdmin"
    assert payload["companyId"] == "co-2"


@pytest.mark.parametrize(
    "body",
    [
        {"group": "Admin"},
        {"email": "not-an-email"},
        {"email": "x@acme.co", "group": "SuperAdmin"},
    ],
)
def test_create_user_rejects_invalid_body(fake_state: dict[str, Any], body: dict[str, Any]) -> None:
    response = _invoke(_event(method="POST", body=body))
    assert response["statusCode"] == 400
    assert fake_state["lambda"].calls == []


def test_delete_user(fake_state: dict[str, Any]) -> None:
    fake_state["lambda"].result = {"username": "rep@acme.co"}
    response = _invoke(
        _event(method="DELETE", path="/v1/admin/users/rep@acme.co", username="rep@acme.co")
    )
    assert response["statusCode"] == 200
    assert _body(response) == {"success": True, "username": "rep@acme.co"}
    assert _forwarded(fake_state)["payload"] == {"username": "rep@acme.co"}


def test_update_role(fake_state: dict[str, Any]) -> None:
    fake_state["lambda"].result = {"username": "rep@acme.co", "role": "Admin"}
    response = _invoke(
        _event(
            method="POST",
            path="/v1/admin/users/rep@acme.co/role",
            username="rep@acme.co",
            body={"role": "Admin"},
        )
    )
    assert response["statusCode"] == 200
    assert _body(response)["role"] == "Admin"
    assert _forwarded(fake_state)["action"] == "updateUserRole"


def test_update_profile_requires_attributes(fake_state: dict[str, Any]) -> None:
    response = _invoke(
        _event(
            method="POST",
            path="/v1/admin/users/rep@acme.co/profile",
            username="rep@acme.co",
            body={"attributes": {}},
        )
    )
    assert response["statusCode"] == 400


def test_update_profile_forwards_attributes(fake_state: dict[str, Any]) -> None:
    fake_state["lambda"].result = {"username": "rep@acme.co", "attributes": {"name": "Rita"}}
    response = _invoke(
        _event(
            method="POST",
            path="/v1/admin/users/rep@acme.co/profile",
            username="rep@acme.co",
            body={"attributes": {"name": "Rita"}},
        )
    )
    assert response["statusCode"] == 200
    assert _forwarded(fake_state)["payload"] == {
        "username": "rep@acme.co",
        "attributes": {"name": "Rita"},
    }


def test_update_profile_forwards_normalized_attributes(fake_state: dict[str, Any]) -> None:
    response = _invoke(
        _event(
            method="POST",
            path="/v1/admin/users/rep@acme.co/profile",
            username="rep@acme.co",
            body={"attributes": {"phone_number": "(512) 555-0100"}},
        )
    )
    assert response["statusCode"] == 200
    assert _forwarded(fake_state)["payload"]["attributes"] == {"phone_number": "+15125550100"}


@pytest.mark.parametrize(
    ("attributes", "status"),
    [
        ({"nickname": "R"}, 400),
        ({"phone_number": "555-01"}, 400),
        ({"street": "12 Oak St"}, 400),
        ({"custom:companyId": "co-2"}, 403),
    ],
)
def test_update_profile_rejects_before_forwarding(
    fake_state: dict[str, Any], attributes: dict[str, Any], status: int
) -> None:
    response = _invoke(
        _event(
            method="POST",
            path="/v1/admin/users/rep@acme.co/profile",
            username="rep@acme.co",
            body={"attributes": attributes},
        )
    )
    assert response["statusCode"] == status
    assert fake_state["lambda"].calls == []


@pytest.mark.parametrize(
    ("error_type", "status", "code"),
    [
        ("TenantAccessViolation", 403, "FORBIDDEN"),
        ("UserNotFoundError", 404, "NOT_FOUND"),
        ("UserExistsError", 409, "CONFLICT"),
        ("SeatLimitExceeded", 409, "SEAT_LIMIT_EXCEEDED"),
        ("ValueError", 400, "BAD_REQUEST"),
        ("KeyError", 502, "ADMIN_ACTION_FAILED"),
    ],
)
def test_admin_action_errors_map_to_status(
    fake_state: dict[str, Any], error_type: str, status: int, code: str
) -> None:
    fake_state["lambda"].fail_with(error_type, "boom")
    response = _invoke(
        _event(method="DELETE", path="/v1/admin/users/rep@acme.co", username="rep@acme.co")
    )
    assert response["statusCode"] == status
    assert _body(response)["error"] == {"code": code, "message": "boom"}


def test_unsupported_route_is_405(fake_state: dict[str, Any]) -> None:
    response = _invoke(_event(method="PATCH"))
    assert response["statusCode"] == 405
