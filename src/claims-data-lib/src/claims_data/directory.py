"""
claims_data.directory — Thin wrapper over the Cognito user pool.

Used by the admin-actions Lambda for privileged user management and by
every handler for the company fallback lookup when session claims carry
no company.
"""

from __future__ import annotations

import os
from collections.abc import Iterator
from datetime import datetime
from typing import Any

import boto3
from aws_lambda_powertools import Logger
from botocore.exceptions import ClientError

from claims_data.exceptions import UserExistsError, UserNotFoundError

logger = Logger(service="claims-data-lib")


def _error_code(exc: ClientError) -> str:
    return str(exc.response.get("Error", {}).get("Code", ""))


def _attributes_to_map(attributes: list[dict[str, Any]] | None) -> dict[str, str]:
    return {str(a["Name"]): str(a.get("Value", "")) for a in attributes or [] if "Name" in a}


class CognitoDirectory:
    """User-pool operations with Cognito errors mapped to directory exceptions."""

    def __init__(self, user_pool_id: str | None = None, client: Any = None) -> None:
        self._user_pool_id = user_pool_id or os.environ["USER_POOL_ID"]
        self._client: Any = client or boto3.client(
            "cognito-idp", region_name=os.environ["AWS_REGION"]
        )

    @property
    def user_pool_id(self) -> str:
        return self._user_pool_id

    def _call(self, operation: str, **kwargs: Any) -> dict[str, Any]:
        try:
            return getattr(self._client, operation)(UserPoolId=self._user_pool_id, **kwargs)
        except ClientError as exc:
            code = _error_code(exc)
            if code == "UserNotFoundException":
                raise UserNotFoundError(str(kwargs.get("Username", ""))) from exc
            if code == "UsernameExistsException":
                raise UserExistsError(str(kwargs.get("Username", ""))) from exc
            raise

    def get_user(self, username: str) -> dict[str, Any]:
        return self._call("admin_get_user", Username=username)

    def get_user_attributes(self, username: str) -> dict[str, str]:
        return _attributes_to_map(self.get_user(username).get("UserAttributes"))

    def iter_users(self) -> Iterator[dict[str, Any]]:
        """Yield every user in the pool, following PaginationToken."""
        kwargs: dict[str, Any] = {}
        while True:
            response = self._call("list_users", **kwargs)
            yield from response.get("Users", [])
            token = response.get("PaginationToken")
            if not token:
                return
            kwargs["PaginationToken"] = token

    def list_users(self) -> list[dict[str, Any]]:
        return list(self.iter_users())

    def list_groups_for_user(self, username: str) -> list[str]:
        groups: list[str] = []
        kwargs: dict[str, Any] = {"Username": username}
        while True:
            response = self._call("admin_list_groups_for_user", **kwargs)
            groups.extend(
                str(g["GroupName"]) for g in response.get("Groups", []) if g.get("GroupName")
            )
            token = response.get("NextToken")
            if not token:
                return groups
            kwargs["NextToken"] = token

    def create_user(
        self,
        username: str,
        attributes: dict[str, str],
        *,
        temporary_password: str,
        send_invite: bool = False,
    ) -> dict[str, Any]:
        kwargs: dict[str, Any] = {
            "Username": username,
            "UserAttributes": [{"Name": k, "Value": v} for k, v in attributes.items()],
            "TemporaryPassword": temporary_password,
        }
        if not send_invite:
            kwargs["MessageAction"] = "SUPPRESS"
        return self._call("admin_create_user", **kwargs).get("User", {})

    def set_password(self, username: str, password: str, *, permanent: bool = False) -> None:
        self._call(
            "admin_set_user_password",
            Username=username,
            Password=password,
            Permanent=permanent,
        )

    def add_to_group(self, username: str, group: str) -> None:
        self._call("admin_add_user_to_group", Username=username, GroupName=group)

    def remove_from_group(self, username: str, group: str) -> None:
        self._call("admin_remove_user_from_group", Username=username, GroupName=group)

    def update_attributes(self, username: str, attributes: dict[str, str]) -> None:
        self._call(
            "admin_update_user_attributes",
            Username=username,
            UserAttributes=[{"Name": k, "Value": v} for k, v in attributes.items()],
        )

    def delete_user(self, username: str) -> None:
        logger.info("Deleting user", extra={"username": username})
        self._call("admin_delete_user", Username=username)

    def serialize_user(
        self,
        user: dict[str, Any],
        *,
        groups: list[str] | None = None,
    ) -> dict[str, Any]:
        """Shape a ListUsers/AdminGetUser record for API responses.

        ListUsers returns Attributes, AdminGetUser returns UserAttributes.
        """
        attrs = _attributes_to_map(user.get("Attributes") or user.get("UserAttributes"))
        created = user.get("UserCreateDate")
        if isinstance(created, datetime):
            created = created.isoformat()
        return {
            "username": user.get("Username"),
            "email": attrs.get("email"),
            "emailVerified": attrs.get("email_verified") == "true",
            "status": user.get("UserStatus"),
            "enabled": user.get("Enabled"),
            "createdAt": created,
            "groups": groups or [],
            "companyId": attrs.get("custom:companyId"),
            "companyName": attrs.get("custom:companyName"),
            "name": attrs.get("name"),
            "phoneNumber": attrs.get("phone_number"),
            "address": attrs.get("address"),
        }
