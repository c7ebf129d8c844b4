#!/usr/bin/env python3
"""
migrate_group.py — Move members of the legacy Customer group to HomeOwner.

Ensures the HomeOwner group exists (creating it with precedence 3 when
missing), then for every Customer member adds HomeOwner and removes
Customer. A user that fails is reported and the run continues.

Usage:
    python scripts/migrate_group.py
    python scripts/migrate_group.py --user-pool-id <id> --dry-run
"""

from __future__ import annotations

import argparse
import os
import sys
from dataclasses import dataclass
from typing import Any

import boto3
from botocore.exceptions import ClientError

LEGACY_GROUP = "Customer"
TARGET_GROUP = "HomeOwner"
TARGET_GROUP_PRECEDENCE = 3
TARGET_GROUP_DESCRIPTION = "Read-only access"


@dataclass
class MigrationResult:
    group_created: bool = False
    migrated: int = 0
    failed: int = 0


def get_aws_region() -> str:
    region = os.environ.get("AWS_REGION", "").strip()
    if not region:
        raise RuntimeError("AWS_REGION environment variable not set")
    return region


def resolve_user_pool_id(value: str | None) -> str:
    pool_id = (value or os.environ.get("USER_POOL_ID", "")).strip()
    if not pool_id:
        raise RuntimeError("User pool id not set; pass --user-pool-id or set USER_POOL_ID")
    return pool_id


def _error_code(exc: ClientError) -> str:
    return str(exc.response.get("Error", {}).get("Code", "Unknown"))


def ensure_target_group(cognito: Any, *, user_pool_id: str) -> bool:
    """Create the HomeOwner group when missing. Returns True if it was created."""
    try:
        cognito.get_group(UserPoolId=user_pool_id, GroupName=TARGET_GROUP)
        return False
    except ClientError as exc:
        if _error_code(exc) != "ResourceNotFoundException":
            raise
    cognito.create_group(
        UserPoolId=user_pool_id,
        GroupName=TARGET_GROUP,
        Description=TARGET_GROUP_DESCRIPTION,
        Precedence=TARGET_GROUP_PRECEDENCE,
    )
    return True


def list_legacy_members(cognito: Any, *, user_pool_id: str) -> list[str]:
    """Usernames in the Customer group; empty when the group does not exist."""
    usernames: list[str] = []
    token: str | None = None
    while True:
        kwargs: dict[str, Any] = {"UserPoolId": user_pool_id, "GroupName": LEGACY_GROUP}
        if token:
            kwargs["NextToken"] = token
        try:
            response = cognito.list_users_in_group(**kwargs)
        except ClientError as exc:
            if _error_code(exc) == "ResourceNotFoundException":
                return []
            raise
        usernames.extend(u["Username"] for u in response.get("Users", []) if u.get("Username"))
        token = response.get("NextToken")
        if not token:
            return usernames


def migrate_users(
    cognito: Any,
    *,
    user_pool_id: str,
    dry_run: bool = False,
) -> MigrationResult:
    result = MigrationResult()
    if not dry_run:
        result.group_created = ensure_target_group(cognito, user_pool_id=user_pool_id)
        if result.group_created:
            print(f"Created group {TARGET_GROUP} (precedence {TARGET_GROUP_PRECEDENCE})")

    members = list_legacy_members(cognito, user_pool_id=user_pool_id)
    print(f"Found {len(members)} user(s) in {LEGACY_GROUP}")
    for username in members:
        if dry_run:
            print(f"  would migrate {username}")
            result.migrated += 1
            continue
        try:
            cognito.admin_add_user_to_group(
                UserPoolId=user_pool_id, Username=username, GroupName=TARGET_GROUP
            )
            cognito.admin_remove_user_from_group(
                UserPoolId=user_pool_id, Username=username, GroupName=LEGACY_GROUP
            )
        except ClientError as exc:
            print(f"  FAILED   {username}: {_error_code(exc)}", file=sys.stderr)
            result.failed += 1
            continue
        print(f"  migrated {username}")
        result.migrated += 1
    return result


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description=f"Move {LEGACY_GROUP} group members to {TARGET_GROUP}"
    )
    parser.add_argument(
        "--user-pool-id",
        default=None,
        help="Cognito user pool id (default: USER_POOL_ID env var)",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="List the users that would move without changing anything",
    )
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    try:
        user_pool_id = resolve_user_pool_id(args.user_pool_id)
        region = get_aws_region()
    except RuntimeError as exc:
        print(str(exc), file=sys.stderr)
        return 2

    cognito = boto3.client("cognito-idp", region_name=region)
    result = migrate_users(cognito, user_pool_id=user_pool_id, dry_run=args.dry_run)
    print(f"Summary: {result.migrated} migrated, {result.failed} failed")
    return 1 if result.failed else 0


if __name__ == "__main__":
    raise SystemExit(main())
