#!/usr/bin/env python3
"""
assign_company.py — Assign users without a company to an existing company.

Walks the whole Cognito user pool and sets custom:companyId and
custom:companyName on every user that has no company yet. Users that
already belong to a company are left alone.

Usage:
    python scripts/assign_company.py assign-users --company-id <id> --company-name <name>
    python scripts/assign_company.py assign-users --company-id <id> --company-name <name> --dry-run
"""

from __future__ import annotations

import argparse
import os
import sys
from collections.abc import Iterator
from dataclasses import dataclass
from typing import Any

import boto3
from botocore.exceptions import ClientError

COMPANY_ID_ATTRIBUTE = "custom:companyId"
COMPANY_NAME_ATTRIBUTE = "custom:companyName"
PAGE_SIZE = 60


@dataclass
class AssignmentResult:
    updated: int = 0
    skipped: int = 0
    failed: int = 0

    def summary(self) -> str:
        return f"{self.updated} updated, {self.skipped} skipped, {self.failed} failed"


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


def iter_users(cognito: Any, *, user_pool_id: str) -> Iterator[dict[str, Any]]:
    token: str | None = None
    while True:
        kwargs: dict[str, Any] = {"UserPoolId": user_pool_id, "Limit": PAGE_SIZE}
        if token:
            kwargs["PaginationToken"] = token
        response = cognito.list_users(**kwargs)
        yield from response.get("Users", [])
        token = response.get("PaginationToken")
        if not token:
            return


def _company_of(user: dict[str, Any]) -> str | None:
    for attribute in user.get("Attributes", []):
        if attribute.get("Name") == COMPANY_ID_ATTRIBUTE and attribute.get("Value"):
            return str(attribute["Value"])
    return None


def assign_users_to_company(
    cognito: Any,
    *,
    user_pool_id: str,
    company_id: str,
    company_name: str,
    dry_run: bool = False,
) -> AssignmentResult:
    result = AssignmentResult()
    for user in iter_users(cognito, user_pool_id=user_pool_id):
        username = user.get("Username")
        if not username:
            continue
        if _company_of(user):
            print(f"  skip     {username} (already has a company)")
            result.skipped += 1
            continue
        if dry_run:
            print(f"  would update {username}")
            result.updated += 1
            continue
        try:
            cognito.admin_update_user_attributes(
                UserPoolId=user_pool_id,
                Username=username,
                UserAttributes=[
                    {"Name": COMPANY_ID_ATTRIBUTE, "Value": company_id},
                    {"Name": COMPANY_NAME_ATTRIBUTE, "Value": company_name},
                ],
            )
        except ClientError as exc:
            code = exc.response.get("Error", {}).get("Code", "Unknown")
            print(f"  FAILED   {username}: {code}", file=sys.stderr)
            result.failed += 1
            continue
        print(f"  updated  {username}")
        result.updated += 1
    return result


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Assign users without a company")
    subparsers = parser.add_subparsers(dest="command", required=True)

    assign = subparsers.add_parser(
        "assign-users", help="Set the company on every user that has none"
    )
    assign.add_argument("--company-id", required=True, help="Target company id")
    assign.add_argument("--company-name", required=True, help="Target company display name")
    assign.add_argument(
        "--user-pool-id",
        default=None,
        help="Cognito user pool id (default: USER_POOL_ID env var)",
    )
    assign.add_argument(
        "--dry-run",
        action="store_true",
        help="Report what would change without updating any user",
    )
    return parser.parse_args(argv)


def cmd_assign_users(args: argparse.Namespace) -> int:
    try:
        user_pool_id = resolve_user_pool_id(args.user_pool_id)
        region = get_aws_region()
    except RuntimeError as exc:
        print(str(exc), file=sys.stderr)
        return 2

    cognito = boto3.client("cognito-idp", region_name=region)
    print(f"Assigning users without a company to {args.company_name} ({args.company_id})")
    if args.dry_run:
        print("Dry run: no users will be modified")
    result = assign_users_to_company(
        cognito,
        user_pool_id=user_pool_id,
        company_id=args.company_id,
        company_name=args.company_name,
        dry_run=args.dry_run,
    )
    print(f"Summary: {result.summary()}")
    return 1 if result.failed else 0


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    if args.command == "assign-users":
        return cmd_assign_users(args)
    return 2


if __name__ == "__main__":
    raise SystemExit(main())
