"""
authoriser.handler — Lambda authoriser for Cognito ID tokens.

Validates Bearer ID tokens issued by the platform user pool and returns
the caller's identity, groups and company for downstream Lambdas.
"""

import json
import os
from typing import Any

import boto3
import jwt
from aws_lambda_powertools import Logger, Tracer
from aws_lambda_powertools.logging import correlation_paths
from jwt import PyJWKClient

from claims_data.policy import caller_from_claims

logger = Logger(service="authoriser")
tracer = Tracer()

# Environment variables (set by the deployment)
REGION = os.environ.get("AWS_REGION", "us-east-1")
USER_POOL_ID = os.environ.get("USER_POOL_ID")
COGNITO_CLIENT_ID = os.environ.get("COGNITO_CLIENT_ID")
COMPANIES_TABLE = os.environ.get("COMPANIES_TABLE_NAME")

# Global clients, reused across warm starts
_jwk_client: PyJWKClient | None = None
_dynamodb_resource = None


def issuer_url() -> str | None:
    if not USER_POOL_ID:
        return None
    return f"https://cognito-idp.{REGION}.amazonaws.com/{USER_POOL_ID}"


def get_jwk_client() -> PyJWKClient | None:
    """Lazy initialization of PyJWKClient."""
    global _jwk_client
    issuer = issuer_url()
    if _jwk_client is None and issuer:
        # Signing keys rotate rarely; cache the JWKS for 5 minutes.
        _jwk_client = PyJWKClient(
            f"{issuer}/.well-known/jwks.json", cache_jwk_set=True, lifespan=300
        )
    return _jwk_client


def get_dynamodb():
    """Lazy initialization of boto3 resource."""
    global _dynamodb_resource
    if _dynamodb_resource is None:
        _dynamodb_resource = boto3.resource("dynamodb", region_name=REGION)
    return _dynamodb_resource


def generate_policy(
    principal_id: str, effect: str, method_arn: str, context: dict[str, Any]
) -> dict[str, Any]:
    """Generate an IAM policy for API Gateway authoriser."""
    return {
        "principalId": principal_id,
        "policyDocument": {
            "Version": "2012-10-17",
            "Statement": [
                {
                    "Action": "execute-api:Invoke",
                    "Effect": effect,
                    "Resource": method_arn,
                }
            ],
        },
        "context": context,
    }


def get_company_active(company_id: str) -> bool | None:
    """Return the company's isActive flag, or None when it is not on file.

    The authoriser runs before a TenantContext exists, so it uses the
    system-level DynamoDB client directly.
    """
    if not COMPANIES_TABLE:
        logger.warning("COMPANIES_TABLE_NAME not set, assuming active (dev mode)")
        return True

    try:
        table = get_dynamodb().Table(COMPANIES_TABLE)
        response = table.get_item(Key={"PK": f"TENANT#{company_id}", "SK": "METADATA"})
        item = response.get("Item")
        if item:
            return bool(item.get("isActive", False))
    except Exception:
        logger.exception("Failed to fetch company status", extra={"company_id": company_id})
    return None


def route_of(method_arn: str) -> tuple[str, str]:
    """Split a method ARN into (HTTP method, resource path)."""
    # method_arn format:
    # arn:aws:execute-api:{region}:{account}:{apiId}/{stage}/{method}/{resourcePath}
    parts = method_arn.split("/", 3)
    if len(parts) < 4:
        return "", ""
    return parts[2].upper(), parts[3]


def is_admin_route(method_arn: str) -> bool:
    _, path = route_of(method_arn)
    return path.startswith("v1/admin")


def requires_super_admin(method_arn: str) -> bool:
    """Tenant directory mutations are reserved for super-admins."""
    method, path = route_of(method_arn)
    return path.startswith("v1/admin/companies") and method != "GET"


@logger.inject_lambda_context(correlation_id_path=correlation_paths.API_GATEWAY_REST)
@tracer.capture_lambda_handler
def handler(event: dict[str, Any], context: Any) -> dict[str, Any]:
    """Lambda Authoriser entry point."""
    method_arn = event["methodArn"]

    auth_header = event.get("authorizationToken") or event.get("headers", {}).get("Authorization")

    if not auth_header:
        logger.warning("Missing Authorization header")
        return generate_policy("user", "Deny", method_arn, {})

    if auth_header.startswith("Bearer "):
        token = auth_header.split(" ", 1)[1]
        return handle_jwt(token, method_arn)
    # TOKEN authorisers may pass the raw token without a scheme
    return handle_jwt(auth_header, method_arn)


def handle_jwt(token: str, method_arn: str) -> dict[str, Any]:
    """Validate a Cognito ID token and build the downstream context."""
    try:
        jwk_client = get_jwk_client()
        if not jwk_client:
            logger.error("JWK client not initialized (USER_POOL_ID missing)")
            return generate_policy("user", "Deny", method_arn, {})

        signing_key = jwk_client.get_signing_key_from_jwt(token)
        payload = jwt.decode(
            token,
            signing_key.key,
            algorithms=["RS256"],
            audience=COGNITO_CLIENT_ID,
            issuer=issuer_url(),
        )

        sub = payload.get("sub", "unknown")
        if payload.get("token_use") != "id":
            logger.warning("Rejected non-ID token", extra={"sub": sub})
            return generate_policy(sub, "Deny", method_arn, {})

        caller = caller_from_claims(payload)

        # Company must exist and be active; callers without a company claim
        # are resolved downstream through the directory fallback.
        if caller.company_id and not caller.is_super_admin:
            active = get_company_active(caller.company_id)
            if not active:
                logger.error(
                    "Company not active",
                    extra={"company_id": caller.company_id, "active": active},
                )
                return generate_policy(sub, "Deny", method_arn, {})

        if is_admin_route(method_arn) and not caller.can_manage_users:
            logger.error(
                "User lacks required groups for admin route",
                extra={"sub": sub, "groups": sorted(caller.groups), "method_arn": method_arn},
            )
            return generate_policy(sub, "Deny", method_arn, {})

        if requires_super_admin(method_arn) and not caller.is_super_admin:
            logger.error(
                "Company mutation requires SuperAdmin",
                extra={"sub": sub, "method_arn": method_arn},
            )
            return generate_policy(sub, "Deny", method_arn, {})

        # API Gateway context values must be scalars; groups travel as JSON
        auth_context = {
            "sub": sub,
            "username": caller.username or "",
            "email": caller.email or "",
            "groups": json.dumps(sorted(caller.groups)),
            "companyid": caller.company_id or "",
            "companyname": caller.company_name or "",
        }

        logger.append_keys(companyid=caller.company_id or "none", sub=sub)

        logger.info(
            "Authentication successful",
            extra={"company_id": caller.company_id, "role": str(caller.role)},
        )
        return generate_policy(sub, "Allow", method_arn, auth_context)

    except jwt.ExpiredSignatureError:
        logger.warning("JWT has expired")
        return generate_policy("user", "Deny", method_arn, {})
    except jwt.InvalidTokenError as e:
        logger.warning(f"Invalid JWT: {str(e)}")
        return generate_policy("user", "Deny", method_arn, {})
    except Exception:
        logger.exception("Unexpected error during JWT validation")
        return generate_policy("user", "Deny", method_arn, {})

