"""
claims_data.exceptions — Tenant isolation and directory exceptions.
"""


class TenantAccessViolation(Exception):
    """
    Raised when an operation attempts to access data outside the caller's tenant partition.

    Every TenantAccessViolation raised by the scoped clients is:
      - Logged with tenant_id and caller_tenant_id
      - Counted as a CloudWatch metric: namespace=claims/security,
        name=TenantAccessViolation

    Attributes:
        tenant_id:        Tenant whose data was protected (the access target).
        caller_tenant_id: Tenant that attempted the cross-tenant access (the perpetrator).
        attempted_key:    The DynamoDB key dict repr or S3 object key that was attempted.
    """

    def __init__(self, *, tenant_id: str, caller_tenant_id: str, attempted_key: str) -> None:
        self.tenant_id = tenant_id
        self.caller_tenant_id = caller_tenant_id
        self.attempted_key = attempted_key
        super().__init__(
            f"Tenant {caller_tenant_id!r} attempted to access {attempted_key!r} "
            f"belonging to tenant {tenant_id!r}"
        )


class DirectoryError(Exception):
    """Base class for user-directory failures surfaced to callers."""


class UserNotFoundError(DirectoryError):
    """The requested username does not exist in the user pool."""


class UserExistsError(DirectoryError):
    """A user with the requested username already exists."""


class SeatLimitExceeded(DirectoryError):
    """The company already has as many users as its seat limit allows."""
