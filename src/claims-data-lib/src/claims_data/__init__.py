"""
claims_data — Tenant-scoped data access for the incident-report platform.

The only permitted way to reach DynamoDB and S3 from Lambda handlers.
"""

from claims_data.client import TenantScopedDynamoDB, TenantScopedS3
from claims_data.exceptions import TenantAccessViolation
from claims_data.models import TenantContext

__all__ = ["TenantContext", "TenantAccessViolation", "TenantScopedDynamoDB", "TenantScopedS3"]
