from __future__ import annotations

from django.core.exceptions import ValidationError

from modules.tenants.exceptions import TenantNotFound
from modules.tenants.models import Tenant


def get_active_tenant(tenant_id) -> Tenant:
    """Resolve an active tenant or raise ``TenantNotFound``."""
    if not tenant_id:
        raise TenantNotFound("Missing tenant id.")
    try:
        tenant = Tenant.objects.filter(id=tenant_id, is_active=True).first()
    except (ValueError, ValidationError):
        tenant = None
    if tenant is None:
        raise TenantNotFound(f"Tenant {tenant_id} not found.")
    return tenant
