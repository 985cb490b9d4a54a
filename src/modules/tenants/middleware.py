from typing import Callable, Optional

import structlog
from django.http import HttpRequest, HttpResponse

logger = structlog.get_logger()

TENANT_HEADER = "HTTP_X_TENANT_ID"


class TenantMiddleware:
    """Exposes the ``X-Tenant-ID`` header as ``request.tenant_id``.

    The id is bound into structlog contextvars next to the correlation id.
    Resolving it to an active ``Tenant`` is the service layer's job.
    """

    def __init__(self, get_response: Callable[[HttpRequest], HttpResponse]) -> None:
        self.get_response = get_response

    def __call__(self, request: HttpRequest) -> HttpResponse:
        tenant_id: Optional[str] = request.META.get(TENANT_HEADER) or None
        request.tenant_id = tenant_id
        if tenant_id:
            structlog.contextvars.bind_contextvars(tenant_id=tenant_id)
        return self.get_response(request)
