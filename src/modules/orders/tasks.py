import structlog
from celery import shared_task

logger = structlog.get_logger(__name__)


@shared_task(name="orders.expire_unpaid_orders", ignore_result=True)
def expire_unpaid_orders() -> int:
    """Cancel gateway orders whose payment window has passed."""
    from modules.orders.services import build_order_orchestrator

    expired = build_order_orchestrator().expire_unpaid_orders()
    logger.info("orders.expire_unpaid_orders.finished", expired=expired)
    return expired
