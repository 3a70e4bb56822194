"""Order submission: create order rows and queue their place-order jobs."""

import structlog

from extracts.jobs.models import OrderJobData
from extracts.jobs.queue import WorkQueue
from extracts.jobs.types import JobType
from extracts.repositories.orders import Order, OrderRepository

logger = structlog.get_logger(__name__)


def normalize_cadastral_numbers(cadastral_numbers: list[str]) -> list[str]:
    """Strip blanks and drop duplicates, keeping first-seen order."""
    seen: dict[str, None] = {}
    for number in cadastral_numbers:
        number = number.strip()
        if number:
            seen.setdefault(number, None)
    return list(seen)


async def submit_orders(
    orders: OrderRepository,
    queue: WorkQueue,
    owner_id: int,
    cadastral_numbers: list[str],
) -> list[Order]:
    """Create QUEUED orders and enqueue one place-order job per order."""
    numbers = normalize_cadastral_numbers(cadastral_numbers)
    if not numbers:
        return []

    created = await orders.create_many(owner_id, numbers)
    for order in created:
        data = OrderJobData(
            order_id=order.id, cadastral_number=order.cadastral_number, owner_id=owner_id
        )
        await queue.enqueue(JobType.PLACE_ORDER, data.to_payload())

    logger.info("orders_submitted", owner_id=owner_id, count=len(created))
    return created
