#!/usr/bin/env python3
"""Create extract orders and queue them for placement.

Usage:
    python scripts/enqueue_orders.py --owner-id 7 77:01:0001001:1234 77:01:0001001:1235
    python scripts/enqueue_orders.py --owner-id 7 --file numbers.txt
"""
import argparse
import asyncio
import sys

from extracts.config import get_settings
from extracts.core.lifespan import create_db_pool
from extracts.core.logging import configure_logging
from extracts.jobs.queue import create_work_queue
from extracts.repositories.orders import OrderRepository
from extracts.services.orders import submit_orders


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description=__doc__.splitlines()[0])
    parser.add_argument("--owner-id", type=int, required=True, help="Client the orders belong to")
    parser.add_argument("--file", help="File with one cadastral number per line")
    parser.add_argument("numbers", nargs="*", help="Cadastral numbers")
    return parser.parse_args(argv)


async def main(argv=None) -> int:
    args = parse_args(argv)
    numbers = list(args.numbers)
    if args.file:
        with open(args.file, encoding="utf-8") as fh:
            numbers.extend(fh.read().splitlines())
    if not numbers:
        print("No cadastral numbers given", file=sys.stderr)
        return 2

    settings = get_settings()
    configure_logging(settings.log_level)
    if settings.queue_backend != "postgres":
        print("QUEUE_BACKEND must be postgres to enqueue from a separate process", file=sys.stderr)
        return 2

    pool = await create_db_pool(settings)
    try:
        queue = create_work_queue(settings, pool)
        orders = await submit_orders(OrderRepository(pool), queue, args.owner_id, numbers)
    finally:
        await pool.close()

    for order in orders:
        print(f"{order.id}\t{order.cadastral_number}\t{order.status}")
    return 0


if __name__ == "__main__":
    sys.exit(asyncio.run(main()))
