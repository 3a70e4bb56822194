"""Tests for order submission."""

import pytest

from extracts.jobs.types import JobType
from extracts.schemas import OrderStatus
from extracts.services.orders import normalize_cadastral_numbers, submit_orders


class TestNormalize:
    def test_strips_blanks_and_duplicates(self):
        numbers = [" 77:01:0001001:1 ", "", "77:01:0001001:2", "77:01:0001001:1", "  "]
        assert normalize_cadastral_numbers(numbers) == ["77:01:0001001:1", "77:01:0001001:2"]


class TestSubmitOrders:
    @pytest.mark.asyncio
    async def test_creates_orders_and_jobs(self, orders, queue):
        created = await submit_orders(orders, queue, 7, ["77:01:0001001:1", "77:01:0001001:2"])

        assert [o.status for o in created] == [OrderStatus.QUEUED, OrderStatus.QUEUED]
        jobs = queue.list_jobs(job_type=JobType.PLACE_ORDER)
        assert [j.payload for j in jobs] == [
            {"order_id": created[0].id, "cadastral_number": "77:01:0001001:1", "owner_id": 7},
            {"order_id": created[1].id, "cadastral_number": "77:01:0001001:2", "owner_id": 7},
        ]

    @pytest.mark.asyncio
    async def test_nothing_to_submit(self, orders, queue):
        assert await submit_orders(orders, queue, 7, ["", " "]) == []
        assert queue.list_jobs() == []
