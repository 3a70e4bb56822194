"""Tests for inbound code delivery."""

import asyncio

import pytest

from extracts.services.codes.broker import CodeKind
from extracts.services.codes.delivery import deliver_code, extract_code, extract_sms_code


class TestExtractCode:
    @pytest.mark.parametrize(
        "text,expected",
        [
            ("482913", "482913"),
            ("Код подтверждения: 482913. Никому не сообщайте", "482913"),
            ("Your code 0071 expires in 5 min", "0071"),
        ],
    )
    def test_sms_first_digit_run(self, text, expected):
        assert extract_sms_code(text) == expected

    def test_sms_without_digits(self):
        with pytest.raises(ValueError):
            extract_sms_code("no code here")

    def test_captcha_is_stripped_not_parsed(self):
        assert extract_code(CodeKind.CAPTCHA, "  a7Kx2 \n") == "a7Kx2"


class TestDeliverCode:
    @pytest.mark.asyncio
    async def test_success_when_worker_waiting(self, broker):
        await broker.subscribe("user1", CodeKind.SMS)
        waiter = asyncio.create_task(broker.wait_for_code("user1", CodeKind.SMS, timeout_s=2))
        await asyncio.sleep(0)

        result = await deliver_code(broker, "user1", CodeKind.SMS, "Код: 555111")

        assert result.success is True
        assert result.subscribers == 1
        assert await waiter == "555111"

    @pytest.mark.asyncio
    async def test_no_waiter(self, broker):
        result = await deliver_code(broker, "user1", CodeKind.CAPTCHA, "abcd")
        assert result.success is False
        assert result.subscribers == 0
