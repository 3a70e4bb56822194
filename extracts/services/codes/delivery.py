"""Inbound code delivery: raw text from an operator to a waiting worker."""

import re
from dataclasses import dataclass

import structlog

from extracts.routers.metrics import record_code_published
from extracts.services.codes.broker import CodeBroker, CodeKind

logger = structlog.get_logger(__name__)

_DIGITS = re.compile(r"\d+")


@dataclass(frozen=True)
class DeliveryResult:
    success: bool
    subscribers: int


def extract_sms_code(sms_text: str) -> str:
    """First run of digits in an SMS body.

    Raises:
        ValueError: The text contains no digits
    """
    match = _DIGITS.search(sms_text)
    if match is None:
        raise ValueError("SMS text contains no numeric code")
    return match.group(0)


def extract_code(kind: CodeKind, raw_text: str) -> str:
    if kind == CodeKind.SMS:
        return extract_sms_code(raw_text)
    return raw_text.strip()


async def deliver_code(
    broker: CodeBroker, subject: str, kind: CodeKind, raw_text: str
) -> DeliveryResult:
    """Extract the code and publish it. success is True iff someone was waiting."""
    code = extract_code(kind, raw_text)
    subscribers = await broker.publish(subject, kind, code)
    record_code_published(kind.value, subscribers)
    logger.info(
        "code_delivered" if subscribers else "code_delivery_no_waiter",
        subject=subject,
        kind=kind.value,
        subscribers=subscribers,
    )
    return DeliveryResult(success=subscribers > 0, subscribers=subscribers)
