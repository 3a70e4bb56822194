"""Human-entered code delivery (SMS and CAPTCHA)."""

from extracts.services.codes.broker import (
    CodeBroker,
    CodeKind,
    CodeMessage,
    CodeRequest,
    InMemoryCodeBroker,
    channel_name,
    create_code_broker,
)
from extracts.services.codes.delivery import DeliveryResult, deliver_code, extract_sms_code

__all__ = [
    "CodeBroker",
    "CodeKind",
    "CodeMessage",
    "CodeRequest",
    "InMemoryCodeBroker",
    "channel_name",
    "create_code_broker",
    "DeliveryResult",
    "deliver_code",
    "extract_sms_code",
]
