"""Inbound SMS and CAPTCHA code delivery."""

from typing import Optional

import structlog
from fastapi import APIRouter, Depends, HTTPException, Query, status

from extracts.errors import BrokerUnavailable
from extracts.schemas import CodeDeliveryResponse
from extracts.services.codes.broker import CodeBroker, CodeKind
from extracts.services.codes.delivery import deliver_code

router = APIRouter(prefix="/codes", tags=["codes"])
logger = structlog.get_logger(__name__)

_code_broker: Optional[CodeBroker] = None


def set_code_broker(broker: Optional[CodeBroker]):
    """Set the code broker for this router."""
    global _code_broker
    _code_broker = broker


def _get_broker() -> CodeBroker:
    if _code_broker is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Code broker not available",
        )
    return _code_broker


async def _deliver(
    broker: CodeBroker, subject: str, kind: CodeKind, raw_text: str
) -> CodeDeliveryResponse:
    try:
        result = await deliver_code(broker, subject, kind, raw_text)
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(e))
    except BrokerUnavailable as e:
        logger.error("code_delivery_broker_unavailable", kind=kind.value, error=str(e))
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(e))
    return CodeDeliveryResponse(success=result.success, subscribers=result.subscribers)


@router.post("/sms", response_model=CodeDeliveryResponse)
async def deliver_sms(
    user_name: str = Query(..., min_length=1, max_length=100, description="Operator login"),
    code: str = Query(..., min_length=4, max_length=30, description="SMS text or bare code"),
    broker: CodeBroker = Depends(_get_broker),
) -> CodeDeliveryResponse:
    """Forward an SMS to the worker waiting on it. The first digit run is the code."""
    return await _deliver(broker, user_name, CodeKind.SMS, code)


@router.post("/captcha", response_model=CodeDeliveryResponse)
async def deliver_captcha(
    user_name: str = Query(..., min_length=1, max_length=100, description="Operator login"),
    code: str = Query(..., min_length=3, max_length=20, description="CAPTCHA solution"),
    broker: CodeBroker = Depends(_get_broker),
) -> CodeDeliveryResponse:
    """Forward a CAPTCHA solution verbatim."""
    return await _deliver(broker, user_name, CodeKind.CAPTCHA, code)
