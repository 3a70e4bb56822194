"""Pydantic models for request/response validation, plus order status text."""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field


class OrderStatus:
    """Order status strings as stored on orders and shown to clients."""

    QUEUED = "Добавлен в очередь"
    PROCESSING = "В обработке"
    REGISTERED = "Зарегистрирован в росреестре"
    DOWNLOADED = "Файлы загружены"
    ERROR_PREFIX = "Ошибка: "
    CAD_NUM_NOT_FOUND = "Кадастровый номер не найден на портале"
    INSUFFICIENT_BALANCE = "Недостаточно доступных заказов на балансе"

    @classmethod
    def error(cls, message: str) -> str:
        return f"{cls.ERROR_PREFIX}{message}"

    @classmethod
    def is_error(cls, status: str) -> bool:
        return status.startswith(cls.ERROR_PREFIX)


# Code delivery
class CodeDeliveryResponse(BaseModel):
    """Result of handing a code to the broker."""

    success: bool = Field(..., description="True if a worker was waiting for it")
    subscribers: int = Field(..., ge=0, description="Waiters that received the code")


# Anomaly questions
class AnomalyQuestionResponse(BaseModel):
    id: int
    question: str
    answer: Optional[str] = None
    subject: Optional[str] = None
    created_at: Optional[datetime] = None
    answered_at: Optional[datetime] = None


class AnomalyAnswerRequest(BaseModel):
    answer: str = Field(..., min_length=1, max_length=500)


class AnomalyQuestionCreateRequest(BaseModel):
    question: str = Field(..., min_length=1, max_length=2000)
    answer: str = Field(..., min_length=1, max_length=500)
    subject: Optional[str] = Field(
        default=None, description="Operator login the answer applies to (all if empty)"
    )


# Health
class HealthResponse(BaseModel):
    status: str
    version: str
    database: str
    code_broker: str
    pending_code_requests: int = 0
