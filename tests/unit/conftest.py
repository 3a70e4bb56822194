"""Shared fakes for unit tests: order store, browser, login page and portal."""

from contextlib import asynccontextmanager
from typing import Any, Optional

import pytest

from extracts.core.resilience import reset_circuits
from extracts.errors import OrderNotFound
from extracts.jobs.queue import InMemoryWorkQueue
from extracts.repositories.anomaly_questions import InMemoryAnswerStore
from extracts.repositories.operators import Operator
from extracts.repositories.orders import Order
from extracts.schemas import OrderStatus
from extracts.services.codes.broker import InMemoryCodeBroker
from extracts.services.portal.base import (
    PlaceOrderResult,
    PortalCapability,
    Session,
    StatusCheckResult,
)


class FakeOrderRepository:
    def __init__(self):
        self.orders: dict[int, Order] = {}
        self.updates: list[tuple[int, dict[str, Any]]] = []
        self._next_id = 1

    def add(self, cadastral_number: str, owner_id: int = 1, **fields) -> Order:
        order = Order(
            id=fields.pop("id", self._next_id),
            owner_id=owner_id,
            cadastral_number=cadastral_number,
            status=fields.pop("status", OrderStatus.QUEUED),
            **fields,
        )
        self._next_id = max(self._next_id, order.id) + 1
        self.orders[order.id] = order
        return order

    async def find_by_id(self, order_id: int) -> Order:
        if order_id not in self.orders:
            raise OrderNotFound(order_id)
        return self.orders[order_id]

    async def update(self, order_id: int, **fields) -> Order:
        order = await self.find_by_id(order_id)
        for name, value in fields.items():
            setattr(order, name, value)
        self.updates.append((order_id, fields))
        return order

    async def create_many(self, owner_id, cadastral_numbers, status=OrderStatus.QUEUED):
        return [self.add(n, owner_id=owner_id, status=status) for n in cadastral_numbers]

    async def list_registered(self, limit: int = 500) -> list[Order]:
        return [
            o for o in self.orders.values() if o.external_order_number and not o.is_complete
        ][:limit]


class FakeBrowser:
    def __init__(self, fail_start: bool = False):
        self.started = 0
        self.screenshots: list[str] = []
        self.fail_start = fail_start

    async def start(self) -> None:
        self.started += 1
        if self.fail_start:
            raise RuntimeError("chromium missing")

    @asynccontextmanager
    async def lease(self):
        yield "page"

    async def screenshot(self, label: str) -> Optional[str]:
        self.screenshots.append(label)
        return None


class FakeLoginPage:
    """Scripted login page. ``on_submit`` runs when the credential form is sent."""

    def __init__(
        self,
        authenticated: bool = False,
        sms: bool = False,
        captcha: bool = False,
        question: Optional[str] = None,
        messenger: bool = False,
        redirect: bool = True,
        on_submit=None,
        captcha_path: str = "/tmp/captcha-test.png",
    ):
        self.authenticated = authenticated
        self.sms = sms
        self.captcha = captcha
        self.question = question
        self.messenger = messenger
        self.redirect = redirect
        self.on_submit = on_submit
        self.captcha_path = captcha_path
        self.calls: list[tuple] = []

    async def is_authenticated(self) -> bool:
        self.calls.append(("is_authenticated",))
        return self.authenticated

    async def open_login_form(self) -> None:
        self.calls.append(("open_login_form",))

    async def fill_credentials(self, login: str, password: str) -> None:
        self.calls.append(("fill_credentials", login))

    async def submit_credentials(self) -> None:
        self.calls.append(("submit_credentials",))
        if self.on_submit is not None:
            await self.on_submit()

    async def has_sms_prompt(self) -> bool:
        return self.sms

    async def enter_sms_code(self, code: str) -> None:
        self.calls.append(("enter_sms_code", code))

    async def has_captcha(self) -> bool:
        return self.captcha

    async def save_captcha_image(self, directory: str) -> str:
        with open(self.captcha_path, "wb") as fh:
            fh.write(b"png")
        return self.captcha_path

    async def enter_captcha_code(self, code: str) -> None:
        self.calls.append(("enter_captcha_code", code))

    async def anomaly_question(self) -> Optional[str]:
        return self.question

    async def answer_anomaly_question(self, answer: str) -> None:
        self.calls.append(("answer_anomaly_question", answer))

    async def has_messenger_opt_out(self) -> bool:
        return self.messenger

    async def skip_messenger_opt_out(self) -> None:
        self.calls.append(("skip_messenger_opt_out",))

    async def wait_for_redirect(self, timeout_s: float) -> bool:
        return self.redirect

    async def cookies(self) -> list[dict[str, Any]]:
        return [{"name": "PC_USER_WAS_AUTHORIZED", "value": "1000"}]


class FakePortal(PortalCapability):
    """Portal whose outcomes are queued up by the test. Exceptions are raised."""

    def __init__(self):
        self.place_outcomes: list = []
        self.status_outcomes: list = []
        self.download_path: Optional[str] = None
        self.placed: list[str] = []
        self.checked: list[str] = []

    async def place_order(self, session: Session, cadastral_number: str) -> PlaceOrderResult:
        self.placed.append(cadastral_number)
        outcome = self.place_outcomes.pop(0)
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome

    async def check_status(self, session: Session, external_order_number: str):
        self.checked.append(external_order_number)
        outcome = self.status_outcomes.pop(0)
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome

    async def download_artifact(
        self,
        session: Session,
        external_order_number: str,
        order_id: int,
        status: Optional[StatusCheckResult] = None,
    ) -> str:
        assert self.download_path is not None
        return self.download_path


class FakeOperators:
    def __init__(self, operator: Optional[Operator] = None, error: Optional[Exception] = None):
        self.operator = operator
        self.error = error
        self.lookups = 0

    async def get_by_username(self, username: str) -> Optional[Operator]:
        self.lookups += 1
        if self.error is not None:
            raise self.error
        if self.operator is not None and self.operator.username == username:
            return self.operator
        return None


@pytest.fixture(autouse=True)
def _reset_db_circuit():
    reset_circuits()
    yield
    reset_circuits()


@pytest.fixture
def operator() -> Operator:
    return Operator(id=5, username="user1", portal_login="+79000000000", password="secret")


@pytest.fixture
def orders() -> FakeOrderRepository:
    return FakeOrderRepository()


@pytest.fixture
def browser() -> FakeBrowser:
    return FakeBrowser()


@pytest.fixture
def broker() -> InMemoryCodeBroker:
    return InMemoryCodeBroker(default_timeout_s=5.0)


@pytest.fixture
def portal() -> FakePortal:
    return FakePortal()


@pytest.fixture
def answers() -> InMemoryAnswerStore:
    return InMemoryAnswerStore()


@pytest.fixture
def queue() -> InMemoryWorkQueue:
    # Zero backoff so a redelivered job is claimable straight away
    return InMemoryWorkQueue(default_max_attempts=3, default_backoff_s=0.0)


@pytest.fixture
def make_login_page():
    return FakeLoginPage


@pytest.fixture
def make_operators():
    return FakeOperators
