"""Portal capability contract and the values that cross it."""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional


@dataclass(frozen=True)
class OperatorCredentials:
    """Portal account a worker logs in as. ``username`` is the code subject."""

    username: str
    portal_login: str
    password: str = field(repr=False)


@dataclass
class Session:
    """Authenticated portal session: the cookie set taken from the browser."""

    subject: str
    cookies: list[dict[str, Any]]
    authenticated_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    is_valid: bool = True

    def cookie(self, name: str) -> Optional[str]:
        for cookie in self.cookies:
            if cookie.get("name") == name:
                return cookie.get("value")
        return None

    def cookie_header(self) -> str:
        return "; ".join(f"{c['name']}={c['value']}" for c in self.cookies)

    def invalidate(self) -> None:
        self.is_valid = False


@dataclass(frozen=True)
class PlaceOrderResult:
    """Outcome of placing an order.

    ``status`` is the client-visible order status. ``is_complete`` is True for
    outcomes that end the order without a download (number not found).
    """

    status: str
    external_order_number: Optional[str] = None
    is_complete: bool = False


@dataclass(frozen=True)
class PortalFile:
    name: str
    url: str


@dataclass(frozen=True)
class StatusCheckResult:
    ready: bool
    status_text: str
    files: tuple[PortalFile, ...] = ()


class PortalCapability(ABC):
    """Order operations against the portal, given an authenticated session.

    Logging in and checking whether a session is still valid belong to
    AuthSessionManager, which drives the browser.
    """

    @abstractmethod
    async def place_order(self, session: Session, cadastral_number: str) -> PlaceOrderResult:
        ...

    @abstractmethod
    async def check_status(
        self, session: Session, external_order_number: str
    ) -> StatusCheckResult:
        ...

    @abstractmethod
    async def download_artifact(
        self,
        session: Session,
        external_order_number: str,
        order_id: int,
        status: Optional[StatusCheckResult] = None,
    ) -> str:
        """Download the order's files. Returns the path of the archive."""
        ...
