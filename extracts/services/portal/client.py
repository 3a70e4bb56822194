"""HTTP client for the portal's personal-cabinet API.

Uses the cookie set of an authenticated browser session. Placing an order is
five calls: balance, cadastral search, access key, statement upload, finish.
"""

import asyncio
import random
import uuid
from pathlib import Path
from typing import Any, Optional

import httpx
import structlog

from extracts.errors import AuthenticationFailed, TransientPortalError
from extracts.schemas import OrderStatus
from extracts.services.portal import selectors
from extracts.services.portal.base import (
    PlaceOrderResult,
    PortalCapability,
    PortalFile,
    Session,
    StatusCheckResult,
)

logger = structlog.get_logger(__name__)

BALANCE_MNEMO = "egrn_with_docs_1"
PACKAGE_TYPE = "egrn_with_docs_1"
AREA_CHARACTER_CODE = "05"
STATEMENT_TITLE = (
    "Предоставление сведений об объектах недвижимости и (или) их правообладателях"
)

DEFAULT_HEADERS = {
    "Accept": "application/json, text/plain, */*",
    "Accept-Language": "ru-RU,ru;q=0.9,en-US;q=0.8,en;q=0.7",
    "User-Agent": (
        "Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 "
        "(KHTML, like Gecko) Chrome/141.0.0.0 Safari/537.36"
    ),
}


def build_declarant_data(profile: dict[str, Any]) -> dict[str, Any]:
    """Declarant, delivery and passport blocks of a statement from the profile.

    Raises:
        ValueError: The profile has no passport document
    """
    attrs = profile.get("attributesOauth") or {}
    documents = (attrs.get("documents") or {}).get("elements") or []
    passport = next((d for d in documents if d.get("type") == "RF_PASSPORT"), None)
    if passport is None:
        raise ValueError("RF_PASSPORT document not found in profile")

    email = attrs.get("email") or profile.get("email") or ""
    phone = attrs.get("phone") or profile.get("phone") or ""

    return {
        "deliveryAction": {"delivery": "785003000000", "linkEmail": email},
        "declarants": [
            {
                "firstname": attrs.get("firstName"),
                "surname": attrs.get("lastName"),
                "patronymic": attrs.get("middleName"),
                "countryInformation": attrs.get("citizenship") or "RUS",
                "snils": attrs.get("snils") or profile.get("snils") or "",
                "email": email,
                "phoneNumber": phone,
                "addresses": [],
            }
        ],
        "attachments": [
            {
                "documentTypeCode": "008001001000",
                "documentParentCode": "008001000000",
                "series": passport.get("series"),
                "number": passport.get("number"),
                "issueDate": passport.get("issueDate"),
                "issuer": passport.get("issuedBy"),
                "subjectType": "declarant",
            }
        ],
    }


def parse_status_response(data: Any) -> StatusCheckResult:
    """Readiness and file list from a request-status response."""
    data = data if isinstance(data, dict) else {}
    ready = data.get("status") == "COMPLETED" or data.get("ready") is True
    files = tuple(
        PortalFile(
            name=f.get("name") or "document.zip",
            url=f.get("url") or f.get("downloadUrl") or "",
        )
        for f in data.get("files") or []
        if isinstance(f, dict)
    )
    return StatusCheckResult(
        ready=ready, status_text=str(data.get("status") or "UNKNOWN"), files=files
    )


class RosreestrPortalClient(PortalCapability):
    """Portal API over httpx."""

    def __init__(
        self,
        base_url: str = "https://lk.rosreestr.ru",
        timeout_s: float = 30.0,
        downloads_dir: str = "data/orders",
        pause_range_s: tuple[float, float] = (1.0, 3.0),
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._base_url = base_url.rstrip("/")
        self._downloads_dir = Path(downloads_dir)
        self._pause_range_s = pause_range_s
        self._client = httpx.AsyncClient(
            base_url=self._base_url,
            timeout=timeout_s,
            headers=DEFAULT_HEADERS,
            transport=transport,
            follow_redirects=True,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _pause(self) -> None:
        low, high = self._pause_range_s
        if high > 0:
            await asyncio.sleep(random.uniform(low, high))

    async def _request(
        self, method: str, url: str, session: Session, **kwargs: Any
    ) -> httpx.Response:
        headers = {"Cookie": session.cookie_header(), **kwargs.pop("headers", {})}
        try:
            response = await self._client.request(method, url, headers=headers, **kwargs)
        except httpx.TransportError as e:
            raise TransientPortalError(f"{method} {url} failed: {e}") from e

        if response.status_code in (401, 403):
            raise AuthenticationFailed(
                f"Portal rejected the session: HTTP {response.status_code} on {url}"
            )
        if response.status_code >= 500:
            raise TransientPortalError(
                f"Portal error: HTTP {response.status_code} on {url}",
                status_code=response.status_code,
            )
        response.raise_for_status()
        return response

    async def check_balance(self, session: Session) -> Optional[int]:
        """Orders left on the subscription, or None if unknown."""
        try:
            response = await self._request(
                "GET",
                "/account-back/finances/operations/total",
                session,
                params={"tab": "egrn_subscription"},
            )
            items = response.json()
        except (TransientPortalError, httpx.HTTPStatusError, ValueError) as e:
            logger.warning("balance_check_failed", error=str(e))
            return None

        for item in items or []:
            if item.get("mnemo") == BALANCE_MNEMO:
                return int(item.get("count", 0))
        logger.warning("balance_item_not_found", mnemo=BALANCE_MNEMO)
        return None

    async def search_cadastral_number(self, session: Session, cadastral_number: str) -> dict:
        response = await self._request(
            "POST",
            "/account-back/on/with-addresses",
            session,
            json={"filterType": "cadastral", "cadNumbers": [cadastral_number]},
        )
        return response.json()

    async def get_access_key(self, session: Session) -> str:
        response = await self._request("GET", "/account-back/access-key/current-user", session)
        return response.text.strip().strip('"')

    async def fetch_profile(self, session: Session) -> dict:
        oid = session.cookie(selectors.AUTHORIZED_USER_COOKIE)
        if not oid:
            raise AuthenticationFailed(f"{selectors.AUTHORIZED_USER_COOKIE} cookie not found")
        response = await self._request(
            "GET", "/account-back/profile/info", session, params={"oid": oid}
        )
        return response.json()

    async def upload_statement(
        self,
        session: Session,
        cadastral_number: str,
        found_object: dict,
        access_key: str,
        declarant: dict,
    ) -> dict:
        area = "0"
        for character in found_object.get("mainCharacters") or []:
            if character.get("code") == AREA_CHARACTER_CODE:
                area = str(character.get("value"))
                break

        payload = {
            "title": STATEMENT_TITLE,
            "superPackageGuid": str(uuid.uuid4()),
            "statementGuid": str(uuid.uuid4()),
            "packageGuid": str(uuid.uuid4()),
            "draftGuid": str(uuid.uuid4()),
            "sign": False,
            "dataType": {"code": "object"},
            "purpose": {
                "formType": "EGRNRequest",
                "actionCode": "659511111113",
                "statementType": "558630300000",
                "cadastralAction": "",
                "accessKey": access_key,
                "resourceType": "fgisEgrn",
            },
            "agreement": {"dataProcessingAgreement": True},
            "declarantKind": {"code": "declarant"},
            "declarantType": {"code": "person"},
            **declarant,
            "representative": [],
            "objects": [
                {
                    "objectTypeCode": found_object.get("objectType"),
                    "cadastralNumber": cadastral_number,
                    "physicalProperties": [
                        {
                            "property": "area",
                            "propertyValue": area,
                            "unittypearea": "012002001000",
                        }
                    ],
                }
            ],
            "uptodate": {"uptodateData": True},
            "specialDeclarantKind": {"code": "357039000000"},
            "extractDataRequestType1": "101",
            "actionType": "info",
        }
        response = await self._request(
            "POST", "/account-request/statement/upload", session, json=payload
        )
        return response.json()

    async def finish_request(self, session: Session, upload: dict, access_key: str) -> str:
        esia_user_id = session.cookie(selectors.AUTHORIZED_USER_COOKIE)
        if not esia_user_id:
            raise AuthenticationFailed(f"{selectors.AUTHORIZED_USER_COOKIE} cookie not found")
        response = await self._request(
            "POST",
            "/account-request/statement/finish",
            session,
            json={
                "superPackageGuid": upload.get("superPackageGuid"),
                "esiaUserId": esia_user_id,
                "subjectObject": "",
                "packageType": PACKAGE_TYPE,
                "accessKey": access_key,
            },
        )
        return response.text.strip().strip('"')

    async def place_order(self, session: Session, cadastral_number: str) -> PlaceOrderResult:
        log = logger.bind(cadastral_number=cadastral_number)

        declarant = build_declarant_data(await self.fetch_profile(session))

        available = await self.check_balance(session)
        if available is not None and available <= 0:
            log.warning("insufficient_balance", available=available)
            return PlaceOrderResult(status=OrderStatus.INSUFFICIENT_BALANCE)
        await self._pause()

        found = await self.search_cadastral_number(session, cadastral_number)
        elements = found.get("elements") or []
        if not found.get("count") or not elements:
            log.warning("cadastral_number_not_found")
            return PlaceOrderResult(status=OrderStatus.CAD_NUM_NOT_FOUND, is_complete=True)
        await self._pause()

        access_key = await self.get_access_key(session)
        await self._pause()

        upload = await self.upload_statement(
            session, cadastral_number, elements[0], access_key, declarant
        )
        await self._pause()

        order_number = await self.finish_request(session, upload, access_key)
        if not order_number:
            raise TransientPortalError("Portal returned an empty order number")
        log.info("order_placed", external_order_number=order_number)
        return PlaceOrderResult(
            status=OrderStatus.REGISTERED, external_order_number=order_number
        )

    async def check_status(
        self, session: Session, external_order_number: str
    ) -> StatusCheckResult:
        response = await self._request(
            "GET", f"/account-back/requests/{external_order_number}", session
        )
        try:
            data = response.json()
        except ValueError:
            data = None
        result = parse_status_response(data)
        logger.info(
            "order_status_checked",
            external_order_number=external_order_number,
            ready=result.ready,
            status=result.status_text,
            files=len(result.files),
        )
        return result

    async def download_artifact(
        self,
        session: Session,
        external_order_number: str,
        order_id: int,
        status: Optional[StatusCheckResult] = None,
    ) -> str:
        if status is None:
            status = await self.check_status(session, external_order_number)
        files = [f for f in status.files if f.url]
        if not status.ready or not files:
            raise TransientPortalError(
                f"Order {external_order_number} is not ready or has no files"
            )

        target_dir = self._downloads_dir / str(order_id) / external_order_number
        target_dir.mkdir(parents=True, exist_ok=True)

        saved: list[Path] = []
        for portal_file in files:
            response = await self._request(
                "GET", portal_file.url, session, headers={"Accept": "*/*"}
            )
            path = target_dir / Path(portal_file.name).name
            path.write_bytes(response.content)
            saved.append(path)
            logger.info("artifact_file_saved", path=str(path), size=len(response.content))

        archive = next((p for p in saved if p.suffix.lower() == ".zip"), saved[0])
        return str(archive)
