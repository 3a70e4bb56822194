"""Login-page operations used by the authentication state machine.

``LoginPage`` is what AuthSessionManager needs from the UI: detect each
verification step's marker and perform the step. ``PlaywrightLoginPage`` is
the implementation against the real pages.
"""

import asyncio
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional, Protocol
from urllib.parse import urljoin

import structlog
from playwright.async_api import Page
from playwright.async_api import TimeoutError as PlaywrightTimeoutError

from extracts.services.portal import selectors

logger = structlog.get_logger(__name__)


def marker_matches(text: Optional[str], marker: str) -> bool:
    """Exact, case-insensitive comparison of a marker element's text."""
    return bool(text) and text.strip().lower() == marker.lower()


def parse_anomaly_question(text: Optional[str]) -> Optional[str]:
    """Question text from the anomaly prompt, or None if this is not one.

    The prompt starts with the marker sentence; the question is the last
    non-empty line.
    """
    if not text or selectors.ANOMALY_MARKER.lower() not in text.strip().lower():
        return None
    lines = [line.strip() for line in text.split("\n") if line.strip()]
    return lines[-1] if lines else None


class LoginPage(Protocol):
    async def is_authenticated(self) -> bool: ...

    async def open_login_form(self) -> None: ...

    async def fill_credentials(self, login: str, password: str) -> None: ...

    async def submit_credentials(self) -> None: ...

    async def has_sms_prompt(self) -> bool: ...

    async def enter_sms_code(self, code: str) -> None: ...

    async def has_captcha(self) -> bool: ...

    async def save_captcha_image(self, directory: str) -> str: ...

    async def enter_captcha_code(self, code: str) -> None: ...

    async def anomaly_question(self) -> Optional[str]: ...

    async def answer_anomaly_question(self, answer: str) -> None: ...

    async def has_messenger_opt_out(self) -> bool: ...

    async def skip_messenger_opt_out(self) -> None: ...

    async def wait_for_redirect(self, timeout_s: float) -> bool: ...

    async def cookies(self) -> list[dict[str, Any]]: ...


class PlaywrightLoginPage:
    """LoginPage over a leased Playwright page."""

    def __init__(
        self,
        page: Page,
        portal_base_url: str = "https://lk.rosreestr.ru",
        element_timeout_s: float = 10.0,
        navigation_timeout_s: float = 30.0,
        settle_s: float = 0.5,
    ):
        self._page = page
        self._base_url = portal_base_url.rstrip("/")
        self._element_timeout_ms = element_timeout_s * 1000
        self._navigation_timeout_ms = navigation_timeout_s * 1000
        self._settle_s = settle_s

    async def _text(self, selector: str) -> Optional[str]:
        element = await self._page.query_selector(selector)
        if element is None:
            return None
        return await element.text_content()

    async def _exists(self, selector: str) -> bool:
        return await self._page.query_selector(selector) is not None

    async def _type(self, selector: str, text: str, delay_ms: int = 100) -> None:
        locator = self._page.locator(selector)
        await locator.click()
        await locator.press_sequentially(text, delay=delay_ms)

    async def _settle(self, seconds: Optional[float] = None) -> None:
        await asyncio.sleep(self._settle_s if seconds is None else seconds)

    async def is_authenticated(self) -> bool:
        await self._page.goto(
            f"{self._base_url}{selectors.PROPERTY_SEARCH_PATH}",
            wait_until="networkidle",
            timeout=self._navigation_timeout_ms,
        )
        await self._settle(2.0)
        signed_out = await self._exists(selectors.LK_SIGN_IN) or await self._exists(
            selectors.GU_SIGN_IN_BUTTON
        )
        return not signed_out

    async def open_login_form(self) -> None:
        if not await self._exists(selectors.GU_SIGN_IN_BUTTON):
            if await self._exists(selectors.LK_SIGN_IN):
                await self._page.click(selectors.LK_SIGN_IN)
                await self._settle(2.0)
        await self._page.wait_for_selector(
            selectors.GU_LOGIN_INPUT, timeout=self._navigation_timeout_ms
        )

    async def fill_credentials(self, login: str, password: str) -> None:
        await self._type(selectors.GU_LOGIN_INPUT, login)
        await self._type(selectors.GU_PASSWORD_INPUT, password)

    async def submit_credentials(self) -> None:
        # The form shows a "restore" button in the primary slot on some layouts
        text = await self._text(selectors.GU_SIGN_IN_BUTTON)
        button = selectors.GU_SIGN_IN_BUTTON
        if marker_matches(text, selectors.RESTORE_BUTTON_TEXT):
            button = selectors.GU_SIGN_IN_BUTTON_ALT
        await self._page.click(button)
        await self._settle(1.0)

    async def has_sms_prompt(self) -> bool:
        try:
            await self._page.wait_for_selector(
                selectors.SMS_CODE_TEXT, timeout=self._element_timeout_ms
            )
        except PlaywrightTimeoutError:
            return False
        return True

    async def enter_sms_code(self, code: str) -> None:
        await self._type(selectors.SMS_CODE_INPUT, code)
        await self._settle()

    async def has_captcha(self) -> bool:
        await self._settle()
        return marker_matches(
            await self._text(selectors.CAPTCHA_IMAGE_LABEL), selectors.CAPTCHA_MARKER
        )

    async def save_captcha_image(self, directory: str) -> str:
        src = await self._page.get_attribute(selectors.CAPTCHA_IMAGE, "src")
        if not src:
            raise RuntimeError("CAPTCHA image has no src")

        target_dir = Path(directory)
        target_dir.mkdir(parents=True, exist_ok=True)
        stamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%S%f")
        path = target_dir / f"captcha_{stamp}.png"

        # Fetch through the browser context so the challenge cookies go along
        response = await self._page.context.request.get(urljoin(self._page.url, src))
        if not response.ok:
            raise RuntimeError(f"CAPTCHA image download failed: HTTP {response.status}")
        path.write_bytes(await response.body())
        return str(path)

    async def enter_captcha_code(self, code: str) -> None:
        await self._type(selectors.CAPTCHA_INPUT, code)
        await self._page.click(selectors.CAPTCHA_CONTINUE_BUTTON)
        await self._settle()

    async def anomaly_question(self) -> Optional[str]:
        return parse_anomaly_question(await self._text(selectors.ANOMALY_QUESTION))

    async def answer_anomaly_question(self, answer: str) -> None:
        await self._type(selectors.ANOMALY_INPUT, answer, delay_ms=10)
        await self._page.click(selectors.ANOMALY_NEXT_BUTTON)
        await self._settle()

    async def has_messenger_opt_out(self) -> bool:
        await self._settle()
        return marker_matches(
            await self._text(selectors.MESSENGER_OPT_OUT_TEXT),
            selectors.MESSENGER_OPT_OUT_MARKER,
        )

    async def skip_messenger_opt_out(self) -> None:
        await self._page.click(selectors.MESSENGER_OPT_OUT_SKIP_BUTTON)
        await self._settle()

    async def wait_for_redirect(self, timeout_s: float) -> bool:
        try:
            await self._page.wait_for_function(
                "(domain) => window.location.href.includes(domain)",
                arg=selectors.REDIRECT_DOMAIN,
                timeout=timeout_s * 1000,
            )
        except PlaywrightTimeoutError:
            return False
        await self._page.wait_for_load_state("networkidle", timeout=self._navigation_timeout_ms)
        return True

    async def cookies(self) -> list[dict[str, Any]]:
        return [dict(c) for c in await self._page.context.cookies()]
