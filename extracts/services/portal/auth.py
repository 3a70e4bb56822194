"""Authentication state machine for the portal login flow.

    NOT_AUTHENTICATED -> CHECKING_STATUS -> AUTHENTICATED
                                         -> SUBMITTING_CREDENTIALS
                                            -> [SMS_STEP] -> [CAPTCHA_STEP]
                                            -> [ANOMALY_STEP] -> [MESSENGER_OPT_OUT_STEP]
                                            -> AWAITING_REDIRECT -> AUTHENTICATED

Bracketed steps run only when their marker is on the page. Any failure moves
to FAILED and drops the cached session; the job layer decides about retries.
"""

import asyncio
import os
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, AsyncIterator, Callable, Optional, Protocol

import structlog

from extracts.errors import AuthenticationFailed, UnansweredAnomalyQuestion
from extracts.services.codes.broker import CodeBroker, CodeKind
from extracts.services.portal.base import OperatorCredentials, Session
from extracts.services.portal.login_page import LoginPage

logger = structlog.get_logger(__name__)


class AuthState(str, Enum):
    NOT_AUTHENTICATED = "not_authenticated"
    CHECKING_STATUS = "checking_status"
    SUBMITTING_CREDENTIALS = "submitting_credentials"
    SMS_STEP = "sms_step"
    CAPTCHA_STEP = "captcha_step"
    ANOMALY_STEP = "anomaly_step"
    MESSENGER_OPT_OUT_STEP = "messenger_opt_out_step"
    AWAITING_REDIRECT = "awaiting_redirect"
    AUTHENTICATED = "authenticated"
    FAILED = "failed"


class AnswerStore(Protocol):
    async def find_answer(self, question: str, subject: str) -> Optional[str]: ...


class PageLeaser(Protocol):
    def lease(self) -> Any: ...


@dataclass
class Transition:
    state: AuthState
    at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class AuthSessionManager:
    """Drives the login flow and owns the resulting session.

    One instance per worker process. ``session()`` leases the browser page,
    so only one job at a time can hold the session.
    """

    def __init__(
        self,
        browser: PageLeaser,
        login_page_factory: Callable[[Any], LoginPage],
        broker: CodeBroker,
        answers: AnswerStore,
        code_timeout_s: float = 300.0,
        redirect_timeout_s: float = 60.0,
        captcha_dir: str = "data/captcha",
        on_failure: Optional[Callable[[str], Any]] = None,
    ):
        self._browser = browser
        self._login_page_factory = login_page_factory
        self._broker = broker
        self._answers = answers
        self._code_timeout_s = code_timeout_s
        self._redirect_timeout_s = redirect_timeout_s
        self._captcha_dir = captcha_dir
        self._on_failure = on_failure
        self._state = AuthState.NOT_AUTHENTICATED
        self._session: Optional[Session] = None
        self.history: list[Transition] = []

    @property
    def state(self) -> AuthState:
        return self._state

    @property
    def current_session(self) -> Optional[Session]:
        return self._session

    def invalidate(self) -> None:
        """Drop the session, e.g. after the portal rejected it."""
        if self._session is not None:
            self._session.invalidate()
            logger.info("session_invalidated", subject=self._session.subject)
        self._session = None
        self._state = AuthState.NOT_AUTHENTICATED

    def _transition(self, state: AuthState, **context) -> None:
        self._state = state
        self.history.append(Transition(state))
        logger.info("auth_state", state=state.value, **context)

    @asynccontextmanager
    async def session(self, credentials: OperatorCredentials) -> AsyncIterator[Session]:
        """Lease the browser and yield an authenticated session.

        An AuthenticationFailed raised inside the block (e.g. the portal
        answered 401) invalidates the session before propagating.
        """
        async with self._browser.lease() as page:
            session = await self.authenticate(self._login_page_factory(page), credentials)
            try:
                yield session
            except AuthenticationFailed:
                self.invalidate()
                raise

    async def check_auth_status(self, page: LoginPage) -> bool:
        return await page.is_authenticated()

    async def authenticate(
        self, page: LoginPage, credentials: OperatorCredentials
    ) -> Session:
        """Run the state machine to AUTHENTICATED or raise."""
        subject = credentials.username
        self.history = []
        try:
            self._transition(AuthState.CHECKING_STATUS, subject=subject)
            if not await self.check_auth_status(page):
                await self._login(page, credentials)
            cookies = await page.cookies()
        except BaseException as e:
            self._transition(AuthState.FAILED, subject=subject, error=str(e))
            self._session = None
            if self._on_failure is not None and not isinstance(e, asyncio.CancelledError):
                await self._on_failure(f"auth_{subject}")
            raise

        self._session = Session(subject=subject, cookies=cookies)
        self._transition(AuthState.AUTHENTICATED, subject=subject)
        return self._session

    async def _login(self, page: LoginPage, credentials: OperatorCredentials) -> None:
        subject = credentials.username

        self._transition(AuthState.SUBMITTING_CREDENTIALS, subject=subject)
        await page.open_login_form()
        await page.fill_credentials(credentials.portal_login, credentials.password)

        await self._submit_with_sms(page, subject)

        if await page.has_captcha():
            self._transition(AuthState.CAPTCHA_STEP, subject=subject)
            await self._solve_captcha(page, subject)

        question = await page.anomaly_question()
        if question:
            self._transition(AuthState.ANOMALY_STEP, subject=subject)
            answer = await self._answers.find_answer(question, subject)
            if not answer:
                logger.warning("anomaly_question_unanswered", subject=subject, question=question)
                raise UnansweredAnomalyQuestion(question)
            await page.answer_anomaly_question(answer)

        if await page.has_messenger_opt_out():
            self._transition(AuthState.MESSENGER_OPT_OUT_STEP, subject=subject)
            await page.skip_messenger_opt_out()

        self._transition(AuthState.AWAITING_REDIRECT, subject=subject)
        if not await page.wait_for_redirect(self._redirect_timeout_s):
            raise AuthenticationFailed(
                f"No redirect back to the portal within {self._redirect_timeout_s:g}s"
            )

    async def _submit_with_sms(self, page: LoginPage, subject: str) -> None:
        """Submit the credential form with an SMS subscription already open.

        Submitting is what makes the portal send the SMS, so the subscription
        must exist first.
        """
        await self._broker.subscribe(subject, CodeKind.SMS)
        try:
            await page.submit_credentials()
            sms_required = await page.has_sms_prompt()
        except BaseException:
            await self._broker.cancel(subject, CodeKind.SMS)
            raise

        if not sms_required:
            await self._broker.cancel(subject, CodeKind.SMS)
            return

        self._transition(AuthState.SMS_STEP, subject=subject)
        code = await self._broker.wait_for_code(subject, CodeKind.SMS, self._code_timeout_s)
        await page.enter_sms_code(code)

    async def _solve_captcha(self, page: LoginPage, subject: str) -> None:
        image_path = await page.save_captcha_image(self._captcha_dir)
        try:
            await self._broker.subscribe(subject, CodeKind.CAPTCHA)
            try:
                await self._broker.announce_request(subject, CodeKind.CAPTCHA, image_path)
            except BaseException:
                await self._broker.cancel(subject, CodeKind.CAPTCHA)
                raise
            code = await self._broker.wait_for_code(
                subject, CodeKind.CAPTCHA, self._code_timeout_s
            )
        finally:
            try:
                os.remove(image_path)
            except FileNotFoundError:
                pass
        await page.enter_captcha_code(code)
