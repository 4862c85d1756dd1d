"""
Playwright page agent

Fills the two-step registration form on an already opened Playwright page and
reports page events back to the orchestrator. DOM detection is kept to
selector fallbacks; the page's exact structure is not modelled.
"""

import asyncio
import logging
from typing import Dict, List, Optional, Tuple

from playwright.async_api import Error as PlaywrightError, Locator, Page
from playwright.async_api import TimeoutError as PlaywrightTimeoutError

from ...exceptions import PageAgentError, RegflowError
from ...models.registration import RegistrationRecord
from .form_helpers import FormSelectors, RetryHelper
from .page_agent import (
    AgentResponse, PageAgent, cloudflare_waiting, page_ready, registration_submitted,
)


class PlaywrightPageAgent(PageAgent):
    """Page agent driving a Playwright ``Page``"""

    def __init__(self, page: Page, element_timeout: float = 10.0, step_timeout: float = 15.0):
        super().__init__()
        self.logger = logging.getLogger(f"{__name__}.{self.__class__.__name__}")
        self.page = page
        self.element_timeout = element_timeout
        self.step_timeout = step_timeout

    # ---- element helpers ----

    async def _find_visible(self, selectors: List[str], timeout: float) -> Optional[Tuple[Locator, str]]:
        for selector in selectors:
            try:
                await self.page.wait_for_selector(selector, timeout=timeout * 1000)
            except PlaywrightTimeoutError:
                continue
            for element in await self.page.locator(selector).all():
                if await element.is_visible():
                    return element, selector
        return None

    async def _fill(self, selectors: List[str], value: str, field: str):
        found = await self._find_visible(selectors, self.element_timeout)
        if found is None:
            raise PageAgentError("fill", f"{field} field not found", {"selectors": selectors})
        element, selector = found
        try:
            await element.fill(value)
        except PlaywrightError as e:
            raise PageAgentError("fill", f"{field}: {e}", {"selector": selector})

    async def _click(self, selectors: List[str], what: str):
        found = await self._find_visible(selectors, self.element_timeout)
        if found is None:
            raise PageAgentError("click", f"{what} not found", {"selectors": selectors})
        element, selector = found
        await RetryHelper.retry_async(element.click, max_retries=3, delay=0.5)

    async def _is_present(self, selectors: List[str]) -> bool:
        for selector in selectors:
            if await self.page.locator(selector).count() > 0:
                return True
        return False

    # ---- page flow ----

    async def detect_step(self) -> Optional[str]:
        """``step2`` if a password field is shown, ``step1`` if an email field is, else None"""
        if await self._find_visible(FormSelectors.PASSWORD_FIELDS, timeout=0.5):
            return "step2"
        if await self._find_visible(FormSelectors.EMAIL_FIELDS, timeout=0.5):
            return "step1"
        return None

    async def wait_for_step(self, step: str, timeout: float) -> bool:
        """Poll ``detect_step`` until ``step`` is shown or ``timeout`` seconds pass"""
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while True:
            if await self.detect_step() == step:
                return True
            remaining = deadline - loop.time()
            if remaining <= 0:
                return False
            await asyncio.sleep(min(0.5, remaining))

    async def open(self, url: str):
        """Navigate to the registration page and announce which step is shown"""
        await self.page.goto(url, wait_until="domcontentloaded")
        step = await self.detect_step()
        self._log(f"Page ready: {url} ({step})")
        await self._emit(page_ready(url, step))

    async def _fill_step1(self, record: RegistrationRecord, profile: Dict[str, str]):
        await self._fill(FormSelectors.FIRST_NAME_FIELDS, profile.get("first_name", ""), "first name")
        await self._fill(FormSelectors.LAST_NAME_FIELDS, profile.get("last_name", ""), "last name")
        await self._fill(FormSelectors.EMAIL_FIELDS, record.email, "email")
        if await self._is_present(FormSelectors.TERMS_CHECKBOXES):
            checkbox = self.page.locator(FormSelectors.TERMS_CHECKBOXES[0]).first
            if not await checkbox.is_checked():
                await checkbox.check()
        await self._click(FormSelectors.SUBMIT_BUTTONS, "continue button")

    async def _fill_step2(self, record: RegistrationRecord):
        await self._fill(FormSelectors.PASSWORD_FIELDS, record.password, "password")
        if await self._is_present(FormSelectors.CONFIRM_PASSWORD_FIELDS):
            await self._fill(FormSelectors.CONFIRM_PASSWORD_FIELDS, record.password, "confirm password")
        await self._click(FormSelectors.SUBMIT_BUTTONS, "submit button")

    async def _submit_step2(self, record: RegistrationRecord):
        await self._emit(page_ready(self.page.url, "step2"))
        await self._fill_step2(record)
        self._log(f"✅ Filled step2 for {record.email}")

        await asyncio.sleep(1.0)
        if await self._is_present(FormSelectors.CLOUDFLARE_MARKERS):
            await self._emit(cloudflare_waiting())
        await self._emit(registration_submitted())

    async def fill_form(self, record: RegistrationRecord, profile: Optional[Dict[str, str]] = None) -> AgentResponse:
        """
        Fill the form from whichever step is shown through to the final submit

        A step 1 page is filled and submitted, then the agent waits for the
        password step and fills it as well.
        """
        profile = profile or {}
        try:
            step = await self.detect_step()
            if step is None:
                return AgentResponse(success=False, error="Registration form not found on page")

            if step == "step1":
                await self._emit(page_ready(self.page.url, "step1"))
                await self._fill_step1(record, profile)
                self._log(f"✅ Filled step1 for {record.email}")
                await self._emit(registration_submitted())
                if not await self.wait_for_step("step2", self.step_timeout):
                    return AgentResponse(success=False, step="step1",
                                         error=f"Password step did not appear within {self.step_timeout}s")

            await self._submit_step2(record)
            return AgentResponse(success=True, step="step2")
        except (RegflowError, PlaywrightError) as e:
            self.logger.error(f"Form fill failed: {e}")
            return AgentResponse(success=False, error=str(e))

    async def fill_verification_code(self, code: str) -> AgentResponse:
        try:
            await self._fill(FormSelectors.VERIFICATION_CODE_FIELDS, code, "verification code")
            await self._click(FormSelectors.SUBMIT_BUTTONS, "verify button")
            return AgentResponse(success=True)
        except (RegflowError, PlaywrightError) as e:
            self.logger.error(f"Code fill failed: {e}")
            return AgentResponse(success=False, error=str(e))

    async def cleanup(self):
        try:
            if not self.page.is_closed():
                await self.page.close()
        except PlaywrightError as e:
            self.logger.warning(f"Error during page cleanup: {e}")
