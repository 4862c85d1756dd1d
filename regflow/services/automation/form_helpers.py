"""
Form interaction helpers for page agents

Selector fallbacks for the two-step registration form and the verification
code field, plus the shared retry helper.
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, TypeVar

T = TypeVar("T")

logger = logging.getLogger(__name__)


class FormSelectors:
    """Selector fallbacks, tried in order"""

    # Step 1: name + email
    FIRST_NAME_FIELDS = [
        'input[name="firstName"]',
        'input[name="first_name"]',
        'input[autocomplete="given-name"]',
        'input[placeholder*="First"]',
        'form input[type="text"]:nth-of-type(1)',
    ]

    LAST_NAME_FIELDS = [
        'input[name="lastName"]',
        'input[name="last_name"]',
        'input[autocomplete="family-name"]',
        'input[placeholder*="Last"]',
        'form input[type="text"]:nth-of-type(2)',
    ]

    EMAIL_FIELDS = [
        'input[type="email"]',
        'input[name="email"]',
        'input[autocomplete="email"]',
    ]

    # Step 2: password + confirmation
    PASSWORD_FIELDS = [
        'input[name="password"]',
        'input[autocomplete="new-password"]',
        'input[type="password"]:first-of-type',
    ]

    CONFIRM_PASSWORD_FIELDS = [
        'input[name="passwordConfirmation"]',
        'input[name="confirmPassword"]',
        'input[name="password_confirmation"]',
        'input[type="password"]:last-of-type',
    ]

    TERMS_CHECKBOXES = [
        'input[type="checkbox"]',
        'label input[type="checkbox"]',
    ]

    SUBMIT_BUTTONS = [
        'button[type="submit"]:not([disabled])',
        'input[type="submit"]',
        'button:has-text("Continue")',
        'button:has-text("Sign up")',
    ]

    VERIFICATION_CODE_FIELDS = [
        'input[name="code"]',
        'input[name="verificationCode"]',
        'input[autocomplete="one-time-code"]',
    ]

    CLOUDFLARE_MARKERS = [
        'iframe[src*="challenges.cloudflare.com"]',
        '#challenge-running',
        '.cf-turnstile',
    ]


class RetryHelper:
    """Helper for retry operations"""

    @staticmethod
    async def retry_async(func: Callable[..., Awaitable[T]], max_retries: int = 3, delay: float = 1.0,
                          *args: Any, **kwargs: Any) -> T:
        """Retry an async function with exponential backoff"""
        for attempt in range(max_retries):
            try:
                return await func(*args, **kwargs)
            except Exception as e:
                if attempt == max_retries - 1:
                    raise
                logger.debug(f"Attempt {attempt + 1}/{max_retries} failed: {e}")
                await asyncio.sleep(delay * (2 ** attempt))
