"""
Abstract base class for page automation agents

A page agent drives the third-party registration page. The orchestrator talks
to it with two requests (fill the form, fill the code) and receives its
messages (``pageReady``, ``registrationSubmitted``, ``cloudflareWaiting``)
through a callback.
"""

import inspect
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

from ...models.registration import RegistrationRecord

AgentMessage = Dict[str, Any]
MessageCallback = Callable[[AgentMessage], Any]

ACTION_FILL_FORM = "fillForm"
ACTION_FILL_CODE = "fillVerificationCode"
ACTION_PAGE_READY = "pageReady"
ACTION_SUBMITTED = "registrationSubmitted"
ACTION_CLOUDFLARE = "cloudflareWaiting"


@dataclass
class AgentResponse:
    success: bool
    error: Optional[str] = None
    step: Optional[str] = None


def page_ready(url: str, step: Optional[str]) -> AgentMessage:
    return {"action": ACTION_PAGE_READY, "url": url, "step": step}


def registration_submitted() -> AgentMessage:
    return {"action": ACTION_SUBMITTED}


def cloudflare_waiting() -> AgentMessage:
    return {"action": ACTION_CLOUDFLARE}


class PageAgent(ABC):
    """Abstract base class for page agents"""

    def __init__(self):
        self.on_message: Optional[MessageCallback] = None
        self.on_log_message: Optional[Callable[[str], None]] = None

    def set_message_callback(self, callback: Optional[MessageCallback]):
        """Set the callback receiving agent messages"""
        self.on_message = callback

    def set_log_callback(self, callback: Optional[Callable[[str], None]]):
        self.on_log_message = callback

    async def _emit(self, message: AgentMessage):
        if self.on_message:
            result = self.on_message(message)
            if inspect.isawaitable(result):
                await result

    def _log(self, message: str):
        """Internal logging helper"""
        if self.on_log_message:
            self.on_log_message(message)

    @abstractmethod
    async def fill_form(self, record: RegistrationRecord, profile: Optional[Dict[str, str]] = None) -> AgentResponse:
        """
        Fill whichever registration step the page currently shows

        Args:
            record: credentials to enter
            profile: extra identity fields (first_name, last_name)

        Returns:
            AgentResponse with success flag and error text
        """
        pass

    @abstractmethod
    async def fill_verification_code(self, code: str) -> AgentResponse:
        pass

    @abstractmethod
    async def cleanup(self):
        """Clean up agent resources"""
        pass
