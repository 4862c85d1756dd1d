"""
Automation module for the registration workflow

Architecture Overview:
======================

    RegistrationOrchestrator (services/orchestrator.py)
                    │
          ┌─────────┴──────────────┐
          ▼                        ▼
    RegistrationStateMachine    PageAgent               ← Abstract interface
    (transitions framework)        │
                                   ▼
                          PlaywrightPageAgent           ← Fills the two-step form

    Supporting Components:
    └── FormHelpers      ← Selector fallbacks and retry logic

The Playwright agent is imported from ``playwright_agent`` directly so the
state machine can be used without a browser stack.
"""

from .page_agent import AgentResponse, PageAgent
from .registration_state_machine import (
    PROGRESS, STATE_STORAGE_KEY, STATE_TEXT, TRANSITIONS,
    RegistrationState, RegistrationStateMachine,
)

__all__ = [
    'AgentResponse',
    'PageAgent',
    'PROGRESS',
    'STATE_STORAGE_KEY',
    'STATE_TEXT',
    'TRANSITIONS',
    'RegistrationState',
    'RegistrationStateMachine',
]
