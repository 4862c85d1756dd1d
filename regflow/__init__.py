"""
regflow - registration orchestration engine

Workflow state machine, cross-context state synchronization, smart recovery
validation and verification-code polling for automated account registration.
"""

__version__ = "1.0.0"
