"""Data models for registration records and validation verdicts"""

from .registration import RecordStatus, RegistrationRecord, to_epoch_seconds, utc_now_iso
from .verdict import (
    CodeSignal, RealStatus, Recommendation, RecommendationResult, RemoteStatus,
    SmartCheckResult, StateConsistency, TimeValidity, ValidationSignals,
    ValidationVerdict,
)

__all__ = [
    'RecordStatus',
    'RegistrationRecord',
    'to_epoch_seconds',
    'utc_now_iso',
    'CodeSignal',
    'RealStatus',
    'Recommendation',
    'RecommendationResult',
    'RemoteStatus',
    'SmartCheckResult',
    'StateConsistency',
    'TimeValidity',
    'ValidationSignals',
    'ValidationVerdict',
]
