"""
Registration record data model
"""

from dataclasses import dataclass, field, fields
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional, Union

from ..exceptions import InvalidRecordError


def utc_now_iso() -> str:
    """Current UTC time as an ISO-8601 string"""
    return datetime.now(timezone.utc).isoformat()


def to_epoch_seconds(value: Union[str, int, float, None]) -> Optional[float]:
    """
    Normalize a timestamp to epoch seconds

    Accepts ISO-8601 strings, epoch seconds and epoch milliseconds. Returns
    None when the value is missing or cannot be parsed.
    """
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        # Values this large are milliseconds
        return value / 1000.0 if value > 1e11 else float(value)
    try:
        text = str(value).replace("Z", "+00:00")
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.timestamp()


class RecordStatus(Enum):
    """Remote/cached status of one registration attempt"""
    PENDING = "pending"
    VERIFIED = "verified"
    FAILED = "failed"


@dataclass
class RegistrationRecord:
    """One attempted account"""
    email: str
    password: str = ""
    username: str = ""
    session_id: str = ""
    status: RecordStatus = RecordStatus.PENDING
    verification_code: Optional[str] = None
    created_at: str = field(default_factory=utc_now_iso)
    updated_at: str = field(default_factory=utc_now_iso)

    def __post_init__(self):
        """Post initialization validation"""
        if not self.email or not str(self.email).strip():
            raise InvalidRecordError("email", "email is required")
        if not isinstance(self.status, RecordStatus):
            try:
                self.status = RecordStatus(self.status)
            except ValueError:
                raise InvalidRecordError("status", f"unknown status '{self.status}'")

    def __setattr__(self, name, value):
        # email and session_id are write-once
        if name in ("email", "session_id"):
            current = self.__dict__.get(name)
            if current and value != current:
                raise InvalidRecordError(name, "cannot be changed once set")
        super().__setattr__(name, value)

    def touch(self):
        self.updated_at = utc_now_iso()

    def mark_verified(self, verification_code: Optional[str] = None):
        """Mark record as verified, keeping the delivered code"""
        self.status = RecordStatus.VERIFIED
        if verification_code:
            self.verification_code = verification_code
        self.touch()

    def mark_failed(self):
        """Mark record as failed"""
        self.status = RecordStatus.FAILED
        self.touch()

    def is_complete(self) -> bool:
        return bool(self.email and self.password)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "email": self.email,
            "password": self.password,
            "username": self.username,
            "session_id": self.session_id,
            "status": self.status.value,
            "verification_code": self.verification_code,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RegistrationRecord":
        """Build a record from a mapping, ignoring unknown keys"""
        known = {f.name for f in fields(cls)}
        values = {k: v for k, v in data.items() if k in known and v is not None}
        return cls(**values)
