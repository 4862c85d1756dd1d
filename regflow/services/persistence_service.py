"""
Record cache for registration attempts.

Keeps one row per email in a CSV file:
- Pandas DataFrame for CSV reads and writes
- File locking so several contexts/processes can share the cache
- Upsert by email; an existing row's session_id is never overwritten
- Status updates, expiry cleanup, export and simple statistics
"""

import logging
import time
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import pandas as pd
from filelock import FileLock

from ..models.registration import RecordStatus, RegistrationRecord, to_epoch_seconds, utc_now_iso

COLUMNS = [
    "email", "password", "username", "session_id", "status",
    "verification_code", "created_at", "updated_at",
]


class RecordCache:
    """Per-email cache of RegistrationRecords backed by a CSV file"""

    def __init__(self, cache_dir: Union[str, Path] = ".", filename: str = "registrations.csv"):
        """
        Initialize the record cache

        Args:
            cache_dir: Directory holding the CSV file (created if missing)
            filename: CSV file name
        """
        self.logger = logging.getLogger(f"{__name__}.{self.__class__.__name__}")
        self.cache_dir = Path(cache_dir)
        self.cache_dir.mkdir(parents=True, exist_ok=True)
        self.csv_file = self.cache_dir / filename
        self.file_lock = FileLock(str(self.csv_file) + ".lock")

    def _load(self) -> pd.DataFrame:
        if not self.csv_file.exists():
            return pd.DataFrame(columns=COLUMNS)
        df = pd.read_csv(self.csv_file, dtype=str, keep_default_na=False)
        for column in COLUMNS:
            if column not in df.columns:
                df[column] = ""
        return df[COLUMNS]

    def _write(self, df: pd.DataFrame):
        tmp_file = self.csv_file.with_suffix(".tmp")
        df.to_csv(tmp_file, index=False, encoding="utf-8")
        tmp_file.replace(self.csv_file)

    @staticmethod
    def _row_to_record(row: Dict[str, Any]) -> RegistrationRecord:
        data = {k: (v if v != "" else None) for k, v in row.items()}
        return RegistrationRecord.from_dict(data)

    def save_record(self, record: RegistrationRecord) -> RegistrationRecord:
        """Insert or update the row for ``record.email``"""
        with self.file_lock:
            df = self._load()
            row = {k: ("" if v is None else v) for k, v in record.to_dict().items()}
            mask = df["email"] == record.email
            if mask.any():
                existing_session = df.loc[mask, "session_id"].iloc[0]
                if existing_session:
                    row["session_id"] = existing_session
                row["created_at"] = df.loc[mask, "created_at"].iloc[0] or row["created_at"]
                row["updated_at"] = utc_now_iso()
                for column, value in row.items():
                    df.loc[mask, column] = value
            else:
                df = pd.concat([df, pd.DataFrame([row], columns=COLUMNS)], ignore_index=True)
            self._write(df)
        self.logger.debug(f"💾 Cached record {record.email}")
        return self._row_to_record(row)

    def get_record(self, email: str) -> Optional[RegistrationRecord]:
        with self.file_lock:
            df = self._load()
        matches = df[df["email"] == email]
        if matches.empty:
            return None
        return self._row_to_record(matches.iloc[0].to_dict())

    def list_records(self, status: Optional[Union[RecordStatus, str]] = None,
                     limit: Optional[int] = None) -> List[RegistrationRecord]:
        """Records newest first, optionally filtered by status"""
        with self.file_lock:
            df = self._load()
        if status is not None:
            value = status.value if isinstance(status, RecordStatus) else status
            df = df[df["status"] == value]
        df = df.sort_values("created_at", ascending=False)
        if limit is not None:
            df = df.head(limit)
        return [self._row_to_record(row) for row in df.to_dict("records")]

    def update_status(self, email: str, status: RecordStatus,
                      verification_code: Optional[str] = None) -> Optional[RegistrationRecord]:
        with self.file_lock:
            df = self._load()
            mask = df["email"] == email
            if not mask.any():
                self.logger.warning(f"No cached record for {email}")
                return None
            df.loc[mask, "status"] = status.value
            if verification_code:
                df.loc[mask, "verification_code"] = verification_code
            df.loc[mask, "updated_at"] = utc_now_iso()
            self._write(df)
            row = df[mask].iloc[0].to_dict()
        return self._row_to_record(row)

    def delete_record(self, email: str) -> bool:
        with self.file_lock:
            df = self._load()
            mask = df["email"] == email
            if not mask.any():
                return False
            self._write(df[~mask])
        return True

    def cleanup_expired(self, max_age: float, now: Optional[float] = None) -> int:
        """Drop pending rows older than ``max_age`` seconds, returns how many were removed"""
        now = time.time() if now is None else now
        with self.file_lock:
            df = self._load()
            created = df["created_at"].map(to_epoch_seconds)
            expired = (df["status"] == RecordStatus.PENDING.value) & created.map(
                lambda ts: ts is not None and now - ts > max_age
            )
            removed = int(expired.sum())
            if removed:
                self._write(df[~expired])
        if removed:
            self.logger.info(f"🧹 Removed {removed} expired pending record(s)")
        return removed

    def export_csv(self, path: Union[str, Path], status: Optional[Union[RecordStatus, str]] = None) -> int:
        """Write records to ``path`` (passwords included), returns the row count"""
        records = self.list_records(status=status)
        df = pd.DataFrame([r.to_dict() for r in records], columns=COLUMNS)
        df.to_csv(path, index=False, encoding="utf-8")
        return len(df)

    def get_stats(self) -> Dict[str, Any]:
        with self.file_lock:
            df = self._load()
        counts = df["status"].value_counts().to_dict()
        return {
            "file_path": str(self.csv_file),
            "total": len(df),
            "pending": int(counts.get(RecordStatus.PENDING.value, 0)),
            "verified": int(counts.get(RecordStatus.VERIFIED.value, 0)),
            "failed": int(counts.get(RecordStatus.FAILED.value, 0)),
        }
