# medmodels.py
# Record types for the three stored collections and the enriched history row.
#
# Records are persisted with camelCase keys (the on-disk layout); attributes are snake_case.

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from typing import Any, Dict, List, Optional


class MalformedRecord(ValueError):
    """A stored record does not have the expected shape."""


class HistoryFilter(str, Enum):
    ALL = "all"
    TAKEN = "taken"
    MISSED = "missed"

    @classmethod
    def parse(cls, value: Any) -> "HistoryFilter":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value or "").strip().lower())
        except ValueError:
            return cls.ALL


def _req_str(d: Dict[str, Any], key: str) -> str:
    v = d.get(key)
    if v is None or isinstance(v, (dict, list)):
        raise MalformedRecord(f"missing or invalid {key!r}")
    return str(v)


def _opt_int(d: Dict[str, Any], key: str, default: int = 0) -> int:
    v = d.get(key, default)
    try:
        return int(v)
    except (TypeError, ValueError):
        return default


def parse_timestamp(value: Any) -> Optional[datetime]:
    """ISO-8601 text (a trailing 'Z' is accepted) -> datetime, or None."""
    if isinstance(value, datetime):
        return value
    if not isinstance(value, str) or not value.strip():
        return None
    s = value.strip()
    if s.endswith("Z"):
        s = s[:-1] + "+00:00"
    try:
        return datetime.fromisoformat(s)
    except ValueError:
        return None


def now_iso() -> str:
    return datetime.now().astimezone().isoformat()


@dataclass
class Medication:
    id: str
    name: str
    dosage: str = ""
    color: str = ""
    times: List[str] = field(default_factory=list)
    start_date: str = ""
    duration: str = ""
    reminder_enabled: bool = True
    current_supply: int = 0
    total_supply: int = 0
    refill_at: int = 0
    refill_reminder: bool = False
    last_refill_date: Optional[str] = None

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "Medication":
        if not isinstance(d, dict):
            raise MalformedRecord("medication is not an object")
        times = d.get("times") or []
        if not isinstance(times, list):
            times = []
        return cls(
            id=_req_str(d, "id"),
            name=_req_str(d, "name"),
            dosage=str(d.get("dosage") or ""),
            color=str(d.get("color") or ""),
            times=[str(t) for t in times],
            start_date=str(d.get("startDate") or ""),
            duration=str(d.get("duration") or ""),
            reminder_enabled=bool(d.get("reminderEnabled", True)),
            current_supply=_opt_int(d, "currentSupply"),
            total_supply=_opt_int(d, "totalSupply"),
            refill_at=_opt_int(d, "refillAt"),
            refill_reminder=bool(d.get("refillReminder", False)),
            last_refill_date=d.get("lastRefillDate") or None,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "dosage": self.dosage,
            "color": self.color,
            "times": list(self.times),
            "startDate": self.start_date,
            "duration": self.duration,
            "reminderEnabled": self.reminder_enabled,
            "currentSupply": self.current_supply,
            "totalSupply": self.total_supply,
            "refillAt": self.refill_at,
            "refillReminder": self.refill_reminder,
            "lastRefillDate": self.last_refill_date,
        }


@dataclass
class DoseHistory:
    id: str
    medication_id: str
    timestamp: str
    taken: bool

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "DoseHistory":
        if not isinstance(d, dict):
            raise MalformedRecord("dose history entry is not an object")
        taken = d.get("taken")
        if not isinstance(taken, bool):
            raise MalformedRecord("missing or invalid 'taken'")
        return cls(
            id=_req_str(d, "id"),
            medication_id=_req_str(d, "medicationId"),
            timestamp=_req_str(d, "timestamp"),
            taken=taken,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "medicationId": self.medication_id,
            "timestamp": self.timestamp,
            "taken": self.taken,
        }

    @property
    def when(self) -> Optional[datetime]:
        return parse_timestamp(self.timestamp)


@dataclass
class SkippedDose:
    med_id: str
    name: str
    time: str
    date: str

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "SkippedDose":
        if not isinstance(d, dict):
            raise MalformedRecord("skipped dose is not an object")
        return cls(
            med_id=_req_str(d, "medId"),
            name=str(d.get("name") or ""),
            time=str(d.get("time") or ""),
            date=_req_str(d, "date"),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {"medId": self.med_id, "name": self.name, "time": self.time, "date": self.date}


@dataclass
class EnrichedDose:
    dose: DoseHistory
    medication: Optional[Medication] = None

    @property
    def id(self) -> str:
        return self.dose.id

    @property
    def taken(self) -> bool:
        return self.dose.taken

    @property
    def timestamp(self) -> str:
        return self.dose.timestamp


def local_date(dt: datetime) -> date:
    """Calendar date in the device's time zone; naive datetimes are taken as local."""
    if dt.tzinfo is not None:
        dt = dt.astimezone()
    return dt.date()
