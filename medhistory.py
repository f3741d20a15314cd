# medhistory.py
# Display projection of dose history: enrich with medication, filter by status, group by day.

from datetime import date, datetime
from typing import Iterable, List, Optional, Sequence, Tuple

from medlog import logger
from medmodels import (
    DoseHistory, EnrichedDose, HistoryFilter, Medication, local_date, parse_timestamp,
)

UNKNOWN_MEDICATION = "Unknown Medication"
FALLBACK_COLOR = "#ccc"

DoseGroup = Tuple[date, List[EnrichedDose]]


def enrich_doses(history: Iterable[DoseHistory], medications: Sequence[Medication]) -> List[EnrichedDose]:
    by_id = {}
    for m in medications:
        # first record wins, like a linear find
        by_id.setdefault(m.id, m)
    return [EnrichedDose(dose=d, medication=by_id.get(d.medication_id)) for d in history]


def filter_doses(enriched: Sequence[EnrichedDose], mode=HistoryFilter.ALL) -> List[EnrichedDose]:
    mode = HistoryFilter.parse(mode)
    if mode is HistoryFilter.TAKEN:
        return [e for e in enriched if e.taken]
    if mode is HistoryFilter.MISSED:
        return [e for e in enriched if not e.taken]
    return list(enriched)


def group_by_date(enriched: Iterable[EnrichedDose]) -> List[DoseGroup]:
    """
    Partition by local calendar day, newest day first.
    Entries keep their input order inside a day. Unparseable timestamps are logged and left out.
    """
    groups = {}
    for e in enriched:
        when = parse_timestamp(e.timestamp)
        if when is None:
            logger.warning(f"dose {e.id}: unparseable timestamp {e.timestamp!r}; not shown")
            continue
        groups.setdefault(local_date(when), []).append(e)
    return sorted(groups.items(), key=lambda kv: kv[0], reverse=True)


def build_history_view(history: Iterable[DoseHistory], medications: Sequence[Medication],
                       mode=HistoryFilter.ALL) -> List[DoseGroup]:
    return group_by_date(filter_doses(enrich_doses(history, medications), mode))


# -------------------------
# Display helpers
# -------------------------
def display_name(e: EnrichedDose) -> str:
    return e.medication.name if e.medication and e.medication.name else UNKNOWN_MEDICATION


def display_dosage(e: EnrichedDose) -> str:
    return e.medication.dosage if e.medication else ""


def display_color(e: EnrichedDose) -> str:
    return e.medication.color if e.medication and e.medication.color else FALLBACK_COLOR


def status_label(e: EnrichedDose) -> str:
    return "Taken" if e.taken else "Missed"


def format_date_header(d: date) -> str:
    # "Monday, January 5"
    return f"{d.strftime('%A')}, {d.strftime('%B')} {d.day}"


def format_time(e: EnrichedDose) -> str:
    when = parse_timestamp(e.timestamp)
    if when is None:
        return ""
    if when.tzinfo is not None:
        when = when.astimezone()
    return when.strftime("%H:%M")


# -------------------------
# History screen view-model
# -------------------------
class HistoryView:
    CLEAR_OK = "All data has been cleared successfully"
    CLEAR_FAILED = "Failed to clear data. Please try again."

    def __init__(self, mode=HistoryFilter.ALL):
        self.mode = HistoryFilter.parse(mode)
        self.history: List[DoseHistory] = []
        self.medications: List[Medication] = []
        self.loaded_at: Optional[datetime] = None

    def set_filter(self, mode):
        self.mode = HistoryFilter.parse(mode)

    async def refresh(self, storage) -> bool:
        try:
            history = await storage.get_dose_history()
            medications = await storage.get_medications()
        except Exception:
            logger.exception("Error loading history")
            return False
        self.history, self.medications = history, medications
        self.loaded_at = datetime.now()
        return True

    def groups(self) -> List[DoseGroup]:
        return build_history_view(self.history, self.medications, self.mode)

    def count(self) -> int:
        return sum(len(doses) for _, doses in self.groups())

    async def clear_all(self, storage) -> Tuple[bool, str]:
        try:
            await storage.clear_all_data()
        except Exception:
            logger.exception("Error clearing data")
            return False, self.CLEAR_FAILED
        # nothing from before the clear may survive a failed reload
        self.history, self.medications = [], []
        await self.refresh(storage)
        return True, self.CLEAR_OK
