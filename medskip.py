# medskip.py
# "Skip dose" events. Kept in their own collection; the dose history is never touched.

from typing import Optional

from medlog import logger
from medmodels import SkippedDose, now_iso


async def skip_dose(storage, med_id: str, name: str, time: str) -> SkippedDose:
    # every call is a new event, no dedup
    skip = SkippedDose(med_id=str(med_id), name=str(name), time=str(time), date=now_iso())
    total = await storage.append_skipped_dose(skip)
    logger.info(f"dose skipped med_id={skip.med_id} time={skip.time} (total skipped={total})")
    return skip


class SkipDoseControl:
    """State behind one medication row's Skip Dose button."""
    SKIP_FAILED = "Failed to skip dose. Please try again."

    def __init__(self, storage, med_id: str, name: str, time: str):
        self.storage = storage
        self.med_id = med_id
        self.name = name
        self.time = time
        self.skipped = False
        self.last_skip: Optional[SkippedDose] = None
        self.error: Optional[str] = None

    @property
    def label(self) -> str:
        return f"{self.name} - {self.time}"

    async def skip(self) -> bool:
        try:
            self.last_skip = await skip_dose(self.storage, self.med_id, self.name, self.time)
        except Exception:
            logger.exception("Error saving skipped dose")
            self.error = self.SKIP_FAILED
            return False
        self.error = None
        self.skipped = True
        return True
