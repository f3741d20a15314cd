# medschedule.py
# Reminder slots derived from each medication's daily "HH:MM" times.

from datetime import datetime, timedelta
from typing import Dict, List, Optional, Sequence

import medconfig
from medlog import logger
from medmodels import Medication

try:
    from jnius import autoclass
except Exception:
    autoclass = None


def parse_hm(t: str):
    h, m = map(int, str(t).strip().split(":"))
    if not (0 <= h < 24 and 0 <= m < 60):
        raise ValueError(f"time out of range: {t!r}")
    return h, m


def upcoming_doses(medications: Sequence[Medication], now: Optional[datetime] = None,
                   hours: int = 36, grace_seconds: int = 0) -> List[Dict]:
    # slots up to grace_seconds in the past stay on today instead of rolling to tomorrow
    now = now or datetime.now()
    end = now + timedelta(hours=hours)
    earliest = now - timedelta(seconds=grace_seconds)

    upcoming = []
    for med in medications:
        if not med.reminder_enabled:
            continue
        for t in med.times:
            try:
                h, m = parse_hm(t)
            except ValueError:
                logger.warning(f"medication {med.id}: bad reminder time {t!r}")
                continue
            dt = now.replace(hour=h, minute=m, second=0, microsecond=0)
            if dt < earliest:
                dt += timedelta(days=1)
            # hours > 24 can fit a second occurrence
            while dt <= end:
                upcoming.append({
                    "medication_id": med.id,
                    "name": med.name,
                    "dosage": med.dosage,
                    "color": med.color,
                    "time_obj": dt,
                    "time": dt.strftime("%Y-%m-%d %H:%M"),
                    "time_hm": dt.strftime("%H:%M"),
                })
                dt += timedelta(days=1)
    upcoming.sort(key=lambda x: x["time_obj"])
    return upcoming


def needs_refill(med: Medication) -> bool:
    return bool(med.refill_reminder) and med.current_supply <= med.refill_at


def start_reminder_service() -> bool:
    """Start the python-for-android Reminders service (see buildozer `services`). No-op off Android."""
    if not medconfig.is_android() or autoclass is None:
        return False
    try:
        PythonActivity = autoclass("org.kivy.android.PythonActivity")
        service = autoclass(medconfig.REMINDER_SERVICE_CLASS)
        service.start(PythonActivity.mActivity, "")
        logger.info(f"reminder service start requested: {medconfig.REMINDER_SERVICE_CLASS}")
        return True
    except Exception:
        logger.exception("reminder service start failed")
        return False
