# service/med_service.py
# python-for-android background service: polls the encrypted store and posts reminder notifications.
# Read-only; the app process is the only writer.

import sys, time, asyncio
from pathlib import Path
from datetime import datetime

# service entrypoint lives one level below the app modules
sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

import medconfig
from medlog import logger
from medstore import MedStorage
from medschedule import upcoming_doses

try:
    from jnius import autoclass
except Exception:
    autoclass = None

POLL_SECONDS = 20
FIRE_EARLY_S = 45
FIRE_LATE_S = 20
REFIRE_GUARD_S = 90

def notify(title: str, text: str):
    if autoclass is None:
        logger.info(f"[notify] {title}: {text}")
        return
    try:
        PythonService = autoclass("org.kivy.android.PythonService")
        service = PythonService.mService
        Context = autoclass("android.content.Context")
        NotificationManager = autoclass("android.app.NotificationManager")
        NotificationChannel = autoclass("android.app.NotificationChannel")
        Notification = autoclass("android.app.Notification")
        Build = autoclass("android.os.Build")

        channel_id = "medremind_reminders"
        nm = service.getSystemService(Context.NOTIFICATION_SERVICE)

        if Build.VERSION.SDK_INT >= 26:
            ch = NotificationChannel(channel_id, "MedRemind Reminders", NotificationManager.IMPORTANCE_HIGH)
            ch.setDescription("Medication reminders")
            nm.createNotificationChannel(ch)
            builder = Notification.Builder(service, channel_id)
        else:
            builder = Notification.Builder(service)

        builder.setContentTitle(title)
        builder.setContentText(text)
        builder.setSmallIcon(service.getApplicationInfo().icon)
        builder.setAutoCancel(True)

        nid = int(time.time()) & 0x7fffffff
        nm.notify(nid, builder.build())
    except Exception:
        logger.exception("notification failed")

def due_reminders(upcoming, now: datetime, fired: dict, now_ts: float):
    """Slots inside the firing window that have not fired recently. Updates `fired`."""
    due = []
    for u in upcoming:
        diff = (u["time_obj"] - now).total_seconds()
        if -FIRE_LATE_S <= diff <= FIRE_EARLY_S:
            k = (u["medication_id"], u["time"])
            if now_ts - fired.get(k, 0) > REFIRE_GUARD_S:
                fired[k] = now_ts
                due.append(u)
    return due

def check_once(storage: MedStorage, fired: dict):
    meds = asyncio.run(storage.get_medications())
    now = datetime.now()
    upcoming = upcoming_doses(meds, now=now, hours=3, grace_seconds=FIRE_LATE_S)
    for u in due_reminders(upcoming, now, fired, time.time()):
        body = f"{u['name']} • {u['dosage']} @ {u['time_hm']}".strip()
        notify("MedRemind", body)

def poll_once(storage, fired: dict, base_dir=None):
    """One service tick. Returns the storage handle to use next time (None while the app has no key yet)."""
    try:
        if storage is None:
            # the app creates the key on first launch
            storage = MedStorage.open_existing(base_dir)
        if storage is not None:
            check_once(storage, fired)
    except Exception:
        logger.exception("reminder service check failed")
    return storage

def main_loop():
    storage = None
    fired = {}  # (med_id, "YYYY-mm-dd HH:MM") -> last fired ts
    logger.info(f"reminder service started base={medconfig.BASE_DIR}")

    while True:
        storage = poll_once(storage, fired)
        time.sleep(POLL_SECONDS)

if __name__ == "__main__":
    main_loop()
