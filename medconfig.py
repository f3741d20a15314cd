# medconfig.py
# Paths and tunables for MedRemind. Everything can be overridden from the environment.

import os, uuid
from pathlib import Path

APP_NAME = "MedRemind"

# must match buildozer.spec package.domain / package.name; p4a names the service class Service<Name>
ANDROID_PACKAGE = os.environ.get("MEDREMIND_ANDROID_PACKAGE", "org.example.medremind")
REMINDER_SERVICE_CLASS = f"{ANDROID_PACKAGE}.ServiceReminders"

def _env_float(name: str, default: float) -> float:
    try:
        return float(os.environ.get(name, default))
    except (TypeError, ValueError):
        return float(default)

def _env_int(name: str, default: int) -> int:
    try:
        return int(os.environ.get(name, default))
    except (TypeError, ValueError):
        return int(default)

def is_android() -> bool:
    # python-for-android exports these for both the activity and services
    return bool(os.environ.get("ANDROID_ARGUMENT") or os.environ.get("ANDROID_PRIVATE"))

def _is_writable_dir(p: Path) -> bool:
    try:
        p.mkdir(parents=True, exist_ok=True)
        t = p / f".writetest.{uuid.uuid4().hex}"
        t.write_text("ok", encoding="utf-8")
        t.unlink(missing_ok=True)
        return True
    except OSError:
        return False

def app_base_dir() -> Path:
    override = os.environ.get("MEDREMIND_DATA_DIR")
    if override:
        d = Path(override)
        d.mkdir(parents=True, exist_ok=True)
        return d

    p = os.environ.get("ANDROID_PRIVATE")
    if p:
        d = Path(p) / "medremind_data"
        if _is_writable_dir(d):
            return d

    d = Path(__file__).resolve().parent / "medremind_data"
    d.mkdir(parents=True, exist_ok=True)
    return d

BASE_DIR = app_base_dir()
STORE_PATH = BASE_DIR / "medremind.store.aes"
KEY_PATH = BASE_DIR / ".enc_key"
PIN_PATH = BASE_DIR / "pin.json"
LOG_PATH = BASE_DIR / "app.log"

# Collection keys inside the store
MEDICATIONS_KEY = "@medications"
DOSE_HISTORY_KEY = "@dose_history"
SKIPPED_DOSES_KEY = "skippedDoses"
ALL_KEYS = (MEDICATIONS_KEY, DOSE_HISTORY_KEY, SKIPPED_DOSES_KEY)

SPLASH_SECONDS = _env_float("MEDREMIND_SPLASH_SECONDS", 2.0)
UPCOMING_HOURS = _env_int("MEDREMIND_UPCOMING_HOURS", 36)
LOG_MAX_LINES = _env_int("MEDREMIND_LOG_MAX_LINES", 800)

PIN_MIN_LEN = 4
PIN_MAX_LEN = 8
PIN_KDF_ROUNDS = 200_000
