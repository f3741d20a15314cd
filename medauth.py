# medauth.py
# PIN gate in front of the app, plus a biometric availability check on Android.

import os, json, hmac, hashlib
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Tuple

import medconfig
from medlog import logger
from medstore import atomic_write_bytes

try:
    from jnius import autoclass
except Exception:
    autoclass = None

AUTH_FAILED = "Authentication Failed: Please try again"


@dataclass
class AuthResult:
    success: bool
    error: Optional[str] = None


def _pbkdf2(pin: str, salt: bytes, rounds: int) -> bytes:
    return hashlib.pbkdf2_hmac("sha256", pin.encode("utf-8"), salt, rounds, dklen=32)


def valid_pin(pin: str) -> bool:
    pin = pin or ""
    return pin.isdigit() and medconfig.PIN_MIN_LEN <= len(pin) <= medconfig.PIN_MAX_LEN


def android_has_biometrics() -> bool:
    if not medconfig.is_android() or autoclass is None:
        return False
    try:
        BuildVERSION = autoclass("android.os.Build$VERSION")
        if int(BuildVERSION.SDK_INT) < 29:
            return False
        PythonActivity = autoclass("org.kivy.android.PythonActivity")
        Context = autoclass("android.content.Context")
        BiometricManager = autoclass("android.hardware.biometrics.BiometricManager")
        bm = PythonActivity.mActivity.getSystemService(Context.BIOMETRIC_SERVICE)
        return int(bm.canAuthenticate()) == int(BiometricManager.BIOMETRIC_SUCCESS)
    except Exception:
        logger.exception("biometric availability check failed")
        return False


class Authenticator:
    def __init__(self, pin_path: Optional[Path] = None, rounds: int = medconfig.PIN_KDF_ROUNDS):
        self.pin_path = Path(pin_path) if pin_path is not None else medconfig.PIN_PATH
        self.rounds = int(rounds)

    def _load(self) -> Optional[Tuple[bytes, bytes, int]]:
        if not self.pin_path.exists():
            return None
        try:
            d = json.loads(self.pin_path.read_text(encoding="utf-8"))
            return bytes.fromhex(d["salt"]), bytes.fromhex(d["hash"]), int(d["rounds"])
        except (OSError, ValueError, KeyError, TypeError):
            logger.exception("pin file unreadable")
            return None

    def has_pin(self) -> bool:
        return self._load() is not None

    def has_biometrics(self) -> bool:
        return android_has_biometrics()

    def prompt_message(self) -> str:
        if self.has_biometrics():
            return "Use Face ID/Touch ID or PIN to access your medications"
        return "Enter your PIN to access medications"

    def set_pin(self, pin: str):
        if not valid_pin(pin):
            raise ValueError(f"PIN must be {medconfig.PIN_MIN_LEN}-{medconfig.PIN_MAX_LEN} digits")
        salt = os.urandom(16)
        payload = {
            "salt": salt.hex(),
            "hash": _pbkdf2(pin, salt, self.rounds).hex(),
            "rounds": self.rounds,
        }
        atomic_write_bytes(self.pin_path, json.dumps(payload).encode("utf-8"))
        logger.info("pin set")

    def verify_pin(self, pin: str) -> AuthResult:
        stored = self._load()
        if stored is None:
            return AuthResult(False, "No PIN set")
        salt, digest, rounds = stored
        if hmac.compare_digest(_pbkdf2(pin or "", salt, rounds), digest):
            logger.info("auth ok")
            return AuthResult(True)
        logger.info("auth failed")
        return AuthResult(False, AUTH_FAILED)
