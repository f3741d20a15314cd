# medstore.py
# Encrypted key-value store + async access layer for medications, dose history and skipped doses.
#
# The whole key space lives in one AES-GCM encrypted JSON document. Every write replaces the file
# with a single rename, so readers only ever see the previous or the next complete document.

import os, json, uuid, asyncio
from pathlib import Path
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional
from threading import RLock

from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.exceptions import InvalidTag

import medconfig
from medlog import logger
from medmodels import (
    DoseHistory, MalformedRecord, Medication, SkippedDose, local_date, now_iso,
)

_STORE_LOCK = RLock()

class MedStoreError(Exception):
    pass

class StorageUnavailable(MedStoreError):
    """The store cannot be read or written (I/O failure, wrong key, corrupted file)."""

# -------------------------
# Crypto utilities
# -------------------------
def atomic_write_bytes(path: Path, data: bytes):
    tmp = path.with_suffix(path.suffix + f".tmp.{uuid.uuid4().hex}")
    tmp.parent.mkdir(parents=True, exist_ok=True)
    try:
        tmp.write_bytes(data)
        tmp.replace(path)
    finally:
        tmp.unlink(missing_ok=True)

def aes_encrypt(data: bytes, key: bytes) -> bytes:
    aes = AESGCM(key)
    nonce = os.urandom(12)
    return nonce + aes.encrypt(nonce, data, None)

def aes_decrypt(data: bytes, key: bytes) -> bytes:
    if not data or len(data) < 12:
        raise InvalidTag("ciphertext too short")
    aes = AESGCM(key)
    nonce, ct = data[:12], data[12:]
    return aes.decrypt(nonce, ct, None)

def get_or_create_key(path: Optional[Path] = None) -> bytes:
    path = Path(path) if path is not None else medconfig.KEY_PATH
    with _STORE_LOCK:
        if path.exists():
            d = path.read_bytes()
            if len(d) >= 32:
                return d[:32]
            logger.warning(f"key file too short ({len(d)} bytes); generating a new key")
        key = AESGCM.generate_key(bit_length=256)
        atomic_write_bytes(path, key)
        logger.info("store key created")
        return key

def load_key(path: Optional[Path] = None) -> Optional[bytes]:
    """Existing store key, or None. Never creates one."""
    path = Path(path) if path is not None else medconfig.KEY_PATH
    try:
        d = path.read_bytes()
    except FileNotFoundError:
        return None
    except OSError as e:
        raise StorageUnavailable(f"key read failed: {e}") from e
    return d[:32] if len(d) >= 32 else None

# -------------------------
# Persistent store
# -------------------------
class EncryptedStore:
    def __init__(self, key: bytes, path: Optional[Path] = None):
        self.key = key
        self.path = Path(path) if path is not None else medconfig.STORE_PATH

    def _load(self) -> Dict[str, str]:
        if not self.path.exists():
            return {}
        try:
            raw = self.path.read_bytes()
        except OSError as e:
            raise StorageUnavailable(f"store read failed: {e}") from e
        try:
            pt = aes_decrypt(raw, self.key)
        except InvalidTag as e:
            raise StorageUnavailable("store cannot be decrypted") from e
        try:
            doc = json.loads(pt.decode("utf-8"))
        except (UnicodeDecodeError, ValueError) as e:
            raise StorageUnavailable("store document is corrupted") from e
        if not isinstance(doc, dict):
            raise StorageUnavailable("store document is not a mapping")
        return {str(k): v for k, v in doc.items() if isinstance(v, str)}

    def _save(self, doc: Dict[str, str]):
        data = json.dumps(doc, ensure_ascii=False).encode("utf-8")
        try:
            atomic_write_bytes(self.path, aes_encrypt(data, self.key))
        except OSError as e:
            raise StorageUnavailable(f"store write failed: {e}") from e

    def get_item(self, key: str) -> Optional[str]:
        with _STORE_LOCK:
            return self._load().get(key)

    def set_item(self, key: str, value: str):
        def _set(doc):
            doc[key] = value
        self.transact(_set)

    def keys(self) -> List[str]:
        with _STORE_LOCK:
            return sorted(self._load())

    def transact(self, fn: Callable[[Dict[str, str]], Any]) -> Any:
        """Load, let fn mutate the document in place, write it back. Serialised process-wide."""
        with _STORE_LOCK:
            doc = self._load()
            result = fn(doc)
            self._save(doc)
            return result

    def clear(self):
        # one write, whatever state the old file was in
        with _STORE_LOCK:
            self._save({})

# -------------------------
# Collection (de)serialisation
# -------------------------
def _loads_list(key: str, raw: Optional[str]) -> List[Any]:
    if raw is None:
        return []
    try:
        items = json.loads(raw)
    except ValueError:
        logger.warning(f"collection {key} is not valid JSON; treating as empty")
        return []
    if not isinstance(items, list):
        logger.warning(f"collection {key} is not a list; treating as empty")
        return []
    return items

def _parse_records(key: str, raw: Optional[str], parse: Callable[[Any], Any]) -> List[Any]:
    out = []
    for i, item in enumerate(_loads_list(key, raw)):
        try:
            out.append(parse(item))
        except MalformedRecord as e:
            logger.warning(f"dropping malformed record {key}[{i}]: {e}")
    return out

def _dumps_list(items: List[Any]) -> str:
    return json.dumps(items, ensure_ascii=False)

# -------------------------
# Storage access layer
# -------------------------
class MedStorage:
    def __init__(self, store: EncryptedStore):
        self.store = store

    @classmethod
    def open(cls, base_dir: Optional[Path] = None) -> "MedStorage":
        if base_dir is None:
            key_path, store_path = medconfig.KEY_PATH, medconfig.STORE_PATH
        else:
            base_dir = Path(base_dir)
            key_path, store_path = base_dir / medconfig.KEY_PATH.name, base_dir / medconfig.STORE_PATH.name
        key = get_or_create_key(key_path)
        return cls(EncryptedStore(key, store_path))

    @classmethod
    def open_existing(cls, base_dir: Optional[Path] = None) -> Optional["MedStorage"]:
        """Like open(), but for readers in other processes: None until the app has created the key."""
        base_dir = Path(base_dir) if base_dir is not None else medconfig.BASE_DIR
        key = load_key(base_dir / medconfig.KEY_PATH.name)
        if key is None:
            return None
        return cls(EncryptedStore(key, base_dir / medconfig.STORE_PATH.name))

    async def _read(self, key: str, parse: Callable[[Any], Any]) -> List[Any]:
        raw = await asyncio.to_thread(self.store.get_item, key)
        return _parse_records(key, raw, parse)

    async def _transact(self, fn: Callable[[Dict[str, str]], Any]) -> Any:
        return await asyncio.to_thread(self.store.transact, fn)

    # reads

    async def get_medications(self) -> List[Medication]:
        return await self._read(medconfig.MEDICATIONS_KEY, Medication.from_dict)

    async def get_dose_history(self) -> List[DoseHistory]:
        return await self._read(medconfig.DOSE_HISTORY_KEY, DoseHistory.from_dict)

    async def get_skipped_doses(self) -> List[SkippedDose]:
        return await self._read(medconfig.SKIPPED_DOSES_KEY, SkippedDose.from_dict)

    async def get_todays_doses(self, now: Optional[datetime] = None) -> List[DoseHistory]:
        today = local_date(now or datetime.now().astimezone())
        out = []
        for d in await self.get_dose_history():
            when = d.when
            if when is not None and local_date(when) == today:
                out.append(d)
        return out

    # medications

    async def add_medication(self, med: Medication) -> Medication:
        if not med.id:
            med.id = uuid.uuid4().hex

        def _add(doc):
            items = _loads_list(medconfig.MEDICATIONS_KEY, doc.get(medconfig.MEDICATIONS_KEY))
            items.append(med.to_dict())
            doc[medconfig.MEDICATIONS_KEY] = _dumps_list(items)

        await self._transact(_add)
        logger.info(f"added medication id={med.id} name={med.name!r}")
        return med

    async def update_medication(self, med: Medication) -> bool:
        def _update(doc):
            items = _loads_list(medconfig.MEDICATIONS_KEY, doc.get(medconfig.MEDICATIONS_KEY))
            for i, item in enumerate(items):
                if isinstance(item, dict) and str(item.get("id")) == med.id:
                    items[i] = med.to_dict()
                    doc[medconfig.MEDICATIONS_KEY] = _dumps_list(items)
                    return True
            return False

        found = await self._transact(_update)
        if not found:
            logger.warning(f"update_medication: no medication id={med.id}")
        return found

    async def delete_medication(self, med_id: str) -> bool:
        def _delete(doc):
            items = _loads_list(medconfig.MEDICATIONS_KEY, doc.get(medconfig.MEDICATIONS_KEY))
            kept = [x for x in items if not (isinstance(x, dict) and str(x.get("id")) == str(med_id))]
            doc[medconfig.MEDICATIONS_KEY] = _dumps_list(kept)
            return len(kept) != len(items)

        removed = await self._transact(_delete)
        logger.info(f"deleted medication id={med_id} removed={removed}")
        return removed

    # dose history

    async def record_dose(self, medication_id: str, taken: bool,
                          timestamp: Optional[str] = None) -> DoseHistory:
        entry = DoseHistory(
            id=uuid.uuid4().hex,
            medication_id=str(medication_id),
            timestamp=timestamp or now_iso(),
            taken=bool(taken),
        )

        def _record(doc):
            hist = _loads_list(medconfig.DOSE_HISTORY_KEY, doc.get(medconfig.DOSE_HISTORY_KEY))
            hist.append(entry.to_dict())
            doc[medconfig.DOSE_HISTORY_KEY] = _dumps_list(hist)
            if not entry.taken:
                return
            meds = _loads_list(medconfig.MEDICATIONS_KEY, doc.get(medconfig.MEDICATIONS_KEY))
            for m in meds:
                if isinstance(m, dict) and str(m.get("id")) == entry.medication_id:
                    try:
                        supply = int(m.get("currentSupply") or 0)
                    except (TypeError, ValueError):
                        supply = 0
                    if supply > 0:
                        m["currentSupply"] = supply - 1
                        doc[medconfig.MEDICATIONS_KEY] = _dumps_list(meds)
                    break

        await self._transact(_record)
        logger.info(f"dose recorded med_id={entry.medication_id} taken={entry.taken} at={entry.timestamp}")
        return entry

    # skipped doses

    async def append_skipped_dose(self, skip: SkippedDose) -> int:
        def _append(doc):
            items = _loads_list(medconfig.SKIPPED_DOSES_KEY, doc.get(medconfig.SKIPPED_DOSES_KEY))
            items.append(skip.to_dict())
            doc[medconfig.SKIPPED_DOSES_KEY] = _dumps_list(items)
            return len(items)

        return await self._transact(_append)

    # bulk

    async def clear_all_data(self):
        await asyncio.to_thread(self.store.clear)
        logger.info("all data cleared")
