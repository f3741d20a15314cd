# medlog.py
# App-wide logger: in-memory ring buffer (settings screen) + append-only file.

import logging
from threading import RLock

import medconfig

_LOG_LOCK = RLock()

class RingLog:
    def __init__(self, max_lines=800):
        self.max_lines = int(max_lines)
        self._lines = []
        self._lock = RLock()

    def add(self, line: str):
        line = (line or "").rstrip("\n")
        if not line:
            return
        with self._lock:
            self._lines.append(line)
            if len(self._lines) > self.max_lines:
                self._lines = self._lines[-self.max_lines:]

    def lines(self):
        with self._lock:
            return list(self._lines)

    def text(self) -> str:
        return "\n".join(self.lines())

    def clear(self):
        with self._lock:
            self._lines = []

RING = RingLog(medconfig.LOG_MAX_LINES)

class FileAndRingHandler(logging.Handler):
    def __init__(self, ring: RingLog = RING, path=None):
        super().__init__()
        self.ring = ring
        self.path = path
        self.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(message)s"))

    def emit(self, record):
        try:
            msg = self.format(record)
        except Exception:
            msg = str(record.getMessage())
        self.ring.add(msg)
        path = self.path if self.path is not None else medconfig.LOG_PATH
        try:
            with _LOG_LOCK:
                path.parent.mkdir(parents=True, exist_ok=True)
                with path.open("a", encoding="utf-8") as f:
                    f.write(msg + "\n")
        except OSError:
            # the ring buffer still has the line
            pass

def clear_log():
    RING.clear()
    with _LOG_LOCK:
        try:
            medconfig.LOG_PATH.unlink(missing_ok=True)
        except OSError:
            logger.exception("log file delete failed")

logger = logging.getLogger("medremind")
logger.setLevel(logging.INFO)
if not any(isinstance(h, FileAndRingHandler) for h in logger.handlers):
    logger.addHandler(FileAndRingHandler())
