import json
import logging
from pathlib import Path
from threading import Lock
from typing import Dict, Optional

logger = logging.getLogger(__name__)


class PinCache:
    """Locally remembered PINs, keyed by request id.

    The server only returns the PIN once, at creation; the requester's device
    keeps it here so it can be shown to the operator on arrival. Without a
    path the cache lives in memory only.
    """

    def __init__(self, path: Optional[str] = None) -> None:
        self._lock = Lock()
        self._path = Path(path) if path else None
        self._pins: Dict[str, str] = self._load()

    def _load(self) -> Dict[str, str]:
        if self._path is None or not self._path.exists():
            return {}
        try:
            data = json.loads(self._path.read_text(encoding="utf-8"))
        except (OSError, ValueError):
            logger.warning("PIN cache at %s is unreadable; starting empty", self._path)
            return {}
        if not isinstance(data, dict):
            return {}
        return {str(key): str(value) for key, value in data.items()}

    def _flush(self) -> None:
        if self._path is None:
            return
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self._path.with_suffix(self._path.suffix + ".tmp")
        tmp_path.write_text(json.dumps(self._pins, sort_keys=True), encoding="utf-8")
        tmp_path.replace(self._path)

    def get(self, request_id: str) -> Optional[str]:
        with self._lock:
            return self._pins.get(request_id)

    def put(self, request_id: str, pin: str) -> None:
        with self._lock:
            self._pins[request_id] = pin
            self._flush()

    def remove(self, request_id: str) -> None:
        with self._lock:
            if self._pins.pop(request_id, None) is not None:
                self._flush()
