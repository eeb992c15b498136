import logging
import os
from threading import Lock
from typing import List, Optional

logger = logging.getLogger(__name__)


class PushSender:
    """Firebase Cloud Messaging multicast; a no-op until credentials are configured."""

    def __init__(self, credentials_path: Optional[str] = None):
        self._lock = Lock()
        self._credentials_path = credentials_path
        self._initialized = False
        self._enabled = False
        self._messaging = None

    @property
    def enabled(self) -> bool:
        self._ensure_initialized()
        return self._enabled

    def _ensure_initialized(self) -> None:
        if self._initialized:
            return
        with self._lock:
            if self._initialized:
                return
            credentials_path = (self._credentials_path or os.getenv("FIREBASE_CREDENTIALS_PATH", "")).strip()
            if not credentials_path:
                self._initialized = True
                self._enabled = False
                logger.info("Push sender disabled: FIREBASE_CREDENTIALS_PATH not set")
                return

            import firebase_admin
            from firebase_admin import credentials, messaging

            try:
                cred = credentials.Certificate(credentials_path)
                if not firebase_admin._apps:  # pylint: disable=protected-access
                    firebase_admin.initialize_app(cred)
                self._messaging = messaging
                self._enabled = True
                logger.info("Push sender initialized")
            except (ValueError, OSError):
                self._enabled = False
                logger.exception("Push sender disabled: Firebase init failed")
            finally:
                self._initialized = True

    def send_notification(
        self,
        tokens: List[str],
        title: str,
        body: str,
        data: dict[str, str],
    ) -> List[str]:
        """Send to every token; returns the tokens Firebase reported as unregistered."""
        self._ensure_initialized()
        if not self._enabled or not tokens:
            return []
        assert self._messaging is not None
        try:
            message = self._messaging.MulticastMessage(
                notification=self._messaging.Notification(title=title, body=body),
                android=self._messaging.AndroidConfig(priority="high"),
                tokens=tokens,
                data={key: str(value) for key, value in data.items()},
            )
            batch = self._messaging.send_each_for_multicast(message)
        except Exception:
            logger.exception("Push send failed")
            return []
        invalid: List[str] = []
        for idx, response in enumerate(batch.responses):
            if response.success:
                continue
            error_text = str(response.exception).lower() if response.exception else ""
            if "registration token" in error_text or "invalid argument" in error_text or "not found" in error_text:
                invalid.append(tokens[idx])
        if invalid:
            logger.info("Dropping %s unregistered device token(s)", len(invalid))
        return invalid


push_sender = PushSender()
