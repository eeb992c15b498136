from datetime import datetime, timezone
from threading import Lock
from typing import Dict, List, Optional
from uuid import uuid4

from app.models import NotificationRecord, ServiceRequest
from app.services.push_sender import PushSender, push_sender

# status -> (recipient, title, body)
REQUEST_STATUS_MESSAGES: Dict[str, tuple[str, str, str]] = {
    "assigned": ("user", "Solicitud aceptada", "Un operador acepto tu solicitud"),
    "en_route": ("user", "Operador en camino", "Tu operador va en camino"),
    "active": ("user", "Servicio iniciado", "El operador verifico tu PIN"),
    "completed": ("user", "Servicio completado", "Tu servicio fue completado. Califica a tu operador"),
    "cancelled": ("user", "Solicitud cancelada", "La solicitud fue cancelada"),
}


class NotificationStore:
    def __init__(self, sender: Optional[PushSender] = None):
        self._lock = Lock()
        self._sender = sender or push_sender
        self._notifications: List[NotificationRecord] = []
        self._device_tokens: Dict[str, set[str]] = {}

    def register_device_token(self, user_id: str, device_token: str) -> None:
        if not device_token.strip():
            return
        with self._lock:
            self._device_tokens.setdefault(user_id, set()).add(device_token.strip())

    def unregister_device_token(self, user_id: str, device_token: str) -> bool:
        with self._lock:
            tokens = self._device_tokens.get(user_id, set())
            if device_token.strip() not in tokens:
                return False
            tokens.discard(device_token.strip())
            return True

    def device_tokens(self, user_id: str) -> List[str]:
        with self._lock:
            return sorted(self._device_tokens.get(user_id, set()))

    def create(
        self,
        user_id: str,
        title: str,
        body: str,
        category: str = "system",
        deep_link: Optional[str] = None,
    ) -> NotificationRecord:
        record = NotificationRecord(
            id=f"ntf_{uuid4().hex[:10]}",
            user_id=user_id,
            title=title,
            body=body,
            category=category,  # type: ignore[arg-type]
            read=False,
            created_at=datetime.now(timezone.utc).isoformat(),
            deep_link=deep_link,
        )
        with self._lock:
            self._notifications.insert(0, record)
            tokens = list(self._device_tokens.get(user_id, set()))
        invalid_tokens = self._sender.send_notification(
            tokens=tokens,
            title=title,
            body=body,
            data={
                "notification_id": record.id,
                "category": category,
                "deep_link": deep_link or "",
            },
        )
        if invalid_tokens:
            with self._lock:
                current = self._device_tokens.get(user_id, set())
                for token in invalid_tokens:
                    current.discard(token)
        return record

    def notify_request_status(self, request: ServiceRequest) -> List[NotificationRecord]:
        """Push the user-facing message for the request's current status to the other party."""
        message = REQUEST_STATUS_MESSAGES.get(request.status)
        if message is None:
            return []
        recipient, title, body = message
        targets = [request.user_id if recipient == "user" else request.operator_id]
        if request.status == "cancelled":
            if request.cancelled_by == "OPERATOR":
                targets = [request.user_id]
            elif request.cancelled_by == "USER":
                targets = [request.operator_id]
            elif request.cancelled_by == "ADMIN":
                body = "Un administrador cancelo el servicio"
                targets = [request.user_id, request.operator_id]
        if request.status == "assigned" and request.operator_name:
            body = f"{request.operator_name} acepto tu solicitud"
        return [
            self.create(
                user_id=target,
                title=title,
                body=body,
                category="request",
                deep_link=f"request:{request.id}",
            )
            for target in targets
            if target
        ]

    def notify_new_message(self, request: ServiceRequest, sender_id: str, preview: str) -> Optional[NotificationRecord]:
        target = request.operator_id if sender_id == request.user_id else request.user_id
        if not target:
            return None
        return self.create(
            user_id=target,
            title="Nuevo mensaje",
            body=preview[:80],
            category="message",
            deep_link=f"request:{request.id}",
        )

    def list_for_user(self, user_id: str, unread_only: bool = False) -> List[NotificationRecord]:
        with self._lock:
            rows = [n for n in self._notifications if n.user_id == user_id]
            if unread_only:
                rows = [n for n in rows if not n.read]
            return rows[:100]

    def mark_read(self, user_id: str, notification_id: str) -> Optional[NotificationRecord]:
        with self._lock:
            for idx, row in enumerate(self._notifications):
                if row.id == notification_id and row.user_id == user_id:
                    updated = row.model_copy(update={"read": True})
                    self._notifications[idx] = updated
                    return updated
        return None


notification_store = NotificationStore()
