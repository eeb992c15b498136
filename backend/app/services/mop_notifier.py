import json
import logging
import os
from typing import Any, Dict, Optional

import httpx

from app.models import ServiceRequest

logger = logging.getLogger(__name__)

GRAPH_API_URL = "https://graph.facebook.com/v18.0/{phone_number_id}/messages"

TOW_TYPE_LABELS = {"light": "Liviana", "heavy": "Pesada"}


def build_mop_message(event_type: str, request: ServiceRequest, *, user_name: str = "") -> str:
    """Plain-text WhatsApp body for the ministry (MOP) channel."""
    vehicle = TOW_TYPE_LABELS.get(request.tow_type or "", request.service_type)
    lines = []
    if event_type == "REQUEST_COMPLETED":
        lines.append("*Servicio Completado*")
    else:
        lines.append("*Nueva Solicitud de Grua*")
    lines += [
        "",
        f"*ID:* {request.id[:8]}",
        f"*Tipo:* {request.incident_type}",
        f"*Grua:* {vehicle}",
        "",
        f"*Origen:* {request.pickup_address}",
        f"*Destino:* {request.dropoff_address}",
        "",
        f"*Usuario:* {user_name or 'N/A'}",
    ]
    if event_type == "REQUEST_COMPLETED":
        total = f"${request.total_price:.2f}" if request.total_price is not None else "N/A"
        lines += [
            f"*Operador:* {request.operator_name or 'N/A'}",
            f"*Total:* {total}",
            f"*Creado:* {request.created_at}",
            f"*Completado:* {request.completed_at or 'N/A'}",
        ]
    else:
        lines.append(f"*Fecha:* {request.created_at}")
    lines += ["", "_Gruas App - El Salvador_"]
    return "\n".join(lines)


class MopNotifier:
    """Sends request created/completed summaries to the MOP WhatsApp number.

    Disabled unless WHATSAPP_TOKEN, WHATSAPP_PHONE_NUMBER_ID and MOP_WHATSAPP_TO are set.
    """

    def __init__(
        self,
        *,
        token: str = "",
        phone_number_id: str = "",
        recipient: str = "",
        timeout_seconds: float = 10.0,
        http_client: Optional[httpx.Client] = None,
    ) -> None:
        self.token = token.strip()
        self.phone_number_id = phone_number_id.strip()
        self.recipient = recipient.strip()
        self._http = http_client or httpx.Client(timeout=timeout_seconds)
        if not self.enabled:
            logger.info("MOP WhatsApp notifier disabled: WhatsApp credentials not set")

    @classmethod
    def from_env(cls) -> "MopNotifier":
        return cls(
            token=os.getenv("WHATSAPP_TOKEN", ""),
            phone_number_id=os.getenv("WHATSAPP_PHONE_NUMBER_ID", ""),
            recipient=os.getenv("MOP_WHATSAPP_TO", ""),
        )

    @property
    def enabled(self) -> bool:
        return bool(self.token and self.phone_number_id and self.recipient)

    def notify(self, event_type: str, request: ServiceRequest, *, user_name: str = "") -> Optional[str]:
        """Returns the WhatsApp message id, or None when disabled or the send failed."""
        if not self.enabled:
            return None
        payload: Dict[str, Any] = {
            "messaging_product": "whatsapp",
            "recipient_type": "individual",
            "to": self.recipient,
            "type": "text",
            "text": {"preview_url": False, "body": build_mop_message(event_type, request, user_name=user_name)},
        }
        try:
            response = self._http.post(
                GRAPH_API_URL.format(phone_number_id=self.phone_number_id),
                headers={"Authorization": f"Bearer {self.token}"},
                json=payload,
            )
        except httpx.HTTPError as exc:
            logger.warning("MOP WhatsApp send failed: %s", exc.__class__.__name__)
            return None
        if response.status_code >= 400:
            logger.warning("MOP WhatsApp API error: %s %s", response.status_code, response.text[:200])
            return None
        try:
            body = response.json()
        except ValueError:
            body = {}
        messages = body.get("messages") if isinstance(body, dict) else None
        first = messages[0] if isinstance(messages, list) and messages else None
        message_id = first.get("id") if isinstance(first, dict) else None
        logger.info(
            "mop_notification=%s",
            json.dumps({"event_type": event_type, "request_id": request.id, "message_id": message_id}, sort_keys=True),
        )
        return message_id or ""


mop_notifier = MopNotifier.from_env()
