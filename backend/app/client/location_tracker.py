import logging
from threading import Lock
from typing import Optional, Tuple

from app.client.dispatch_client import DispatchClient, DispatchClientError
from app.services.geodesy import haversine_km

logger = logging.getLogger(__name__)

HEADING_CHANGE_DEGREES = 45.0


class OperatorTracker:
    """Forwards an operator's GPS fixes while running.

    Fixes closer than ``min_move_km`` to the last sent one are dropped unless
    the heading turned noticeably. ``stop()`` writes ``is_online=false`` before
    returning so the operator never lingers as live.
    """

    def __init__(self, client: DispatchClient, min_move_km: float = 0.1) -> None:
        self.client = client
        self.min_move_km = min_move_km
        self._lock = Lock()
        self._running = False
        self._last_sent: Optional[Tuple[float, float, Optional[float]]] = None
        self.sent_count = 0

    @property
    def running(self) -> bool:
        return self._running

    def start(self) -> None:
        with self._lock:
            self._running = True
            self._last_sent = None

    def _should_send(self, lat: float, lng: float, heading: Optional[float]) -> bool:
        if self._last_sent is None:
            return True
        last_lat, last_lng, last_heading = self._last_sent
        if haversine_km(last_lat, last_lng, lat, lng) >= self.min_move_km:
            return True
        if heading is None or last_heading is None:
            return False
        turn = abs(heading - last_heading) % 360
        return min(turn, 360 - turn) >= HEADING_CHANGE_DEGREES

    def on_fix(self, lat: float, lng: float, *, heading: Optional[float] = None, speed: Optional[float] = None) -> bool:
        with self._lock:
            if not self._running or not self._should_send(lat, lng, heading):
                return False
            try:
                self.client.update_location(lat, lng, heading=heading, speed=speed, is_online=True)
            except DispatchClientError as exc:
                logger.warning("Location update failed: %s", exc)
                return False
            self._last_sent = (lat, lng, heading)
            self.sent_count += 1
            return True

    def stop(self) -> None:
        with self._lock:
            if not self._running:
                return
            self._running = False
            self._last_sent = None
        self.client.set_offline()
