from typing import Optional

from app.client.dispatch_client import DispatchClient
from app.models import ServiceRequest
from app.services.change_feed import request_topic


class RequestSync:
    """Follows one request through the change feed.

    Change records are only cues: on any change for the request the full row
    is fetched again and replaces the local copy.
    """

    def __init__(self, client: DispatchClient, request_id: str) -> None:
        self.client = client
        self.request_id = request_id
        self.cursor = 0
        self.request: Optional[ServiceRequest] = None

    @property
    def topic(self) -> str:
        return request_topic(self.request_id)

    def start(self) -> ServiceRequest:
        batch = self.client.changes(0, topics=[self.topic])
        self.cursor = batch.cursor
        self.request = self.client.get_request(self.request_id)
        return self.request

    def poll(self, wait_seconds: float = 0.0) -> bool:
        """Returns True when the refetched request differs from the local copy."""
        if self.request is None:
            self.start()
            return True
        batch = self.client.changes(self.cursor, topics=[self.topic], wait_seconds=wait_seconds)
        self.cursor = batch.cursor
        # ``reset`` means changes older than the feed window were lost; refetch regardless.
        if not batch.changes and not batch.reset:
            return False
        latest = self.client.get_request(self.request_id)
        changed = latest != self.request
        self.request = latest
        return changed

    @property
    def is_terminal(self) -> bool:
        return self.request is not None and self.request.status in {"completed", "cancelled"}
