from collections import deque
from datetime import datetime, timezone
from threading import Condition
from typing import Deque, Iterable, List, Optional

from app.models import ChangeRecord

AVAILABLE_REQUESTS_TOPIC = "available_requests"


def request_topic(request_id: str) -> str:
    return f"request:{request_id}"


def user_topic(user_id: str) -> str:
    return f"user:{user_id}"


class ChangeFeed:
    """Change notifications for realtime subscribers.

    Records only say *what* changed; subscribers refetch the authoritative row.
    Sequence numbers are strictly increasing per process. Only the newest
    ``max_records`` are kept; ``missed_since`` tells a lagging subscriber to resync.
    """

    def __init__(self, max_records: int = 2000) -> None:
        self._cond = Condition()
        self._records: Deque[ChangeRecord] = deque(maxlen=max_records)
        self._seq = 0

    @property
    def cursor(self) -> int:
        with self._cond:
            return self._seq

    def publish(
        self,
        table: str,
        record_id: str,
        *,
        request_id: Optional[str] = None,
        topics: Iterable[str] = (),
    ) -> ChangeRecord:
        with self._cond:
            self._seq += 1
            record = ChangeRecord(
                seq=self._seq,
                table=table,
                record_id=record_id,
                request_id=request_id,
                topics=sorted({topic for topic in topics if topic}),
                created_at=datetime.now(timezone.utc).isoformat(),
            )
            self._records.append(record)
            self._cond.notify_all()
        return record

    def missed_since(self, since: int) -> bool:
        """True when records newer than ``since`` were already evicted from the window."""
        with self._cond:
            return bool(self._records) and since < self._records[0].seq - 1

    def _matching(self, since: int, topics: Optional[set[str]]) -> List[ChangeRecord]:
        return [
            record
            for record in self._records
            if record.seq > since and (not topics or topics.intersection(record.topics))
        ]

    def changes_since(
        self,
        since: int,
        *,
        topics: Optional[Iterable[str]] = None,
        wait_seconds: float = 0.0,
    ) -> List[ChangeRecord]:
        wanted = {topic for topic in topics or () if topic} or None
        with self._cond:
            rows = self._matching(since, wanted)
            if rows or wait_seconds <= 0:
                return rows
            self._cond.wait_for(lambda: bool(self._matching(since, wanted)), timeout=wait_seconds)
            return self._matching(since, wanted)


change_feed = ChangeFeed()
