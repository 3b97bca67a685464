import time
from typing import Callable, Optional

from loguru import logger
from etching_status_client.models import OperationStatus


class _Entry:
    __slots__ = ("status", "subscribers", "released_at")

    def __init__(self, status: OperationStatus):
        self.status = status
        self.subscribers = 0
        self.released_at: Optional[float] = None


class StatusCache:
    """Last known status per operation key, plus a subscriber count.

    Updates are monotonic in ``last_updated_at``: a response older than (or as
    old as) the cached one is dropped, so an overlapping slow response cannot
    roll the status back.

    Entries go away when their last subscriber leaves a terminal status, when
    ``evict`` is called, or via ``sweep`` once a non-terminal entry has had no
    subscribers for ``idle_timeout`` seconds.
    """

    def __init__(
        self,
        idle_timeout: float = 300.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.idle_timeout = idle_timeout
        self._clock = clock
        self._entries: dict[str, _Entry] = {}

    def __contains__(self, key: str) -> bool:
        return key in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def get(self, key: str) -> Optional[OperationStatus]:
        entry = self._entries.get(key)
        return entry.status if entry is not None else None

    def get_or_create(self, key: str) -> OperationStatus:
        return self._entry(key).status

    def _entry(self, key: str) -> _Entry:
        entry = self._entries.get(key)
        if entry is None:
            entry = _Entry(OperationStatus(key=key))
            self._entries[key] = entry
        return entry

    def update(self, key: str, status: OperationStatus) -> bool:
        """Apply ``status`` to the entry for ``key``. Returns False if it was stale."""
        current = self._entry(key).status
        if (
            current.last_updated_at is not None
            and (
                status.last_updated_at is None
                or status.last_updated_at <= current.last_updated_at
            )
        ):
            logger.debug(
                f"Ignoring stale status for {key}: "
                f"{status.last_updated_at} <= {current.last_updated_at}"
            )
            return False

        current.stage = status.stage
        current.last_updated_at = status.last_updated_at
        current.terminal = status.terminal
        current.payload = status.payload
        return True

    def add_subscriber(self, key: str) -> int:
        entry = self._entry(key)
        entry.subscribers += 1
        entry.released_at = None
        return entry.subscribers

    def remove_subscriber(self, key: str) -> int:
        entry = self._entries.get(key)
        if entry is None:
            return 0
        entry.subscribers = max(entry.subscribers - 1, 0)
        if entry.subscribers == 0:
            if entry.status.terminal:
                del self._entries[key]
            else:
                entry.released_at = self._clock()
        return entry.subscribers

    def subscriber_count(self, key: str) -> int:
        entry = self._entries.get(key)
        return entry.subscribers if entry is not None else 0

    def evict(self, key: str) -> bool:
        return self._entries.pop(key, None) is not None

    def sweep(self) -> list[str]:
        """Evict non-terminal entries abandoned for longer than ``idle_timeout``."""
        now = self._clock()
        expired = [
            key
            for key, entry in self._entries.items()
            if entry.subscribers == 0
            and entry.released_at is not None
            and now - entry.released_at >= self.idle_timeout
        ]
        for key in expired:
            del self._entries[key]
        if expired:
            logger.debug(f"Evicted {len(expired)} idle status entries")
        return expired
