import logging
from datetime import datetime
from typing import Callable, List, Optional

from sentinel.log_analysis.audit import AUDIT, AuditLogEntry

logger = logging.getLogger(__name__)


class AuditLog:
    """
    Insertion-ordered record of every user action and its kernel-side outcome.

    The log itself is unbounded for the session; `view()` returns the
    truncated tail a UI panel shows.
    """

    def __init__(self, view_limit: int = 50, clock: Optional[Callable[[], datetime]] = None):
        self.view_limit = view_limit
        self._clock = clock or datetime.now
        self.__entries: List[AuditLogEntry] = []

    def append(self, actor: str, message: str) -> AuditLogEntry:
        entry = AuditLogEntry(timestamp=self._clock(), actor=actor, message=message)
        self.__entries.append(entry)
        logger.log(AUDIT, str(entry))
        return entry

    def entries(self) -> List[AuditLogEntry]:
        return list(self.__entries)

    def view(self, limit: Optional[int] = None) -> List[str]:
        limit = self.view_limit if limit is None else limit
        if limit <= 0:
            return []
        return [str(entry) for entry in self.__entries[-limit:]]

    def __len__(self) -> int:
        return len(self.__entries)

    def __iter__(self):
        return iter(list(self.__entries))
