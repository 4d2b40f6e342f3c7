from typing import Callable, List, Optional, Tuple

from models import AuditEntry
from storage import utc_now


class AuditTrail:
    """Ordered, append-only list of audit entries for one run."""

    def __init__(self, clock: Optional[Callable[[], str]] = None) -> None:
        self._clock = clock or utc_now
        self._entries: List[AuditEntry] = []

    def record(self, actor: str, action: str, detail: str, requires_review: bool = False) -> AuditEntry:
        entry = AuditEntry(
            actor=actor or "unknown",
            action=action,
            detail=detail,
            timestamp=self._clock(),
            requires_review=requires_review,
        )
        self._entries.append(entry)
        return entry

    @property
    def entries(self) -> Tuple[AuditEntry, ...]:
        return tuple(self._entries)

    def __len__(self) -> int:
        return len(self._entries)
