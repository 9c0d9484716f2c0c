"""
Scan results and the bounded scan history.
"""

import time
import uuid
from dataclasses import asdict, dataclass, field
from typing import Dict, Iterator, List, Optional


DEFAULT_HISTORY_LIMIT = 50


def _new_id() -> str:
    return uuid.uuid4().hex


@dataclass(frozen=True)
class ScanResult:
    """One recognized text block and the image it came from."""

    text: str
    image_url: str = ""
    id: str = field(default_factory=_new_id)
    timestamp: float = field(default_factory=time.time)

    # In-progress or failure placeholder; never stored in history
    pending: bool = False

    def to_dict(self) -> Dict:
        return asdict(self)


class ScanHistory:
    """
    Newest-first list of scan results, capped at `limit` entries.

    Usage:
        history = ScanHistory()
        history.add(ScanResult(text="今天天氣很好"))
        history.remove(result_id)
    """

    def __init__(self, limit: int = DEFAULT_HISTORY_LIMIT):
        if limit < 1:
            raise ValueError("History limit must be at least 1")
        self.limit = limit
        self._items: List[ScanResult] = []

    def add(self, result: ScanResult) -> None:
        if result.pending:
            raise ValueError("Pending placeholders are not stored in history")
        self._items.insert(0, result)
        del self._items[self.limit:]

    def remove(self, result_id: str) -> bool:
        """Delete an entry by id. Returns False if no such entry exists."""
        for index, item in enumerate(self._items):
            if item.id == result_id:
                del self._items[index]
                return True
        return False

    def get(self, result_id: str) -> Optional[ScanResult]:
        for item in self._items:
            if item.id == result_id:
                return item
        return None

    def clear(self) -> None:
        self._items.clear()

    @property
    def latest(self) -> Optional[ScanResult]:
        return self._items[0] if self._items else None

    def to_dicts(self) -> List[Dict]:
        return [item.to_dict() for item in self._items]

    def __iter__(self) -> Iterator[ScanResult]:
        return iter(list(self._items))

    def __len__(self) -> int:
        return len(self._items)
