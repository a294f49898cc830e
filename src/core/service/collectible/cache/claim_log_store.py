"""Persisted claim log collaborator and its in-process implementation."""

from typing import Dict, List, Optional, Protocol, runtime_checkable

from src.core.service.collectible.models import ClaimHistoryEntry, ClaimLogQuery


@runtime_checkable
class ClaimLogStore(Protocol):
    """Keyed append-only store used by the history synchronizer."""

    async def upsert(self, key: str, row: ClaimHistoryEntry) -> bool:
        """Insert ``row`` under ``key`` unless the key exists. Returns True if inserted."""
        ...

    async def query(self, query: ClaimLogQuery) -> List[ClaimHistoryEntry]:
        """Rows matching ``query`` in chronological order (reversed on request)."""
        ...

    async def get_checkpoint(self, user_address: str) -> Optional[int]:
        """Last block of the user's contiguously scanned range, or None."""
        ...

    async def save_checkpoint(self, user_address: str, block_number: int) -> None:
        """Move the user's scan checkpoint forward to ``block_number``. Never moves it back."""
        ...


def entry_matches(entry: ClaimHistoryEntry, query: ClaimLogQuery) -> bool:
    if query.user_address and entry.user_address != query.user_address.lower():
        return False
    if query.since_timestamp is not None and entry.timestamp < query.since_timestamp:
        return False

    filters = query.filters
    if filters.category is not None and entry.category != filters.category:
        return False
    if filters.rarity_tier is not None and entry.rarity_tier != int(filters.rarity_tier):
        return False
    if filters.template_id is not None and entry.template_id != filters.template_id:
        return False
    if filters.start_time is not None and entry.timestamp < filters.start_time:
        return False
    if filters.end_time is not None and entry.timestamp > filters.end_time:
        return False
    return True


def chronological_key(entry: ClaimHistoryEntry):
    return entry.timestamp, entry.block_number


class InMemoryClaimLogStore:
    """Dict-backed claim log for single-process deployments and tests."""

    def __init__(self):
        # dict preserves insertion order, which breaks ties within a block
        self._rows: Dict[str, ClaimHistoryEntry] = {}
        self._checkpoints: Dict[str, int] = {}

    async def upsert(self, key: str, row: ClaimHistoryEntry) -> bool:
        # No await between the membership check and the write, so racing ingests cannot both insert
        if key in self._rows:
            return False
        self._rows[key] = row
        return True

    async def query(self, query: ClaimLogQuery) -> List[ClaimHistoryEntry]:
        rows = sorted(
            (row for row in self._rows.values() if entry_matches(row, query)),
            key=chronological_key,
        )
        if query.reverse:
            rows.reverse()
        rows = rows[query.offset:]
        if query.limit is not None:
            rows = rows[:query.limit]
        return rows

    async def get_checkpoint(self, user_address: str) -> Optional[int]:
        return self._checkpoints.get(user_address.lower())

    async def save_checkpoint(self, user_address: str, block_number: int) -> None:
        user = user_address.lower()
        self._checkpoints[user] = max(self._checkpoints.get(user, block_number), block_number)

    def __len__(self) -> int:
        return len(self._rows)
