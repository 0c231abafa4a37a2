"""
Ranking Engine

The leaderboard is a pure function of the account table. RankingEngine only
memoizes that function: the memo is dropped whenever a vouch commits and is
rebuilt at least every refresh_seconds, so a reader never sees reputations
older than that bound.
"""
import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Iterable, List, Optional, Tuple

from vouch_service.errors import AccountNotFound, InvalidInput
from vouch_service.store import AccountSnapshot, AccountStore

logger = logging.getLogger(__name__)

@dataclass(frozen=True)
class RankingEntry:
    account: AccountSnapshot
    rank: int

def ranking_key(account: AccountSnapshot) -> Tuple[int, int]:
    # reputation desc, earlier joiners win ties
    return (-account.reputation, account.join_order)

def rank_accounts(accounts: Iterable[AccountSnapshot]) -> List[RankingEntry]:
    ordered = sorted(accounts, key=ranking_key)
    return [RankingEntry(account=a, rank=i) for i, a in enumerate(ordered, start=1)]

class _Projection:
    __slots__ = ("entries", "positions", "built_at")

    def __init__(self, entries: List[RankingEntry], built_at: float):
        self.entries = entries
        self.positions: Dict[str, int] = {e.account.id: e.rank for e in entries}
        self.built_at = built_at

class RankingEngine:
    def __init__(self, store: AccountStore, refresh_seconds: float = 30.0,
                 clock: Callable[[], float] = time.monotonic):
        self.store = store
        self.refresh_seconds = refresh_seconds
        self.clock = clock
        self._projection: Optional[_Projection] = None
        self._generation = 0
        self._rebuild_lock = threading.Lock()

    def invalidate(self) -> None:
        """Called by the transaction engine after every committed vouch"""
        self._generation += 1
        self._projection = None

    def _fresh(self, projection: Optional[_Projection]) -> bool:
        return projection is not None and self.clock() - projection.built_at < self.refresh_seconds

    def _current(self, force: bool = False) -> _Projection:
        projection = self._projection
        if not force and self._fresh(projection):
            return projection
        with self._rebuild_lock:
            projection = self._projection
            if force or not self._fresh(projection):
                started, generation = self.clock(), self._generation
                projection = _Projection(rank_accounts(self.store.all_accounts()), started)
                # a vouch committed mid-rebuild: serve this result once, do not keep it
                if generation == self._generation:
                    self._projection = projection
                logger.debug(f"Rebuilt ranking over {len(projection.entries)} accounts")
            return projection

    def top_n(self, limit: int) -> List[RankingEntry]:
        if not isinstance(limit, int) or limit < 0:
            raise InvalidInput("limit must be a non-negative integer", field="limit")
        return self._current().entries[:limit]

    def rank_of(self, account_id: str) -> int:
        rank = self._current().positions.get(account_id)
        if rank is None:
            # registered after the memo was built
            rank = self._current(force=True).positions.get(account_id)
        if rank is None:
            raise AccountNotFound(account_id)
        return rank
