import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import List, Optional

from common.settings import Settings
from vouch_service.activity import ActivityEntry, ActivityLog
from vouch_service.db import build_engine, build_session_factory
from vouch_service.directory import Directory
from vouch_service.engine import VouchEngine, VouchQuote, VouchReceipt
from vouch_service.errors import InvalidInput
from vouch_service.idempotency import build_idempotency_store
from vouch_service.locks import AccountLockManager
from vouch_service.ranking import RankingEngine, RankingEntry
from vouch_service.store import AccountSnapshot, AccountStore, validate_account_id

logger = logging.getLogger(__name__)

@dataclass(frozen=True)
class AccountStats:
    account_id: str
    reputation: int
    trust_balance: Decimal
    rank: int
    vouches_given: int
    vouches_received: int

class VouchService:
    """Wires the ledger components together behind the boundary operations"""

    def __init__(self, settings: Settings, idempotency=None, engine=None):
        self.settings = settings
        self.db_engine = engine or build_engine(settings.database_url)
        self.session_factory = build_session_factory(self.db_engine)

        self.store = AccountStore(self.session_factory, settings)
        self.activity_log = ActivityLog(self.session_factory, settings.activity_limit)
        self.ranking = RankingEngine(self.store, settings.leaderboard_refresh_seconds)
        self.directory = Directory(self.store)
        self.locks = AccountLockManager(settings.lock_timeout_seconds)
        self.engine = VouchEngine(
            self.session_factory,
            self.store,
            self.activity_log,
            self.ranking,
            self.locks,
            idempotency or build_idempotency_store(settings),
            settings,
        )
        logger.info(f"🚀 Vouch service ready on {self.db_engine.url.render_as_string(hide_password=True)}")

    def close(self) -> None:
        self.db_engine.dispose()

    @staticmethod
    def _limit(limit: Optional[int], default: int, maximum: int) -> int:
        if limit is None:
            return default
        if not isinstance(limit, int) or limit < 1:
            raise InvalidInput("limit must be a positive integer", field="limit")
        return min(limit, maximum)

    def leaderboard(self, limit: int = None) -> List[RankingEntry]:
        limit = self._limit(limit, self.settings.leaderboard_limit, self.settings.leaderboard_limit)
        return self.ranking.top_n(limit)

    def account(self, account_id: str) -> AccountSnapshot:
        return self.store.get(account_id)

    def account_stats(self, account_id: str) -> AccountStats:
        account = self.store.get(account_id)
        given, received = self.activity_log.counts(account.id)
        return AccountStats(
            account_id=account.id,
            reputation=account.reputation,
            trust_balance=account.trust_balance,
            rank=self.ranking.rank_of(account.id),
            vouches_given=given,
            vouches_received=received,
        )

    def rank_of(self, account_id: str) -> int:
        validate_account_id(account_id)
        return self.ranking.rank_of(account_id)

    def activities(self, account_id: str, limit: int = None) -> List[ActivityEntry]:
        limit = self._limit(limit, self.settings.activity_limit, 100)
        account = self.store.get(account_id)
        return self.activity_log.recent_for(account.id, limit)

    def search(self, query: str, limit: int = None) -> List[AccountSnapshot]:
        limit = self._limit(limit, self.settings.search_limit, self.settings.search_limit)
        return self.directory.search(query, limit)

    def vouch(self, voucher_id: str, vouchee_id: str, idempotency_key: str = None) -> VouchReceipt:
        return self.engine.vouch(voucher_id, vouchee_id, idempotency_key)

    def quote(self, voucher_id: str) -> VouchQuote:
        return self.engine.quote(voucher_id)

    @property
    def vouch_cost(self) -> Decimal:
        return self.engine.cost

    def register_account(self, display_name: str, account_id: str = None, avatar_ref: str = None,
                         trust_balance: Decimal = None) -> AccountSnapshot:
        account = self.store.create_account(display_name, avatar_ref, account_id, trust_balance)
        # new members must show up in rank lookups right away
        self.ranking.invalidate()
        return account

    def update_profile(self, account_id: str, display_name: str = None, avatar_ref: str = None) -> AccountSnapshot:
        account = self.store.update_profile(account_id, display_name, avatar_ref)
        self.ranking.invalidate()
        return account
