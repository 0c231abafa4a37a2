"""
Account Store

Owns the accounts table. Reads hand out frozen snapshots; the only write
path used by vouching is apply_delta, which runs inside the caller's
transaction and never commits on its own.
"""
import logging
import re
import uuid
from dataclasses import dataclass
from decimal import Decimal
from typing import List, Optional, Sequence

from sqlalchemy import select, func, case
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from common.retry import RetryConfig, RetryExhausted, retry_call
from common.settings import Settings
from vouch_service.errors import AccountNotFound, InsufficientBalance, InvalidInput, StorageError, ConflictError
from vouch_service.models import Account, to_units, from_units

logger = logging.getLogger(__name__)

ACCOUNT_ID_RE = re.compile(r"^[A-Za-z0-9_.:\-]{1,64}$")

def validate_account_id(account_id, field: str = "account_id") -> str:
    if not isinstance(account_id, str) or not ACCOUNT_ID_RE.match(account_id):
        raise InvalidInput(f"Malformed account id: {account_id!r}", field=field)
    return account_id

def validate_display_name(display_name) -> str:
    if not isinstance(display_name, str):
        raise InvalidInput("display_name must be a string", field="display_name")
    name = display_name.strip()
    if not 1 <= len(name) <= 100:
        raise InvalidInput("display_name must be 1-100 characters", field="display_name")
    return name

@dataclass(frozen=True)
class AccountSnapshot:
    id: str
    display_name: str
    avatar_ref: Optional[str]
    trust_balance: Decimal
    reputation: int
    join_order: int

    @classmethod
    def from_row(cls, row: Account) -> "AccountSnapshot":
        return cls(
            id=row.id,
            display_name=row.display_name,
            avatar_ref=row.avatar_ref,
            trust_balance=from_units(row.trust_balance),
            reputation=row.reputation,
            join_order=row.join_order,
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "display_name": self.display_name,
            "avatar_ref": self.avatar_ref,
            "trust_balance": str(self.trust_balance),
            "reputation": self.reputation,
            "join_order": self.join_order,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "AccountSnapshot":
        return cls(
            id=data["id"],
            display_name=data["display_name"],
            avatar_ref=data.get("avatar_ref"),
            trust_balance=Decimal(data["trust_balance"]),
            reputation=int(data["reputation"]),
            join_order=int(data["join_order"]),
        )

class AccountStore:
    def __init__(self, session_factory: sessionmaker, settings: Settings):
        self.session_factory = session_factory
        self.settings = settings
        self.search_limit = settings.search_limit
        self._join_retry = RetryConfig(max_attempts=5, base_delay=0.005, max_delay=0.1,
                                       retryable_exceptions=(IntegrityError,))

    # Reads

    def get(self, account_id: str) -> AccountSnapshot:
        validate_account_id(account_id)
        try:
            with self.session_factory() as session:
                row = session.get(Account, account_id)
                if row is None:
                    raise AccountNotFound(account_id)
                return AccountSnapshot.from_row(row)
        except SQLAlchemyError as e:
            raise StorageError("Failed to read account", original_error=e) from e

    def count(self) -> int:
        with self.session_factory() as session:
            return session.execute(select(func.count()).select_from(Account)).scalar_one()

    def all_accounts(self) -> List[AccountSnapshot]:
        """Point-in-time list of every account, read in one statement"""
        try:
            with self.session_factory() as session:
                rows = session.execute(select(Account)).scalars().all()
                return [AccountSnapshot.from_row(r) for r in rows]
        except SQLAlchemyError as e:
            raise StorageError("Failed to read accounts", original_error=e) from e

    def find_by_name(self, query: str, limit: int = None) -> List[AccountSnapshot]:
        """Case-insensitive substring match; exact matches first, then reputation"""
        limit = min(limit or self.search_limit, self.search_limit)
        needle = query.strip().lower()
        if not needle or limit <= 0:
            return []
        lowered = func.lower(Account.display_name)
        stmt = (
            select(Account)
            .where(lowered.contains(needle, autoescape=True))
            .order_by(
                case((lowered == needle, 0), else_=1),
                Account.reputation.desc(),
                Account.join_order.asc(),
            )
            .limit(limit)
        )
        try:
            with self.session_factory() as session:
                return [AccountSnapshot.from_row(r) for r in session.execute(stmt).scalars()]
        except SQLAlchemyError as e:
            raise StorageError("Account search failed", original_error=e) from e

    # Writes inside a vouch transaction

    def load_for_update(self, session: Session, account_ids: Sequence[str]) -> dict:
        """Lock rows in sorted id order; missing ids are simply absent from the result"""
        rows = {}
        for account_id in sorted(set(account_ids)):
            row = session.get(Account, account_id, with_for_update=True, populate_existing=True)
            if row is not None:
                rows[account_id] = row
        return rows

    def apply_delta(self, session: Session, account_id: str, balance_delta: int, reputation_delta: int) -> Account:
        """Mutate one account inside the caller's transaction.

        balance_delta is in integer units. Raises InsufficientBalance when the
        balance would go negative; nothing is written in that case.
        """
        row = session.get(Account, account_id)
        if row is None:
            raise AccountNotFound(account_id)
        new_balance = row.trust_balance + balance_delta
        if new_balance < 0:
            raise InsufficientBalance(account_id, from_units(row.trust_balance), from_units(-balance_delta))
        new_reputation = row.reputation + reputation_delta
        if new_reputation < 0:
            raise InvalidInput("Reputation cannot become negative", field="reputation_delta")
        row.trust_balance = new_balance
        row.reputation = new_reputation
        return row

    # Registration and profile edits (called by the profile collaborator)

    def initial_grant(self, join_order: int) -> Decimal:
        if join_order <= self.settings.early_adopter_limit:
            return Decimal(self.settings.early_adopter_grant)
        return Decimal(self.settings.standard_grant)

    def create_account(self, display_name: str, avatar_ref: str = None, account_id: str = None,
                       trust_balance: Decimal = None) -> AccountSnapshot:
        name = validate_display_name(display_name)
        account_id = validate_account_id(account_id) if account_id else str(uuid.uuid4())
        if trust_balance is not None and Decimal(trust_balance) < 0:
            raise InvalidInput("trust_balance cannot be negative", field="trust_balance")

        def _insert() -> AccountSnapshot:
            with self.session_factory() as session, session.begin():
                if session.get(Account, account_id) is not None:
                    raise ConflictError(f"Account '{account_id}' already exists", field="account_id")
                join_order = (session.execute(select(func.max(Account.join_order))).scalar() or 0) + 1
                balance = trust_balance if trust_balance is not None else self.initial_grant(join_order)
                row = Account(
                    id=account_id,
                    display_name=name,
                    avatar_ref=avatar_ref,
                    trust_balance=to_units(balance),
                    reputation=0,
                    join_order=join_order,
                )
                session.add(row)
                session.flush()
                return AccountSnapshot.from_row(row)

        try:
            # Two registrations can race for the same join order; the unique
            # constraint rejects the loser, which then reads the new max.
            snapshot = retry_call(_insert, self._join_retry)
        except RetryExhausted as e:
            raise ConflictError("Could not assign a join order", context={"account_id": account_id}) from e
        except SQLAlchemyError as e:
            raise StorageError("Failed to create account", original_error=e) from e

        logger.info(f"✅ Registered account {snapshot.id} as member #{snapshot.join_order}", extra={
            "account_id": snapshot.id, "join_order": snapshot.join_order,
        })
        return snapshot

    def update_profile(self, account_id: str, display_name: str = None, avatar_ref: str = None) -> AccountSnapshot:
        validate_account_id(account_id)
        name = validate_display_name(display_name) if display_name is not None else None
        try:
            with self.session_factory() as session, session.begin():
                row = session.get(Account, account_id)
                if row is None:
                    raise AccountNotFound(account_id)
                if name is not None:
                    row.display_name = name
                if avatar_ref is not None:
                    row.avatar_ref = avatar_ref
                session.flush()
                return AccountSnapshot.from_row(row)
        except SQLAlchemyError as e:
            raise StorageError("Failed to update profile", original_error=e) from e
