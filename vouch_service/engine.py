"""
Vouch Transaction Engine

A vouch debits the voucher by the fixed cost, adds one reputation point to
the vouchee and records a VouchEvent plus one activity row per side. All of
that is one database transaction taken while both accounts are locked in
sorted id order, so concurrent vouches sharing an account serialize and
never lose an update.
"""
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Callable, Dict, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker
from sqlalchemy.orm.exc import StaleDataError

from common.retry import RetryConfig, RetryExhausted, retry_call
from common.settings import Settings
from common.tracing import get_current_trace_id, vouch_tracer
from vouch_service.activity import ActivityLog
from vouch_service.errors import (
    AccountNotFound, ConflictError, InsufficientBalance, InvalidInput, SelfVouchNotAllowed, StorageError,
)
from vouch_service.locks import AccountLockManager
from vouch_service.models import VouchEvent, from_units, to_units
from vouch_service.ranking import RankingEngine
from vouch_service.store import AccountSnapshot, AccountStore, validate_account_id

logger = logging.getLogger(__name__)

MAX_IDEMPOTENCY_KEY_LENGTH = 128

def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)

@dataclass(frozen=True)
class VouchEventRecord:
    id: str
    voucher_id: str
    vouchee_id: str
    amount: Decimal
    created_at: datetime

    @classmethod
    def from_row(cls, row: VouchEvent) -> "VouchEventRecord":
        return cls(row.id, row.voucher_id, row.vouchee_id, from_units(row.amount), row.created_at)

@dataclass(frozen=True)
class VouchReceipt:
    """Committed event plus both accounts as they were right after the commit"""
    event: VouchEventRecord
    voucher: AccountSnapshot
    vouchee: AccountSnapshot
    replayed: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "event": {
                "id": self.event.id,
                "voucher_id": self.event.voucher_id,
                "vouchee_id": self.event.vouchee_id,
                "amount": str(self.event.amount),
                "created_at": self.event.created_at.isoformat(),
            },
            "voucher": self.voucher.to_dict(),
            "vouchee": self.vouchee.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any], replayed: bool = False) -> "VouchReceipt":
        event = data["event"]
        return cls(
            event=VouchEventRecord(
                id=event["id"],
                voucher_id=event["voucher_id"],
                vouchee_id=event["vouchee_id"],
                amount=Decimal(event["amount"]),
                created_at=datetime.fromisoformat(event["created_at"]),
            ),
            voucher=AccountSnapshot.from_dict(data["voucher"]),
            vouchee=AccountSnapshot.from_dict(data["vouchee"]),
            replayed=replayed,
        )

@dataclass(frozen=True)
class VouchQuote:
    account_id: str
    cost: Decimal
    balance: Decimal
    balance_after: Decimal
    can_afford: bool

class VouchEngine:
    def __init__(
        self,
        session_factory: sessionmaker,
        store: AccountStore,
        activity_log: ActivityLog,
        ranking: RankingEngine,
        locks: AccountLockManager,
        idempotency,
        settings: Settings,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.session_factory = session_factory
        self.store = store
        self.activity_log = activity_log
        self.ranking = ranking
        self.locks = locks
        self.idempotency = idempotency
        self.clock = clock
        self.cost_units = to_units(settings.vouch_cost)
        if self.cost_units <= 0:
            raise ValueError(f"vouch_cost must be positive, got {settings.vouch_cost!r}")
        self.conflict_retry = RetryConfig(
            max_attempts=settings.conflict_retry_attempts,
            base_delay=0.01,
            max_delay=0.25,
            retryable_exceptions=(StaleDataError,),
        )

    @property
    def cost(self) -> Decimal:
        return from_units(self.cost_units)

    def quote(self, voucher_id: str) -> VouchQuote:
        """What the voucher's balance would be after one more vouch"""
        account = self.store.get(validate_account_id(voucher_id, "voucher_id"))
        can_afford = account.trust_balance >= self.cost
        return VouchQuote(
            account_id=account.id,
            cost=self.cost,
            balance=account.trust_balance,
            balance_after=account.trust_balance - self.cost if can_afford else account.trust_balance,
            can_afford=can_afford,
        )

    def vouch(self, voucher_id: str, vouchee_id: str, idempotency_key: Optional[str] = None) -> VouchReceipt:
        validate_account_id(voucher_id, "voucher_id")
        validate_account_id(vouchee_id, "vouchee_id")
        if voucher_id == vouchee_id:
            raise SelfVouchNotAllowed(voucher_id)

        if idempotency_key is None:
            return self._vouch_once(voucher_id, vouchee_id)

        key = self._check_key(idempotency_key)
        replay = self._replay(voucher_id, vouchee_id, key)
        if replay is not None:
            return replay
        if not self.idempotency.claim(voucher_id, key):
            replay = self._replay(voucher_id, vouchee_id, key)
            if replay is not None:
                return replay
            # the holder may have released or expired between the two reads
            if self.idempotency.is_pending(voucher_id, key) or not self.idempotency.claim(voucher_id, key):
                raise ConflictError("A vouch with this idempotency key is already in progress",
                                    field="idempotency_key")
        try:
            receipt = self._vouch_once(voucher_id, vouchee_id)
        except Exception:
            self._release_key(voucher_id, key)
            raise
        self._record_result(voucher_id, key, receipt)
        return receipt

    def _release_key(self, voucher_id: str, key: str) -> None:
        try:
            self.idempotency.release(voucher_id, key)
        except StorageError as e:
            logger.error(f"❌ Could not release idempotency key {key}: {e}", extra={"voucher_id": voucher_id})

    def _record_result(self, voucher_id: str, key: str, receipt: VouchReceipt) -> None:
        """The vouch is already committed; losing the record must not turn it into a failure.

        The claim stays pending until its TTL runs out, so a retry with the
        same key gets CONFLICT instead of applying the vouch twice.
        """
        try:
            self.idempotency.store_result(voucher_id, key, receipt.to_dict())
        except StorageError as e:
            logger.error(f"❌ Vouch {receipt.event.id} committed but its idempotency record was lost: {e}", extra={
                "voucher_id": voucher_id, "event_id": receipt.event.id,
            })

    def _check_key(self, key) -> str:
        if not isinstance(key, str) or not key.strip() or len(key) > MAX_IDEMPOTENCY_KEY_LENGTH:
            raise InvalidInput("idempotency_key must be 1-128 characters", field="idempotency_key")
        return key.strip()

    def _replay(self, voucher_id: str, vouchee_id: str, key: str) -> Optional[VouchReceipt]:
        stored = self.idempotency.get_result(voucher_id, key)
        if stored is None:
            return None
        receipt = VouchReceipt.from_dict(stored, replayed=True)
        if receipt.event.vouchee_id != vouchee_id:
            raise ConflictError("idempotency_key was already used for a different vouch",
                                field="idempotency_key",
                                context={"original_vouchee_id": receipt.event.vouchee_id})
        logger.info(f"🔁 Replayed vouch {receipt.event.id} for key {key}", extra={
            "voucher_id": voucher_id, "event_id": receipt.event.id,
        })
        return receipt

    def _vouch_once(self, voucher_id: str, vouchee_id: str) -> VouchReceipt:
        with vouch_tracer.start_span("vouch") as span:
            span.add_tag("voucher_id", voucher_id)
            span.add_tag("vouchee_id", vouchee_id)
            with self.locks.hold((voucher_id, vouchee_id)):
                try:
                    receipt = retry_call(self._commit, self.conflict_retry, voucher_id, vouchee_id)
                except RetryExhausted as e:
                    raise ConflictError(
                        "Account changed concurrently; the vouch was not applied",
                        context={"attempts": e.attempts},
                    ) from e
            self.ranking.invalidate()
            span.add_tag("event_id", receipt.event.id)

        logger.info(f"✅ Vouch committed: {voucher_id} -> {vouchee_id}", extra={
            "event_id": receipt.event.id,
            "trace_id": get_current_trace_id(),
            "voucher_balance": str(receipt.voucher.trust_balance),
            "vouchee_reputation": receipt.vouchee.reputation,
        })
        return receipt

    def _commit(self, voucher_id: str, vouchee_id: str) -> VouchReceipt:
        """One attempt at the atomic unit; any exception rolls all of it back"""
        try:
            with self.session_factory() as session, session.begin():
                rows = self.store.load_for_update(session, (voucher_id, vouchee_id))
                voucher = rows.get(voucher_id)
                if voucher is None:
                    raise AccountNotFound(voucher_id, side="voucher")
                vouchee = rows.get(vouchee_id)
                if vouchee is None:
                    raise AccountNotFound(vouchee_id, side="vouchee")
                if voucher.trust_balance < self.cost_units:
                    raise InsufficientBalance(voucher_id, from_units(voucher.trust_balance), self.cost)

                self.store.apply_delta(session, voucher_id, -self.cost_units, 0)
                self.store.apply_delta(session, vouchee_id, 0, 1)
                event = VouchEvent(
                    id=str(uuid.uuid4()),
                    voucher_id=voucher_id,
                    vouchee_id=vouchee_id,
                    amount=self.cost_units,
                    created_at=self.clock(),
                )
                session.add(event)
                self.activity_log.append(session, event, voucher, vouchee)
                session.flush()
                receipt = VouchReceipt(
                    event=VouchEventRecord.from_row(event),
                    voucher=AccountSnapshot.from_row(voucher),
                    vouchee=AccountSnapshot.from_row(vouchee),
                )
            return receipt
        except StaleDataError:
            logger.warning(f"Version conflict on {voucher_id}/{vouchee_id}, rolled back")
            raise
        except SQLAlchemyError as e:
            logger.error(f"❌ Vouch commit failed: {e}", extra={"voucher_id": voucher_id, "vouchee_id": vouchee_id})
            raise StorageError("The vouch could not be committed; nothing was applied", original_error=e) from e
