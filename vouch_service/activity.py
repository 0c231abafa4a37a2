"""
Activity Log: append-only per-account record of vouch events
"""
from dataclasses import dataclass
from datetime import datetime
from typing import List, Tuple

from sqlalchemy import select, func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from vouch_service.errors import StorageError
from vouch_service.models import Account, Activity, VouchEvent

VOUCH_GIVEN = "vouch_given"
VOUCH_RECEIVED = "vouch_received"

@dataclass(frozen=True)
class ActivityEntry:
    id: int
    account_id: str
    kind: str
    event_id: str
    counterparty_id: str
    description: str
    created_at: datetime

class ActivityLog:
    def __init__(self, session_factory: sessionmaker, default_limit: int = 20):
        self.session_factory = session_factory
        self.default_limit = default_limit

    def append(self, session: Session, event: VouchEvent, voucher: Account, vouchee: Account) -> None:
        """Record both sides of a vouch inside the engine's transaction"""
        session.add_all([
            Activity(
                account_id=voucher.id,
                event_id=event.id,
                kind=VOUCH_GIVEN,
                counterparty_id=vouchee.id,
                description=f"You vouched for {vouchee.display_name}",
                created_at=event.created_at,
            ),
            Activity(
                account_id=vouchee.id,
                event_id=event.id,
                kind=VOUCH_RECEIVED,
                counterparty_id=voucher.id,
                description=f"{voucher.display_name} vouched for you",
                created_at=event.created_at,
            ),
        ])

    def recent_for(self, account_id: str, limit: int = None) -> List[ActivityEntry]:
        """Most recent first. Caller checks that the account exists."""
        limit = self.default_limit if limit is None else limit
        if limit <= 0:
            return []
        stmt = (
            select(Activity)
            .where(Activity.account_id == account_id)
            .order_by(Activity.created_at.desc(), Activity.id.desc())
            .limit(limit)
        )
        try:
            with self.session_factory() as session:
                return [
                    ActivityEntry(
                        id=a.id,
                        account_id=a.account_id,
                        kind=a.kind,
                        event_id=a.event_id,
                        counterparty_id=a.counterparty_id,
                        description=a.description,
                        created_at=a.created_at,
                    )
                    for a in session.execute(stmt).scalars()
                ]
        except SQLAlchemyError as e:
            raise StorageError("Failed to read activities", original_error=e) from e

    def counts(self, account_id: str) -> Tuple[int, int]:
        """(vouches given, vouches received)"""
        try:
            with self.session_factory() as session:
                given = session.execute(
                    select(func.count()).select_from(VouchEvent).where(VouchEvent.voucher_id == account_id)
                ).scalar_one()
                received = session.execute(
                    select(func.count()).select_from(VouchEvent).where(VouchEvent.vouchee_id == account_id)
                ).scalar_one()
                return given, received
        except SQLAlchemyError as e:
            raise StorageError("Failed to count vouches", original_error=e) from e
