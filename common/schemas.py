from datetime import datetime
from decimal import Decimal
from pydantic import BaseModel, Field, field_validator
from typing import Literal, Optional

ACCOUNT_ID_PATTERN = r"^[A-Za-z0-9_.:\-]{1,64}$"

class AccountOut(BaseModel):
    id: str
    display_name: str
    avatar_ref: Optional[str] = None
    trust_balance: Decimal
    reputation: int
    join_order: int

class LeaderboardEntryOut(BaseModel):
    rank: int
    account: AccountOut

class AccountStatsOut(BaseModel):
    account_id: str
    reputation: int
    trust_balance: Decimal
    rank: int
    vouches_given: int
    vouches_received: int

class ActivityOut(BaseModel):
    id: int
    type: Literal["vouch_given", "vouch_received"]
    description: str
    event_id: str
    counterparty_id: str
    created_at: datetime

class VouchRequest(BaseModel):
    vouchee_id: str = Field(..., pattern=ACCOUNT_ID_PATTERN)
    idempotency_key: Optional[str] = Field(None, min_length=1, max_length=128)

class VouchEventOut(BaseModel):
    id: str
    voucher_id: str
    vouchee_id: str
    amount: Decimal
    created_at: datetime

class VouchResultOut(BaseModel):
    event: VouchEventOut
    voucher: AccountOut
    vouchee: AccountOut
    replayed: bool = False

class VouchQuoteOut(BaseModel):
    account_id: str
    cost: Decimal
    balance: Decimal
    balance_after: Decimal
    can_afford: bool

class PolicyOut(BaseModel):
    vouch_cost: Decimal
    early_adopter_limit: int
    early_adopter_grant: Decimal
    standard_grant: Decimal
    leaderboard_limit: int
    search_limit: int

class RegisterAccountRequest(BaseModel):
    display_name: str = Field(..., min_length=1, max_length=100)
    account_id: Optional[str] = Field(None, pattern=ACCOUNT_ID_PATTERN)
    avatar_ref: Optional[str] = Field(None, max_length=512)
    trust_balance: Optional[Decimal] = Field(None, ge=0)

    @field_validator("display_name")
    @classmethod
    def strip_name(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("display_name must not be blank")
        return v

class ProfileUpdateRequest(BaseModel):
    display_name: Optional[str] = Field(None, min_length=1, max_length=100)
    avatar_ref: Optional[str] = Field(None, max_length=512)

    @field_validator("display_name")
    @classmethod
    def strip_name(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return v
        v = v.strip()
        if not v:
            raise ValueError("display_name must not be blank")
        return v
