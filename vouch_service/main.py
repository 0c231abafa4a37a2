"""
Vouch Service
HTTP surface for the vouch ledger, leaderboard, activity log and directory
"""
import logging
from contextlib import asynccontextmanager
from dataclasses import asdict
from typing import List, Optional

from fastapi import FastAPI, Depends, Header, HTTPException, Query, Request

from common.error_handling import add_error_handlers
from common.schemas import (
    AccountOut, AccountStatsOut, ActivityOut, LeaderboardEntryOut, PolicyOut, ProfileUpdateRequest,
    RegisterAccountRequest, VouchEventOut, VouchQuoteOut, VouchRequest, VouchResultOut,
)
from common.security import TokenError, bearer_token, verify_token
from common.settings import Settings, settings as default_settings
from common.tracing import tracing_middleware, vouch_tracer
from vouch_service.engine import VouchReceipt
from vouch_service.service import VouchService

logger = logging.getLogger(__name__)

def get_service(request: Request) -> VouchService:
    return request.app.state.vouch_service

def current_account_id(request: Request, authorization: Optional[str] = Header(None)) -> str:
    """Identity comes from the session collaborator's bearer token; the core never logs anyone in"""
    cfg = request.app.state.settings
    try:
        claims = verify_token(bearer_token(authorization), cfg=cfg)
    except TokenError as e:
        raise HTTPException(status_code=401, detail=f"Invalid token: {e}", headers={"WWW-Authenticate": "Bearer"})
    if claims.get("scope") != "user":
        raise HTTPException(status_code=403, detail="User token required")
    return claims["sub"]

def internal_auth(request: Request, authorization: Optional[str] = Header(None)) -> str:
    """Registration and profile edits belong to the profile collaborator"""
    cfg = request.app.state.settings
    try:
        claims = verify_token(bearer_token(authorization), audience=cfg.internal_audience, cfg=cfg)
    except TokenError as e:
        raise HTTPException(status_code=401, detail=f"Invalid internal token: {e}")
    return claims["sub"]

def _account_out(snapshot) -> AccountOut:
    return AccountOut(**asdict(snapshot))

def _receipt_out(receipt: VouchReceipt) -> VouchResultOut:
    return VouchResultOut(
        event=VouchEventOut(**asdict(receipt.event)),
        voucher=_account_out(receipt.voucher),
        vouchee=_account_out(receipt.vouchee),
        replayed=receipt.replayed,
    )

def _activity_out(entry) -> ActivityOut:
    return ActivityOut(
        id=entry.id,
        type=entry.kind,
        description=entry.description,
        event_id=entry.event_id,
        counterparty_id=entry.counterparty_id,
        created_at=entry.created_at,
    )

def create_app(settings: Settings = None, service: VouchService = None) -> FastAPI:
    settings = settings or default_settings

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        app.state.vouch_service.close()

    app = FastAPI(title="iTRUST Vouch Service", version="1.0.0", lifespan=lifespan)
    app.state.settings = settings
    app.state.vouch_service = service or VouchService(settings)
    add_error_handlers(app)

    @app.middleware("http")
    async def add_tracing(request: Request, call_next):
        return await tracing_middleware(request, call_next, vouch_tracer)

    @app.get("/health")
    def health(svc: VouchService = Depends(get_service)):
        return {
            "ok": True,
            "status": "healthy",
            "service": "vouch",
            "accounts": svc.store.count(),
            "idempotency": svc.engine.idempotency.stats(),
        }

    @app.get("/policy", response_model=PolicyOut)
    def policy(svc: VouchService = Depends(get_service)):
        """Fixed vouch cost and grant schedule, for 'you will have X left' displays"""
        return PolicyOut(
            vouch_cost=svc.vouch_cost,
            early_adopter_limit=settings.early_adopter_limit,
            early_adopter_grant=settings.early_adopter_grant,
            standard_grant=settings.standard_grant,
            leaderboard_limit=settings.leaderboard_limit,
            search_limit=settings.search_limit,
        )

    @app.get("/leaderboard", response_model=List[LeaderboardEntryOut])
    def leaderboard(limit: int = Query(100, ge=1), svc: VouchService = Depends(get_service)):
        return [LeaderboardEntryOut(rank=e.rank, account=_account_out(e.account)) for e in svc.leaderboard(limit)]

    @app.get("/accounts/{account_id}", response_model=AccountOut)
    def get_account(account_id: str, svc: VouchService = Depends(get_service)):
        return _account_out(svc.account(account_id))

    @app.get("/accounts/{account_id}/stats", response_model=AccountStatsOut)
    def account_stats(account_id: str, svc: VouchService = Depends(get_service)):
        return AccountStatsOut(**asdict(svc.account_stats(account_id)))

    @app.get("/accounts/{account_id}/rank")
    def account_rank(account_id: str, svc: VouchService = Depends(get_service)):
        return {"account_id": account_id, "rank": svc.rank_of(account_id)}

    @app.get("/accounts/{account_id}/activities", response_model=List[ActivityOut])
    def account_activities(account_id: str, limit: int = Query(20, ge=1, le=100),
                           svc: VouchService = Depends(get_service)):
        return [_activity_out(a) for a in svc.activities(account_id, limit)]

    @app.get("/search", response_model=List[AccountOut])
    def search(q: str = Query("", max_length=100), limit: int = Query(20, ge=1),
               svc: VouchService = Depends(get_service)):
        return [_account_out(a) for a in svc.search(q, limit)]

    @app.get("/me/stats", response_model=AccountStatsOut)
    def my_stats(account_id: str = Depends(current_account_id), svc: VouchService = Depends(get_service)):
        return AccountStatsOut(**asdict(svc.account_stats(account_id)))

    @app.get("/me/activities", response_model=List[ActivityOut])
    def my_activities(limit: int = Query(20, ge=1, le=100), account_id: str = Depends(current_account_id),
                      svc: VouchService = Depends(get_service)):
        return [_activity_out(a) for a in svc.activities(account_id, limit)]

    @app.get("/vouch/quote", response_model=VouchQuoteOut)
    def vouch_quote(account_id: str = Depends(current_account_id), svc: VouchService = Depends(get_service)):
        return VouchQuoteOut(**asdict(svc.quote(account_id)))

    @app.post("/vouch", response_model=VouchResultOut)
    def vouch(
        body: VouchRequest,
        idempotency_key: Optional[str] = Header(None, alias="Idempotency-Key"),
        account_id: str = Depends(current_account_id),
        svc: VouchService = Depends(get_service),
    ):
        """Spend the fixed cost to give the vouchee one reputation point"""
        receipt = svc.vouch(account_id, body.vouchee_id, body.idempotency_key or idempotency_key)
        return _receipt_out(receipt)

    @app.post("/internal/accounts", response_model=AccountOut, status_code=201)
    def register_account(body: RegisterAccountRequest, caller: str = Depends(internal_auth),
                         svc: VouchService = Depends(get_service)):
        logger.info(f"Registration requested by {caller}")
        account = svc.register_account(
            body.display_name,
            account_id=body.account_id,
            avatar_ref=body.avatar_ref,
            trust_balance=body.trust_balance,
        )
        return _account_out(account)

    @app.put("/internal/accounts/{account_id}/profile", response_model=AccountOut)
    def update_profile(account_id: str, body: ProfileUpdateRequest, caller: str = Depends(internal_auth),
                       svc: VouchService = Depends(get_service)):
        return _account_out(svc.update_profile(account_id, body.display_name, body.avatar_ref))

    return app

if __name__ == "__main__":
    import uvicorn
    logging.basicConfig(level=logging.INFO)
    uvicorn.run(create_app(), host="0.0.0.0", port=8000)
