# app.py
from __future__ import annotations

import hmac
import logging
import time
from typing import Callable, List, Optional

from fastapi import APIRouter, FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from web3 import Web3

from .config import Settings, load_settings
from .errors import FailureReason, IneligibleError, SigningError, SpinServiceError
from .ledger_store import count_spins, db, fetch_spins, get_entry, init_db, normalize_wallet
from .market import create_market_router
from .models import (
    ClaimPayloadOut,
    ConfigOut,
    EligibilityOut,
    FailureOut,
    LedgerOut,
    RewardOut,
    SpinIn,
    SpinOut,
    SpinRecordOut,
)
from .payments import SKU_CREDITS, JsonRpcPaymentSource, PaymentSettlement
from .reward_table import RewardKind, RewardTable
from .signer import SignatureIssuer
from .spin_engine import SpinEngine, SpinOutcome

log = logging.getLogger("spin.app")

# The webapp proxies to ${BACKEND_URL}/api/...
API_PREFIX = "/api"

# Failures the caller can act on; everything else is reported as internal-error.
CLIENT_ERROR_STATUS = {
    FailureReason.VERIFICATION_FAILED: 400,
    FailureReason.INVALID_WALLET: 400,
}


def now_unix() -> int:
    return int(time.time())


def consteq(a: str, b: str) -> bool:
    return hmac.compare_digest(a.encode(), b.encode())


# ---------------------------
# Error mapping
# ---------------------------
def install_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(IneligibleError)
    async def _ineligible(request: Request, exc: IneligibleError):
        body = FailureOut(reason=exc.reason.value, remaining_seconds=exc.remaining_seconds)
        return JSONResponse(status_code=429, content=body.model_dump())

    @app.exception_handler(SpinServiceError)
    async def _service_error(request: Request, exc: SpinServiceError):
        status = CLIENT_ERROR_STATUS.get(exc.reason)
        if status is None:
            # signer / storage failure: log server-side, return nothing internal
            log.error("[app] %s %s failed: %s", request.method, request.url.path, type(exc).__name__, exc_info=exc)
            body = FailureOut(reason=FailureReason.INTERNAL_ERROR.value)
            return JSONResponse(status_code=500, content=body.model_dump())
        log.info("[app] %s %s rejected: %s", request.method, request.url.path, exc.reason.value)
        return JSONResponse(status_code=status, content=FailureOut(reason=exc.reason.value).model_dump())

    @app.exception_handler(Exception)
    async def _unexpected(request: Request, exc: Exception):
        log.error("[app] %s %s crashed: %s", request.method, request.url.path, type(exc).__name__, exc_info=exc)
        body = FailureOut(reason=FailureReason.INTERNAL_ERROR.value)
        return JSONResponse(status_code=500, content=body.model_dump())


def check_reward_contracts(settings: Settings) -> None:
    """Refuse to start when a contract that NFT / partner claims are bound to is not configured."""
    required = (
        ("FRIES1155_ADDRESS", settings.mint_contract_address),
        ("REWARD_VAULT_ADDRESS", settings.claim_vault_address),
        ("PARTNER_TOKEN_ADDRESS", settings.partner_token_address),
    )
    bad = [name for name, value in required if not Web3.is_address(value or "")]
    if bad:
        raise SigningError("missing or invalid contract address: " + ", ".join(bad))


# ---------------------------
# Response shaping
# ---------------------------
def spin_out(outcome: SpinOutcome) -> SpinOut:
    reward = outcome.reward
    att = outcome.attestation
    payload = None
    if att is not None:
        payload = ClaimPayloadOut(
            claim_kind=att.claim_kind,
            contract_address=att.contract_address,
            token_id=att.token_id,
            amount=str(att.amount),
            nonce=str(att.nonce),
            signature=att.signature,
            token=att.token,
            expires_at=att.expires_at,
        )
    return SpinOut(
        spin_id=outcome.spin_id,
        path=outcome.path.value,
        reward=RewardOut(
            type=reward.kind.value,
            value=reward.value,
            token_id=reward.token_id,
            amount=reward.amount,
        ),
        points_awarded=outcome.points_awarded,
        points_total=outcome.points_total,
        spin_credits=outcome.spin_credits,
        signature=att.signature if att else None,
        claim_payload=payload,
    )


# ---------------------------
# App
# ---------------------------
def create_app(
    settings: Optional[Settings] = None,
    issuer: Optional[SignatureIssuer] = None,
    reward_table: Optional[RewardTable] = None,
    payment_source=None,
    now_func: Callable[[], int] = now_unix,
) -> FastAPI:
    settings = settings or load_settings()
    check_reward_contracts(settings)

    def db_func():
        return db(settings.db_path)

    con = db_func()
    try:
        init_db(con)
    finally:
        con.close()

    issuer = issuer or SignatureIssuer(
        settings.signer_private_key,
        settings.mint_contract_address,
        settings.claim_vault_address,
        claim_ttl_sec=settings.claim_ttl_sec,
    )
    engine = SpinEngine(db_func, issuer, reward_table or RewardTable(), settings, now_func=now_func)
    source = payment_source or JsonRpcPaymentSource(settings.payment_rpc_url, timeout=settings.payment_rpc_timeout_sec)
    settlement = PaymentSettlement(db_func, source, settings, now_func=now_func)

    def require_service_token(req: Request) -> None:
        # Upstream auth / payment proxy authenticates itself with a shared token.
        if not settings.service_token:
            return
        token = req.headers.get("x-service-token", "")
        if not token or not consteq(token, settings.service_token):
            raise HTTPException(status_code=401, detail="invalid service token")

    app = FastAPI(title="Spin Reward Backend", version="1.0.0")

    if settings.cors_origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=settings.cors_origins,
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

    install_error_handlers(app)

    @app.get("/health")
    def health():
        return {"status": "healthy", "service": "spin-backend"}

    api = APIRouter()

    @api.get("/config", response_model=ConfigOut)
    def get_config():
        """Public parameters so the frontend does not hardcode cooldown, bonuses or contracts."""
        return ConfigOut(
            cooldown_sec=settings.cooldown_sec,
            claim_ttl_sec=settings.claim_ttl_sec,
            spin_bonus_points=settings.spin_bonus_points,
            purchase_bonus_points=settings.purchase_bonus_points,
            mint_contract_address=settings.mint_contract_address,
            claim_vault_address=settings.claim_vault_address,
            signer_address=issuer.signer_address,
            skus=dict(SKU_CREDITS),
            reward_kinds=[k.value for k in RewardKind],
        )

    @api.get("/spin/eligibility", response_model=EligibilityOut)
    def spin_eligibility(wallet: str):
        w = normalize_wallet(wallet)
        gate = engine.check_eligibility(w)
        return EligibilityOut(
            wallet=w,
            allowed=gate.allowed,
            path=gate.path.value if gate.path else None,
            remaining_seconds=gate.remaining_seconds,
            spin_credits=gate.spin_credits,
            reason=gate.denial_reason.value if gate.denial_reason else None,
        )

    @api.post("/spin/start", response_model=SpinOut)
    def spin_start(data: SpinIn, req: Request):
        require_service_token(req)
        return spin_out(engine.issue_spin(data.wallet))

    @api.get("/spin/history", response_model=List[SpinRecordOut])
    def spin_history(wallet: str, limit: int = 20, offset: int = 0):
        w = normalize_wallet(wallet)
        con = db_func()
        try:
            return [SpinRecordOut(**r) for r in fetch_spins(con, w, limit=limit, offset=offset)]
        finally:
            con.close()

    @api.get("/ledger", response_model=LedgerOut)
    def get_ledger(wallet: str):
        w = normalize_wallet(wallet)
        con = db_func()
        try:
            entry = get_entry(con, w)
            total = count_spins(con, w)
        finally:
            con.close()
        return LedgerOut(
            wallet=w,
            points_total=entry.points_total if entry else 0,
            spin_credits=entry.spin_credits if entry else 0,
            last_spin_at=entry.last_spin_at if entry else None,
            total_spins=total,
            server_time=now_func(),
        )

    app.include_router(api, prefix=API_PREFIX)
    app.include_router(
        create_market_router(settlement, db_func, require_service_token),
        prefix=f"{API_PREFIX}/market",
        tags=["market"],
    )

    log.info("[app] ready db=%s signer=%s", settings.db_path, issuer.signer_address)
    return app


if __name__ == "__main__":
    import uvicorn

    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s %(message)s")
    uvicorn.run(create_app(), host="0.0.0.0", port=8000)
