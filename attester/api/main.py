"""
FarGuard Attester - API Gateway
FastAPI server issuing RevokeAndClaim attestations to the dApp.

Routes
  GET  /health                 liveness + issuer address
  POST /attest                 {wallet, token, spender} -> signed attestation
  GET  /check/{wallet}         cached Revoked proofs for a wallet + sync state
  POST /sync                   manual sync pass (X-Attester-Admin-Key)
  GET  /api/v1/attester/info   signing domain, typed struct, profile, policy

Status mapping is done here and only here (see engine.errors.HTTP_STATUS):
  400 invalid input / no proof / policy not met
  403 not a verified identity
  503 identity provider unavailable
  500 signing failure / unexpected
"""

import asyncio
import logging
import os
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from dotenv import load_dotenv
from fastapi import FastAPI, Request, Security
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security.api_key import APIKeyHeader
from pydantic import BaseModel, Field
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from slowapi.util import get_remote_address

from engine.chain import ChainReader
from engine.config import Settings, load_settings, validate_settings
from engine.errors import HTTP_STATUS, ClaimRejected, ErrorKind
from engine.identity import NeynarIdentityResolver
from engine.orchestrator import AttestationOrchestrator, normalize_address
from engine.policy import EligibilityPolicy
from engine.proof import ActionProofChecker
from engine.signer import ATTESTATION_TYPES, AttestationSigner, EIP712Domain
from engine.store import build_store
from engine.sync import SyncMaintainer

load_dotenv()

# ─── Setup ────────────────────────────────────────────────────────────────────
logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s [%(levelname)s] FARGUARD :: %(name)s :: %(message)s",
)
log = logging.getLogger("farguard.api")

VERSION = "2.0.0"

# ─── Rate Limiter ─────────────────────────────────────────────────────────────
# Limit configurable via env: e.g. RATE_LIMIT_ATTEST="30/minute"
RATE_LIMIT_ATTEST  = os.getenv("RATE_LIMIT_ATTEST", "60/minute")
RATE_LIMIT_ENABLED = os.getenv("RATE_LIMIT_ENABLED", "true").strip().lower() not in ("0", "false", "no", "off")
limiter = Limiter(key_func=get_remote_address, enabled=RATE_LIMIT_ENABLED)

ADMIN_KEY_HEADER = APIKeyHeader(name="X-Attester-Admin-Key", auto_error=False)


# ─── Service container ────────────────────────────────────────────────────────
@dataclass
class AttesterServices:
    settings:      Settings
    signer:        AttestationSigner
    store:         Any
    chain:         Any
    resolver:      Any
    maintainer:    SyncMaintainer
    proof_checker: ActionProofChecker
    orchestrator:  AttestationOrchestrator
    stop_event:    asyncio.Event = field(default_factory=asyncio.Event)
    tasks:         List[asyncio.Task] = field(default_factory=list)

    def _spawn(self, coro, name: str) -> None:
        task = asyncio.create_task(coro, name=name)
        task.add_done_callback(_log_task_exit)
        self.tasks.append(task)

    async def start(self) -> None:
        await self.maintainer.load_state()
        if not self.proof_checker.use_cache:
            log.info("[BOOT] live_only profile: background sync disabled")
            return
        self._spawn(self.maintainer.startup_sweep(), "startup-sweep")
        self._spawn(self.maintainer.run_periodic(self.stop_event), "periodic-sync")
        if self.settings.realtime:
            self._spawn(self.maintainer.watch(self.stop_event), "realtime-sync")

    async def stop(self) -> None:
        self.stop_event.set()
        for task in self.tasks:
            if not task.done():
                task.cancel()
        await asyncio.gather(*self.tasks, return_exceptions=True)
        await self.resolver.aclose()
        await self.store.aclose()


def _log_task_exit(task: asyncio.Task) -> None:
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        log.error(f"[BOOT] background task {task.get_name()} crashed: {exc!r}")


def build_services(settings: Settings, *, chain=None, resolver=None, store=None) -> AttesterServices:
    """Wire the pipeline for ``settings``. Components passed in replace the real ones."""
    domain = EIP712Domain(
        name               = settings.domain_name,
        version            = settings.domain_version,
        chain_id           = settings.chain_id,
        verifying_contract = settings.verifying_contract,
    )
    signer = AttestationSigner(domain, settings.private_key)
    if store is None:
        store = build_store(settings.redis_url)
    if chain is None:
        chain = ChainReader(
            settings.rpc_url,
            settings.revoke_helper_address,
            max_retries      = settings.max_retries,
            retry_base_delay = settings.retry_base_delay_sec,
            timeout_sec      = settings.http_timeout_sec,
        )
    if resolver is None:
        resolver = NeynarIdentityResolver(
            settings.neynar_api_key,
            base_url         = settings.neynar_api_url,
            timeout_sec      = settings.http_timeout_sec,
            max_retries      = settings.max_retries,
            retry_base_delay = settings.retry_base_delay_sec,
        )
    maintainer = SyncMaintainer(
        chain,
        store,
        deploy_block      = settings.deploy_block,
        chunk_size        = settings.sync_chunk_size,
        on_demand_blocks  = settings.on_demand_blocks,
        on_demand_chunk   = settings.on_demand_chunk,
        chunk_delay_sec   = settings.chunk_delay_sec,
        interval_sec      = settings.sync_interval_sec,
        realtime_poll_sec = settings.realtime_poll_sec,
    )
    proof_checker = ActionProofChecker(
        chain,
        store,
        maintainer,
        deploy_block      = settings.deploy_block,
        use_cache         = settings.profile.use_cache,
        use_contract_view = settings.profile.use_contract_view,
    )
    orchestrator = AttestationOrchestrator(
        resolver,
        proof_checker,
        signer,
        EligibilityPolicy(settings.policy),
        ttl_sec = settings.attestation_ttl_sec,
    )
    return AttesterServices(
        settings      = settings,
        signer        = signer,
        store         = store,
        chain         = chain,
        resolver      = resolver,
        maintainer    = maintainer,
        proof_checker = proof_checker,
        orchestrator  = orchestrator,
    )


# ─── Request Models ───────────────────────────────────────────────────────────
class AttestRequest(BaseModel):
    # Optional so a missing field becomes our 400, not a framework 422
    wallet:  Optional[str] = None
    token:   Optional[str] = None
    spender: Optional[str] = None


class SyncRequest(BaseModel):
    full:   bool          = Field(default=False, description="catch up from cursor to head")
    blocks: Optional[int] = Field(default=None, ge=1, le=100_000, description="recent window size")


def _error(kind: ErrorKind, error: str, status_code: int, detail: str = "") -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"error": error, "kind": kind.value, "detail": detail},
    )


# ─── App factory ──────────────────────────────────────────────────────────────
def create_app(services: Optional[AttesterServices] = None) -> FastAPI:
    app = FastAPI(
        title="FarGuard Attester",
        description="Signs RevokeAndClaim attestations for verified Farcaster wallets",
        version=VERSION,
    )
    app.state.services = services
    app.state.limiter  = limiter
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

    if services is not None:
        origins = services.settings.allowed_origins
    else:
        raw = os.getenv("ALLOWED_ORIGINS", "http://localhost:3000,http://127.0.0.1:3000")
        origins = [o.strip() for o in raw.split(",") if o.strip()]
    log.info(f"CORS allowed origins: {origins}")
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_methods=["GET", "POST"],
        allow_headers=["*"],
    )

    def svc() -> AttesterServices:
        return app.state.services

    # ─── Startup / Shutdown ───────────────────────────────────────────────────
    @app.on_event("startup")
    async def _startup():
        if app.state.services is None:
            settings = load_settings()
            for w in validate_settings(settings):
                log.critical(f"\n{'=' * 70}\nSECURITY WARNING: {w}\n{'=' * 70}")
            app.state.services = build_services(settings)
        s = svc()
        log.info(
            f"[BOOT] FarGuard Attester v{VERSION} issuer={s.signer.address} "
            f"profile={s.settings.profile.name} store={s.store.backend}"
        )
        await s.start()

    @app.on_event("shutdown")
    async def _shutdown():
        if app.state.services is not None:
            await app.state.services.stop()

    @app.exception_handler(RequestValidationError)
    async def _validation_error(request: Request, exc: RequestValidationError):
        return _error(ErrorKind.INVALID_INPUT, "invalid request body", 400,
                      detail="; ".join(str(e.get("msg", "")) for e in exc.errors()))

    # ─── Routes ───────────────────────────────────────────────────────────────
    @app.get("/health")
    async def health() -> Dict[str, Any]:
        s = svc()
        return {
            "ok":                True,
            "issuer":            s.signer.address,
            "chainId":           s.signer.domain.chain_id,
            "verifyingContract": s.signer.domain.verifying_contract,
            "profile":           s.settings.profile.name,
            "cursor":            s.maintainer.state.cursor,
            "syncing":           s.maintainer.syncing,
            "version":           VERSION,
            "timestamp":         int(time.time()),
        }

    @app.post("/attest")
    @limiter.limit(RATE_LIMIT_ATTEST)
    async def attest(request: Request, body: AttestRequest):
        t_start = time.perf_counter()
        try:
            outcome = await svc().orchestrator.attest(body.wallet, body.token, body.spender)
        except Exception as e:
            log.error(f"[ATTEST] unexpected failure: {e}", exc_info=True)
            return _error(ErrorKind.INTERNAL_ERROR, "internal error", 500)

        elapsed = round((time.perf_counter() - t_start) * 1000, 2)
        if isinstance(outcome, ClaimRejected):
            log.info(f"[ATTEST] rejected {outcome.kind.value} -> {outcome.status_code} ({elapsed}ms)")
            return JSONResponse(status_code=outcome.status_code, content=outcome.to_dict())

        log.info(f"[ATTEST] 200 fid={outcome.external_id} ({elapsed}ms)")
        return outcome.to_response()

    @app.get("/check/{wallet}")
    async def check_wallet(wallet: str) -> Any:
        try:
            address = normalize_address(wallet, "wallet")
        except ClaimRejected as rejection:
            return JSONResponse(status_code=rejection.status_code, content=rejection.to_dict())
        s = svc()
        records = await s.store.records_for_wallet(address)
        return {
            "wallet":  address,
            "count":   len(records),
            "records": [r.to_dict() for r in records],
            "store":   {"backend": s.store.backend, "total": await s.store.count()},
            "sync":    s.maintainer.state.to_dict(),
        }

    @app.post("/sync")
    async def trigger_sync(
        body:    Optional[SyncRequest] = None,
        api_key: Optional[str] = Security(ADMIN_KEY_HEADER),
    ) -> Any:
        s = svc()
        denied = HTTP_STATUS[ErrorKind.UNAUTHORIZED]
        if not s.settings.admin_api_key:
            return _error(ErrorKind.UNAUTHORIZED, "manual sync disabled", denied,
                          detail="ATTESTER_ADMIN_KEY is not configured")
        if api_key != s.settings.admin_api_key:
            return _error(ErrorKind.UNAUTHORIZED, "invalid admin key", denied)

        body = body or SyncRequest()
        if body.full:
            result = await s.maintainer.catch_up("manual")
        else:
            result = await s.maintainer.sync_recent(body.blocks, trigger="manual")
        return {"result": result.to_dict(), "sync": s.maintainer.state.to_dict()}

    @app.get("/api/v1/attester/info", summary="Attester Identity Information")
    async def attester_info() -> Dict[str, Any]:
        s = svc()
        return {
            "issuer":            s.signer.address,
            "protocol":          f"FarGuard Attester v{VERSION}",
            "domain":            s.signer.domain.as_dict(),
            "types":             ATTESTATION_TYPES,
            "ttl_seconds":       s.settings.attestation_ttl_sec,
            "profile":           s.settings.profile.name,
            "proof_tiers": [
                tier for tier, on in (
                    ("store",      s.proof_checker.use_cache),
                    ("on_demand",  s.proof_checker.use_cache),
                    ("live_query", True),
                    ("contract",   s.proof_checker.use_contract_view),
                ) if on
            ],
            "policy":            s.settings.policy.to_dict(),
            "rate_limit":        RATE_LIMIT_ATTEST,
            "signing_algorithm": "EIP-712 ECDSA secp256k1",
        }

    return app


app = create_app()


def run() -> None:
    import uvicorn

    uvicorn.run(
        "api.main:app",
        host=os.getenv("HOST", "0.0.0.0"),
        port=int(os.getenv("PORT", "8080")),
        log_level=os.getenv("LOG_LEVEL", "INFO").lower(),
    )


if __name__ == "__main__":
    run()
