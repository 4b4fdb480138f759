"""
TrustFi Claim Oracle — API Gateway
FastAPI server exposing claim eligibility, claim authorization signing and
dynamic Living Profile metadata to the dApp, indexers and marketplaces.

Routes:
  - GET  /metadata?profileId=<id>         ERC-721 metadata rendered from the on-chain score
  - POST /authorize                       EIP-712 claim authorization {nonce, signature, signer}
  - GET  /eligibility?templateId=&wallet= single-template ClaimStatus
  - POST /eligibility/batch               fan-out ClaimStatus for many templates
  - GET  /health

Run:
  uvicorn api.main:create_app_from_env --factory
"""

import logging
import time
from typing import Any, Dict, List, Optional, Union

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from slowapi.util import get_remote_address

from engine.art_engine import build_metadata
from engine.claim_cache import ClaimStatusCache
from engine.claim_signer import ClaimSigner
from engine.config import ClaimEngineConfig
from engine.eligibility import ClaimStatus, EligibilityOracle
from engine.errors import ClaimEngineError, ErrorKind, InvalidRequest
from engine.ledger import LedgerReader, Web3Ledger

log = logging.getLogger("trustfi.api")

API_VERSION = "1.0.0"

CORS_ALLOWED_HEADERS = ["authorization", "x-client-info", "apikey", "content-type"]

STATUS_BY_KIND = {
    ErrorKind.INVALID_REQUEST:    400,
    ErrorKind.INELIGIBLE:         403,
    ErrorKind.NOT_FOUND:          404,
    ErrorKind.ORACLE_UNAVAILABLE: 503,
    ErrorKind.CONFIGURATION:      500,
    ErrorKind.SIGNING_FAILURE:    500,
    ErrorKind.RENDER_FAILURE:     500,
}

MAX_BATCH_TEMPLATES = 100


# ─── Request Models ───────────────────────────────────────────────────────────
class AuthorizeRequest(BaseModel):
    user:         Optional[str]                  = None
    profileOwner: Optional[str]                  = None
    templateId:   Optional[Union[int, str]]      = None


class BatchEligibilityRequest(BaseModel):
    wallet:      str
    templateIds: List[int] = Field(..., max_length=MAX_BATCH_TEMPLATES)


# ─── Helpers ──────────────────────────────────────────────────────────────────
def _error_label(kind: ErrorKind) -> str:
    return kind.value.replace("_", " ").lower()


def _error_response(status_code: int, error: str, details: Optional[str] = None) -> JSONResponse:
    body: Dict[str, Any] = {"error": error}
    if details is not None:
        body["details"] = details
    return JSONResponse(status_code=status_code, content=body)


def _parse_uint(name: str, raw: Union[int, str, None]) -> int:
    if isinstance(raw, bool):
        raise InvalidRequest(f"{name} must be a non-negative integer")
    if isinstance(raw, int):
        value = raw
    else:
        text = (raw or "").strip()
        # ASCII only: str.isdigit() also accepts superscripts and other digits int() rejects
        if not (text.isascii() and text.isdigit()):
            raise InvalidRequest(f"{name} must be a non-negative integer, got {raw!r}")
        value = int(text)
    if value < 0:
        raise InvalidRequest(f"{name} must be a non-negative integer, got {raw!r}")
    return value


def _status_to_json(status: ClaimStatus) -> Dict[str, Any]:
    return {
        "templateId":      status.template_id,
        "eligible":        status.eligible,
        "reason":          status.reason,
        "alreadyClaimed":  status.already_claimed,
        "supplyRemaining": status.supply_remaining,   # null = unlimited
        "paused":          status.paused,
        "startTime":       status.start_time,
        "endTime":         status.end_time,
    }


# ─── App Factory ──────────────────────────────────────────────────────────────
def create_app(config: ClaimEngineConfig, ledger: Optional[LedgerReader] = None) -> FastAPI:
    """
    Build the gateway around an explicit configuration. The signer is built
    here, so a bad key or verifying contract fails at startup, not per request.
    """
    signer = ClaimSigner(config)
    ledger = ledger or Web3Ledger(config)
    oracle = EligibilityOracle(ledger)

    limiter = Limiter(key_func=get_remote_address)

    app = FastAPI(
        title="TrustFi Claim Oracle API",
        description="Collectible claim authorization and deterministic Living Profile metadata",
        version=API_VERSION,
        docs_url="/docs",
        redoc_url="/redoc",
    )
    app.state.config  = config
    app.state.signer  = signer
    app.state.ledger  = ledger
    app.state.oracle  = oracle
    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=CORS_ALLOWED_HEADERS,
    )

    # ─── Error translation ────────────────────────────────────────────────────
    @app.exception_handler(ClaimEngineError)
    async def _engine_error_handler(request: Request, exc: ClaimEngineError):
        status_code = STATUS_BY_KIND.get(exc.kind, 500)
        if status_code >= 500:
            log.error(f"[{request.url.path}] {exc.kind.value}: {exc.message}")
        return _error_response(status_code, _error_label(exc.kind), exc.message)

    @app.exception_handler(RequestValidationError)
    async def _validation_error_handler(request: Request, exc: RequestValidationError):
        return _error_response(400, "Invalid request", str(exc.errors()))

    @app.on_event("startup")
    async def _startup_banner():
        log.info(
            f"✅ TrustFi Claim Oracle v{API_VERSION} ready — signer={signer.address} "
            f"chain={config.chain_id} contract={config.verifying_contract}"
        )

    # ─── Routes ───────────────────────────────────────────────────────────────
    @app.get("/health")
    async def health():
        return {
            "status":             "operational",
            "signer":             signer.address,
            "chain_id":           config.chain_id,
            "verifying_contract": config.verifying_contract,
            "version":            API_VERSION,
            "timestamp":          int(time.time()),
        }

    @app.get("/metadata", summary="Living Profile metadata")
    async def metadata(profileId: Optional[str] = None):
        if profileId is None or not profileId.strip():
            return _error_response(400, "Missing profileId parameter")
        try:
            profile_id = _parse_uint("profileId", profileId)
        except InvalidRequest as e:
            return _error_response(400, "Invalid profileId parameter", e.message)

        log.info(f"[METADATA] request profileId={profile_id}")
        try:
            score = await ledger.get_score(profile_id)
            document = build_metadata(profile_id, score)
        except ClaimEngineError as e:
            log.error(f"[METADATA] profileId={profile_id} failed: {e.kind.value} {e.message}")
            return _error_response(500, "Internal server error", e.message)

        log.info(f"[METADATA] profileId={profile_id} score={score}")
        return document

    @app.post("/authorize", summary="Issue a claim authorization")
    @limiter.limit(config.rate_limit_authorize)
    async def authorize(request: Request, body: AuthorizeRequest):
        missing = [
            name for name, value in (
                ("user", body.user),
                ("profileOwner", body.profileOwner),
                ("templateId", body.templateId),
            )
            if value is None or (isinstance(value, str) and not value.strip())
        ]
        if missing:
            return _error_response(400, "Missing required parameters", ", ".join(missing))

        template_id = _parse_uint("templateId", body.templateId)
        authorization = signer.issue_authorization(body.user, body.profileOwner, template_id)
        return authorization.to_response()

    @app.get("/eligibility", summary="Claim eligibility for one template")
    async def eligibility(templateId: Optional[str] = None, wallet: Optional[str] = None):
        if not templateId or not wallet:
            return _error_response(400, "Missing templateId or wallet parameter")
        status = await oracle.check_eligibility(_parse_uint("templateId", templateId), wallet)
        return _status_to_json(status)

    @app.post("/eligibility/batch", summary="Claim eligibility for many templates")
    async def eligibility_batch(body: BatchEligibilityRequest):
        cache = ClaimStatusCache(oracle, body.wallet)
        results = await cache.refresh(body.templateIds)
        return {
            "wallet":  body.wallet,
            "results": {
                str(template_id): (
                    _status_to_json(entry) if isinstance(entry, ClaimStatus)
                    else {"error": _error_label(entry.kind), "details": entry.message}
                )
                for template_id, entry in results.items()
            },
        }

    return app


def create_app_from_env() -> FastAPI:
    """uvicorn factory entrypoint. Missing configuration aborts the process."""
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s :: %(message)s",
        datefmt="%Y-%m-%dT%H:%M:%SZ",
    )
    return create_app(ClaimEngineConfig.from_env())


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("api.main:create_app_from_env", factory=True, host="0.0.0.0", port=8000)
