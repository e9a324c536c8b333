import hashlib
import json
import logging
import math
import secrets

import httpx
from fastapi import APIRouter, Depends, FastAPI, Header, HTTPException, Query, Request, Response
from pydantic import ValidationError

from . import llm
from .guardrails import (
    CacheTTL,
    InvalidPatternError,
    PeriodicSweeper,
    RateLimitDecision,
    RateLimitPolicy,
    RateLimiter,
    TTLCache,
)
from .llm import LLMResponseError, LLMUnavailableError
from .logs import configure_logging
from .schemas import (
    CacheStatsResponse,
    ClearCacheResponse,
    ReportRequest,
    ReportResponse,
    SweepResponse,
    TagRequest,
    TagResponse,
    is_valid_email,
)
from .settings import Settings, settings

logger = logging.getLogger(__name__)

router = APIRouter()


def _tags_key(title, content, content_type="article", max_tags=10, existing_tags=()):
    raw = json.dumps([title, content, content_type, max_tags, list(existing_tags)], ensure_ascii=False)
    return "tags:" + hashlib.sha256(raw.encode("utf-8")).hexdigest()


def create_app(cfg: Settings = settings, llm_transport: httpx.AsyncBaseTransport | None = None) -> FastAPI:
    app = FastAPI(title="Report Guard API", version="0.1.0")

    limiter = RateLimiter(
        RateLimitPolicy(max_requests=cfg.rate_limit_max_requests, window_ms=cfg.rate_limit_window_ms),
        overrides=cfg.rate_limit_overrides,
    )
    cache = TTLCache(max_size=cfg.cache_max_size, default_ttl_ms=cfg.cache_default_ttl_ms)

    app.state.settings = cfg
    app.state.rate_limiter = limiter
    app.state.result_cache = cache
    app.state.sweeper = PeriodicSweeper(limiter.sweep, cfg.rate_limit_window_ms / 1000.0, name="rate-limit-sweep")
    app.state.llm_transport = llm_transport

    @cache.memoize(ttl_ms=CacheTTL.EXTENDED, key_fn=_tags_key)
    async def suggest_tags(title, content, content_type="article", max_tags=10, existing_tags=()):
        return await llm.suggest_tags(
            title, content, content_type, max_tags, existing_tags, cfg=cfg, transport=llm_transport
        )

    app.state.suggest_tags = suggest_tags

    @app.on_event("startup")
    def _startup():
        configure_logging(cfg.log_level, json_output=cfg.log_json)
        app.state.sweeper.start()

    @app.on_event("shutdown")
    def _shutdown():
        app.state.sweeper.stop(timeout=5)

    app.include_router(router)
    return app


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_rate_limiter(request: Request) -> RateLimiter:
    return request.app.state.rate_limiter


def get_result_cache(request: Request) -> TTLCache:
    return request.app.state.result_cache


def caller_identity(request: Request, x_user_email: str | None = Header(None)) -> str:
    if x_user_email is not None:
        email = x_user_email.strip().lower()
        if not is_valid_email(email):
            raise HTTPException(status_code=400, detail="Invalid X-User-Email header.")
        return email
    return request.client.host if request.client and request.client.host else "unknown"


def rate_limit_headers(decision: RateLimitDecision) -> dict[str, str]:
    return {
        "X-RateLimit-Limit": str(decision.limit),
        "X-RateLimit-Remaining": str(decision.remaining),
        "X-RateLimit-Reset": str(math.ceil(decision.reset_at_ms / 1000)),
    }


def rate_limited(operation: str):
    def dependency(
        response: Response,
        identity: str = Depends(caller_identity),
        cfg: Settings = Depends(get_settings),
        limiter: RateLimiter = Depends(get_rate_limiter),
    ) -> str:
        if not cfg.enable_rate_limiting:
            return identity

        decision = limiter.check_limit(identity, operation)
        headers = rate_limit_headers(decision)
        if not decision.allowed:
            logger.warning(
                "Rate limit exceeded",
                extra={"identity": identity, "operation": operation, "retry_after_ms": decision.retry_after_ms},
            )
            headers["Retry-After"] = str(max(1, math.ceil(decision.retry_after_ms / 1000)))
            raise HTTPException(status_code=429, detail="Too many requests. Please try again shortly.", headers=headers)

        response.headers.update(headers)
        return identity

    return dependency


def require_admin(cfg: Settings = Depends(get_settings), x_admin_token: str | None = Header(None)) -> None:
    if not cfg.admin_token or not x_admin_token or not secrets.compare_digest(x_admin_token, cfg.admin_token):
        raise HTTPException(status_code=403, detail="Admin token required.")


@router.get("/health")
def health():
    return {"ok": True}


def _report_cache_key(identity: str, req: ReportRequest) -> str:
    parts = [identity, req.request, sorted(req.entities)]
    return "report:" + json.dumps(parts, ensure_ascii=False, separators=(",", ":"))


@router.post("/reports", response_model=ReportResponse)
async def create_report(
    req: ReportRequest,
    request: Request,
    identity: str = Depends(rate_limited("ai_operations")),
    cache: TTLCache = Depends(get_result_cache),
):
    cache_key = _report_cache_key(identity, req)
    cached = cache.get(cache_key)
    if cached is not None:
        logger.info("Cache hit for report", extra={"identity": identity})
        return {**cached, "cached": True}

    try:
        raw = await llm.generate_report(
            req.request, req.entities, cfg=request.app.state.settings, transport=request.app.state.llm_transport
        )
        report = ReportResponse.model_validate(raw).model_dump()
    except LLMUnavailableError:
        raise HTTPException(status_code=503, detail="Report generation is temporarily unavailable.")
    except (LLMResponseError, ValidationError):
        logger.warning("LLM returned an unusable report", extra={"identity": identity})
        raise HTTPException(status_code=502, detail="Report generation returned an invalid result.")
    except Exception:
        logger.exception("Unexpected report generation failure")
        raise HTTPException(status_code=500, detail="Unexpected error while generating report.")

    cache.set(cache_key, report, CacheTTL.LONG)
    return report


@router.post("/tags", response_model=TagResponse)
async def create_tags(
    req: TagRequest,
    request: Request,
    identity: str = Depends(rate_limited("ai_operations")),
):
    suggest = request.app.state.suggest_tags
    try:
        tags = await suggest(req.title, req.content, req.content_type, req.max_tags, tuple(req.existing_tags))
    except LLMUnavailableError:
        raise HTTPException(status_code=503, detail="Tag suggestion is temporarily unavailable.")
    except LLMResponseError:
        logger.warning("LLM returned unusable tags", extra={"identity": identity})
        raise HTTPException(status_code=502, detail="Tag suggestion returned an invalid result.")
    except Exception:
        logger.exception("Unexpected tag suggestion failure")
        raise HTTPException(status_code=500, detail="Unexpected error while suggesting tags.")

    return {"suggested_tags": tags}


@router.get("/admin/cache", response_model=CacheStatsResponse, dependencies=[Depends(require_admin)])
def cache_stats(cache: TTLCache = Depends(get_result_cache)):
    return cache.stats()


@router.delete("/admin/cache", response_model=ClearCacheResponse, dependencies=[Depends(require_admin)])
def clear_cache(
    pattern: str | None = Query(None, max_length=200),
    cache: TTLCache = Depends(get_result_cache),
):
    try:
        removed = cache.clear(pattern)
    except InvalidPatternError as e:
        raise HTTPException(status_code=400, detail=str(e))
    logger.info("Cache cleared", extra={"pattern": pattern, "removed": removed})
    return {"removed": removed}


@router.delete("/admin/cache/{key:path}", status_code=204, dependencies=[Depends(require_admin)])
def delete_cache_entry(key: str, cache: TTLCache = Depends(get_result_cache)):
    cache.delete(key)
    return Response(status_code=204)


@router.post("/admin/rate-limits/sweep", response_model=SweepResponse, dependencies=[Depends(require_admin)])
def sweep_rate_limits(limiter: RateLimiter = Depends(get_rate_limiter)):
    removed = limiter.sweep()
    return {"removed_keys": removed, "tracked_keys": len(limiter)}


app = create_app()
