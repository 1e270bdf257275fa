"""Entry point for the FastAPI-powered hero rotation service."""

from __future__ import annotations

import logging
from contextlib import AsyncExitStack, asynccontextmanager
from typing import Any

import httpx
from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from .config import settings
from .database import Database
from .policy import PolicyLoadResult, load_policy
from .services.hero_pool import EnrichOptions, HeroPoolService
from .services.hero_store import HeroStore
from .services.kv import DatabaseKeyValueStore, KeyValueStore, MemoryKeyValueStore
from .services.normalizer import HeroNormalizer
from .services.tmdb import TMDBClient
from .utils import clean_string, normalize_kind

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

TOKEN_KEY = "tmdbToken"
KNOWN_KINDS = {"movies", "movie", "series", "show", "shows", "tv"}

app: FastAPI


class HeroPoolRequest(BaseModel):
    items: list[dict[str, Any]] = Field(default_factory=list)
    force: bool = False
    enrich: bool = True


class ShownItemRequest(BaseModel):
    item: dict[str, Any] | str


class TokenRequest(BaseModel):
    token: str = Field(min_length=1)


@asynccontextmanager
async def lifespan(_: FastAPI):
    exit_stack = AsyncExitStack()
    tmdb_http_client = await exit_stack.enter_async_context(
        httpx.AsyncClient(
            base_url=str(settings.tmdb_api_url).rstrip("/"),
            timeout=httpx.Timeout(15.0, connect=5.0),
        )
    )
    database = Database(settings.database_url)
    await database.create_all()

    durable = DatabaseKeyValueStore(database.session_factory)
    policy_result = load_policy(settings.hero_policy_path)

    async def _stored_token() -> str | None:
        result = await durable.get(TOKEN_KEY)
        return result.value if result.ok else None

    tmdb = TMDBClient(
        settings, tmdb_http_client, token_provider=_stored_token, cache_store=durable
    )
    tmdb.breaker.changes.subscribe(
        lambda state: logger.info("TMDB rate limit state: %s", state.to_payload())
    )
    store = HeroStore(durable, MemoryKeyValueStore("session"))
    service = HeroPoolService(
        store,
        HeroNormalizer(tmdb, text_clamp=policy_result.policy.text_clamp),
        lambda: policy_result.policy,
        tmdb_client=tmdb,
    )

    app.state.database = database
    app.state.policy_result = policy_result
    app.state.tmdb_client = tmdb
    app.state.token_store = durable
    app.state.hero_service = service

    try:
        yield
    finally:  # pragma: no cover - teardown path exercised at runtime
        await database.dispose()
        await exit_stack.aclose()


def create_app() -> FastAPI:
    fastapi_app = FastAPI(
        title=settings.app_name,
        description="Rotating, enriched spotlight picks for a personal media catalog",
        version="1.0.0",
        lifespan=lifespan,
    )

    fastapi_app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["GET", "POST", "PUT", "DELETE"],
        allow_headers=["*"],
    )

    register_routes(fastapi_app)
    return fastapi_app


def get_hero_service(app: FastAPI) -> HeroPoolService:
    service = getattr(app.state, "hero_service", None)
    if not isinstance(service, HeroPoolService):
        raise RuntimeError("Hero pool service not initialised")
    return service


def get_tmdb_client(app: FastAPI) -> TMDBClient | None:
    client = getattr(app.state, "tmdb_client", None)
    return client if isinstance(client, TMDBClient) else None


def _resolve_kind(kind: str) -> str:
    if kind.strip().lower() not in KNOWN_KINDS:
        raise HTTPException(status_code=404, detail=f"Unknown catalog kind '{kind}'")
    return normalize_kind(kind.strip().lower())


def _cache_max_age(expires_at: int, now: int) -> int:
    return max(60, (expires_at - now) // 1000)


def register_routes(fastapi_app: FastAPI) -> None:
    @fastapi_app.get("/healthz")
    async def healthcheck() -> dict[str, str]:
        return {"status": "ok"}

    @fastapi_app.get("/api/hero/status")
    async def hero_status() -> dict[str, Any]:
        service = get_hero_service(fastapi_app)
        policy_result = getattr(fastapi_app.state, "policy_result", None)
        issues = policy_result.issues if isinstance(policy_result, PolicyLoadResult) else []
        tmdb = get_tmdb_client(fastapi_app)
        return {
            "policy": service.policy.model_dump(mode="json", by_alias=True),
            "issues": [{"field": issue.field, "message": issue.message} for issue in issues],
            "enrichment": {
                "enabled": bool(tmdb and await tmdb.has_credentials()),
                "configured": bool(tmdb and tmdb.settings.has_tmdb_credentials),
                "cacheSize": tmdb.cache_size if tmdb else 0,
            },
            "rateLimit": tmdb.breaker.state.to_payload() if tmdb else None,
        }

    @fastapi_app.post("/api/hero/cache/clear")
    async def clear_response_cache() -> dict[str, str]:
        tmdb = get_tmdb_client(fastapi_app)
        if tmdb is not None:
            await tmdb.clear_cache()
        return {"status": "cleared"}

    @fastapi_app.post("/api/hero/{kind}")
    async def hero_pool(kind: str, payload: HeroPoolRequest, request: Request) -> JSONResponse:
        service = get_hero_service(fastapi_app)
        normalized_kind = _resolve_kind(kind)
        force = payload.force or request.query_params.get("force") in {"1", "true"}
        result = await service.ensure_pool(
            normalized_kind,
            payload.items,
            force=force,
            options=EnrichOptions(enrich=payload.enrich),
        )
        now = service.now()
        headers = {"Cache-Control": f"public, max-age={_cache_max_age(result.expires_at, now)}"}
        return JSONResponse(result.to_payload(), headers=headers)

    @fastapi_app.delete("/api/hero/{kind}")
    async def clear_hero_pool(kind: str) -> dict[str, str]:
        service = get_hero_service(fastapi_app)
        normalized_kind = _resolve_kind(kind)
        await service.clear_pool(normalized_kind)
        return {"status": "cleared", "kind": normalized_kind}

    @fastapi_app.post("/api/hero/{kind}/history")
    async def record_shown_item(kind: str, payload: ShownItemRequest) -> dict[str, str]:
        service = get_hero_service(fastapi_app)
        normalized_kind = _resolve_kind(kind)
        await service.record_shown(normalized_kind, payload.item)
        return {"status": "recorded", "kind": normalized_kind}

    @fastapi_app.put("/api/tmdb/token")
    async def store_tmdb_token(payload: TokenRequest) -> dict[str, str]:
        token_store: KeyValueStore | None = getattr(fastapi_app.state, "token_store", None)
        token = clean_string(payload.token)
        if token_store is None or not token:
            raise HTTPException(status_code=400, detail="Token storage unavailable")
        result = await token_store.set(TOKEN_KEY, token)
        if not result.ok:
            raise HTTPException(status_code=503, detail=result.error or "Storage unavailable")
        return {"status": "stored"}

    @fastapi_app.delete("/api/tmdb/token")
    async def delete_tmdb_token() -> dict[str, str]:
        token_store: KeyValueStore | None = getattr(fastapi_app.state, "token_store", None)
        if token_store is not None:
            await token_store.remove(TOKEN_KEY)
        return {"status": "removed"}


app = create_app()
