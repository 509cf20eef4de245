"""HTTP surface: SSE tick stream plus signal, news and alert policy endpoints."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from importlib.metadata import PackageNotFoundError, version

from fastapi import FastAPI, HTTPException, Query
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import StreamingResponse

from quanta_stream.common.types import to_iso
from quanta_stream.news.store import ArticleStore
from quanta_stream.pipeline import Pipeline
from quanta_stream.signals.models import AlertPolicy
from quanta_stream.stream.sse import parse_symbols

logger = logging.getLogger(__name__)

try:
    VERSION = version("quanta-stream")
except PackageNotFoundError:
    VERSION = "0.0.0"

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


def create_app(pipeline: Pipeline) -> FastAPI:
    """Build the app around a pipeline; the app lifespan starts and stops it."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await pipeline.start()
        try:
            yield
        finally:
            await pipeline.stop()

    app = FastAPI(title="quanta-stream", version=VERSION, lifespan=lifespan)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
        allow_headers=["*"],
    )
    articles = ArticleStore(pipeline.settings.db_path)

    @app.get("/health")
    async def health():
        return {"status": "ok", "ts": to_iso(datetime.now(timezone.utc))}

    @app.get("/version")
    async def get_version():
        return {"name": "quanta-stream", "version": VERSION}

    @app.get("/status")
    async def status():
        return pipeline.status()

    @app.get("/sse/ticks")
    async def sse_ticks(symbol: str | None = Query(None, description="Pipe-delimited symbols, e.g. BTC-USDT|ETH-USDT")):
        symbols = parse_symbols(symbol, pipeline.settings.symbols)
        return StreamingResponse(
            pipeline.broadcaster.stream(symbols),
            media_type="text/event-stream",
            headers=SSE_HEADERS,
        )

    @app.get("/signals")
    async def signals(
        symbol: str | None = Query(None),
        limit: int = Query(50, ge=1, le=500),
    ):
        rows = await pipeline.tracker.recent_signals(limit, symbol.upper() if symbol else None)
        return {"signals": rows}

    @app.get("/news/recent")
    async def news_recent(
        symbol: str | None = Query(None),
        limit: int = Query(30, ge=1, le=200),
    ):
        return {"articles": await articles.recent(symbol, limit)}

    @app.get("/alerts")
    async def list_alerts():
        return {
            "policies": [
                {"id": policy_id, **policy.model_dump()}
                for policy_id, policy in sorted(pipeline.context.policies.items())
            ]
        }

    @app.post("/alerts", status_code=201)
    async def create_alert(policy: AlertPolicy):
        policy_id = await pipeline.register_policy(policy)
        logger.info("Registered alert policy %d for %s", policy_id, policy.symbol)
        return {"id": policy_id, **policy.model_dump()}

    @app.delete("/alerts/{policy_id}")
    async def delete_alert(policy_id: int):
        if not await pipeline.tracker.deactivate_policy(policy_id):
            raise HTTPException(status_code=404, detail=f"no active alert policy {policy_id}")
        pipeline.context.remove_policy(policy_id)
        return {"id": policy_id, "active": False}

    return app
