"""
Trade Pipeline - Trigger API.

============================================================
PURPOSE
============================================================
HTTP trigger for the external scheduler.

    GET /api/cron/agent-trader
        Authorization: Bearer <CRON_SECRET>

Runs one tick and returns its summary. Idempotent: a tick
with nothing due changes nothing. Any other method is 405;
a missing or wrong token is 401, and so is every request
while CRON_SECRET is unset.

============================================================
"""

import hmac
import logging
from contextlib import asynccontextmanager
from typing import Any, Callable, Dict, Optional

from fastapi import FastAPI, HTTPException, Request
from pydantic import BaseModel

from .config import PipelineConfig
from .pipeline import TradePipeline
from .types import utcnow


logger = logging.getLogger(__name__)


class HealthResponse(BaseModel):
    status: str
    timestamp: str


def is_authorized(authorization: Optional[str], secret: Optional[str]) -> bool:
    """Constant-time bearer check. No secret configured means no access."""
    if not secret or not authorization:
        return False
    return hmac.compare_digest(authorization.encode(), f"Bearer {secret}".encode())


def create_app(
    config: Optional[PipelineConfig] = None,
    pipeline_factory: Optional[Callable[[PipelineConfig], Any]] = None,
) -> FastAPI:
    """
    Build the trigger app.

    Args:
        config: Pipeline configuration, from the environment if omitted
        pipeline_factory: Builds the pipeline on first use
    """
    config = config or PipelineConfig.from_env()
    pipeline_factory = pipeline_factory or TradePipeline

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        app.state.pipeline = None
        yield
        if app.state.pipeline is not None:
            await app.state.pipeline.close()

    app = FastAPI(
        title="Agent Trade Pipeline",
        description="Scheduler trigger for the agent trade execution pipeline",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.pipeline = None

    def get_pipeline():
        if app.state.pipeline is None:
            app.state.pipeline = pipeline_factory(config)
        return app.state.pipeline

    @app.get("/health", response_model=HealthResponse, tags=["Health"])
    async def health_check():
        return HealthResponse(status="ok", timestamp=utcnow().isoformat())

    @app.get("/api/cron/agent-trader", tags=["Scheduler"])
    async def agent_trader(request: Request) -> Dict[str, Any]:
        """Run one pipeline tick."""
        if not is_authorized(request.headers.get("authorization"), config.scheduler.cron_secret):
            logger.warning("Rejected trigger call: bad or missing bearer token")
            raise HTTPException(status_code=401, detail="Unauthorized")

        summary = await get_pipeline().run_tick()
        return {"ok": True, **summary.to_dict()}

    return app
