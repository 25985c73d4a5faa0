"""FastAPI application entrypoint."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI

from app.api import ops
from app.api.errors import install_error_handlers
from app.infra import postgres
from app.moderation import configure_postgres as configure_moderation
from app.moderation import router as moderation_router
from app.obs import init as obs_init
from app.settings import settings

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
	if settings.moderation_backend == "postgres":
		pool = await postgres.init_pool()
		if settings.postgres_ensure_schema:
			await postgres.ensure_schema(pool)
		configure_moderation(pool)
		logger.info("moderation repositories bound to postgres")
	else:
		logger.info("moderation repositories running in memory")
	try:
		yield
	finally:
		await postgres.close_pool()


app = FastAPI(title="Moderation Lifecycle Service", lifespan=lifespan)
install_error_handlers(app)
obs_init(app)

app.include_router(ops.router)
app.include_router(moderation_router, tags=["moderation"])


def run() -> None:
	uvicorn.run("app.main:app", host=settings.api_host, port=settings.api_port, log_config=None)
