"""Operations endpoints providing health checks and metrics."""

from __future__ import annotations

from fastapi import APIRouter, Response, status
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from app.infra import postgres
from app.infra.redis import redis_client
from app.settings import settings

router = APIRouter(prefix="", tags=["ops"])


@router.get("/health/live")
async def health_live() -> dict[str, str]:
	return {"status": "ok"}


@router.get("/health/ready")
async def health_ready() -> Response:
	checks: dict[str, bool] = {}
	try:
		await redis_client.ping()
		checks["redis"] = True
	except Exception:  # noqa: BLE001
		checks["redis"] = False
	if settings.moderation_backend == "postgres":
		try:
			pool = await postgres.get_pool()
			async with pool.acquire() as conn:
				await conn.execute("SELECT 1")
			checks["postgres"] = True
		except Exception:  # noqa: BLE001
			checks["postgres"] = False
	ok = all(checks.values())
	return JSONResponse(
		content={"status": "ok" if ok else "degraded", "checks": checks},
		status_code=status.HTTP_200_OK if ok else status.HTTP_503_SERVICE_UNAVAILABLE,
	)


@router.get("/metrics")
async def prometheus_metrics() -> Response:
	return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
