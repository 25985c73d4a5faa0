"""Observability bootstrap: JSON logging, request middleware and build info."""

from __future__ import annotations

from fastapi import FastAPI

from app.obs import logging as obs_logging
from app.obs import metrics as obs_metrics
from app.obs import middleware
from app.settings import settings


def init(app: FastAPI) -> None:
	if getattr(app.state, "obs_initialised", False):
		return
	logger = obs_logging.configure_logging()
	middleware.install(app)
	obs_metrics.BUILD_INFO.info(
		{
			"service": settings.service_name,
			"env": settings.environment,
			"commit": settings.git_commit,
			"backend": settings.moderation_backend,
		}
	)
	app.state.obs_initialised = True
	logger.info("observability ready", extra={"backend": settings.moderation_backend})


__all__ = ["init"]
