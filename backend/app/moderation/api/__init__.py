"""Moderation API routers."""

from fastapi import APIRouter

from . import actions, analytics, reports, restrictions, reversals

router = APIRouter()
router.include_router(reports.router)
router.include_router(actions.router)
router.include_router(reversals.router)
router.include_router(restrictions.router)
router.include_router(analytics.router)

__all__ = ["router"]
