"""V1 API router -- aggregates all v1 endpoint routers."""

from __future__ import annotations

from fastapi import APIRouter

from src.callsync.api.v1 import admin, health, sync, webhooks

router = APIRouter()

router.include_router(health.router)
router.include_router(webhooks.router)
router.include_router(sync.router)
router.include_router(admin.router)
