"""V1 API router -- aggregates all v1 endpoint routers.

Health checks stay at the root; everything else lives under /api/v1.
"""

from __future__ import annotations

from fastapi import APIRouter

from src.synchub.api.v1 import formula_fields, health, quickbooks, sync, sync_logs

API_V1_PREFIX = "/api/v1"

router = APIRouter()

router.include_router(health.router)
router.include_router(sync.router, prefix=API_V1_PREFIX)
router.include_router(quickbooks.router, prefix=API_V1_PREFIX)
router.include_router(sync_logs.router, prefix=API_V1_PREFIX)
router.include_router(formula_fields.router, prefix=API_V1_PREFIX)
