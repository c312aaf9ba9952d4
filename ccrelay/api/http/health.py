"""HTTP API layer: health and readiness endpoint."""

from __future__ import annotations

from fastapi import APIRouter, Depends

from ccrelay.api.deps import get_container
from ccrelay.core.container import AppContainer

router = APIRouter(tags=["health"])


@router.get("/health")
def health(container: AppContainer = Depends(get_container)) -> dict:
    relays = container.hub.describe()
    return {
        "status": "degraded" if any(relay["failed"] for relay in relays) else "ok",
        "env": container.settings.env,
        "version": container.settings.app_version,
        "sessions": relays,
    }
