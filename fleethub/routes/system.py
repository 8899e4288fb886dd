from __future__ import annotations

from datetime import datetime, timezone
from typing import Dict

from fastapi import APIRouter, HTTPException
from fastapi.responses import Response

from fleethub.config import get_settings
from fleethub.logger import get_logger
from fleethub.metrics import metrics_content_type, render_metrics
from fleethub.versioning import get_version_info

router = APIRouter()
_logger = get_logger("api.system")


@router.get("/health", tags=["system"])
async def health() -> Dict[str, str]:
    now = datetime.now(timezone.utc).isoformat()
    _logger.debug("health.check", "Health check", status="ok")
    return {"status": "ok", "time": now}


@router.get("/version", tags=["system"])
async def version() -> Dict[str, str]:
    settings = get_settings()
    payload = {
        "app": settings.app_name,
        "version": settings.app_version,
        "env": settings.app_env,
    }
    try:
        info = get_version_info()
    except (FileNotFoundError, ValueError) as exc:
        _logger.warning("version.manifest_missing", "Version manifest unavailable", error=str(exc))
        return payload
    payload.update(
        {
            "version": info.hub_version,
            "manifest_version": info.manifest_version,
            "channel": info.channel,
            "agent_version": info.agent_version,
            "version_source": info.source_path,
        }
    )
    return payload


@router.get("/metrics", include_in_schema=False)
async def metrics() -> Response:
    settings = get_settings()
    if not settings.metrics_enabled:
        raise HTTPException(status_code=404, detail="Metrics are disabled.")
    return Response(content=render_metrics(), media_type=metrics_content_type())
