from __future__ import annotations

import logging
import os
from datetime import datetime, timezone
from typing import Iterator

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Request
from pydantic import BaseModel

from .config import ConfigError, load_config
from .db import connect_db
from .errors import CampaignNotFound, StorageError
from .health import collect_signals
from .models import Credential
from .pipeline import Services, build_services, run_dispatch
from .utils import configure_logging, log_event

ADMIN_TOKEN_ENV = "AS_ADMIN_TOKEN"

app = FastAPI(title="autoscribe Admin API")


def _require_admin_token(request: Request) -> None:
    token = os.environ.get(ADMIN_TOKEN_ENV)
    if not token:
        return
    if request.headers.get("X-Admin-Token") != token:
        raise HTTPException(status_code=401, detail="unauthorized")


def get_services() -> Iterator[Services]:
    try:
        config = load_config()
        conn = connect_db(config.paths.state_db)
    except (ConfigError, StorageError) as exc:
        raise HTTPException(status_code=503, detail=str(exc)) from exc
    try:
        yield build_services(config, conn)
    finally:
        conn.close()


class DispatchRequest(BaseModel):
    max_batch_per_campaign: int | None = None


@app.get("/health")
def health() -> dict[str, object]:
    return {
        "ok": True,
        "version": _get_version(),
        "time": datetime.now(tz=timezone.utc).isoformat(),
    }


router = APIRouter(dependencies=[Depends(_require_admin_token)])


@router.get("/signals")
def signals(services: Services = Depends(get_services)) -> dict[str, object]:
    return collect_signals(services.conn, services.pool, services.config.signals)


@router.get("/queue/stats")
def queue_stats(
    campaign_id: str | None = None, services: Services = Depends(get_services)
) -> dict[str, int]:
    return services.queue.stats(campaign_id)


@router.post("/queue/{item_id}/requeue")
def queue_requeue(item_id: int, services: Services = Depends(get_services)) -> dict[str, object]:
    if not services.queue.requeue(item_id):
        raise HTTPException(status_code=409, detail="item_not_failed")
    return {"status": "ok", "item_id": item_id}


@router.get("/credentials")
def credentials_list(
    provider: str | None = None, services: Services = Depends(get_services)
) -> list[dict[str, object]]:
    return [credential_to_dict(c) for c in services.pool.list_credentials(provider)]


@router.post("/credentials/{credential_id}/reactivate")
def credentials_reactivate(
    credential_id: str, services: Services = Depends(get_services)
) -> dict[str, str]:
    if not services.pool.reactivate(credential_id):
        raise HTTPException(status_code=409, detail="credential_not_reactivated")
    return {"status": "ok", "credential_id": credential_id}


@router.post("/campaigns/{campaign_id}/discover")
def campaigns_discover(campaign_id: str, services: Services = Depends(get_services)) -> dict[str, int]:
    try:
        counts = services.run_discovery(campaign_id)
    except CampaignNotFound as exc:
        raise HTTPException(status_code=404, detail="campaign_not_found") from exc
    log_event(
        logging.getLogger("autoscribe.admin"),
        logging.INFO,
        "admin_discovery",
        campaign_id=campaign_id,
        **counts,
    )
    return counts


@router.post("/dispatch")
def dispatch(
    payload: DispatchRequest | None = None, services: Services = Depends(get_services)
) -> dict[str, int]:
    max_batch = payload.max_batch_per_campaign if payload else None
    counts = run_dispatch(services, max_batch)
    log_event(logging.getLogger("autoscribe.admin"), logging.INFO, "admin_dispatch", **counts)
    return counts


app.include_router(router)


def credential_to_dict(credential: Credential) -> dict[str, object]:
    return {
        "id": credential.credential_id,
        "provider": credential.provider,
        "label": credential.label,
        "status": credential.status.value,
        "priority": credential.priority,
        "per_minute_limit": credential.per_minute_limit,
        "per_day_limit": credential.per_day_limit,
        "current_minute_count": credential.current_minute_count,
        "current_day_count": credential.current_day_count,
        "consecutive_failure_count": credential.consecutive_failure_count,
        "last_used_at": credential.last_used_at,
    }


def _setup_logging() -> None:
    configure_logging("autoscribe.admin")


_setup_logging()


def _get_version() -> str:
    try:
        from importlib.metadata import version

        return version("autoscribe")
    except Exception:  # noqa: BLE001
        return "unknown"
