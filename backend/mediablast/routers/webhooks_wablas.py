"""Wablas Webhook ルーター (配信状態トラッキング)"""
import json
from datetime import datetime
from typing import Optional
from zoneinfo import ZoneInfo

from fastapi import APIRouter, Depends, HTTPException, Request
from starlette.concurrency import run_in_threadpool

from mediablast.core.config import settings
from mediablast.core.logging import get_logger
from mediablast.core.security import verify_shared_secret
from mediablast.routers.deps import pipeline_dep
from mediablast.services.pipeline import Pipeline
from mediablast.services.report_state import JST

logger = get_logger(__name__)

router = APIRouter(tags=["webhooks"])

_TIME_FORMATS = ("%Y-%m-%d %H:%M:%S", "%Y-%m-%d %H:%M:%S.%f")


def _first_non_blank(payload: dict, *keys) -> Optional[str]:
    for key in keys:
        value = payload.get(key)
        if value is not None and str(value).strip():
            return str(value).strip()
    return None


def parse_event_time(value: Optional[str]) -> Optional[datetime]:
    """
    通知の時刻を JST に変換する。
    タイムゾーンなしの値は WABLAS_TIMEZONE の現地時刻とみなす。解釈できなければ None
    """
    if not value:
        return None
    parsed = None
    for fmt in _TIME_FORMATS:
        try:
            parsed = datetime.strptime(value, fmt)
            break
        except ValueError:
            continue
    if parsed is None:
        try:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=ZoneInfo(settings.WABLAS_TIMEZONE))
    return parsed.astimezone(JST)


def _event_time(payload: dict) -> Optional[datetime]:
    date = payload.get("date")
    if isinstance(date, dict):
        return parse_event_time(_first_non_blank(date, "updated_at")) or parse_event_time(
            _first_non_blank(date, "created_at")
        )
    return parse_event_time(_first_non_blank(payload, "updated_at", "updatedAt")) or parse_event_time(
        _first_non_blank(payload, "created_at", "createdAt")
    )


@router.post("/api/webhooks/wablas/tracking")
async def wablas_tracking(request: Request, pipeline: Pipeline = Depends(pipeline_dep)):
    """Wablas 配信状態 Webhook (message_id でアイテムを特定して配信ステータスを更新)"""
    if not settings.WABLAS_WEBHOOK_ENABLED:
        return {"success": True, "disabled": True}

    provided = request.headers.get("X-Wablas-Secret") or request.query_params.get("secret")
    if not verify_shared_secret(provided, settings.WABLAS_WEBHOOK_SECRET):
        logger.error("Wablas webhook シークレット不一致")
        raise HTTPException(status_code=401, detail="Unauthorized")

    body = await request.body()
    try:
        payload = json.loads(body) if body else None
    except ValueError:
        payload = None
    if not isinstance(payload, dict):
        return {"success": True, "ignored": True}

    message_id = _first_non_blank(payload, "message_id", "messageId", "id")
    if message_id is None:
        return {"success": True, "ignored": True, "reason": "Missing message_id"}
    status = _first_non_blank(payload, "status", "message_status", "messageStatus")

    result = await run_in_threadpool(
        pipeline.blast.apply_status_callback, message_id, status, _event_time(payload),
    )
    if result is None:
        logger.info(f"未知の message_id: {message_id}")
        return {"success": True, "ignored": True, "reason": "Unknown message_id"}

    return {"success": True, **result}
