"""管理画面: 動画レポート (生成・配信)"""
from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Query, Request

from mediablast.core.exceptions import ConcurrencyConflict
from mediablast.core.locks import blast_lock_key
from mediablast.core.logging import get_logger
from mediablast.core.rate_limit import limiter, ITEM_ACTION_RATE_LIMIT, TRIGGER_RATE_LIMIT
from mediablast.core.redis import EMERGENCY_STOP_KEY, check_emergency_stop, get_redis
from mediablast.models.report_item import ReportItem, GEN_DONE
from mediablast.routers.deps import pipeline_dep, report_service_dep
from mediablast.schemas.report import (
    DeliveryTemplateUpdate,
    EmergencyStopUpdate,
    ReportCreateRequest,
    ReportInfo,
    ReportItemInfo,
    ReportItemListResponse,
    ReportListResponse,
)
from mediablast.services.blast_coordinator import share_link
from mediablast.services.pipeline import Pipeline
from mediablast.services.report_service import ReportService

logger = get_logger(__name__)

router = APIRouter(prefix="/api/admin/reports", tags=["admin-reports"])


def _item_info(item: ReportItem) -> ReportItemInfo:
    info = ReportItemInfo.model_validate(item)
    if item.status == GEN_DONE and item.artifact_url:
        info.share_url = share_link(item.report_id, item.id)
    return info


def _run_background(label: str, fn, *args):
    """BackgroundTasks 用ラッパー: 結果と失敗をログに残す"""
    try:
        result = fn(*args)
        logger.info(f"{label} 完了: args={args}, result={result}")
    except ConcurrencyConflict as e:
        logger.info(f"{label} スキップ (実行中): {e}")
    except Exception as e:
        logger.error(f"{label} 失敗: args={args} - {e}", exc_info=True)


# --- 緊急停止 (/{report_id} より先に定義) ---

@router.get("/emergency-stop")
async def get_emergency_stop(r=Depends(get_redis)):
    """緊急停止フラグ取得"""
    return {"active": bool(await r.get(EMERGENCY_STOP_KEY))}


@router.put("/emergency-stop")
async def update_emergency_stop(body: EmergencyStopUpdate, r=Depends(get_redis)):
    """緊急停止フラグ設定 (Worker と定期ブラストが停止する)"""
    if body.active:
        await r.set(EMERGENCY_STOP_KEY, "1")
    else:
        await r.delete(EMERGENCY_STOP_KEY)
    logger.warning(f"緊急停止フラグ変更: active={body.active}")
    return {"active": body.active}


# --- レポート ---

@router.post("", status_code=201, response_model=ReportInfo)
def create_report(body: ReportCreateRequest, service: ReportService = Depends(report_service_dep)):
    """レポート作成 (宛先ごとにアイテムを作成)"""
    report = service.create_report(
        name=body.name,
        message_template=body.message_template,
        recipients=[r.model_dump() for r in body.recipients],
        delivery_template=body.delivery_template,
        target_language=body.target_language,
        preview_only=body.preview_only,
    )
    return report


@router.get("", response_model=ReportListResponse)
def list_reports(
    page: int = Query(1, ge=1),
    per_page: int = Query(20, ge=1, le=100),
    service: ReportService = Depends(report_service_dep),
):
    """レポート一覧"""
    total, reports = service.list_reports(page, per_page)
    return {"total": total, "reports": reports}


@router.get("/{report_id}", response_model=ReportInfo)
def get_report(report_id: int, service: ReportService = Depends(report_service_dep)):
    return service.get_report(report_id)


@router.get("/{report_id}/summary")
def get_summary(report_id: int, service: ReportService = Depends(report_service_dep)):
    """アイテム状態から集計したサマリー"""
    return service.get_summary(report_id)


@router.delete("/{report_id}")
def delete_report(report_id: int, service: ReportService = Depends(report_service_dep)):
    service.delete_report(report_id)
    return {"message": "削除しました"}


@router.put("/{report_id}/delivery-template", response_model=ReportInfo)
def update_delivery_template(
    report_id: int,
    body: DeliveryTemplateUpdate,
    service: ReportService = Depends(report_service_dep),
):
    """配信メッセージテンプレート更新 (空なら既定テンプレート)"""
    return service.update_delivery_template(report_id, body.delivery_template)


# --- アイテム ---

@router.get("/{report_id}/items", response_model=ReportItemListResponse)
def list_items(
    report_id: int,
    page: int = Query(1, ge=1),
    per_page: int = Query(50, ge=1, le=100),
    status: Optional[str] = None,
    delivery_status: Optional[str] = None,
    search: Optional[str] = None,
    service: ReportService = Depends(report_service_dep),
):
    """アイテム一覧"""
    total, items = service.list_items(report_id, page, per_page, status, delivery_status, search)
    return {"total": total, "items": [_item_info(i) for i in items]}


@router.post("/{report_id}/items/{item_id}/toggle-exclude", response_model=ReportItemInfo)
def toggle_exclude(report_id: int, item_id: int, service: ReportService = Depends(report_service_dep)):
    return _item_info(service.toggle_exclude(report_id, item_id))


@router.delete("/{report_id}/items/{item_id}/video", response_model=ReportItemInfo)
def delete_item_video(report_id: int, item_id: int, service: ReportService = Depends(report_service_dep)):
    """成果物削除 (アイテムは PENDING に戻る)"""
    return _item_info(service.delete_item_artifact(report_id, item_id))


@router.delete("/{report_id}/videos")
def delete_all_videos(report_id: int, service: ReportService = Depends(report_service_dep)):
    """全成果物削除 (レポートは PENDING に戻る)"""
    reset = service.delete_all_artifacts(report_id)
    return {"message": "全ての動画を削除しました", "reset": reset}


@router.post("/{report_id}/items/{item_id}/regenerate", response_model=ReportItemInfo)
@limiter.limit(ITEM_ACTION_RATE_LIMIT)
def regenerate_item(
    request: Request,
    report_id: int,
    item_id: int,
    service: ReportService = Depends(report_service_dep),
):
    """1件だけ再生成"""
    return _item_info(service.regenerate_item(report_id, item_id))


@router.post("/{report_id}/items/{item_id}/resend", response_model=ReportItemInfo)
@limiter.limit(ITEM_ACTION_RATE_LIMIT)
def resend_item(
    request: Request,
    report_id: int,
    item_id: int,
    service: ReportService = Depends(report_service_dep),
):
    """1件だけ再送 (リトライ付き)"""
    return _item_info(service.resend_item(report_id, item_id))


# --- 生成 ---

@router.post("/{report_id}/generate", status_code=202)
@limiter.limit(TRIGGER_RATE_LIMIT)
def start_generation(
    request: Request,
    report_id: int,
    background_tasks: BackgroundTasks,
    service: ReportService = Depends(report_service_dep),
):
    """生成開始 (バックグラウンドで投入)"""
    service.get_report(report_id)
    if service.generation_running(report_id):
        raise ConcurrencyConflict(f"generation already running: report_id={report_id}")
    background_tasks.add_task(_run_background, "生成投入", service.start_generation, report_id)
    return {"message": "生成を開始しました", "report_id": report_id}


@router.post("/{report_id}/retry-failed", status_code=202)
@limiter.limit(TRIGGER_RATE_LIMIT)
def retry_failed(
    request: Request,
    report_id: int,
    background_tasks: BackgroundTasks,
    service: ReportService = Depends(report_service_dep),
):
    """生成失敗アイテムを全て再生成"""
    service.get_report(report_id)
    if service.generation_running(report_id):
        raise ConcurrencyConflict(f"generation already running: report_id={report_id}")
    background_tasks.add_task(_run_background, "生成失敗リトライ", service.retry_failed, report_id)
    return {"message": "失敗アイテムの再生成を開始しました", "report_id": report_id}


@router.post("/{report_id}/check-status")
@limiter.limit(TRIGGER_RATE_LIMIT)
def check_status(request: Request, report_id: int, service: ReportService = Depends(report_service_dep)):
    """生成ステータスを今すぐ照会"""
    outcomes = service.check_status(report_id)
    report = service.get_report(report_id)
    return {"report_id": report_id, "status": report.status, "outcomes": outcomes}


# --- 配信 ---

@router.post("/{report_id}/blast", status_code=202)
@limiter.limit(TRIGGER_RATE_LIMIT)
def trigger_blast(
    request: Request,
    report_id: int,
    background_tasks: BackgroundTasks,
    pipeline: Pipeline = Depends(pipeline_dep),
):
    """配信ブラスト開始"""
    pipeline.reports.get_report(report_id)
    if check_emergency_stop():
        raise HTTPException(status_code=409, detail="緊急停止中のため配信できません")
    if pipeline.locks.is_held(blast_lock_key(report_id)):
        raise ConcurrencyConflict(f"blast already running: report_id={report_id}")
    background_tasks.add_task(_run_background, "配信ブラスト", pipeline.reports.trigger_blast, report_id)
    return {"message": "配信を開始しました", "report_id": report_id}


@router.post("/{report_id}/retry-failed-delivery", status_code=202)
@limiter.limit(TRIGGER_RATE_LIMIT)
def retry_failed_delivery(
    request: Request,
    report_id: int,
    background_tasks: BackgroundTasks,
    pipeline: Pipeline = Depends(pipeline_dep),
):
    """配信失敗アイテムを PENDING に戻して再ブラスト"""
    pipeline.reports.get_report(report_id)
    if check_emergency_stop():
        raise HTTPException(status_code=409, detail="緊急停止中のため配信できません")
    if pipeline.locks.is_held(blast_lock_key(report_id)):
        raise ConcurrencyConflict(f"blast already running: report_id={report_id}")
    background_tasks.add_task(
        _run_background, "配信失敗リトライ", pipeline.reports.retry_failed_delivery, report_id
    )
    return {"message": "配信失敗分の再送を開始しました", "report_id": report_id}


@router.post("/{report_id}/sync-delivery")
@limiter.limit(TRIGGER_RATE_LIMIT)
def sync_delivery_status(request: Request, report_id: int, service: ReportService = Depends(report_service_dep)):
    """配信ステータスをチャネルと同期"""
    return service.sync_delivery_status(report_id)
