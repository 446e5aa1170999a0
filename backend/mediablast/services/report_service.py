"""
レポートコーディネーター

レポート/アイテムのライフサイクル (作成・除外・再生成・削除) を管理し、
生成プール・ステータス照合・配信ブラストへ処理を委譲する。
"""
from contextlib import nullcontext
from typing import Callable, Optional

from sqlalchemy import func, or_, update
from sqlalchemy.orm import Session

from mediablast.core.database import SessionLocal
from mediablast.core.exceptions import ValidationError
from mediablast.core.locks import LockRegistry, generation_lock_key
from mediablast.core.logging import get_logger
from mediablast.core.security import make_artifact_token
from mediablast.models.report import Report, REPORT_PENDING
from mediablast.models.report_item import (
    ReportItem,
    GEN_PENDING, GEN_PROCESSING, GEN_DONE, GEN_FAILED,
    DELIVERY_PENDING, DELIVERY_CLAIMED, DELIVERY_QUEUED, DELIVERY_SENT, DELIVERY_DELIVERED,
    DELIVERY_DISABLED, DELIVERY_ACCEPTED_STATUSES, DELIVERY_FAILED_STATUSES,
)
from mediablast.services.artifact_cache import ArtifactCache
from mediablast.services.blast_coordinator import BlastCoordinator
from mediablast.services.generation_pool import GenerationWorkerPool
from mediablast.services.report_state import (
    delivery_counts,
    generation_counts,
    get_item_or_404,
    get_report_or_404,
    refresh_status,
    reset_generation,
)
from mediablast.services.status_reconciler import StatusReconciler
from mediablast.services.variable_resolver import (
    DEFAULT_SCRIPT_TEMPLATE, build_recipient_fields, find_tokens, resolve_variables,
)

logger = get_logger(__name__)

SCRIPT_TOKENS = {"name", "phone"}
DELIVERY_TOKENS = {"name", "phone", "link", "linkvideo"}

# 配信ステータス絞り込みのグループ (一覧画面のタブ単位)
DELIVERY_FILTER_GROUPS = {
    "PENDING": [DELIVERY_PENDING, DELIVERY_CLAIMED, DELIVERY_QUEUED],
    "SENT": [DELIVERY_SENT, DELIVERY_DELIVERED],
    "FAILED": list(DELIVERY_FAILED_STATUSES),
    "ERROR": list(DELIVERY_FAILED_STATUSES),
}


class ReportService:
    def __init__(
        self,
        generation_pool: GenerationWorkerPool,
        reconciler: StatusReconciler,
        blast: BlastCoordinator,
        cache: ArtifactCache = None,
        locks: LockRegistry = None,
        session_factory: Callable[[], Session] = SessionLocal,
    ):
        self.generation_pool = generation_pool
        self.reconciler = reconciler
        self.blast = blast
        self.cache = cache
        self.locks = locks
        self.session_factory = session_factory

    # --- 作成 ---

    def create_report(
        self,
        name: str,
        message_template: str,
        recipients: list[dict],
        delivery_template: str = None,
        target_language: str = None,
        preview_only: bool = False,
    ) -> Report:
        """
        レポートとアイテムを一括作成する。入力不正はアイテム作成前に ValidationError。

        recipients: [{"name", "phone", "avatar"?, "message"?}, ...]
        """
        name = (name or "").strip()
        if not name:
            raise ValidationError("レポート名は必須です")
        if not message_template or not message_template.strip():
            message_template = DEFAULT_SCRIPT_TEMPLATE
        if not recipients:
            raise ValidationError("宛先が1件もありません")
        target_language = (target_language or "").strip() or None
        if target_language and self.reconciler.secondary_provider is None:
            raise ValidationError("翻訳プロバイダが設定されていないため翻訳先言語は指定できません")

        rows = []
        for index, recipient in enumerate(recipients, start=1):
            recipient_name = (recipient.get("name") or "").strip()
            phone = (recipient.get("phone") or "").strip()
            if not recipient_name:
                raise ValidationError(f"{index}行目: 名前は必須です")
            if not phone or not any(c.isdigit() for c in phone):
                raise ValidationError(f"{index}行目: 電話番号が不正です")
            rows.append((index, recipient_name, phone, recipient))

        _warn_unknown_tokens("script", message_template, SCRIPT_TOKENS)
        if delivery_template:
            _warn_unknown_tokens("delivery", delivery_template, DELIVERY_TOKENS)

        db = self.session_factory()
        try:
            report = Report(
                name=name,
                message_template=message_template,
                delivery_template=delivery_template or None,
                target_language=target_language,
                status=REPORT_PENDING,
                total_records=len(rows),
            )
            db.add(report)
            db.flush()

            for row_number, recipient_name, phone, recipient in rows:
                message = recipient.get("message") or resolve_variables(
                    message_template, build_recipient_fields(recipient_name, phone)
                )
                db.add(ReportItem(
                    report_id=report.id,
                    row_number=recipient.get("row_number") or row_number,
                    name=recipient_name,
                    phone=phone,
                    avatar=recipient.get("avatar"),
                    personalized_message=message,
                    excluded=False,
                    status=GEN_PENDING,
                    delivery_status=DELIVERY_DISABLED if preview_only else DELIVERY_PENDING,
                ))
            db.commit()
            db.refresh(report)
            logger.info(f"レポート作成: report_id={report.id}, 宛先={len(rows)}件, preview_only={preview_only}")
            return report
        finally:
            db.close()

    # --- 参照 ---

    def get_report(self, report_id: int) -> Report:
        db = self.session_factory()
        try:
            return get_report_or_404(db, report_id)
        finally:
            db.close()

    def list_reports(self, page: int = 1, per_page: int = 20) -> tuple[int, list[Report]]:
        db = self.session_factory()
        try:
            q = db.query(Report)
            total = q.count()
            reports = q.order_by(Report.created_at.desc(), Report.id.desc()).offset(
                (page - 1) * per_page
            ).limit(per_page).all()
            return total, reports
        finally:
            db.close()

    def list_items(
        self,
        report_id: int,
        page: int = 1,
        per_page: int = 50,
        status: str = None,
        delivery_status: str = None,
        search: str = None,
    ) -> tuple[int, list[ReportItem]]:
        """アイテム一覧 (生成ステータス・配信ステータス・名前/電話番号検索で絞り込み)"""
        db = self.session_factory()
        try:
            get_report_or_404(db, report_id)
            q = db.query(ReportItem).filter(ReportItem.report_id == report_id)

            if status and status.lower() != "all":
                q = q.filter(ReportItem.status == status.upper())

            if delivery_status and delivery_status.lower() != "all":
                key = delivery_status.upper()
                group = DELIVERY_FILTER_GROUPS.get(key)
                if key == "PENDING":
                    q = q.filter(or_(ReportItem.delivery_status.in_(group), ReportItem.delivery_status.is_(None)))
                elif group:
                    q = q.filter(ReportItem.delivery_status.in_(group))
                else:
                    q = q.filter(ReportItem.delivery_status == key)

            if search:
                pattern = f"%{search.strip()}%"
                q = q.filter(or_(ReportItem.name.ilike(pattern), ReportItem.phone.ilike(pattern)))

            total = q.count()
            items = q.order_by(ReportItem.row_number, ReportItem.id).offset(
                (page - 1) * per_page
            ).limit(per_page).all()
            return total, items
        finally:
            db.close()

    def get_item(self, report_id: int, item_id: int) -> ReportItem:
        db = self.session_factory()
        try:
            return get_item_or_404(db, report_id, item_id)
        finally:
            db.close()

    def get_summary(self, report_id: int) -> dict:
        """アイテム状態から都度集計したサマリー"""
        db = self.session_factory()
        try:
            report = get_report_or_404(db, report_id)
            gen = generation_counts(db, report_id)
            delivery = delivery_counts(db, report_id)
            total = db.query(func.count(ReportItem.id)).filter(ReportItem.report_id == report_id).scalar()
            excluded = db.query(func.count(ReportItem.id)).filter(
                ReportItem.report_id == report_id,
                ReportItem.excluded == True,
            ).scalar()
            return {
                "report_id": report.id,
                "name": report.name,
                "status": report.status,
                "target_language": report.target_language,
                "total_records": total,
                "excluded": excluded,
                "pending": gen[GEN_PENDING],
                "processing": gen[GEN_PROCESSING],
                "done": gen[GEN_DONE],
                "failed": gen[GEN_FAILED],
                "processed_records": gen[GEN_DONE] + gen[GEN_FAILED],
                "delivery": {(k or "NONE"): v for k, v in delivery.items()},
                "delivery_sent_count": sum(delivery.get(s, 0) for s in DELIVERY_ACCEPTED_STATUSES),
                "delivery_failed_count": sum(delivery.get(s, 0) for s in DELIVERY_FAILED_STATUSES),
                "created_at": report.created_at,
                "completed_at": report.completed_at,
            }
        finally:
            db.close()

    def refresh_status(self, report_id: int) -> Report:
        db = self.session_factory()
        try:
            return refresh_status(db, report_id)
        finally:
            db.close()

    # --- オペレーター操作 ---

    def toggle_exclude(self, report_id: int, item_id: int) -> ReportItem:
        db = self.session_factory()
        try:
            item = get_item_or_404(db, report_id, item_id)
            item.excluded = not item.excluded
            db.commit()
            logger.info(f"除外切替: item_id={item_id}, excluded={item.excluded}")
            refresh_status(db, report_id)
            return item
        finally:
            db.close()

    def delete_item_artifact(self, report_id: int, item_id: int) -> ReportItem:
        """成果物を削除してアイテムを PENDING に戻す (配信状態は変更しない)"""
        db = self.session_factory()
        try:
            item = get_item_or_404(db, report_id, item_id)
            self._delete_cached(report_id, item.id)
            reset_generation(item)
            db.commit()
            refresh_status(db, report_id)
            return item
        finally:
            db.close()

    def delete_all_artifacts(self, report_id: int) -> int:
        """全アイテムの成果物を削除し、レポートを PENDING・件数ゼロに戻す"""
        db = self.session_factory()
        try:
            report = get_report_or_404(db, report_id)
            items = db.query(ReportItem).filter(ReportItem.report_id == report_id).all()
            for item in items:
                self._delete_cached(report_id, item.id)
                reset_generation(item)
            report.status = REPORT_PENDING
            report.processed_records = 0
            report.success_count = 0
            report.failed_count = 0
            report.completed_at = None
            db.commit()
            logger.info(f"全成果物削除: report_id={report_id}, {len(items)}件")
            return len(items)
        finally:
            db.close()

    def update_delivery_template(self, report_id: int, template: Optional[str]) -> Report:
        if template:
            _warn_unknown_tokens("delivery", template, DELIVERY_TOKENS)
        db = self.session_factory()
        try:
            report = get_report_or_404(db, report_id)
            report.delivery_template = template or None
            db.commit()
            return report
        finally:
            db.close()

    def delete_report(self, report_id: int):
        """レポートとアイテムを削除 (キャッシュファイルも削除)"""
        db = self.session_factory()
        try:
            report = get_report_or_404(db, report_id)
            item_ids = [row.id for row in db.query(ReportItem.id).filter(ReportItem.report_id == report_id).all()]
            for item_id in item_ids:
                self._delete_cached(report_id, item_id)
            db.query(ReportItem).filter(ReportItem.report_id == report_id).delete(synchronize_session=False)
            db.delete(report)
            db.commit()
            logger.info(f"レポート削除: report_id={report_id}, アイテム={len(item_ids)}件")
        finally:
            db.close()

    # --- 生成 ---

    def generation_running(self, report_id: int) -> bool:
        return self.locks is not None and self.locks.is_held(generation_lock_key(report_id))

    def _generation_scope(self, report_id: int):
        if self.locks is None:
            return nullcontext()
        return self.locks.hold(generation_lock_key(report_id))

    def start_generation(self, report_id: int) -> dict:
        """生成投入。同じレポートの投入が実行中なら ConcurrencyConflict"""
        with self._generation_scope(report_id):
            result = self.generation_pool.generate_report(report_id)
        self.refresh_status(report_id)
        return result

    def regenerate_item(self, report_id: int, item_id: int) -> ReportItem:
        """1件だけ再生成。同じレポートの投入が実行中なら ConcurrencyConflict"""
        with self._generation_scope(report_id):
            self._delete_cached(report_id, item_id)
            self.generation_pool.regenerate_item(report_id, item_id)
        self.refresh_status(report_id)
        return self.get_item(report_id, item_id)

    def retry_failed(self, report_id: int) -> dict:
        """生成失敗アイテムを PENDING に戻して再投入"""
        db = self.session_factory()
        try:
            get_report_or_404(db, report_id)
            reset = db.execute(
                update(ReportItem)
                .where(
                    ReportItem.report_id == report_id,
                    ReportItem.excluded == False,
                    ReportItem.status == GEN_FAILED,
                )
                .values(
                    status=GEN_PENDING,
                    provider_job_id=None,
                    secondary_job_id=None,
                    primary_result_url=None,
                    artifact_url=None,
                    error_message=None,
                )
                .execution_options(synchronize_session=False)
            ).rowcount
            db.commit()
        finally:
            db.close()

        logger.info(f"生成失敗リトライ: report_id={report_id}, {reset}件")
        if reset == 0:
            return {"reset": 0, "submitted": 0, "failed": 0}
        result = self.start_generation(report_id)
        return {"reset": reset, "submitted": result["submitted"], "failed": result["failed"]}

    def check_status(self, report_id: int) -> dict:
        return self.reconciler.check_report(report_id)

    # --- 配信 ---

    def trigger_blast(self, report_id: int) -> Optional[dict]:
        return self.blast.run_blast(report_id)

    def retry_failed_delivery(self, report_id: int) -> dict:
        return self.blast.retry_failed_delivery(report_id)

    def resend_item(self, report_id: int, item_id: int) -> ReportItem:
        return self.blast.resend_item(report_id, item_id)

    def sync_delivery_status(self, report_id: int) -> dict:
        return self.blast.sync_delivery_status(report_id)

    def _delete_cached(self, report_id: int, item_id: int):
        if self.cache is None:
            return
        try:
            self.cache.delete(make_artifact_token(report_id, item_id))
        except OSError as e:
            logger.warning(f"キャッシュ削除失敗: report_id={report_id}, item_id={item_id} - {e}")


def _warn_unknown_tokens(kind: str, template: str, known: set):
    unknown = [t for t in find_tokens(template) if t not in known]
    if unknown:
        logger.warning(f"テンプレート ({kind}) に未定義のトークン: {', '.join(':' + t for t in unknown)}")
