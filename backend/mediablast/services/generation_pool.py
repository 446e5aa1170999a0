"""
生成ワーカープール

デプロイ単位で固定サイズ P のスレッドプールを共有し、生成ジョブを外部プロバイダへ投入する。
アイテムごとに独立したDBセッションを使い、1件の例外が他のアイテムを止めることはない。
"""
import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import Callable, Optional

from sqlalchemy import update
from sqlalchemy.orm import Session

from mediablast.core.config import settings
from mediablast.core.database import SessionLocal
from mediablast.core.logging import get_logger
from mediablast.models.report import REPORT_PROCESSING
from mediablast.models.report_item import ReportItem, GEN_PENDING, GEN_PROCESSING, GEN_FAILED
from mediablast.services.generation_provider import GenerationProvider, JobSpec
from mediablast.services.report_state import (
    get_item_or_404, get_report_or_404, now_jst, recompute_progress, reset_generation, truncate_error,
)
from mediablast.services.variable_resolver import build_recipient_fields, resolve_variables

logger = get_logger(__name__)


class GenerationWorkerPool:
    def __init__(
        self,
        provider: GenerationProvider,
        session_factory: Callable[[], Session] = SessionLocal,
        parallelism: int = None,
        progress_interval: int = None,
    ):
        self.provider = provider
        self.session_factory = session_factory
        self.parallelism = parallelism or settings.GENERATION_PARALLELISM
        self.progress_interval = progress_interval or settings.GENERATION_PROGRESS_INTERVAL
        self._executor: Optional[ThreadPoolExecutor] = None
        self._guard = threading.Lock()

    def _get_executor(self) -> ThreadPoolExecutor:
        with self._guard:
            if self._executor is None:
                self._executor = ThreadPoolExecutor(
                    max_workers=self.parallelism, thread_name_prefix="generation"
                )
            return self._executor

    def shutdown(self, wait: bool = True):
        with self._guard:
            if self._executor is not None:
                self._executor.shutdown(wait=wait)
                self._executor = None

    def generate_report(self, report_id: int) -> dict:
        """
        除外されていない PENDING/FAILED のアイテムを全て生成投入する。

        Returns: {"total": 対象件数, "submitted": 投入成功, "failed": 投入失敗, "skipped": 他の実行が処理済み}
        """
        db = self.session_factory()
        try:
            report = get_report_or_404(db, report_id)
            item_ids = [row.id for row in db.query(ReportItem.id).filter(
                ReportItem.report_id == report_id,
                ReportItem.excluded == False,
                ReportItem.status.in_([GEN_PENDING, GEN_FAILED]),
            ).order_by(ReportItem.row_number).all()]
            report.status = REPORT_PROCESSING
            report.completed_at = None
            db.commit()
            template = report.message_template
        finally:
            db.close()

        logger.info(f"生成開始: report_id={report_id}, 対象={len(item_ids)}件, 並列数={self.parallelism}", extra={"report_id": report_id})

        submitted = 0
        failed = 0
        skipped = 0
        completed = 0
        executor = self._get_executor()
        futures = [executor.submit(self._process_item, item_id, template) for item_id in item_ids]
        for future in as_completed(futures):
            try:
                ok = future.result()
            except Exception as e:
                logger.error(f"生成タスク異常終了: report_id={report_id} - {e}")
                ok = False
            if ok is None:
                skipped += 1
            elif ok:
                submitted += 1
            else:
                failed += 1
            completed += 1
            if completed % self.progress_interval == 0:
                self._persist_progress(report_id)
                logger.info(f"生成進捗: report_id={report_id}, {completed}/{len(item_ids)}")

        self._persist_progress(report_id)
        logger.info(f"生成投入完了: report_id={report_id}, 成功={submitted}, 失敗={failed}, スキップ={skipped}", extra={"report_id": report_id})
        return {"total": len(item_ids), "submitted": submitted, "failed": failed, "skipped": skipped}

    def regenerate_item(self, report_id: int, item_id: int) -> bool:
        """1件だけ再生成。generate_report と同じ処理経路を通る"""
        db = self.session_factory()
        try:
            report = get_report_or_404(db, report_id)
            item = get_item_or_404(db, report_id, item_id)
            reset_generation(item)
            report.status = REPORT_PROCESSING
            report.completed_at = None
            db.commit()
            template = report.message_template
        finally:
            db.close()

        ok = self._get_executor().submit(self._process_item, item_id, template).result()
        self._persist_progress(report_id)
        return bool(ok)

    def _claim(self, db: Session, item_id: int) -> bool:
        """PENDING/FAILED のアイテムを条件付き UPDATE で PROCESSING にする。取れなければ False"""
        claimed = db.execute(
            update(ReportItem)
            .where(
                ReportItem.id == item_id,
                ReportItem.excluded == False,
                ReportItem.status.in_([GEN_PENDING, GEN_FAILED]),
            )
            .values(
                status=GEN_PROCESSING,
                provider_job_id=None,
                secondary_job_id=None,
                primary_result_url=None,
                artifact_url=None,
                error_message=None,
                updated_at=now_jst(),
            )
            .execution_options(synchronize_session=False)
        ).rowcount
        db.commit()
        return claimed == 1

    def _process_item(self, item_id: int, template: str) -> Optional[bool]:
        """
        1件投入。例外は外に出さずアイテムに記録する。
        他の実行が先にクレームしたアイテムは投入せず None を返す
        """
        db = self.session_factory()
        try:
            if not self._claim(db, item_id):
                logger.info(f"生成対象外または他の実行が処理中: item_id={item_id}")
                return None
            item = db.query(ReportItem).filter(ReportItem.id == item_id).first()

            script = item.personalized_message or resolve_variables(
                template, build_recipient_fields(item.name, item.phone)
            )
            item.personalized_message = script

            try:
                job_id = self.provider.submit(
                    JobSpec(script=script, avatar=item.avatar, correlation_id=str(item.id))
                )
            except Exception as e:
                item.status = GEN_FAILED
                item.artifact_url = None
                item.error_message = truncate_error(e)
                item.updated_at = now_jst()
                db.commit()
                logger.warning(f"生成投入失敗: item_id={item_id} - {e}")
                return False

            item.provider_job_id = job_id
            item.updated_at = now_jst()
            db.commit()
            logger.debug(f"生成投入: item_id={item_id}, job_id={job_id}")
            return True
        except Exception as e:
            db.rollback()
            logger.error(f"生成アイテム処理エラー: item_id={item_id} - {e}")
            return False
        finally:
            db.close()

    def _persist_progress(self, report_id: int):
        db = self.session_factory()
        try:
            report = get_report_or_404(db, report_id)
            recompute_progress(db, report)
            db.commit()
        except Exception as e:
            db.rollback()
            logger.error(f"進捗更新失敗: report_id={report_id} - {e}")
        finally:
            db.close()
