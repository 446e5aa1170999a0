"""
パイプライン構成

プロバイダ・チャネル・キャッシュ・ワーカープール・ブラストを設定値から組み立てる。
API/Worker/Scheduler の各プロセスはここからプロセス共通のインスタンスを取得する。
"""
import threading
from dataclasses import dataclass

from mediablast.core.config import settings
from mediablast.core.locks import LockRegistry, get_lock_registry
from mediablast.core.logging import get_logger
from mediablast.services.alert_service import send_error_alert
from mediablast.services.artifact_cache import ArtifactCache, get_artifact_cache
from mediablast.services.blast_coordinator import BlastCoordinator
from mediablast.services.bulk_sender import BulkRetrySender
from mediablast.services.delivery_channel import build_delivery_channel
from mediablast.services.generation_pool import GenerationWorkerPool
from mediablast.services.generation_provider import build_generation_provider, build_translation_provider
from mediablast.services.report_service import ReportService
from mediablast.services.status_reconciler import StatusReconciler

logger = get_logger(__name__)


@dataclass
class Pipeline:
    cache: ArtifactCache
    locks: LockRegistry
    generation_pool: GenerationWorkerPool
    reconciler: StatusReconciler
    blast: BlastCoordinator
    reports: ReportService

    def shutdown(self, wait: bool = True):
        self.generation_pool.shutdown(wait=wait)
        self.reconciler.shutdown(wait=wait)
        self.cache.shutdown(wait=wait)


def build_pipeline() -> Pipeline:
    cache = get_artifact_cache()
    locks = get_lock_registry()
    provider = build_generation_provider()
    translation = build_translation_provider() if settings.TRANSLATION_API_KEY else None

    pool = GenerationWorkerPool(provider)
    reconciler = StatusReconciler(provider, secondary_provider=translation, cache=cache)
    sender = BulkRetrySender(build_delivery_channel())
    blast = BlastCoordinator(sender, locks, alert=send_error_alert)
    reports = ReportService(pool, reconciler, blast, cache=cache, locks=locks)

    logger.info(
        f"パイプライン初期化: 生成並列数={pool.parallelism}, 照会並列数={reconciler.parallelism}, "
        f"翻訳={'有効' if translation else '無効'}"
    )
    return Pipeline(
        cache=cache,
        locks=locks,
        generation_pool=pool,
        reconciler=reconciler,
        blast=blast,
        reports=reports,
    )


_pipeline: Pipeline = None
_pipeline_guard = threading.Lock()


def get_pipeline() -> Pipeline:
    """プロセス共通のパイプライン"""
    global _pipeline
    with _pipeline_guard:
        if _pipeline is None:
            _pipeline = build_pipeline()
        return _pipeline


def shutdown_pipeline(wait: bool = True):
    """初期化済みならスレッドプールを停止"""
    global _pipeline
    with _pipeline_guard:
        if _pipeline is not None:
            _pipeline.shutdown(wait=wait)
            _pipeline = None
