"""共通依存関数: パイプライン取得"""
from mediablast.services.pipeline import Pipeline, get_pipeline
from mediablast.services.report_service import ReportService


def pipeline_dep() -> Pipeline:
    return get_pipeline()


def report_service_dep() -> ReportService:
    return get_pipeline().reports
