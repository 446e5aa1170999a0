# 全モデルをインポート (Alembic autogenerate用)
from mediablast.models.report import Report
from mediablast.models.report_item import ReportItem

__all__ = [
    "Report",
    "ReportItem",
]
