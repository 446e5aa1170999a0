from sqlalchemy import Column, Integer, String, Text, DateTime, func
from mediablast.core.database import Base

# レポートステータス
REPORT_PENDING = "PENDING"
REPORT_PROCESSING = "PROCESSING"
REPORT_COMPLETED = "COMPLETED"
REPORT_FAILED = "FAILED"


class Report(Base):
    """
    一括生成・配信ジョブ

    件数カラムはアイテム状態からの再集計でのみ更新する (インクリメント禁止)。
    """
    __tablename__ = "reports"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(255), nullable=False, comment="レポート名")
    message_template = Column(Text, nullable=False, comment="生成スクリプトテンプレート (:name 等)")
    delivery_template = Column(Text, nullable=True, comment="配信メッセージテンプレート (:name, :link 等)")
    target_language = Column(String(50), nullable=True, comment="二次変換 (翻訳) 先言語。NULLなら一次生成のみ")
    status = Column(String(20), nullable=False, default=REPORT_PENDING, comment="PENDING/PROCESSING/COMPLETED/FAILED")

    total_records = Column(Integer, nullable=False, default=0)
    processed_records = Column(Integer, nullable=False, default=0)
    success_count = Column(Integer, nullable=False, default=0)
    failed_count = Column(Integer, nullable=False, default=0)
    delivery_sent_count = Column(Integer, nullable=False, default=0)
    delivery_failed_count = Column(Integer, nullable=False, default=0)

    completed_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, nullable=False, server_default=func.now())
    updated_at = Column(DateTime, nullable=False, server_default=func.now(), onupdate=func.now())
