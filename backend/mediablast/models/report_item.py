from sqlalchemy import Column, Integer, String, Text, Boolean, DateTime, ForeignKey, func
from mediablast.core.database import Base

# 生成ステータス
GEN_PENDING = "PENDING"
GEN_PROCESSING = "PROCESSING"
GEN_DONE = "DONE"
GEN_FAILED = "FAILED"

# 配信ステータス (NULL = 未設定)
DELIVERY_PENDING = "PENDING"
DELIVERY_CLAIMED = "CLAIMED"
DELIVERY_QUEUED = "QUEUED"
DELIVERY_SENT = "SENT"
DELIVERY_DELIVERED = "DELIVERED"
DELIVERY_FAILED = "FAILED"
DELIVERY_ERROR = "ERROR"
DELIVERY_DISABLED = "DISABLED"  # プレビュー専用レポート

# チャネルに受理された状態
DELIVERY_ACCEPTED_STATUSES = (DELIVERY_QUEUED, DELIVERY_SENT, DELIVERY_DELIVERED)
DELIVERY_FAILED_STATUSES = (DELIVERY_FAILED, DELIVERY_ERROR)


class ReportItem(Base):
    """
    レポート内の宛先1行

    不変条件: artifact_url が空でない ⇔ status == DONE
    """
    __tablename__ = "report_items"

    id = Column(Integer, primary_key=True, autoincrement=True)
    report_id = Column(Integer, ForeignKey("reports.id", ondelete="CASCADE"), nullable=False, index=True)
    row_number = Column(Integer, nullable=False)
    name = Column(String(255), nullable=False)
    phone = Column(String(50), nullable=False)
    avatar = Column(String(255), nullable=True, comment="生成プロバイダのプレゼンター名/ID")
    personalized_message = Column(Text, nullable=True, comment="宛先別スクリプト")
    excluded = Column(Boolean, nullable=False, default=False, comment="生成・配信の対象外")

    # 生成
    status = Column(String(20), nullable=False, default=GEN_PENDING, index=True, comment="PENDING/PROCESSING/DONE/FAILED")
    provider_job_id = Column(String(255), nullable=True, comment="一次生成ジョブID")
    primary_result_url = Column(Text, nullable=True, comment="一次生成の結果URL (二次変換の入力)")
    secondary_job_id = Column(String(255), nullable=True, comment="二次変換ジョブID")
    artifact_url = Column(Text, nullable=True, comment="最終成果物URL")
    error_message = Column(Text, nullable=True)
    generated_at = Column(DateTime, nullable=True)

    # 配信
    delivery_status = Column(String(20), nullable=True, index=True)
    delivery_message_id = Column(String(255), nullable=True)
    delivery_error = Column(Text, nullable=True)
    delivery_batch_id = Column(String(64), nullable=True, index=True, comment="クレームしたブラスト実行ID")
    delivery_claimed_at = Column(DateTime, nullable=True)
    delivered_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, nullable=False, server_default=func.now())
    updated_at = Column(DateTime, nullable=False, server_default=func.now(), onupdate=func.now())
