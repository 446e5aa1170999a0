"""create reports and report_items

Revision ID: a1c0f3e9b201
Revises:
Create Date: 2026-10-01 10:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = 'a1c0f3e9b201'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        'reports',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('name', sa.String(length=255), nullable=False, comment='レポート名'),
        sa.Column('message_template', sa.Text(), nullable=False, comment='生成スクリプトテンプレート (:name 等)'),
        sa.Column('delivery_template', sa.Text(), nullable=True, comment='配信メッセージテンプレート (:name, :link 等)'),
        sa.Column('target_language', sa.String(length=50), nullable=True, comment='二次変換 (翻訳) 先言語。NULLなら一次生成のみ'),
        sa.Column('status', sa.String(length=20), nullable=False, comment='PENDING/PROCESSING/COMPLETED/FAILED'),
        sa.Column('total_records', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('processed_records', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('success_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('failed_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('delivery_sent_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('delivery_failed_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('completed_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), server_default=sa.text('CURRENT_TIMESTAMP'), nullable=False),
        sa.Column('updated_at', sa.DateTime(), server_default=sa.text('CURRENT_TIMESTAMP'), nullable=False),
        sa.PrimaryKeyConstraint('id'),
    )

    op.create_table(
        'report_items',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('report_id', sa.Integer(), nullable=False),
        sa.Column('row_number', sa.Integer(), nullable=False),
        sa.Column('name', sa.String(length=255), nullable=False),
        sa.Column('phone', sa.String(length=50), nullable=False),
        sa.Column('avatar', sa.String(length=255), nullable=True, comment='生成プロバイダのプレゼンター名/ID'),
        sa.Column('personalized_message', sa.Text(), nullable=True, comment='宛先別スクリプト'),
        sa.Column('excluded', sa.Boolean(), nullable=False, server_default='0', comment='生成・配信の対象外'),
        sa.Column('status', sa.String(length=20), nullable=False, comment='PENDING/PROCESSING/DONE/FAILED'),
        sa.Column('provider_job_id', sa.String(length=255), nullable=True, comment='一次生成ジョブID'),
        sa.Column('primary_result_url', sa.Text(), nullable=True, comment='一次生成の結果URL (二次変換の入力)'),
        sa.Column('secondary_job_id', sa.String(length=255), nullable=True, comment='二次変換ジョブID'),
        sa.Column('artifact_url', sa.Text(), nullable=True, comment='最終成果物URL'),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('generated_at', sa.DateTime(), nullable=True),
        sa.Column('delivery_status', sa.String(length=20), nullable=True),
        sa.Column('delivery_message_id', sa.String(length=255), nullable=True),
        sa.Column('delivery_error', sa.Text(), nullable=True),
        sa.Column('delivery_batch_id', sa.String(length=64), nullable=True, comment='クレームしたブラスト実行ID'),
        sa.Column('delivery_claimed_at', sa.DateTime(), nullable=True),
        sa.Column('delivered_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), server_default=sa.text('CURRENT_TIMESTAMP'), nullable=False),
        sa.Column('updated_at', sa.DateTime(), server_default=sa.text('CURRENT_TIMESTAMP'), nullable=False),
        sa.ForeignKeyConstraint(['report_id'], ['reports.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_report_items_report_id', 'report_items', ['report_id'])
    op.create_index('ix_report_items_status', 'report_items', ['status'])
    op.create_index('ix_report_items_delivery_status', 'report_items', ['delivery_status'])
    op.create_index('ix_report_items_delivery_batch_id', 'report_items', ['delivery_batch_id'])


def downgrade() -> None:
    op.drop_index('ix_report_items_delivery_batch_id', table_name='report_items')
    op.drop_index('ix_report_items_delivery_status', table_name='report_items')
    op.drop_index('ix_report_items_status', table_name='report_items')
    op.drop_index('ix_report_items_report_id', table_name='report_items')
    op.drop_table('report_items')
    op.drop_table('reports')
