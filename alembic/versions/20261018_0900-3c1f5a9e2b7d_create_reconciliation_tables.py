"""create_reconciliation_tables

Revision ID: 3c1f5a9e2b7d
Revises:
Create Date: 2026-10-18 09:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = '3c1f5a9e2b7d'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        'reconciliation_transactions',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False, comment='主键ID'),
        sa.Column('reference', sa.String(length=255), nullable=False, comment='业务引用（唯一）'),
        sa.Column('transaction_id', sa.String(length=128), nullable=True, comment='上游交易ID（只写一次）'),
        sa.Column('amount_in_cents', sa.BigInteger(), nullable=False, comment='金额（最小货币单位）'),
        sa.Column('currency', sa.String(length=3), nullable=False, comment='货币代码 ISO-4217'),
        sa.Column('status', sa.String(length=16), nullable=False, comment='PENDING/APPROVED/DECLINED/VOIDED/ERROR'),
        sa.Column('status_source', sa.String(length=16), nullable=False, comment='creation/webhook/polling'),
        sa.Column('version', sa.Integer(), nullable=False, server_default='0', comment='乐观锁版本号'),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, comment='创建时间'),
        sa.Column('last_observed_at', sa.DateTime(timezone=True), nullable=False, comment='最近一次观测时间'),
        sa.Column('metadata', sa.JSON(), nullable=True, comment='附加元数据'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('reference'),
        comment='对账交易账本',
    )
    op.create_index('ix_reconciliation_transactions_transaction_id', 'reconciliation_transactions', ['transaction_id'])
    op.create_index(
        'ix_reconciliation_transactions_status_created',
        'reconciliation_transactions',
        ['status', 'created_at'],
    )

    op.create_table(
        'processed_events',
        sa.Column('event_id', sa.String(length=128), nullable=False, comment='事件ID'),
        sa.Column('event_type', sa.String(length=64), nullable=False, comment='事件类型'),
        sa.Column('transaction_reference', sa.String(length=255), nullable=False, comment='交易引用'),
        sa.Column('transaction_id', sa.String(length=128), nullable=True, comment='上游交易ID'),
        sa.Column('reported_status', sa.String(length=16), nullable=False, comment='上报状态'),
        sa.Column('amount_in_cents', sa.BigInteger(), nullable=True, comment='金额（最小货币单位）'),
        sa.Column('currency', sa.String(length=3), nullable=True, comment='货币代码'),
        sa.Column('payload_digest', sa.String(length=64), nullable=False, comment='data 段规范化 JSON 的 SHA-256'),
        sa.Column('sent_at', sa.String(length=64), nullable=True, comment='上游发送时间（原样保存）'),
        sa.Column('received_at', sa.DateTime(timezone=True), nullable=False, comment='接收时间'),
        sa.PrimaryKeyConstraint('event_id'),
        comment='webhook 事件去重表',
    )
    op.create_index('ix_processed_events_transaction_reference', 'processed_events', ['transaction_reference'])
    op.create_index('ix_processed_events_received_at', 'processed_events', ['received_at'])


def downgrade() -> None:
    op.drop_index('ix_processed_events_received_at', table_name='processed_events')
    op.drop_index('ix_processed_events_transaction_reference', table_name='processed_events')
    op.drop_table('processed_events')
    op.drop_index('ix_reconciliation_transactions_status_created', table_name='reconciliation_transactions')
    op.drop_index('ix_reconciliation_transactions_transaction_id', table_name='reconciliation_transactions')
    op.drop_table('reconciliation_transactions')
