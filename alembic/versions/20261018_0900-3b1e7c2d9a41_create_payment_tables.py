"""create_payment_tables

Revision ID: 3b1e7c2d9a41
Revises:
Create Date: 2026-10-18 09:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = '3b1e7c2d9a41'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


# 与 infrastructure.models.payment.ACTIVE_REFUND_PREDICATE 保持一致
ACTIVE_REFUND_PREDICATE = "status IN ('PENDING', 'PROCESSING', 'MANUAL_REVIEW', 'APPROVED')"


def upgrade() -> None:
    op.create_table(
        'users',
        sa.Column('id', sa.String(length=64), nullable=False),
        sa.Column('email', sa.String(length=100), nullable=False, comment='邮箱'),
        sa.Column('full_name', sa.String(length=100), nullable=True, comment='全名'),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, comment='创建时间'),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_users_email', 'users', ['email'], unique=True)

    op.create_table(
        'applications',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('user_id', sa.String(length=64), nullable=False, comment='用户ID'),
        sa.Column('course_id', sa.String(length=64), nullable=False, comment='课程ID'),
        sa.Column('status', sa.String(length=20), nullable=False, comment='申请状态: PENDING/PAID/UNDER_REVIEW/APPROVED/REJECTED'),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, comment='创建时间'),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, comment='更新时间'),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_applications_id', 'applications', ['id'])
    op.create_index('ix_applications_user_course', 'applications', ['user_id', 'course_id'])

    op.create_table(
        'enrollments',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('user_id', sa.String(length=64), nullable=False, comment='用户ID'),
        sa.Column('course_id', sa.String(length=64), nullable=False, comment='课程ID'),
        sa.Column('status', sa.String(length=20), nullable=False, comment='选课状态: ACTIVE/SUSPENDED/COMPLETED'),
        sa.Column('enrolled_at', sa.DateTime(timezone=True), nullable=False, comment='选课时间'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('user_id', 'course_id', name='uq_enrollments_user_course'),
    )
    op.create_index('ix_enrollments_id', 'enrollments', ['id'])

    op.create_table(
        'payments',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('reference', sa.String(length=100), nullable=False, comment='支付 reference（幂等键）'),
        sa.Column('type', sa.String(length=30), nullable=False, comment='支付类型: APPLICATION_FEE/TUITION/INSTALLMENT'),
        sa.Column('user_id', sa.String(length=64), nullable=False, comment='用户ID'),
        sa.Column('course_id', sa.String(length=64), nullable=True, comment='课程ID'),
        sa.Column('application_id', sa.String(length=64), nullable=True, comment='申请ID'),
        sa.Column('enrollment_id', sa.String(length=64), nullable=True, comment='选课ID'),
        sa.Column('installment_number', sa.Integer(), nullable=True, comment='分期序号，0 为报名费'),
        sa.Column('due_date', sa.DateTime(timezone=True), nullable=True, comment='到期日'),
        sa.Column('amount', sa.BigInteger(), nullable=False, comment='支付金额（最小货币单位）'),
        sa.Column('currency', sa.String(length=3), nullable=False, comment='货币代码 ISO-4217'),
        sa.Column('status', sa.String(length=20), nullable=False, comment='支付状态: PENDING/PAID/FAILED/REFUNDED'),
        sa.Column('provider_transaction_id', sa.String(length=100), nullable=True, comment='渠道交易ID'),
        sa.Column('provider_reference', sa.String(length=100), nullable=True, comment='渠道回传的 reference'),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, comment='创建时间'),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, comment='更新时间'),
        sa.Column('paid_at', sa.DateTime(timezone=True), nullable=True, comment='支付完成时间'),
        sa.Column('dispatched_at', sa.DateTime(timezone=True), nullable=True, comment='后续动作完成时间'),
        sa.Column('failure_reason', sa.Text(), nullable=True, comment='失败原因'),
        sa.Column('metadata', sa.JSON(), nullable=True, comment='扩展元数据'),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_payments_id', 'payments', ['id'])
    op.create_index('ix_payments_reference', 'payments', ['reference'], unique=True)
    op.create_index('ix_payments_user_id', 'payments', ['user_id'])
    op.create_index('ix_payments_status', 'payments', ['status'])
    op.create_index('ix_payments_created_at', 'payments', ['created_at'])
    op.create_index('ix_payments_provider_transaction_id', 'payments', ['provider_transaction_id'])
    op.create_index('ix_payments_user_status', 'payments', ['user_id', 'status'])
    op.create_index('ix_payments_group', 'payments', ['user_id', 'course_id', 'type'])
    op.create_index('ix_payments_status_dispatched', 'payments', ['status', 'dispatched_at'])

    op.create_table(
        'refunds',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('payment_id', sa.Integer(), nullable=False, comment='关联的支付ID'),
        sa.Column('provider_refund_reference', sa.String(length=100), nullable=True, comment='渠道退款引用'),
        sa.Column('amount', sa.BigInteger(), nullable=False, comment='退款金额（最小货币单位）'),
        sa.Column('status', sa.String(length=20), nullable=False, comment='退款状态: PENDING/PROCESSING/MANUAL_REVIEW/APPROVED/REJECTED/FAILED/COMPLETED'),
        sa.Column('reason', sa.Text(), nullable=False, comment='退款原因'),
        sa.Column('admin_notes', sa.Text(), nullable=True, comment='管理员备注'),
        sa.Column('rejection_reason', sa.Text(), nullable=True, comment='拒绝原因'),
        sa.Column('failure_reason', sa.Text(), nullable=True, comment='失败原因'),
        sa.Column('requested_by', sa.String(length=64), nullable=True, comment='申请人'),
        sa.Column('processed_by', sa.String(length=64), nullable=True, comment='处理人'),
        sa.Column('requested_at', sa.DateTime(timezone=True), nullable=False, comment='申请时间'),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, comment='更新时间'),
        sa.Column('processed_at', sa.DateTime(timezone=True), nullable=True, comment='处理时间'),
        sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True, comment='退款完成时间'),
        sa.ForeignKeyConstraint(['payment_id'], ['payments.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_refunds_id', 'refunds', ['id'])
    op.create_index('ix_refunds_payment_id', 'refunds', ['payment_id'])
    op.create_index('ix_refunds_provider_refund_reference', 'refunds', ['provider_refund_reference'])
    op.create_index('ix_refunds_status', 'refunds', ['status'])
    op.create_index('ix_refunds_processed_by', 'refunds', ['processed_by'])
    op.create_index('ix_refunds_requested_at', 'refunds', ['requested_at'])
    op.create_index('ix_refunds_payment_status', 'refunds', ['payment_id', 'status'])
    # 同一笔支付同时只允许一条未结束的退款
    op.create_index(
        'uq_refunds_active_payment',
        'refunds',
        ['payment_id'],
        unique=True,
        postgresql_where=sa.text(ACTIVE_REFUND_PREDICATE),
        sqlite_where=sa.text(ACTIVE_REFUND_PREDICATE),
    )


def downgrade() -> None:
    op.drop_index('uq_refunds_active_payment', table_name='refunds')
    op.drop_table('refunds')
    op.drop_table('payments')
    op.drop_table('enrollments')
    op.drop_table('applications')
    op.drop_index('ix_users_email', table_name='users')
    op.drop_table('users')
