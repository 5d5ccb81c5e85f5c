"""
支付与退款数据库模型

表结构只做持久化映射，状态机规则在 domain.payment.entity 中。
金额统一以最小货币单位整数存储（BigInteger），避免浮点误差。
"""
from sqlalchemy import BigInteger, Column, DateTime, ForeignKey, Index, Integer, JSON, String, Text, text
from sqlalchemy.orm import relationship

from .base import Base, UpdatedAtMixin, utc_column


# 未结束的退款状态（部分唯一索引条件，需与 domain.payment.entity.ACTIVE_REFUND_STATUSES 保持一致）
ACTIVE_REFUND_PREDICATE = "status IN ('PENDING', 'PROCESSING', 'MANUAL_REVIEW', 'APPROVED')"


class PaymentModel(UpdatedAtMixin, Base):
    """支付账本：reference 是调用方生成的幂等键，写入后不可修改"""
    __tablename__ = "payments"

    id = Column(Integer, primary_key=True, index=True)
    reference = Column(String(100), unique=True, index=True, nullable=False, comment="支付 reference（幂等键）")

    type = Column(String(30), nullable=False, comment="支付类型: APPLICATION_FEE/TUITION/INSTALLMENT")
    user_id = Column(String(64), nullable=False, index=True, comment="用户ID")
    course_id = Column(String(64), nullable=True, comment="课程ID")
    application_id = Column(String(64), nullable=True, comment="申请ID")
    enrollment_id = Column(String(64), nullable=True, comment="选课ID")
    installment_number = Column(Integer, nullable=True, comment="分期序号，0 为报名费")
    due_date = Column(DateTime(timezone=True), nullable=True, comment="到期日")

    amount = Column(BigInteger, nullable=False, comment="支付金额（最小货币单位）")
    currency = Column(String(3), nullable=False, default="GHS", comment="货币代码 ISO-4217")

    # 只通过条件更新（WHERE status IN ...）修改
    status = Column(String(20), nullable=False, default="PENDING", index=True, comment="支付状态: PENDING/PAID/FAILED/REFUNDED")
    failure_reason = Column(Text, nullable=True, comment="失败原因")

    provider_transaction_id = Column(String(100), nullable=True, index=True, comment="渠道交易ID（退款时使用）")
    provider_reference = Column(String(100), nullable=True, comment="渠道回传的 reference")

    created_at = utc_column("创建时间", index=True)
    paid_at = Column(DateTime(timezone=True), nullable=True, comment="支付完成时间")
    # 为空且 status=PAID 表示后续动作（选课/申请）尚未完成，由 redispatch 补偿
    dispatched_at = Column(DateTime(timezone=True), nullable=True, comment="后续动作完成时间")

    # 属性名避开 DeclarativeBase.metadata
    extra_metadata = Column("metadata", JSON, nullable=True, comment="扩展元数据（含渠道回传）")

    refunds = relationship("RefundModel", back_populates="payment", lazy="select")

    __table_args__ = (
        Index("ix_payments_user_status", "user_id", "status"),
        Index("ix_payments_group", "user_id", "course_id", "type"),
        Index("ix_payments_status_dispatched", "status", "dispatched_at"),
    )

    def __repr__(self):
        return f"<PaymentModel(reference='{self.reference}', type='{self.type}', amount={self.amount}, status='{self.status}')>"


class RefundModel(UpdatedAtMixin, Base):
    """退款记录；同一笔支付同时只能有一条未结束的退款（部分唯一索引保证）"""
    __tablename__ = "refunds"

    id = Column(Integer, primary_key=True, index=True)
    payment_id = Column(
        Integer,
        ForeignKey("payments.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
        comment="关联的支付ID",
    )

    amount = Column(BigInteger, nullable=False, comment="退款金额（最小货币单位）")
    status = Column(
        String(20),
        nullable=False,
        default="PENDING",
        index=True,
        comment="退款状态: PENDING/PROCESSING/MANUAL_REVIEW/APPROVED/REJECTED/FAILED/COMPLETED",
    )
    provider_refund_reference = Column(String(100), nullable=True, index=True, comment="渠道退款引用")

    reason = Column(Text, nullable=False, comment="退款原因")
    admin_notes = Column(Text, nullable=True, comment="管理员备注")
    rejection_reason = Column(Text, nullable=True, comment="拒绝原因")
    failure_reason = Column(Text, nullable=True, comment="失败原因")

    requested_by = Column(String(64), nullable=True, comment="申请人")
    processed_by = Column(String(64), nullable=True, index=True, comment="处理人")

    requested_at = utc_column("申请时间", index=True)
    processed_at = Column(DateTime(timezone=True), nullable=True, comment="处理时间")
    completed_at = Column(DateTime(timezone=True), nullable=True, comment="退款完成时间")

    payment = relationship("PaymentModel", back_populates="refunds")

    __table_args__ = (
        Index("ix_refunds_payment_status", "payment_id", "status"),
        Index(
            "uq_refunds_active_payment",
            "payment_id",
            unique=True,
            postgresql_where=text(ACTIVE_REFUND_PREDICATE),
            sqlite_where=text(ACTIVE_REFUND_PREDICATE),
        ),
    )

    def __repr__(self):
        return f"<RefundModel(id={self.id}, payment_id={self.payment_id}, amount={self.amount}, status='{self.status}')>"
