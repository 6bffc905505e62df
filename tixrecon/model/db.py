from sqlalchemy.orm import declarative_base
from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    Float,
    Integer,
    String,
    Text,
)


Base = declarative_base()


# ----------------------------
# ORM models
# ----------------------------
class TransactionRow(Base):
    __tablename__ = "transactions"
    id = Column(Integer, primary_key=True, autoincrement=True)
    order_id = Column(String, nullable=False, unique=True)
    category_id = Column(String, nullable=False)
    quantity = Column(Integer, nullable=False)
    amount = Column(Integer, nullable=False)  # minor units
    currency = Column(String, nullable=False, default="idr")
    customer_name = Column(String, nullable=False, default="")
    customer_email = Column(String, nullable=False)
    customer_phone = Column(String, nullable=False, default="")

    # pending | paid | expired | failed | refunded
    status = Column(String, nullable=False, default="pending", index=True)
    created_at = Column(Float, nullable=False, index=True)
    updated_at = Column(Float, nullable=False)
    paid_at = Column(Float, nullable=True)
    expired_at = Column(Float, nullable=True)

    # last gateway view
    gateway_status = Column(String, nullable=True)
    fraud_status = Column(String, nullable=True)
    payment_type = Column(String, nullable=True)

    # side-effect claims, flipped in the same DB tx as the effect itself
    stock_committed = Column(Boolean, nullable=False, default=False)
    tickets_issued = Column(Boolean, nullable=False, default=False)

    __table_args__ = (
        CheckConstraint("quantity > 0", name="ck_transactions_quantity"),
    )


class StockRow(Base):
    __tablename__ = "ticket_stocks"
    category_id = Column(String, primary_key=True)
    price = Column(Integer, nullable=False, default=0)  # minor units
    total_stock = Column(Integer, nullable=False)
    remaining_stock = Column(Integer, nullable=False)
    updated_at = Column(Float, nullable=False)

    __table_args__ = (
        CheckConstraint(
            "remaining_stock >= 0 AND remaining_stock <= total_stock",
            name="ck_ticket_stocks_bounds",
        ),
    )


class TicketRow(Base):
    __tablename__ = "tickets"
    id = Column(Integer, primary_key=True, autoincrement=True)
    code = Column(String, nullable=False, unique=True)
    transaction_id = Column(Integer, nullable=False, index=True)
    # active | used | cancelled
    status = Column(String, nullable=False, default="active")
    created_at = Column(Float, nullable=False)
    activated_at = Column(Float, nullable=True)
    cancelled_at = Column(Float, nullable=True)


class AuditRow(Base):
    __tablename__ = "audit_logs"
    id = Column(Integer, primary_key=True, autoincrement=True)
    actor = Column(String, nullable=False)
    # webhook | recheck | sweep | override | repair
    action = Column(String, nullable=False)
    transaction_id = Column(Integer, nullable=False, index=True)
    order_id = Column(String, nullable=False, index=True)
    old_status = Column(String, nullable=True)
    new_status = Column(String, nullable=True)
    reason = Column(Text, nullable=False)
    # "metadata" is reserved on declarative classes
    meta = Column("metadata", Text, nullable=True)
    created_at = Column(Float, nullable=False)


class WebhookReceiptRow(Base):
    __tablename__ = "webhook_receipts"
    id = Column(Integer, primary_key=True, autoincrement=True)
    order_id = Column(String, nullable=True, index=True)
    payload = Column(Text, nullable=False)
    signature_valid = Column(Boolean, nullable=False)
    processed = Column(Boolean, nullable=False, default=False)
    disposition = Column(String, nullable=True)
    created_at = Column(Float, nullable=False)
