"""User model."""

from sqlalchemy import CheckConstraint, Column, DateTime, Integer, String
from sqlalchemy.sql import func
import uuid

from database import Base


class User(Base):
    """Registered account with its plan tier and credit balance."""

    __tablename__ = "users"
    __table_args__ = (
        CheckConstraint("credit_balance >= 0", name="ck_users_credit_balance_non_negative"),
    )

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    email = Column(String, nullable=True, index=True)
    display_name = Column(String, nullable=True)

    plan_tier = Column(String, nullable=False, default="free", server_default="free")
    credit_balance = Column(Integer, nullable=False, default=0, server_default="0")
    billing_customer_ref = Column(String, nullable=True, index=True)
    subscription_status = Column(String, nullable=True)
    subscription_period_end = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())
