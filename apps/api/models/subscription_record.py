"""SubscriptionRecord model for renewal tracking."""

from sqlalchemy import Column, DateTime, ForeignKey, String
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from database import Base


class SubscriptionRecord(Base):
    """Local mirror of an account's subscription, reconciled against the provider."""

    __tablename__ = "subscriptions"

    account_id = Column(String, ForeignKey("accounts.id"), primary_key=True)
    product_id = Column(String, nullable=False)
    plan = Column(String, nullable=False)
    purchase_date = Column(DateTime(timezone=True), nullable=True)
    expires_date = Column(DateTime(timezone=True), nullable=False, index=True)
    original_transaction_id = Column(String, nullable=True)
    last_credit_grant = Column(DateTime(timezone=True), nullable=True)
    status = Column(String, nullable=False, default="active", index=True)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    account = relationship("Account", back_populates="subscription")
