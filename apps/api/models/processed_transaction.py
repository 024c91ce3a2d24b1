"""ProcessedTransaction model: replay guard for consumable purchases."""

from sqlalchemy import Column, DateTime, ForeignKey, Integer, String

from database import Base


class ProcessedTransaction(Base):
    """One row per applied top-up; the primary key rejects a second application."""

    __tablename__ = "processed_transactions"

    transaction_id = Column(String, primary_key=True)
    product_id = Column(String, nullable=False)
    account_id = Column(String, ForeignKey("accounts.id"), nullable=False, index=True)
    credits_granted = Column(Integer, nullable=False)
    processed_at = Column(DateTime(timezone=True), nullable=False)
