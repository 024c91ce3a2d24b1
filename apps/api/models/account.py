"""Account model holding plan, balance and grant bookkeeping."""

from sqlalchemy import Boolean, CheckConstraint, Column, DateTime, Integer, String
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from database import Base


PROTECTED_ACCOUNT_FIELDS = (
    "plan",
    "credits",
    "max_credits",
    "last_monthly_grant",
    "used_onboarding_free_generation",
    "created_at",
    "last_request_at",
    "in_flight_count",
)


class Account(Base):
    """Per-user credit account.

    Credit fields stay NULL until the ledger initializes the account; rows
    created through the profile path only carry profile fields.
    """

    __tablename__ = "accounts"
    __table_args__ = (
        CheckConstraint("credits IS NULL OR credits >= 0", name="ck_accounts_credits_non_negative"),
        CheckConstraint("in_flight_count IS NULL OR in_flight_count >= 0", name="ck_accounts_in_flight_non_negative"),
    )

    id = Column(String, primary_key=True)

    # Ledger-owned fields
    plan = Column(String, nullable=True, index=True)
    credits = Column(Integer, nullable=True)
    max_credits = Column(Integer, nullable=True)
    last_monthly_grant = Column(DateTime(timezone=True), nullable=True)
    used_onboarding_free_generation = Column(Boolean, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=True)

    # Rate governor state
    last_request_at = Column(DateTime(timezone=True), nullable=True)
    in_flight_count = Column(Integer, nullable=True)

    # Profile fields (client writable)
    email = Column(String, nullable=True, index=True)
    display_name = Column(String, nullable=True)
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    version = Column(Integer, nullable=False)

    subscription = relationship("SubscriptionRecord", back_populates="account", uselist=False)

    __mapper_args__ = {"version_id_col": version}

    @property
    def is_initialized(self) -> bool:
        return self.plan is not None and self.credits is not None
