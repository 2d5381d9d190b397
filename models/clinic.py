from sqlalchemy import Column, Integer, String, DECIMAL, DateTime, func
from db.init import Base

SUBSCRIPTION_PLANS = ("none", "monthly", "yearly", "premium")
SUBSCRIPTION_STATUSES = ("inactive", "pending", "active", "paused", "cancelled", "expired")


class Clinic(Base):
    __tablename__ = "clinics"

    id = Column(String(64), primary_key=True, index=True)
    name = Column(String(150))
    email = Column(String(150), index=True)

    # Subscription (mirrors the Mercado Pago preapproval)
    subscription_plan = Column(String(20), nullable=False, default="none")
    subscription_status = Column(String(20), nullable=False, default="inactive")
    subscription_expires_at = Column(DateTime(timezone=True), nullable=True)
    mp_subscription_id = Column(String(255), unique=True, nullable=True, index=True)

    last_payment_id = Column(String(255), nullable=True)
    last_payment_date = Column(DateTime(timezone=True), nullable=True)
    last_payment_amount = Column(DECIMAL(10, 2), nullable=True)
    last_rejected_payment_id = Column(String(255), nullable=True)
    last_rejected_payment_date = Column(DateTime(timezone=True), nullable=True)

    cancelled_at = Column(DateTime(timezone=True), nullable=True)
    paused_at = Column(DateTime(timezone=True), nullable=True)
    will_expire_at = Column(DateTime(timezone=True), nullable=True)

    version = Column(Integer, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    __mapper_args__ = {"version_id_col": version}
