from sqlalchemy import Column, String, DECIMAL, ForeignKey, DateTime, Text
from db.init import Base


class SubscriptionTransaction(Base):
    __tablename__ = "subscription_transactions"

    # Mercado Pago payment id; re-delivered events overwrite the same row
    id = Column(String(255), primary_key=True)
    clinic_id = Column(String(64), ForeignKey("clinics.id"), nullable=False, index=True)
    status = Column(String(20), nullable=False)  # approved / rejected / other
    amount = Column(DECIMAL(10, 2))
    currency = Column(String(10))
    payment_method = Column(String(50))
    payer_email = Column(String(150))
    external_reference = Column(String(255))
    preapproval_id = Column(String(255))
    rejection_reason = Column(Text, nullable=True)
    processed_at = Column(DateTime(timezone=True), nullable=False)
