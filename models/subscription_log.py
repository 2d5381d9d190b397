from sqlalchemy import Column, Integer, String, ForeignKey, DateTime, func
from db.init import Base


class SubscriptionLog(Base):
    __tablename__ = "subscription_logs"

    id = Column(Integer, primary_key=True, index=True)
    clinic_id = Column(String(64), ForeignKey("clinics.id"), nullable=False, index=True)
    subscription_id = Column(String(255), nullable=True)
    action = Column(String(50), nullable=False)  # "CREATE", "CANCEL", "PAUSE", "SYNC"
    detail = Column(String(255), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
