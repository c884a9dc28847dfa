"""Payment webhook event model for idempotency."""
from sqlalchemy import Column, String, DateTime, JSON
from sqlalchemy.sql import func
from storefront.database import Base, IdType


class PaymentWebhookEvent(Base):
    """Log of payment provider webhook events, de-duplicated by event id."""
    __tablename__ = 'payment_webhook_event'

    id = Column(IdType, primary_key=True, autoincrement=True)
    event_type = Column(String(50), nullable=False, index=True)
    provider_event_id = Column(String(100))
    order_ref = Column(String(100), index=True)
    payload_json = Column(JSON, nullable=False)
    dedupe_key = Column(String(64), nullable=False, unique=True)
    received_at = Column(DateTime, nullable=False, server_default=func.now(), index=True)
    processed_at = Column(DateTime)
    status = Column(String(20), nullable=False, default='RECEIVED', index=True)

    def __repr__(self):
        return f"<PaymentWebhookEvent(type='{self.event_type}', order_ref='{self.order_ref}', status='{self.status}')>"

    @property
    def is_processed(self):
        """Check if event has been processed."""
        return self.status == 'PROCESSED'
