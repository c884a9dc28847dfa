"""Order status history model."""
from sqlalchemy import Column, BigInteger, String, DateTime, ForeignKey
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from storefront.database import Base, IdType


class OrderStatusHistory(Base):
    """Audit trail of order status transitions."""

    __tablename__ = 'order_status_history'

    id = Column(IdType, primary_key=True, autoincrement=True)
    order_id = Column(BigInteger, ForeignKey('customer_order.id', ondelete='CASCADE'), nullable=False, index=True)
    from_status = Column(String(20))
    to_status = Column(String(20), nullable=False)
    note = Column(String(500))
    created_at = Column(DateTime, nullable=False, server_default=func.now())

    order = relationship('Order', back_populates='status_history')

    def __repr__(self):
        return f"<OrderStatusHistory(order_id={self.order_id}, {self.from_status}->{self.to_status})>"
