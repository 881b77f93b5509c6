# models/earning.py
"""
Earning model - append-only ledger of everything an approval paid out.

Rows are never updated or deleted (enforced by models.listeners).
Monetary rows (direct/indirect commission) reconcile with the deltas
applied to User.balance and User.totalEarnings.
"""
from sqlalchemy import Column, Integer, String, DECIMAL, DateTime

from models.base import Base, _get_current_time

TYPE_DIRECT_COMMISSION = "direct_commission"
TYPE_INDIRECT_COMMISSION = "indirect_commission"
TYPE_POINTS = "points"

EARNING_TYPES = (TYPE_DIRECT_COMMISSION, TYPE_INDIRECT_COMMISSION, TYPE_POINTS)
MONETARY_TYPES = (TYPE_DIRECT_COMMISSION, TYPE_INDIRECT_COMMISSION)


class Earning(Base):
    __tablename__ = 'earnings'

    earningID = Column(Integer, primary_key=True, autoincrement=True)

    # Recipient; no FK so the ledger survives account deletion
    userID = Column(Integer, nullable=False, index=True)
    packageRequestID = Column(Integer, nullable=False, index=True)

    amount = Column(DECIMAL(18, 2), nullable=False)
    type = Column(String, nullable=False)
    description = Column(String, nullable=True)

    createdAt = Column(DateTime, default=_get_current_time)

    def __repr__(self):
        return f"<Earning(earningID={self.earningID}, userID={self.userID}, type={self.type}, amount={self.amount})>"
