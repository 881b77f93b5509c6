# models/user.py
"""
User model - a node of the referral graph.

The parent edge is referredBy (a username string), NOT a foreign key:
it may be NULL (root), point to a missing user (dangling), point to the
user itself or close a cycle. Traversal code must tolerate all of these.
"""
from decimal import Decimal

from sqlalchemy import Column, Integer, String, DECIMAL, DateTime, ForeignKey, CheckConstraint
from sqlalchemy.orm import relationship

from models.base import Base, AuditMixin


class User(Base, AuditMixin):
    __tablename__ = 'users'

    # Primary key
    userID = Column(Integer, primary_key=True, autoincrement=True)

    # Graph edge key (human-chosen, unique)
    username = Column(String, nullable=False, unique=True, index=True)
    fullname = Column(String, nullable=True)

    # Parent pointer by username, no referential integrity
    referredBy = Column(String, nullable=True, index=True)

    # Accumulators - mutated only by the approval orchestrator
    points = Column(Integer, nullable=False, default=0)
    balance = Column(DECIMAL(18, 2), nullable=False, default=Decimal("0"))
    totalEarnings = Column(DECIMAL(18, 2), nullable=False, default=Decimal("0"))

    # Rank and package
    rankID = Column(Integer, ForeignKey('ranks.rankID'), nullable=True)
    currentPackageID = Column(Integer, ForeignKey('packages.packageID'), nullable=True)
    packageExpiryDate = Column(DateTime, nullable=True)

    # Denormalized count of direct children
    referralCount = Column(Integer, nullable=False, default=0)

    # Relationships
    rank = relationship('Rank')
    currentPackage = relationship('Package')

    __table_args__ = (
        CheckConstraint('points >= 0', name='ck_user_points_non_negative'),
    )

    def __repr__(self):
        return f"<User(userID={self.userID}, username={self.username}, referredBy={self.referredBy})>"
