# models/package_request.py
"""
PackageRequest model - a purchase waiting for admin approval.

Status lifecycle: pending -> approved | rejected (both terminal).
The transition is done with a conditional UPDATE on status='pending',
see PackageApprovalService.
"""
from sqlalchemy import Column, Integer, String, Text, DateTime, ForeignKey
from sqlalchemy.orm import relationship

from models.base import Base, AuditMixin

STATUS_PENDING = "pending"
STATUS_APPROVED = "approved"
STATUS_REJECTED = "rejected"

REQUEST_STATUSES = (STATUS_PENDING, STATUS_APPROVED, STATUS_REJECTED)


class PackageRequest(Base, AuditMixin):
    __tablename__ = 'package_requests'

    requestID = Column(Integer, primary_key=True, autoincrement=True)

    # No FK on userID: accounts can be deleted by admins, leaving orphan requests
    userID = Column(Integer, nullable=False, index=True)
    packageID = Column(Integer, ForeignKey('packages.packageID'), nullable=False)

    status = Column(String, nullable=False, default=STATUS_PENDING, index=True)
    transactionId = Column(String, nullable=True)
    adminNotes = Column(Text, nullable=True)
    processedAt = Column(DateTime, nullable=True)

    # Relationships
    package = relationship('Package')

    def __repr__(self):
        return f"<PackageRequest(requestID={self.requestID}, userID={self.userID}, status={self.status})>"
