# models/package.py
"""
Package model - a purchasable tier with fixed commission constants.
"""
from decimal import Decimal

from sqlalchemy import Column, Integer, String, DECIMAL

from models.base import Base, AuditMixin


class Package(Base, AuditMixin):
    __tablename__ = 'packages'

    packageID = Column(Integer, primary_key=True, autoincrement=True)
    package_name = Column(String, nullable=False)

    package_amount = Column(DECIMAL(18, 2), nullable=False, default=Decimal("0"))
    package_direct_commission = Column(DECIMAL(18, 2), nullable=False, default=Decimal("0"))
    package_indirect_commission = Column(DECIMAL(18, 2), nullable=False, default=Decimal("0"))
    package_points = Column(Integer, nullable=False, default=0)

    def __repr__(self):
        return f"<Package(packageID={self.packageID}, name={self.package_name}, amount={self.package_amount})>"
