"""
Database models for the referral engine.
Import all models here so metadata is complete and for easy access.
"""

# Base and mixins
from models.base import Base, AuditMixin

# Core models
from models.user import User
from models.rank import Rank
from models.package import Package
from models.package_request import PackageRequest
from models.earning import Earning

# Event listeners
from models.listeners import register_all_listeners

__all__ = [
    # Base
    'Base',
    'AuditMixin',

    # Core
    'User',
    'Rank',
    'Package',
    'PackageRequest',
    'Earning',

    # Listeners
    'register_all_listeners',
]
