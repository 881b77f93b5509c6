# models/rank.py
"""
Rank model - one tier of the rank ladder.
Ordering comes from required_points only; titles carry no meaning.
"""
from sqlalchemy import Column, Integer, String, Text

from models.base import Base, AuditMixin


class Rank(Base, AuditMixin):
    __tablename__ = 'ranks'

    rankID = Column(Integer, primary_key=True, autoincrement=True)
    title = Column(String, nullable=False, unique=True)
    required_points = Column(Integer, nullable=False, unique=True)
    details = Column(Text, nullable=True)

    def __repr__(self):
        return f"<Rank(rankID={self.rankID}, title={self.title}, required_points={self.required_points})>"
