"""
Lead model — one row per unique business, deduplicated by place_id.

This is the canonical CRM record; pipeline runs reference it, never copy it.
"""
from sqlalchemy import Column, Integer, Float, Text, DateTime, JSON, UniqueConstraint
from sqlalchemy.sql import func

from app.database import Base


class Lead(Base):
    __tablename__ = 'leads'

    id = Column(Integer, primary_key=True, autoincrement=True)
    place_id = Column(Text, nullable=False)   # Google Places id
    business_name = Column(Text, default='')
    address = Column(Text, default='')
    phone = Column(Text, default='')
    website = Column(Text, default='')
    rating = Column(Float, nullable=True)
    category = Column(Text, nullable=True)
    photo_url = Column(Text, nullable=True)
    niche = Column(Text, default='')
    city = Column(Text, default='')
    status = Column(Text, nullable=False, default='new')
    score = Column(Integer, nullable=True)
    score_summary = Column(Text, nullable=True)
    score_details = Column(JSON, nullable=True)
    generated_site_url = Column(Text, nullable=True)
    last_contacted_at = Column(DateTime(timezone=True), nullable=True)
    first_seen_at = Column(DateTime(timezone=True), server_default=func.now())

    __table_args__ = (
        UniqueConstraint('place_id', name='uq_lead_place_id'),
    )
