"""
Postgres-backed pipeline run row — the single coordination point between
stage invocations, the reaper, retries and cancellation.
"""
from sqlalchemy import Column, Text, Integer, DateTime, JSON
from sqlalchemy.sql import func

from app.database import Base


class DbRun(Base):
    __tablename__ = 'pipeline_runs'

    id = Column(Text, primary_key=True)
    niche = Column(Text, nullable=False)
    city = Column(Text, nullable=False)
    status = Column(Text, nullable=False, default='running', index=True)
    stage = Column(Text, default='searching')
    config = Column(JSON, default=dict)
    search_results = Column(JSON, nullable=True)
    total_leads = Column(Integer, default=0)
    analyzed = Column(Integer, default=0)
    sites_generated = Column(Integer, default=0)
    messages_sent = Column(Integer, default=0)
    errors = Column(JSON, default=list)
    version = Column(Integer, nullable=False, default=1)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now())
    completed_at = Column(DateTime(timezone=True), nullable=True)
