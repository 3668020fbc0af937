"""
PipelineLead model — one row per lead per run.

Tracks how far each lead got inside a single run (pending → … → sent).
"""
from sqlalchemy import Column, Integer, Text, DateTime, ForeignKey, UniqueConstraint
from sqlalchemy.sql import func

from app.database import Base


class PipelineLead(Base):
    __tablename__ = 'pipeline_leads'

    id = Column(Integer, primary_key=True, autoincrement=True)
    run_id = Column(Text, ForeignKey('pipeline_runs.id'), nullable=False, index=True)
    lead_id = Column(Integer, ForeignKey('leads.id'), nullable=True)
    business_name = Column(Text, default='')
    phone = Column(Text, default='')
    status = Column(Text, nullable=False, default='pending')
    score = Column(Integer, nullable=True)
    site_url = Column(Text, nullable=True)
    message = Column(Text, nullable=True)
    error = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    __table_args__ = (
        UniqueConstraint('run_id', 'lead_id', name='uq_pipeline_lead_run_lead'),
    )

    def to_dict(self):
        return {
            'id': self.id,
            'run_id': self.run_id,
            'lead_id': self.lead_id,
            'business_name': self.business_name,
            'phone': self.phone,
            'status': self.status,
            'score': self.score,
            'site_url': self.site_url,
            'message': self.message,
            'error': self.error,
            'created_at': self.created_at.isoformat() if self.created_at else None,
        }
