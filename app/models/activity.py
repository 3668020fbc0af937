"""
Audit trail models — lead activity events and outbound messages.
"""
from sqlalchemy import Column, Integer, Text, DateTime, ForeignKey
from sqlalchemy.sql import func

from app.database import Base


class LeadActivity(Base):
    __tablename__ = 'lead_activity'

    id = Column(Integer, primary_key=True, autoincrement=True)
    lead_id = Column(Integer, ForeignKey('leads.id'), nullable=False, index=True)
    action = Column(Text, nullable=False)
    detail = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())


class OutboundMessage(Base):
    __tablename__ = 'messages'

    id = Column(Integer, primary_key=True, autoincrement=True)
    lead_id = Column(Integer, ForeignKey('leads.id'), nullable=False, index=True)
    channel = Column(Text, nullable=False, default='whatsapp')
    message_body = Column(Text, nullable=False)
    template_used = Column(Text, nullable=True)
    sent_at = Column(DateTime(timezone=True), server_default=func.now())
