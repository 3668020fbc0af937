"""
Persistence helpers for canonical leads, pipeline leads and the audit trail.

Called from the stage handlers. Every helper runs in its own session_scope();
errors propagate so the stage can record them against the item or the run.
Rows cross the thread boundary as plain dicts, never as ORM instances.
"""
import logging
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Optional

from sqlalchemy import func

from app.config import CRM_STATUS_CONTACTED, CRM_STATUS_NEW, LEAD_STATUSES
from app.database import session_scope
from app.models.activity import LeadActivity, OutboundMessage
from app.models.lead import Lead
from app.models.lead_run import PipelineLead

logger = logging.getLogger('services.db')

# Columns copied from a search candidate onto a new canonical lead
_LEAD_FIELDS = (
    'place_id', 'business_name', 'address', 'phone', 'website',
    'rating', 'category', 'photo_url',
)


def _lead_to_dict(lead: Lead) -> Dict:
    return {
        'id': lead.id,
        'place_id': lead.place_id,
        'business_name': lead.business_name,
        'address': lead.address,
        'phone': lead.phone,
        'website': lead.website,
        'rating': lead.rating,
        'category': lead.category,
        'photo_url': lead.photo_url,
        'niche': lead.niche,
        'city': lead.city,
        'status': lead.status,
        'score': lead.score,
        'score_summary': lead.score_summary,
        'score_details': lead.score_details or {},
        'generated_site_url': lead.generated_site_url,
        'last_contacted_at': lead.last_contacted_at.isoformat() if lead.last_contacted_at else None,
    }


# ── Canonical leads ──────────────────────────────────────────────────────────

def known_place_ids(place_ids: Iterable[str]) -> set:
    """Return the subset of place_ids that already exist in the leads table."""
    ids = [p for p in place_ids if p]
    if not ids:
        return set()
    with session_scope() as session:
        rows = session.query(Lead.place_id).filter(Lead.place_id.in_(ids)).all()
        return {row[0] for row in rows}


def _insert_ignore(session, rows: List[Dict]):
    """INSERT … ON CONFLICT (place_id) DO NOTHING, per dialect."""
    dialect = session.get_bind().dialect.name
    if dialect == 'postgresql':
        from sqlalchemy.dialects.postgresql import insert
    elif dialect == 'sqlite':
        from sqlalchemy.dialects.sqlite import insert
    else:
        existing = {r[0] for r in session.query(Lead.place_id).filter(
            Lead.place_id.in_([row['place_id'] for row in rows])).all()}
        for row in rows:
            if row['place_id'] not in existing:
                session.add(Lead(**row))
                existing.add(row['place_id'])
        return
    stmt = insert(Lead).values(rows).on_conflict_do_nothing(index_elements=['place_id'])
    session.execute(stmt)


def upsert_leads(candidates: List[Dict], niche: str, city: str) -> List[Dict]:
    """
    Idempotent import of search candidates into the canonical leads table.

    Already-known place ids are left untouched. Returns the canonical rows for
    every candidate, in candidate order.
    """
    rows = []
    seen = set()
    for c in candidates:
        place_id = c.get('place_id')
        if not place_id or place_id in seen:
            continue
        seen.add(place_id)
        row = {k: c.get(k) for k in _LEAD_FIELDS}
        row['business_name'] = row['business_name'] or ''
        row['address'] = row['address'] or ''
        row['phone'] = row['phone'] or ''
        row['website'] = row['website'] or ''
        row['niche'] = niche
        row['city'] = city
        row['status'] = CRM_STATUS_NEW
        rows.append(row)

    if not rows:
        return []

    with session_scope() as session:
        _insert_ignore(session, rows)
        session.flush()
        leads = session.query(Lead).filter(Lead.place_id.in_(list(seen))).all()
        by_place = {lead.place_id: _lead_to_dict(lead) for lead in leads}

    logger.info("Upserted %d candidates (%d rows now known)", len(rows), len(by_place))
    return [by_place[r['place_id']] for r in rows if r['place_id'] in by_place]


def get_lead(lead_id: int) -> Optional[Dict]:
    with session_scope() as session:
        lead = session.get(Lead, lead_id)
        return _lead_to_dict(lead) if lead else None


def get_leads(lead_ids: Iterable[int]) -> Dict[int, Dict]:
    """Batch fetch canonical leads keyed by id."""
    ids = [i for i in lead_ids if i is not None]
    if not ids:
        return {}
    with session_scope() as session:
        leads = session.query(Lead).filter(Lead.id.in_(ids)).all()
        return {lead.id: _lead_to_dict(lead) for lead in leads}


def update_lead(lead_id: int, **fields):
    """Field-level update of a canonical lead."""
    if not fields:
        return
    with session_scope() as session:
        session.query(Lead).filter(Lead.id == lead_id).update(fields, synchronize_session=False)


def mark_lead_contacted(lead_id: int):
    update_lead(lead_id, status=CRM_STATUS_CONTACTED, last_contacted_at=datetime.now(timezone.utc))


# ── Pipeline leads ───────────────────────────────────────────────────────────

def create_pipeline_leads(run_id: str, leads: List[Dict]) -> int:
    """
    Create one pipeline lead per canonical lead not already in the run.

    Leads whose CRM status says they were already contacted start as `skipped`.
    Returns the number of rows created.
    """
    if not leads:
        return 0
    with session_scope() as session:
        existing = {
            row[0] for row in session.query(PipelineLead.lead_id).filter(
                PipelineLead.run_id == run_id).all()
        }
        created = 0
        for lead in leads:
            if lead['id'] in existing:
                continue
            existing.add(lead['id'])
            session.add(PipelineLead(
                run_id=run_id,
                lead_id=lead['id'],
                business_name=lead.get('business_name') or '',
                phone=lead.get('phone') or '',
                status='skipped' if lead.get('status') == CRM_STATUS_CONTACTED else 'pending',
            ))
            created += 1
    return created


def list_pipeline_leads(run_id: str, statuses: Iterable[str] = None) -> List[Dict]:
    """Pipeline leads for a run in creation order, optionally filtered by status."""
    with session_scope() as session:
        query = session.query(PipelineLead).filter(PipelineLead.run_id == run_id)
        if statuses is not None:
            query = query.filter(PipelineLead.status.in_(list(statuses)))
        return [item.to_dict() for item in query.order_by(PipelineLead.id).all()]


def count_pipeline_leads(run_id: str) -> int:
    with session_scope() as session:
        return session.query(func.count(PipelineLead.id)).filter(
            PipelineLead.run_id == run_id).scalar() or 0


def status_counts(run_id: str) -> Dict[str, int]:
    """{status: count} for the run's pipeline leads."""
    with session_scope() as session:
        rows = session.query(PipelineLead.status, func.count(PipelineLead.id)).filter(
            PipelineLead.run_id == run_id).group_by(PipelineLead.status).all()
        return {status: count for status, count in rows}


def update_pipeline_lead(item_id: int, **fields):
    """Field-level update of one pipeline lead."""
    if not fields:
        return
    if 'status' in fields and fields['status'] not in LEAD_STATUSES:
        raise ValueError(f"Unknown pipeline lead status: {fields['status']}")
    with session_scope() as session:
        session.query(PipelineLead).filter(PipelineLead.id == item_id).update(
            fields, synchronize_session=False)


def reset_pipeline_lead_status(run_id: str, from_status: str, to_status: str) -> int:
    """Move every item of a run from one status to another. Returns rows changed."""
    with session_scope() as session:
        return session.query(PipelineLead).filter(
            PipelineLead.run_id == run_id,
            PipelineLead.status == from_status,
        ).update({'status': to_status}, synchronize_session=False)


# In-flight status → last completed status
_RETRY_RESETS = {
    'analyzing': 'pending',
    'generating_site': 'analyzed',
    'generating_message': 'site_generated',
    'sending': 'message_ready',
}


def reset_items_for_retry(run_id: str) -> int:
    """
    Roll every in-flight or errored item of a run back to its last completed state.

    Errored items are inferred from what they already carry: a site URL means
    the site was generated, a score means analysis finished. Clears item
    errors. Returns the number of items changed.
    """
    changed = 0
    with session_scope() as session:
        items = session.query(PipelineLead).filter(
            PipelineLead.run_id == run_id,
            PipelineLead.status.in_(list(_RETRY_RESETS) + ['error']),
        ).all()
        for item in items:
            if item.status == 'error':
                if item.site_url:
                    item.status = 'site_generated'
                elif item.score is not None:
                    item.status = 'analyzed'
                else:
                    item.status = 'pending'
            else:
                item.status = _RETRY_RESETS[item.status]
            item.error = None
            changed += 1
    return changed


# ── Audit trail ──────────────────────────────────────────────────────────────

def record_activity(lead_id: int, action: str, detail: str = None):
    with session_scope() as session:
        session.add(LeadActivity(lead_id=lead_id, action=action, detail=detail))


def record_message(lead_id: int, body: str, template_used: str = None, channel: str = 'whatsapp'):
    """Store one outbound message that was actually delivered to the transport."""
    with session_scope() as session:
        session.add(OutboundMessage(
            lead_id=lead_id,
            channel=channel,
            message_body=body,
            template_used=template_used,
        ))

