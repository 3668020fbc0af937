"""
WhatsApp gateway client — one HTTP session per send stage.

The gateway (a small Baileys sidecar) owns the actual WhatsApp socket; this
module opens a session for an account, waits until the socket reports
`open`, sends text messages to phone JIDs and closes the session.
"""
import logging
import re
import time
from dataclasses import dataclass
from typing import Optional

import requests

from app.config import WHATSAPP_GATEWAY_TOKEN, WHATSAPP_GATEWAY_URL

logger = logging.getLogger('services.whatsapp')

# Known country calling codes, longest first so '595' wins over '59'
COUNTRY_CODES = sorted([
    '54', '55', '56', '57', '58', '52', '51', '53',
    '506', '507', '502', '503', '504', '505',
    '591', '593', '595', '598', '34', '1',
], key=len, reverse=True)

POLL_INTERVAL = 1.0


class WhatsAppError(Exception):
    """Transport-level failure (gateway unreachable, socket closed, logged out)."""


@dataclass
class WhatsAppSession:
    id: str
    account_id: Optional[str] = None


def _headers():
    headers = {'Content-Type': 'application/json'}
    if WHATSAPP_GATEWAY_TOKEN:
        headers['Authorization'] = f"Bearer {WHATSAPP_GATEWAY_TOKEN}"
    return headers


def _request(method: str, path: str, **kwargs):
    from app.services.circuit_breaker import get_breaker
    cb = get_breaker('whatsapp')
    try:
        resp = cb.call(
            requests.request, method, f"{WHATSAPP_GATEWAY_URL}{path}",
            headers=_headers(), timeout=kwargs.pop('timeout', 20), **kwargs,
        )
    except requests.RequestException as e:
        raise WhatsAppError(f"WhatsApp gateway unreachable: {e}") from e
    if not resp.ok:
        raise WhatsAppError(f"WhatsApp gateway {method} {path} → {resp.status_code}: {resp.text[:200]}")
    return resp.json() if resp.content else {}


def format_phone_to_jid(phone: str) -> str:
    """
    Normalize a phone number to a WhatsApp JID.

    Keeps a recognised country code; local numbers (leading 0 or no code) are
    assumed to be Argentine mobiles (549…) and the local '15' prefix is dropped.
    """
    digits = re.sub(r'\D', '', phone or '')
    if not digits:
        raise ValueError("Empty phone number")

    if digits.startswith('0'):
        digits = '549' + digits[1:]

    code = next((c for c in COUNTRY_CODES if digits.startswith(c)), None)
    if code is None:
        digits = '549' + digits
    elif code == '54' and not digits.startswith('549'):
        digits = '549' + digits[2:]

    # 549 + 10-digit national number; anything longer still carries the mobile '15'
    if digits.startswith('549') and len(digits) > 13:
        m = re.match(r'^549(\d{2,4})15(\d{4,8})$', digits)
        if m:
            digits = f"549{m.group(1)}{m.group(2)}"

    return f"{digits}@s.whatsapp.net"


def open_session(account_id: Optional[str] = None) -> WhatsAppSession:
    data = _request('POST', '/sessions', json={'account_id': account_id})
    session_id = data.get('session_id') or data.get('id')
    if not session_id:
        raise WhatsAppError("WhatsApp gateway did not return a session id")
    logger.info("WhatsApp session %s opened (account=%s)", session_id, account_id or 'default')
    return WhatsAppSession(id=str(session_id), account_id=account_id)


def wait_ready(session: WhatsAppSession, timeout: float = 15) -> None:
    """Block until the session's socket is open; WhatsAppError on close/timeout."""
    deadline = time.monotonic() + timeout
    while True:
        data = _request('GET', f"/sessions/{session.id}/status")
        state = data.get('connection')
        if state == 'open':
            return
        if state == 'close':
            reason = data.get('reason') or 'connection closed'
            if reason == 'logged_out':
                raise WhatsAppError("WhatsApp account logged out — scan the QR code again")
            raise WhatsAppError(f"WhatsApp connection closed: {reason}")
        if time.monotonic() >= deadline:
            raise WhatsAppError("Timed out waiting for WhatsApp connection")
        time.sleep(POLL_INTERVAL)


def send_text(session: WhatsAppSession, phone: str, text: str) -> dict:
    jid = format_phone_to_jid(phone)
    return _request('POST', f"/sessions/{session.id}/messages", json={'jid': jid, 'text': text})


def close_session(session: Optional[WhatsAppSession]) -> None:
    """Close the gateway session. Never raises."""
    if session is None:
        return
    try:
        _request('DELETE', f"/sessions/{session.id}", timeout=10)
    except Exception as e:
        logger.warning("Failed to close WhatsApp session %s: %s", session.id, e)
