"""
Anthropic helpers — franchise pre-filter and website quality scoring.

Every call goes through the 'anthropic' circuit breaker. analyze_website() is
also wrapped in with_rate_limit_retry(); quick_lead_filter() is not, because
the search stage treats any filter failure as "viable" and moves on.
"""
import json
import logging
import re
from typing import Dict, Optional, Tuple
from urllib.parse import urlparse

from app.config import ANTHROPIC_FAST_MODEL
from app.services.rate_limit import with_rate_limit_retry

logger = logging.getLogger('services.scoring')

CRITERIA = ('design', 'responsive', 'speed', 'copy', 'cta', 'seo', 'https', 'modernity')

SITE_TYPE_DESCRIPTIONS = {
    'full_website': 'Sitio web completo con múltiples páginas y secciones',
    'landing': 'Landing page minimalista con poco contenido',
    'link_in_bio': 'Página link-in-bio (linktree, bio.link…) — NO es un sitio web real',
    'menu_only': 'Enlace a carta/menú en Google Drive o similar — NO es un sitio web real',
    'social_redirect': 'Redirección a red social — NO es un sitio web real',
    'error': 'No se pudo cargar el sitio',
}


def create_message(**kwargs):
    """Route messages.create through the Anthropic circuit breaker."""
    from app.extensions import anthropic_client
    from app.services.circuit_breaker import get_breaker
    if anthropic_client is None:
        raise RuntimeError("Anthropic client not configured")
    cb = get_breaker('anthropic')
    return cb.call(anthropic_client.messages.create, **kwargs)


def response_text(message) -> str:
    """Text of the first text block in a Messages API response."""
    for block in getattr(message, 'content', None) or []:
        if getattr(block, 'type', 'text') == 'text':
            return getattr(block, 'text', '') or ''
    return ''


def _strip_fences(text: str) -> str:
    return re.sub(r'```(?:json)?\n?', '', text).strip()


def repair_truncated_json(text: str) -> Optional[Dict]:
    """Close any strings, arrays and objects left open by a truncated reply."""
    s = _strip_fences(text)
    start = s.find('{')
    if start == -1:
        return None
    s = s[start:]

    stack = []
    in_string = False
    escaped = False
    for ch in s:
        if escaped:
            escaped = False
            continue
        if ch == '\\' and in_string:
            escaped = True
            continue
        if ch == '"':
            in_string = not in_string
            continue
        if in_string:
            continue
        if ch in '{[':
            stack.append(ch)
        elif ch == '}' and stack and stack[-1] == '{':
            stack.pop()
        elif ch == ']' and stack and stack[-1] == '[':
            stack.pop()

    if in_string:
        s += '"'
    s = re.sub(r',\s*$', '', s)
    while stack:
        s += '}' if stack.pop() == '{' else ']'

    try:
        parsed = json.loads(s)
    except ValueError:
        return None
    return parsed if isinstance(parsed, dict) else None


def parse_json_reply(text: str) -> Dict:
    """Best-effort JSON object extraction from a model reply."""
    stripped = _strip_fences(text)
    try:
        parsed = json.loads(stripped)
        if isinstance(parsed, dict):
            return parsed
    except ValueError:
        pass

    match = re.search(r'\{[\s\S]*\}', text)
    if match:
        try:
            return json.loads(match.group(0))
        except ValueError:
            pass

    repaired = repair_truncated_json(text)
    if repaired is None:
        raise ValueError(f"Model did not return valid JSON: {text[:200]}")
    return repaired


# ── Franchise pre-filter ─────────────────────────────────────────────────────

def quick_lead_filter(business_name: str, website: str, category: str) -> Dict:
    """Is this an independent local business (viable) or a chain/franchise?"""
    prompt = f"""Evaluá si este negocio local es un buen candidato para ofrecerle un nuevo sitio web profesional.

Negocio: {business_name}
Rubro: {category}
Website: {website}

Respondé ÚNICAMENTE con JSON:
{{"viable": <true/false>, "reason": "<1 oración>"}}

Descartá (false) si es franquicia o cadena grande reconocida (bancos, supermercados de cadena,
farmacias de cadena, comida rápida, etc.). Viable (true) si es negocio local independiente."""

    message = create_message(
        model=ANTHROPIC_FAST_MODEL,
        max_tokens=200,
        messages=[{'role': 'user', 'content': prompt}],
    )
    parsed = parse_json_reply(response_text(message))
    return {
        'viable': bool(parsed.get('viable', True)),
        'reason': str(parsed.get('reason') or ''),
    }


# ── Website scoring ──────────────────────────────────────────────────────────

def _safe_criterion(value, fallback=5) -> int:
    if isinstance(value, (int, float)) and not isinstance(value, bool) and 1 <= value <= 10:
        return int(round(value))
    return fallback


def _internal_link_count(url: str, links) -> int:
    host = urlparse(url).hostname
    return sum(1 for l in links or [] if urlparse(l).hostname == host)


def build_score_prompt(url: str, scraped: Dict) -> str:
    site_type = scraped.get('site_type', 'error')
    socials = ', '.join(s['platform'] for s in scraped.get('social_links') or []) or 'Ninguna'
    html = (scraped.get('html_snippet') or '')[:2000].replace('`', "'")
    return f"""Sos un experto en diseño web y marketing digital para negocios locales. Analizá este sitio web.

URL: {url}
Tipo detectado: {SITE_TYPE_DESCRIPTIONS.get(site_type, site_type)}
Título: {scraped.get('title') or ''}
Descripción meta: {scraped.get('description') or 'No tiene'}
Cargó correctamente: {'Sí' if scraped.get('loaded_successfully') else 'No'}
Imágenes encontradas: {len(scraped.get('image_urls') or [])}
Tiene logo propio: {'Sí' if scraped.get('logo_url') else 'No'}
Links internos: {_internal_link_count(url, scraped.get('links'))}
Redes sociales vinculadas: {socials}

Texto visible del sitio:
---
{(scraped.get('visible_text') or '')[:2000]}
---

HTML del sitio:
---
{html}
---

Reglas de scoring:
- Si el tipo es link_in_bio, menu_only o social_redirect, el score máximo es 3/10
- Si el sitio cargó con error, el score máximo es 2/10
- Sin imágenes propias del negocio, penalizá fuerte el diseño
- Una landing minimalista sin secciones no merece más de 4/10

Evaluá en escala 1-10: diseño (20%), responsive (20%), velocidad (15%), copy (15%),
CTAs (10%), SEO (10%), HTTPS (5%), modernidad (5%).

Respondé ÚNICAMENTE con JSON válido (máximo 4 problems, summary de 2 oraciones):
{{
  "score": <1-10>,
  "summary": "<resumen>",
  "problems": ["<problema>", ...],
  "criteria_scores": {{"design": 0, "responsive": 0, "speed": 0, "copy": 0,
                      "cta": 0, "seo": 0, "https": 0, "modernity": 0}},
  "is_franchise": <true/false>,
  "site_type_detected": "{site_type}"
}}"""


def analyze_website(url: str, scraped: Dict) -> Tuple[int, Dict]:
    """
    Score a scraped website 1-10.

    Returns (score, details) where details holds the per-criterion scores,
    the problem list and a short summary.
    """
    prompt = build_score_prompt(url, scraped)
    message = with_rate_limit_retry('analyze_website', lambda: create_message(
        model=ANTHROPIC_FAST_MODEL,
        max_tokens=2048,
        messages=[{'role': 'user', 'content': prompt}],
    ))
    parsed = parse_json_reply(response_text(message))

    criteria = parsed.get('criteria_scores') or {}
    details = {name: _safe_criterion(criteria.get(name)) for name in CRITERIA}
    problems = parsed.get('problems')
    details['problems'] = [str(p) for p in problems] if isinstance(problems, list) else []
    summary = parsed.get('summary')
    details['summary'] = summary if isinstance(summary, str) else 'Análisis completado.'

    raw = parsed.get('score')
    if not isinstance(raw, (int, float)) or isinstance(raw, bool):
        raw = 5
    score = min(10, max(1, int(round(raw))))
    return score, details
