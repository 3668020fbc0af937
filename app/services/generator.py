"""
Generative assets — landing-page HTML and WhatsApp outreach messages.

Site generation asks Claude for structured copy (tagline, services, colours…)
and renders it into a single self-contained HTML page with Jinja2. Both
generators run under with_rate_limit_retry(); build_default_message() is the
deterministic fallback used when message generation fails for any other reason.
"""
import logging
import re
import unicodedata
from typing import Dict, List, Optional

from jinja2 import Environment

from app.config import ANTHROPIC_FAST_MODEL, ANTHROPIC_MODEL
from app.services.rate_limit import with_rate_limit_retry
from app.services.scoring import create_message, parse_json_reply, response_text

logger = logging.getLogger('services.generator')

# Image URLs containing any of these are UI chrome, not photos of the business
ICON_URL_KEYWORDS = [
    'logo', 'icon', 'favicon', 'sprite', 'whatsapp', 'facebook', 'instagram',
    'twitter', 'badge', 'btn', 'arrow', 'close', 'menu',
]

DEFAULT_PRIMARY = '#1a1a2e'
DEFAULT_SECONDARY = '#16213e'


def slugify(text: str) -> str:
    """'Café Luna' → 'cafe-luna' (ascii, lowercase, max 60 chars)."""
    normalized = unicodedata.normalize('NFD', (text or '').lower())
    s = ''.join(ch for ch in normalized if unicodedata.category(ch) != 'Mn')
    s = re.sub(r'[^a-z0-9\s-]', '', s)
    s = re.sub(r'\s+', '-', s)
    s = re.sub(r'-+', '-', s)
    return s[:60]


def filter_site_images(images: List[str], logo_url: Optional[str] = None) -> List[str]:
    """Drop the logo and anything that looks like an icon from scraped images."""
    logo = (logo_url or '').lower()
    kept = []
    for url in images or []:
        u = url.lower()
        if logo and u == logo:
            continue
        if any(kw in u for kw in ICON_URL_KEYWORDS):
            continue
        kept.append(url)
    return kept


# ── Site copy ────────────────────────────────────────────────────────────────

def _site_prompt(info: Dict) -> str:
    scraped = info.get('scraped') or {}
    context = ''
    if scraped.get('visible_text'):
        safe_text = scraped['visible_text'][:1500].replace('`', "'").replace('$', '')
        socials = ', '.join(
            f"{s['platform']}: {s['url']}" for s in scraped.get('social_links') or []
        ) or 'No detectadas'
        context = f"""
Datos reales extraídos del sitio web actual:
- Texto visible actual: {safe_text}
- Tiene logo propio: {'Sí — ' + info['logo_url'] if info.get('logo_url') else 'No'}
- Imágenes disponibles: {len(info.get('image_urls') or [])}
- Tipo de web actual: {scraped.get('site_type') or 'desconocido'}
- Redes sociales: {socials}

Usá el texto real del negocio para inferir sus servicios. No inventes cosas que no estén respaldadas por el texto.
"""
    return f"""Sos un experto en marketing y diseño web para negocios locales en Argentina.

Generá el contenido para el sitio web de este negocio:
- Nombre: {info['business_name']}
- Rubro: {info.get('category') or ''}
- Dirección: {info.get('address') or ''}
- Teléfono: {info.get('phone') or ''}
{context}
Respondé ÚNICAMENTE con JSON válido:
{{
  "tagline": "<eslogan, máximo 8 palabras>",
  "hero_description": "<2 oraciones>",
  "services": [{{"name": "<servicio>", "description": "<breve>"}}],
  "primary_color": "<hex>",
  "secondary_color": "<hex>",
  "cta_text": "<texto del botón>",
  "about_text": "<3-4 oraciones>"
}}"""


def generate_site_content(info: Dict) -> Dict:
    """Structured site copy with fallbacks for every field the template needs."""
    prompt = _site_prompt(info)
    message = with_rate_limit_retry('generate_site_content', lambda: create_message(
        model=ANTHROPIC_MODEL,
        max_tokens=1024,
        messages=[{'role': 'user', 'content': prompt}],
    ))
    content = parse_json_reply(response_text(message))

    name = info['business_name']
    category = info.get('category') or ''
    address = info.get('address') or ''
    content.setdefault('tagline', name)
    content['tagline'] = content['tagline'] or name
    if not content.get('hero_description'):
        content['hero_description'] = f"{name} — {category} en {address}"
    if not isinstance(content.get('services'), list) or not content['services']:
        content['services'] = [{'name': category, 'description': f"Servicios profesionales de {category}"}]
    if not str(content.get('primary_color') or '').startswith('#'):
        content['primary_color'] = DEFAULT_PRIMARY
    if not str(content.get('secondary_color') or '').startswith('#'):
        content['secondary_color'] = DEFAULT_SECONDARY
    content['cta_text'] = content.get('cta_text') or 'Contactanos'
    if not content.get('about_text'):
        content['about_text'] = f"{name} es un negocio de {category} ubicado en {address}."
    return content


# ── Rendering ────────────────────────────────────────────────────────────────

SITE_TEMPLATE = """<!DOCTYPE html>
<html lang="es">
<head>
<meta charset="utf-8">
<meta name="viewport" content="width=device-width, initial-scale=1">
<title>{{ name }} — {{ content.tagline }}</title>
<meta name="description" content="{{ content.hero_description }}">
<meta name="theme-color" content="{{ content.primary_color }}">
<style>
  :root { --primary: {{ content.primary_color }}; --secondary: {{ content.secondary_color }}; }
  * { box-sizing: border-box; margin: 0; padding: 0; }
  body { font-family: system-ui, -apple-system, sans-serif; color: #222; line-height: 1.6; }
  header { display: flex; align-items: center; gap: 12px; padding: 16px 24px; background: var(--primary); color: #fff; }
  header img { height: 40px; width: auto; }
  .hero { padding: 72px 24px; text-align: center; color: #fff;
          background: linear-gradient(135deg, var(--primary), var(--secondary)); }
  {% if hero_image %}.hero { background: linear-gradient(rgba(0,0,0,.55), rgba(0,0,0,.55)), url('{{ hero_image }}') center/cover; }{% endif %}
  .hero h1 { font-size: 2.4rem; margin-bottom: 12px; }
  .btn { display: inline-block; margin-top: 24px; padding: 14px 28px; border-radius: 8px;
         background: #25d366; color: #fff; text-decoration: none; font-weight: 600; }
  section { max-width: 1040px; margin: 0 auto; padding: 56px 24px; }
  .services { display: grid; grid-template-columns: repeat(auto-fit, minmax(220px, 1fr)); gap: 20px; }
  .card { padding: 20px; border-radius: 12px; box-shadow: 0 2px 12px rgba(0,0,0,.08); }
  .gallery { display: grid; grid-template-columns: repeat(auto-fit, minmax(240px, 1fr)); gap: 12px; }
  .gallery img { width: 100%; height: 220px; object-fit: cover; border-radius: 8px; }
  footer { padding: 32px 24px; text-align: center; background: var(--secondary); color: #fff; }
</style>
</head>
<body>
<header>
  {% if logo_url %}<img src="{{ logo_url }}" alt="{{ name }}" width="120" height="40">{% endif %}
  <strong>{{ name }}</strong>
</header>
<div class="hero">
  <h1>{{ content.tagline }}</h1>
  <p>{{ content.hero_description }}</p>
  {% if whatsapp_link %}<a class="btn" href="{{ whatsapp_link }}">{{ content.cta_text }}</a>{% endif %}
</div>
<section>
  <h2>Servicios</h2>
  <div class="services">
  {% for s in content.services %}
    <div class="card"><h3>{{ s.name }}</h3><p>{{ s.description }}</p></div>
  {% endfor %}
  </div>
</section>
<section>
  <h2>Sobre nosotros</h2>
  <p>{{ content.about_text }}</p>
  {% if rating %}<p>★ {{ rating }}{% if review_count %} ({{ review_count }} reseñas en Google){% endif %}</p>{% endif %}
</section>
{% if gallery %}
<section>
  <h2>Galería</h2>
  <div class="gallery">
  {% for img in gallery %}<img src="{{ img }}" alt="{{ name }}" loading="lazy" width="320" height="220">{% endfor %}
  </div>
</section>
{% endif %}
<footer>
  <p>{{ name }}{% if address %} · {{ address }}{% endif %}{% if phone %} · {{ phone }}{% endif %}</p>
  {% if opening_hours %}<p>{% for h in opening_hours %}{{ h }}{% if not loop.last %} · {% endif %}{% endfor %}</p>{% endif %}
</footer>
</body>
</html>
"""

_env = Environment(autoescape=True)
_site_template = _env.from_string(SITE_TEMPLATE)


def render_site_html(info: Dict, content: Dict) -> str:
    images = info.get('image_urls') or []
    phone_digits = re.sub(r'\D', '', info.get('phone') or '')
    return _site_template.render(
        name=info['business_name'],
        content=content,
        logo_url=info.get('logo_url'),
        hero_image=images[0] if images else None,
        gallery=images[3:9],
        address=info.get('address'),
        phone=info.get('phone'),
        whatsapp_link=f"https://wa.me/{phone_digits}" if phone_digits else None,
        rating=info.get('rating'),
        review_count=info.get('review_count'),
        opening_hours=info.get('opening_hours'),
    )


def generate_site_html(info: Dict) -> str:
    """
    Full landing page for a lead.

    info keys: business_name, category, address, phone, scraped (extraction
    snapshot or None), image_urls, logo_url, rating, review_count, opening_hours.
    """
    content = generate_site_content(info)
    return render_site_html(info, content)


# ── Outreach messages ────────────────────────────────────────────────────────

def generate_message(business_name: str, category: str, address: str,
                     site_url: Optional[str]) -> str:
    """First-contact WhatsApp message in Argentine Spanish."""
    site_text = (
        f"Incluí este link al sitio que armé: {site_url}" if site_url
        else "No tenemos sitio generado aún, así que mencioná que podés armárselo."
    )
    prompt = f"""Escribí un mensaje de WhatsApp para contactar al dueño de "{business_name}", un negocio de {category} en {address}.

El mensaje debe:
- Estar en español informal con voseo argentino
- No superar 3 párrafos cortos
- Mencionar que visitaste su web y revisaste cómo está
- {site_text}
- Terminar con una pregunta abierta
- Tono amigable y directo, sin sonar a spam; máximo 2 emojis

Respondé ÚNICAMENTE con el texto del mensaje, sin comillas."""

    message = with_rate_limit_retry('generate_message', lambda: create_message(
        model=ANTHROPIC_FAST_MODEL,
        max_tokens=220,
        messages=[{'role': 'user', 'content': prompt}],
    ))
    text = response_text(message).strip()
    if not text:
        raise ValueError("Empty message from model")
    return text


def build_default_message(business_name: str, site_url: Optional[str]) -> str:
    site_text = (
        f"\n\nMe tomé el atrevimiento de armar una nueva versión para {business_name}, "
        f"podés verla acá 👉 {site_url}"
    ) if site_url else ''
    return (
        f"Hola {business_name} 👋\n\n"
        "Vi que tenés una página web y quería comentarte algunas cosas que se podrían "
        f"mejorar para atraer más clientes.{site_text}\n\n"
        "¿Te parece si lo charlamos un momento?"
    )
