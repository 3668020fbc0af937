"""
Mock stage handlers — realistic fake collaborators for local testing.

Activated with MOCK_PIPELINE=1 env var. Every external call (Places, website
scraping, Claude, WhatsApp gateway) is replaced with canned responses; the
database writes, batching and continuation logic are the real ones. Useful
for demo runs and verifying pipeline orchestration.
"""
import logging
import random
import time
import uuid
from typing import Dict, List, Optional, Tuple

from app.pipeline.analysis import AnalyzeStage
from app.pipeline.importer import ImportStage
from app.pipeline.messages import MessagesStage
from app.pipeline.search import SearchStage
from app.pipeline.send import SendStage
from app.pipeline.sites import SitesStage
from app.services.generator import build_default_message, render_site_html
from app.services.scoring import CRITERIA

logger = logging.getLogger('pipeline.mock')


# ── Fake business data ───────────────────────────────────────────────────────

MOCK_BUSINESSES = [
    {'name': 'Panadería La Espiga', 'category': 'Panadería', 'chain': False},
    {'name': 'Estudio Contable Ferreyra', 'category': 'Contador', 'chain': False},
    {'name': 'Veterinaria Patitas', 'category': 'Veterinaria', 'chain': False},
    {'name': 'Farmacity', 'category': 'Farmacia', 'chain': True},
    {'name': 'Taller Mecánico Don Julio', 'category': 'Taller mecánico', 'chain': False},
    {'name': 'Peluquería Bella Donna', 'category': 'Peluquería', 'chain': False},
    {'name': 'McDonald\'s', 'category': 'Comida rápida', 'chain': True},
    {'name': 'Ferretería El Tornillo', 'category': 'Ferretería', 'chain': False},
    {'name': 'Odontología Sonrisas', 'category': 'Dentista', 'chain': False},
    {'name': 'Librería Rayuela', 'category': 'Librería', 'chain': False},
    {'name': 'Gimnasio Fuerza Sur', 'category': 'Gimnasio', 'chain': False},
    {'name': 'Carrefour Express', 'category': 'Supermercado', 'chain': True},
]


def _simulate_delay(min_s=0.1, max_s=0.4):
    """Small delay to simulate API latency."""
    time.sleep(random.uniform(min_s, max_s))


# ── Stage 1: Search ──────────────────────────────────────────────────────────

class MockSearchStage(SearchStage):
    description = '[MOCK] Simulated Places search + franchise filter'
    apis = ['Mock']

    def search_places(self, niche: str, city: str, limit: int) -> List[Dict]:
        _simulate_delay()
        # Unique suffix per run to avoid dedup on repeated runs
        run_suffix = uuid.uuid4().hex[:6]
        results = []
        for i, biz in enumerate(MOCK_BUSINESSES[:limit]):
            slug = biz['name'].lower().replace(' ', '').replace("'", '')
            results.append({
                'place_id': f"mock-{run_suffix}-{i}",
                'business_name': biz['name'],
                'address': f"Av. Siempreviva {100 + i * 17}, {city}",
                'phone': f"011 4{random.randint(100, 999)}-{random.randint(1000, 9999)}",
                'website': f"https://{slug}.example.com",
                'rating': round(random.uniform(3.5, 4.9), 1),
                'category': biz['category'],
                'photo_url': None,
            })
        return results

    def classify(self, candidate: Dict) -> Dict:
        chain = any(b['chain'] for b in MOCK_BUSINESSES if b['name'] == candidate['business_name'])
        return {'viable': not chain, 'reason': 'Cadena reconocida' if chain else 'Negocio local'}


# ── Stage 2: Import (no external calls) ──────────────────────────────────────

class MockImportStage(ImportStage):
    description = '[MOCK] ' + ImportStage.description


# ── Stage 3: Analyze ─────────────────────────────────────────────────────────

class MockAnalyzeStage(AnalyzeStage):
    description = '[MOCK] Simulated scrape + scoring'
    apis = ['Mock']

    def scrape(self, url: str) -> Dict:
        _simulate_delay()
        return {
            'url': url,
            'title': 'Bienvenidos',
            'description': '',
            'visible_text': 'Somos un negocio familiar con más de 20 años de trayectoria en el barrio.',
            'links': [],
            'image_urls': [f"{url}/img/local-{i}.jpg" for i in range(3)],
            'logo_url': None,
            'phone_numbers': [],
            'emails': [],
            'social_links': [{'platform': 'instagram', 'url': 'https://instagram.com/mock'}],
            'site_type': random.choice(['full_website', 'landing', 'link_in_bio']),
            'loaded_successfully': True,
            'html_snippet': '<html></html>',
            'sub_pages_text': '',
            'sub_pages_count': 0,
        }

    def score(self, url: str, scraped: Dict) -> Tuple[int, Dict]:
        _simulate_delay()
        score = random.randint(2, 8)
        details = {name: random.randint(1, 10) for name in CRITERIA}
        details['problems'] = ['Diseño desactualizado', 'Sin llamada a la acción clara']
        details['summary'] = f"Sitio con score {score}/10. Hay margen de mejora en diseño y conversión."
        return score, details


# ── Stage 4: Generate sites ──────────────────────────────────────────────────

class MockSitesStage(SitesStage):
    description = '[MOCK] Template-only site generation'
    apis = ['Mock']

    def place_details(self, place_id: str) -> Dict:
        return {'rating': None, 'user_rating_count': random.randint(10, 300),
                'opening_hours': ['Lunes a viernes: 9:00–18:00']}

    def generate_html(self, info: Dict) -> str:
        _simulate_delay()
        content = {
            'tagline': info['business_name'],
            'hero_description': f"{info['category']} en {info['address']}",
            'services': [{'name': info['category'], 'description': 'Atención personalizada'}],
            'primary_color': '#1a1a2e',
            'secondary_color': '#16213e',
            'cta_text': 'Escribinos',
            'about_text': f"{info['business_name']} atiende en {info['address']}.",
        }
        return render_site_html(info, content)

    def upload(self, slug: str, html: str) -> Optional[str]:
        return None


# ── Stage 5: Generate messages ───────────────────────────────────────────────

class MockMessagesStage(MessagesStage):
    description = '[MOCK] Template messages'
    apis = ['Mock']

    def generate(self, business_name, category, address, site_url) -> str:
        return build_default_message(business_name, site_url)


# ── Stage 6: Send ────────────────────────────────────────────────────────────

class MockSendStage(SendStage):
    description = '[MOCK] Simulated WhatsApp delivery'
    apis = ['Mock']
    send_delay = 0.2

    def open_session(self, account_id):
        return {'id': f"mock-{uuid.uuid4().hex[:8]}"}

    def wait_ready(self, session):
        _simulate_delay()

    def send_text(self, session, phone, text):
        _simulate_delay()
        logger.info("[MOCK] WhatsApp to %s (%d chars)", phone, len(text))
        return {'status': 'sent'}

    def close_session(self, session):
        pass


MOCK_STAGE_REGISTRY = {
    'search':            MockSearchStage,
    'import':            MockImportStage,
    'analyze':           MockAnalyzeStage,
    'generate_sites':    MockSitesStage,
    'generate_messages': MockMessagesStage,
    'send':              MockSendStage,
}
