"""
Website content extraction — requests + BeautifulSoup.

scrape_site() fetches a business homepage plus up to 5 internal sub-pages and
returns a flat dict the scoring and site-generation steps consume. It never
raises: an unreachable site yields a degraded result with site_type='error'.
"""
import logging
import re
from concurrent.futures import ThreadPoolExecutor
from typing import Dict, List
from urllib.parse import urljoin, urlparse

import requests
from bs4 import BeautifulSoup

logger = logging.getLogger('services.scraper')

FETCH_HEADERS = {
    'User-Agent': (
        'Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 '
        '(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36'
    ),
    'Accept': 'text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8',
    'Accept-Language': 'es-AR,es;q=0.9,en;q=0.8',
}

# Substrings that mark an <img> as an icon / UI chrome rather than a real photo
ICON_KEYWORDS = [
    'icon', 'logo', 'sprite', 'pixel', '1x1', 'banner-ad',
    'whatsapp', 'facebook', 'instagram', 'twitter', 'tiktok', 'youtube', 'linkedin',
    'favicon', 'badge', 'btn', 'button', 'arrow', 'star', 'check', 'close', 'menu',
    'hamburger', 'loading', 'spinner', 'placeholder', 'blank', 'spacer', 'gif',
]

SUB_PAGE_KEYWORDS = [
    'servicio', 'about', 'nosotros', 'menu', 'carta', 'contacto', 'equipo', 'team',
    'historia', 'galeria', 'prensa', 'noticias', 'blog', 'productos', 'tratamientos',
    'especialidades', 'quienes-somos', 'quien-somos', 'services', 'portfolio',
]

SOCIAL_DOMAINS = {
    'instagram': 'instagram',
    'facebook': 'facebook',
    'twitter': 'twitter.com',
    'tiktok': 'tiktok',
    'youtube': 'youtube',
    'linkedin': 'linkedin',
}

LINK_IN_BIO_HOSTS = ('bio.link', 'linktree', 'linktr.ee', 'beacons.ai', 'taplink', 'direct.me')
SOCIAL_HOSTS = ('instagram.com', 'facebook.com', 'tiktok.com')

EMAIL_RE = re.compile(r'[a-zA-Z0-9._%+\-]+@[a-zA-Z0-9.\-]+\.[a-zA-Z]{2,}')
PHONE_RE = re.compile(r'(?:\+54|0)?\s*[\d\s\-().]{8,15}')

MAX_SUB_PAGES = 5
HOME_TIMEOUT = 12
SUB_PAGE_TIMEOUT = 8


def error_result(url: str) -> Dict:
    """Degraded extraction for a site that could not be loaded."""
    return {
        'url': url,
        'title': '',
        'description': '',
        'visible_text': '',
        'links': [],
        'image_urls': [],
        'logo_url': None,
        'phone_numbers': [],
        'emails': [],
        'social_links': [],
        'site_type': 'error',
        'loaded_successfully': False,
        'html_snippet': '',
        'sub_pages_text': '',
        'sub_pages_count': 0,
    }


def _is_icon_url(url: str) -> bool:
    u = url.lower()
    return any(kw in u for kw in ICON_KEYWORDS) or '.svg' in u or u.startswith('data:')


def _resolve(src: str, base: str):
    if not src:
        return None
    try:
        return urljoin(base, src)
    except ValueError:
        return None


def _host(url: str) -> str:
    try:
        return urlparse(url).hostname or ''
    except ValueError:
        return ''


def _dedupe(items: List[str]) -> List[str]:
    return list(dict.fromkeys(items))


def parse_page(html: str, base_url: str) -> Dict:
    """Visible text, links, real images, emails and phones from one HTML page."""
    soup = BeautifulSoup(html, 'html.parser')
    for tag in soup(['script', 'style', 'noscript', 'head']):
        tag.decompose()

    body = soup.body or soup
    visible_text = re.sub(r'\s+', ' ', body.get_text(' ')).strip()[:3000]

    links = []
    for a in soup.find_all('a', href=True):
        resolved = _resolve(a['href'], base_url)
        if resolved and resolved.startswith('http'):
            links.append(resolved)
    links = _dedupe(links)[:30]

    images = []
    for img in soup.find_all('img', src=True):
        resolved = _resolve(img['src'], base_url)
        if not resolved or not resolved.startswith('http'):
            continue
        alt = (img.get('alt') or '').lower()
        if _is_icon_url(resolved) or any(kw in alt for kw in ICON_KEYWORDS):
            continue
        images.append(resolved)

    return {
        'visible_text': visible_text,
        'links': links,
        'image_urls': _dedupe(images),
        'emails': EMAIL_RE.findall(visible_text)[:3],
        'phone_numbers': [p.strip() for p in PHONE_RE.findall(visible_text)][:3],
    }


def detect_site_type(url: str, links: List[str], visible_text: str, image_count: int) -> str:
    u = url.lower()
    if any(h in u for h in LINK_IN_BIO_HOSTS):
        return 'link_in_bio'
    if any(h in u for h in SOCIAL_HOSTS):
        return 'social_redirect'
    if 'drive.google' in u or 'docs.google' in u or any(
            'drive.google' in l or 'docs.google' in l for l in links):
        return 'menu_only'

    host = _host(url)
    internal = [l for l in links if _host(l) == host]
    if len(internal) <= 2 and len(visible_text) < 300 and image_count <= 3:
        return 'landing'
    return 'full_website'


def _find_logo(html: str, base_url: str):
    soup = BeautifulSoup(html, 'html.parser')
    el = soup.select_one(
        'img[src*="logo"], img[alt*="logo"], img[alt*="Logo"], header img, .logo img, #logo img'
    )
    if el is None:
        return None
    resolved = _resolve(el.get('src') or '', base_url)
    return resolved if resolved and resolved.startswith('http') else None


def _pick_sub_pages(base_url: str, links: List[str]) -> List[str]:
    host = _host(base_url)
    base = base_url.rstrip('/')
    internal = [l for l in _dedupe(links) if _host(l) == host and l.rstrip('/') != base]
    # keyword pages first, stable otherwise
    internal.sort(key=lambda l: 0 if any(kw in l.lower() for kw in SUB_PAGE_KEYWORDS) else 1)
    return internal[:MAX_SUB_PAGES]


def _fetch_sub_page(session: requests.Session, link: str):
    try:
        resp = session.get(link, timeout=SUB_PAGE_TIMEOUT)
        if not resp.ok:
            return None
        return parse_page(resp.text, link)
    except requests.RequestException as e:
        logger.debug("Sub-page %s failed: %s", link, e)
        return None


def scrape_site(url: str) -> Dict:
    """Extract homepage + sub-page content for a business website."""
    session = requests.Session()
    session.headers.update(FETCH_HEADERS)

    try:
        resp = session.get(url, timeout=HOME_TIMEOUT, allow_redirects=True)
        html = resp.text
        loaded = resp.ok
    except requests.RequestException as e:
        logger.warning("Scrape failed for %s: %s", url, e)
        return error_result(url)

    try:
        head = BeautifulSoup(html, 'html.parser')
        title = head.title.get_text(strip=True) if head.title else ''
        meta = head.find('meta', attrs={'name': 'description'})
        description = (meta.get('content') or '').strip() if meta else ''

        home = parse_page(html, url)
        logo_url = _find_logo(html, url)
        images = [u for u in home['image_urls'] if u != logo_url][:12]

        social_links = []
        for link in home['links']:
            for platform, domain in SOCIAL_DOMAINS.items():
                if domain in link:
                    social_links.append({'platform': platform, 'url': link})
                    break
        social_links = social_links[:5]

        site_type = detect_site_type(url, home['links'], home['visible_text'], len(images))
        emails = list(home['emails'])
        sub_texts = []

        if loaded and home['links']:
            to_fetch = _pick_sub_pages(url, home['links'])
            if to_fetch:
                with ThreadPoolExecutor(max_workers=len(to_fetch)) as pool:
                    pages = list(pool.map(lambda l: _fetch_sub_page(session, l), to_fetch))
                for page in pages:
                    if not page:
                        continue
                    if page['visible_text']:
                        sub_texts.append(page['visible_text'])
                    for img in page['image_urls']:
                        if img not in images and img != logo_url and len(images) < 20:
                            images.append(img)
                    for email in page['emails']:
                        if email not in emails and len(emails) < 5:
                            emails.append(email)
    except Exception as e:
        logger.warning("Parse failed for %s: %s", url, e)
        return error_result(url)

    return {
        'url': url,
        'title': title,
        'description': description,
        'visible_text': home['visible_text'],
        'links': home['links'],
        'image_urls': images[:12],
        'logo_url': logo_url,
        'phone_numbers': home['phone_numbers'],
        'emails': emails,
        'social_links': social_links,
        'site_type': site_type,
        'loaded_successfully': loaded,
        'html_snippet': html[:6000],
        'sub_pages_text': '\n---\n'.join(sub_texts)[:6000],
        'sub_pages_count': len(sub_texts),
    }
