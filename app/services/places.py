"""
Google Places (New) API — text search for local businesses + place details.
"""
import logging
from typing import Dict, List

import requests

from app.config import GOOGLE_PLACES_API_KEY, GOOGLE_PLACES_API_URL, PLACES_LANGUAGE

logger = logging.getLogger('services.places')

SEARCH_FIELD_MASK = ','.join([
    'places.id',
    'places.displayName',
    'places.formattedAddress',
    'places.nationalPhoneNumber',
    'places.internationalPhoneNumber',
    'places.websiteUri',
    'places.rating',
    'places.primaryTypeDisplayName',
    'places.photos',
    'nextPageToken',
])
PAGE_SIZE = 20


def _api_key() -> str:
    if not GOOGLE_PLACES_API_KEY:
        raise RuntimeError("GOOGLE_PLACES_API_KEY not configured")
    return GOOGLE_PLACES_API_KEY


def _post_search(body: Dict, api_key: str) -> Dict:
    from app.services.circuit_breaker import get_breaker
    cb = get_breaker('places')
    resp = cb.call(
        requests.post,
        f"{GOOGLE_PLACES_API_URL}/places:searchText",
        json=body,
        headers={
            'Content-Type': 'application/json',
            'X-Goog-Api-Key': api_key,
            'X-Goog-FieldMask': SEARCH_FIELD_MASK,
        },
        timeout=30,
    )
    resp.raise_for_status()
    return resp.json()


def _to_candidate(place: Dict, niche: str, api_key: str) -> Dict:
    photos = place.get('photos') or []
    photo_url = None
    if photos and photos[0].get('name'):
        photo_url = f"{GOOGLE_PLACES_API_URL}/{photos[0]['name']}/media?maxWidthPx=400&key={api_key}"
    return {
        'place_id': place['id'],
        'business_name': (place.get('displayName') or {}).get('text') or 'Sin nombre',
        'address': place.get('formattedAddress') or '',
        'phone': place.get('nationalPhoneNumber') or place.get('internationalPhoneNumber') or '',
        'website': place.get('websiteUri') or '',
        'rating': place.get('rating'),
        'category': (place.get('primaryTypeDisplayName') or {}).get('text') or niche,
        'photo_url': photo_url,
    }


def search_places(niche: str, city: str, limit: int = 20) -> List[Dict]:
    """
    Text search "<niche> en <city>", paging until `limit` usable results.

    Results without a phone number or without a website are dropped: they can
    be neither analyzed nor contacted.
    """
    api_key = _api_key()
    results: List[Dict] = []
    page_token = None

    while len(results) < limit:
        body = {
            'textQuery': f"{niche} en {city}",
            'maxResultCount': min(limit - len(results), PAGE_SIZE),
            'languageCode': PLACES_LANGUAGE,
        }
        if page_token:
            body['pageToken'] = page_token

        data = _post_search(body, api_key)

        for place in data.get('places') or []:
            if not (place.get('nationalPhoneNumber') or place.get('internationalPhoneNumber')):
                continue
            if not place.get('websiteUri'):
                continue
            results.append(_to_candidate(place, niche, api_key))
            if len(results) >= limit:
                break

        page_token = data.get('nextPageToken')
        if not page_token:
            break

    logger.info("Places search '%s en %s' → %d usable results", niche, city, len(results))
    return results


def fetch_place_details(place_id: str) -> Dict:
    """
    Rating, review count and opening hours for a place.

    Best effort: a failed lookup returns empty values instead of raising.
    """
    empty = {'rating': None, 'user_rating_count': None, 'opening_hours': None}
    if not place_id or not GOOGLE_PLACES_API_KEY:
        return empty
    try:
        resp = requests.get(
            f"{GOOGLE_PLACES_API_URL}/places/{place_id}",
            headers={
                'X-Goog-Api-Key': GOOGLE_PLACES_API_KEY,
                'X-Goog-FieldMask': 'rating,userRatingCount,regularOpeningHours',
            },
            timeout=15,
        )
        if not resp.ok:
            logger.warning("Place details %s for %s", resp.status_code, place_id)
            return empty
        data = resp.json()
    except requests.RequestException as e:
        logger.warning("Place details failed for %s: %s", place_id, e)
        return empty

    return {
        'rating': data.get('rating'),
        'user_rating_count': data.get('userRatingCount'),
        'opening_hours': (data.get('regularOpeningHours') or {}).get('weekdayDescriptions'),
    }
