"""
Cloudflare R2 hosting for generated sites.

Optional: without R2 credentials the site is only served by /preview/<slug>.
"""
import logging
from typing import Optional

from app.config import R2_BUCKET_NAME, R2_PUBLIC_URL

logger = logging.getLogger('services.r2')


def upload_site_html(slug: str, html: str) -> Optional[str]:
    """Upload a generated site to R2 and return its public URL, or None if R2 is off."""
    from app.extensions import r2_client
    if not r2_client or not R2_BUCKET_NAME:
        return None

    key = f"sites/{slug}/index.html"
    try:
        r2_client.put_object(
            Bucket=R2_BUCKET_NAME, Key=key,
            Body=html.encode('utf-8'),
            ContentType='text/html; charset=utf-8',
        )
    except Exception as e:
        logger.error("Error uploading site %s to R2: %s", slug, e)
        return None

    url = f"{R2_PUBLIC_URL}/{key}" if R2_PUBLIC_URL else None
    logger.info("Site uploaded to R2: %s", key)
    return url
