import asyncio
import logging
from typing import Optional

import aiohttp

logger = logging.getLogger(__name__)

SEARCH_URL = "https://openlibrary.org/search.json"
COVER_URL = "https://covers.openlibrary.org/b/id/{cover_id}-L.jpg"


async def find_cover_image(title: str, timeout: float = 10) -> Optional[str]:
    """Return an Open Library cover URL for the first match on ``title``, if any."""
    params = {"q": title, "limit": "10", "fields": "key,cover_i,title"}
    try:
        async with aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=timeout)) as session:
            async with session.get(SEARCH_URL, params=params) as response:
                response.raise_for_status()
                data = await response.json()
    except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
        logger.warning("Cover lookup failed for %r: %s", title, exc)
        return None

    for doc in data.get("docs", []):
        if "cover_i" in doc:
            return COVER_URL.format(cover_id=doc["cover_i"])

    logger.info("No cover image found for book: %s", title)
    return None
