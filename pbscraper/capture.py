"""
Response capture for the price_search API, quote extraction and the product image download.
"""
import asyncio
import json
import logging
import os
import random
import re
from pathlib import Path, PurePosixPath
from urllib.parse import urljoin, urlsplit

import httpx
from playwright.async_api import Error as PlaywrightError, Page, Response

from pbscraper.config import (
    BASE_URL,
    EXCLUDED_REGION,
    IMAGE_DOWNLOAD_TIMEOUT_MS,
    IMAGES_DIR,
    LISTING_TYPE_ID,
    LOG_EVERY,
    PRICE_API_PATH,
    USER_AGENT,
    VERBOSE_LOGS,
)
from pbscraper.exceptions import DownloadError, MalformedPayloadError, NoDataError

logger = logging.getLogger("pbscraper.capture")

_capture_counter = 0


class PriceCapture:
    """
    Scoped subscription to a page's responses for one task. The listener is attached
    on enter and removed on exit, whatever happens inside the block.

        async with PriceCapture(page) as capture:
            await navigate_with_retries(page, url)
            items = await capture.wait(API_WAIT_MS)
    """

    def __init__(self, page: Page, api_path: str = PRICE_API_PATH, label: str = ""):
        self.page = page
        self.api_path = api_path
        self.label = label
        self.items: list | None = None
        self.bytes_in = 0
        self.parse_errors = 0
        self._captured = asyncio.Event()

    async def __aenter__(self) -> "PriceCapture":
        self.page.on("response", self._on_response)
        return self

    async def __aexit__(self, exc_type, exc, tb) -> bool:
        self.page.remove_listener("response", self._on_response)
        return False

    def accepts(self, response: Response) -> bool:
        """Only 2xx JSON answers from the API path; preflights and errors are ignored."""
        if self.api_path not in response.url:
            return False
        if response.request.method == "OPTIONS":
            return False
        if not 200 <= response.status < 300:
            return False
        content_type = (response.headers.get("content-type") or "").lower()
        return "application/json" in content_type

    async def _on_response(self, response: Response) -> None:
        global _capture_counter
        if self.items is not None or not self.accepts(response):
            return
        length = response.headers.get("content-length")
        if length and length.isdigit():
            self.bytes_in += int(length)
        try:
            payload = await response.json()
        except (PlaywrightError, ValueError) as e:
            self.parse_errors += 1
            logger.warning("%s unparseable %s response: %s", self.label, self.api_path, e)
            return
        items = payload.get("price_items") if isinstance(payload, dict) else None
        if not isinstance(items, list):
            return
        if not length:
            self.bytes_in += len(json.dumps(payload, ensure_ascii=False).encode("utf-8"))
        self.items = items
        self._captured.set()
        _capture_counter += 1
        if VERBOSE_LOGS or _capture_counter % LOG_EVERY == 0:
            logger.info("%s captured %d price items", self.label, len(items))

    async def _wait_for(self, timeout_ms: int) -> bool:
        try:
            await asyncio.wait_for(self._captured.wait(), timeout_ms / 1000)
        except asyncio.TimeoutError:
            return False
        return True

    async def wait(self, timeout_ms: int) -> list:
        """
        Wait for the first usable payload; after a timeout, one more wait of half the
        original. Raises NoDataError, or MalformedPayloadError when qualifying responses
        arrived but none could be parsed.
        """
        if await self._wait_for(timeout_ms):
            return self.items
        logger.warning("%s no price_items after %dms, waiting once more", self.label, timeout_ms)
        await asyncio.sleep(random.randint(400, 900) / 1000)
        if await self._wait_for(timeout_ms // 2):
            return self.items
        total = timeout_ms + timeout_ms // 2
        if self.parse_errors:
            raise MalformedPayloadError(f"{self.parse_errors} unparseable price_search responses in {total}ms")
        raise NoDataError(f"No price_items after {total}ms")


# --------------- Quotes ---------------
def _is_listing_type(item: dict) -> bool:
    value = item.get("art_type_id")
    if value is None:
        return False
    try:
        return float(str(value).strip()) == LISTING_TYPE_ID
    except ValueError:
        return False


def _allowed_region(item: dict) -> bool:
    comment = (item.get("sys_info") or {}).get("search_comment")
    if comment is None:
        return True
    return EXCLUDED_REGION not in str(comment).lower()


def extract_quotes(items: list) -> list[tuple]:
    """(competitor id, price) pairs from price_items: listing type only, excluded region dropped."""
    quotes = []
    for item in items or []:
        if not isinstance(item, dict) or not _is_listing_type(item) or not _allowed_region(item):
            continue
        code = item.get("price_id")
        if code is None:
            code = item.get("id")
        price = item.get("cost")
        if price is None:
            price = item.get("price")
        if code is not None and price is not None:
            quotes.append((code, price))
    return quotes


# --------------- Images ---------------
def find_image_url(items: list, base_url: str = BASE_URL) -> str | None:
    for item in items or []:
        if not isinstance(item, dict):
            continue
        rel = (item.get("sys_info") or {}).get("goods_img_url")
        if rel:
            return urljoin(base_url + "/", str(rel))
    return None


def safe_name(value: str) -> str:
    return re.sub(r"[^\w\-]+", "_", str(value or "").strip())


def image_path(images_dir: Path | str, brand_name: str, part_number: str, image_url: str) -> Path:
    """images/<brand>/<part><ext>, extension taken from the URL path (default .jpg)."""
    ext = PurePosixPath(urlsplit(image_url).path).suffix or ".jpg"
    return Path(images_dir) / safe_name(brand_name) / f"{safe_name(part_number)}{ext}"


async def download_image(
    url: str,
    dest: Path,
    referer: str | None = None,
    timeout_ms: int = IMAGE_DOWNLOAD_TIMEOUT_MS,
    proxy_url: str | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
) -> int:
    """
    Fetch one image, following redirects, into <dest>.part and rename on success.
    The temp file is removed on any failure. Returns bytes written.
    """
    dest = Path(dest)
    dest.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = dest.with_name(dest.name + ".part")
    headers = {
        "User-Agent": USER_AGENT,
        "Referer": referer or BASE_URL + "/",
        "Accept": "image/avif,image/webp,image/apng,image/*,*/*;q=0.8",
    }

    async def fetch() -> int:
        received = 0
        async with httpx.AsyncClient(
            timeout=timeout_ms / 1000,
            follow_redirects=True,
            headers=headers,
            proxy=proxy_url,
            transport=transport,
        ) as client:
            async with client.stream("GET", url) as resp:
                if resp.status_code != 200:
                    raise DownloadError(f"HTTP {resp.status_code} for {url}")
                with open(tmp_path, "wb") as f:
                    async for chunk in resp.aiter_bytes():
                        f.write(chunk)
                        received += len(chunk)
        return received

    done = False
    try:
        received = await asyncio.wait_for(fetch(), timeout_ms / 1000)
        os.replace(tmp_path, dest)
        done = True
        return received
    except asyncio.TimeoutError as e:
        raise DownloadError(f"Image download timeout after {timeout_ms}ms") from e
    except (httpx.HTTPError, httpx.InvalidURL, ValueError, OSError) as e:
        raise DownloadError(f"Image download failed for {url}: {e}") from e
    finally:
        if not done:
            tmp_path.unlink(missing_ok=True)


async def save_product_image(
    items: list,
    brand_name: str,
    part_number: str,
    referer: str | None = None,
    images_dir: Path | str = IMAGES_DIR,
    proxy_url: str | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
) -> Path | None:
    """Download the first product image in price_items, if any. Failures are logged, never raised."""
    try:
        image_url = find_image_url(items)
        if not image_url:
            logger.debug("No image URL for %s %s", brand_name, part_number)
            return None
        dest = image_path(images_dir, brand_name, part_number, image_url)
        size = await download_image(image_url, dest, referer=referer, proxy_url=proxy_url, transport=transport)
    except Exception as e:
        logger.warning("Image download failed for %s %s: %s", brand_name, part_number, e)
        return None
    logger.info("Image saved: %s (%d bytes)", dest, size)
    return dest
