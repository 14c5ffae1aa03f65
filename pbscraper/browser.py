"""
Browser session factory and navigation for the partsbooking scraper.
One Chromium process per run, one isolated context + page per worker,
request filter that strips everything the price_search API does not need.
"""
import asyncio
import logging
import random
import re
from urllib.parse import urlsplit

from playwright.async_api import Browser, BrowserContext, Error as PlaywrightError, Page, Playwright, Request, Route
from playwright_stealth import Stealth

from pbscraper.config import (
    ACCEPT_LANGUAGE,
    ANALYTICS_SCRIPT_PATTERN,
    FILTER_LOG_EVERY_N_PAGES,
    HEADLESS,
    NAVIGATION_ATTEMPTS,
    NAVIGATION_TIMEOUT,
    NAVIGATION_WAIT_UNTIL,
    USER_AGENT,
    VIEWPORT,
    get_proxy_settings,
)
from pbscraper.exceptions import InfrastructureError, NavigationError

logger = logging.getLogger("pbscraper.browser")

# Proxy failures surface as navigation errors; these make the whole run pointless
PROXY_FAILURE_MARKERS = (
    "ERR_PROXY_CONNECTION_FAILED",
    "ERR_TUNNEL_CONNECTION_FAILED",
    "ERR_PROXY_AUTH",
    "ERR_NO_SUPPORTED_PROXIES",
    "407 Proxy Authentication Required",
)

_CLEAR_SERVICE_WORKERS_JS = """
(() => {
  try {
    if ('serviceWorker' in navigator) {
      navigator.serviceWorker.getRegistrations().then(rs => rs.forEach(r => r.unregister())).catch(() => {});
    }
    if (typeof caches !== 'undefined' && caches.keys) {
      caches.keys().then(keys => keys.forEach(k => caches.delete(k))).catch(() => {});
    }
  } catch (e) {}
})();
"""

_analytics_re = re.compile(ANALYTICS_SCRIPT_PATTERN, re.IGNORECASE)


# --------------- Request filter ---------------
def create_request_filter():
    """
    Route handler shared by all worker contexts, plus a page counter that logs
    how much traffic was stripped every FILTER_LOG_EVERY_N_PAGES pages.
    """
    stats = {"pages": 0, "stubbed": 0, "aborted": 0, "continued": 0}

    async def on_route(route: Route, request: Request):
        resource_type = request.resource_type
        if resource_type == "stylesheet":
            stats["stubbed"] += 1
            await route.fulfill(status=200, content_type="text/css", body="/* stripped */")
            return
        if resource_type in ("font", "image", "media"):
            stats["aborted"] += 1
            await route.abort()
            return
        if resource_type == "script" and _analytics_re.search(request.url):
            stats["aborted"] += 1
            await route.abort()
            return
        stats["continued"] += 1
        await route.continue_()

    def add_page():
        stats["pages"] += 1
        if stats["pages"] % FILTER_LOG_EVERY_N_PAGES == 0:
            logger.info(
                "Request filter (%d pages): %d stubbed, %d aborted, %d continued",
                stats["pages"], stats["stubbed"], stats["aborted"], stats["continued"],
            )

    return on_route, add_page, stats


# --------------- Browser & pages ---------------
def build_launch_options(headless: bool | None = None) -> dict:
    """Chromium launch options (proxy, headless, args)."""
    opts = {
        "headless": HEADLESS if headless is None else headless,
        "args": [
            "--disable-blink-features=AutomationControlled",
            "--no-sandbox",
            "--disable-setuid-sandbox",
            "--disable-dev-shm-usage",
            "--disable-accelerated-2d-canvas",
            "--disable-gpu",
            "--no-first-run",
            "--disable-extensions",
        ],
    }
    proxy = get_proxy_settings()
    if proxy:
        opts["proxy"] = proxy
    else:
        logger.warning("No proxy credentials configured; running without proxy.")
    return opts


async def launch_browser(playwright: Playwright, headless: bool | None = None) -> Browser:
    try:
        browser = await playwright.chromium.launch(**build_launch_options(headless))
    except PlaywrightError as e:
        raise InfrastructureError(f"Browser launch failed: {e}") from e
    logger.info("Browser launched (version %s).", browser.version)
    return browser


async def new_worker_page(browser: Browser, on_route) -> tuple[BrowserContext, Page]:
    """Isolated context + page: no cache, no service workers, fixed fingerprint, request filter."""
    ctx = await browser.new_context(
        viewport=VIEWPORT,
        user_agent=USER_AGENT,
        locale="en-US",
        extra_http_headers={"Accept-Language": ACCEPT_LANGUAGE},
        service_workers="block",
        ignore_https_errors=True,
    )
    await ctx.add_init_script(script=_CLEAR_SERVICE_WORKERS_JS)
    await ctx.route("**/*", on_route)
    page = await ctx.new_page()
    await Stealth().apply_stealth_async(page)
    try:
        cdp = await ctx.new_cdp_session(page)
        await cdp.send("Network.setCacheDisabled", {"cacheDisabled": True})
    except PlaywrightError as e:
        logger.debug("Cache disable via CDP unavailable: %s", e)
    return ctx, page


async def close_quietly(*closables) -> None:
    for item in closables:
        if item is None:
            continue
        try:
            await item.close()
        except PlaywrightError as e:
            logger.debug("Close failed: %s", e)


# --------------- Navigation ---------------
def is_proxy_failure(exc: BaseException) -> bool:
    text = str(exc)
    return any(marker in text for marker in PROXY_FAILURE_MARKERS)


def _origin(url: str) -> tuple[str, str]:
    parts = urlsplit(url)
    return parts.scheme, parts.netloc.lower()


async def navigate_with_retries(
    page: Page,
    url: str,
    attempts: int = NAVIGATION_ATTEMPTS,
    timeout_ms: int = NAVIGATION_TIMEOUT,
    wait_until: str = NAVIGATION_WAIT_UNTIL,
):
    """
    goto with bounded attempts. Rejects a missing response, 429, 5xx and redirects that
    leave the requested origin. Jittered backoff grows with the attempt index.
    Raises the last error once attempts are exhausted.
    """
    last_err: Exception | None = None
    for i in range(1, attempts + 1):
        try:
            resp = await page.goto(url, wait_until=wait_until, timeout=timeout_ms)
            status = resp.status if resp else 0
            if not resp or status == 429 or status >= 500:
                raise NavigationError(f"Bad nav status: {status or 'no-response'}")
            if _origin(page.url) != _origin(url):
                raise NavigationError(f"Unexpected cross-origin redirect: {page.url}")
            return resp
        except (NavigationError, PlaywrightError) as e:
            if is_proxy_failure(e):
                raise InfrastructureError(f"Proxy failure navigating to {url}: {e}") from e
            last_err = e
            backoff = random.randint(800 * i, 1200 * i)
            logger.warning("[nav] attempt %d/%d failed: %s. Backoff %dms", i, attempts, e, backoff)
            if i < attempts:
                await asyncio.sleep(backoff / 1000)
                try:
                    await page.set_extra_http_headers({"Accept-Language": ACCEPT_LANGUAGE})
                except PlaywrightError as header_err:
                    logger.debug("Header refresh failed: %s", header_err)
    if isinstance(last_err, NavigationError):
        raise last_err
    raise NavigationError(f"Navigation to {url} failed after {attempts} attempts: {last_err}") from last_err
