"""
partsbooking price scraper – centralized configuration.
Concurrency, timeouts, retries, throttle, proxy, storage paths.
"""
import os
from pathlib import Path

from dotenv import load_dotenv

# Paths
BASE_DIR = Path(__file__).resolve().parent
PROJECT_ROOT = BASE_DIR.parent

load_dotenv(PROJECT_ROOT / ".env")
load_dotenv(Path.cwd() / ".env")


def _env(key: str, default: str = "") -> str:
    return os.getenv(key, default).strip()


DATA_DIR = Path(_env("PARTSBOOKING_DATA_DIR", str(PROJECT_ROOT / "dev-data")))
DB_PATH = Path(_env("PARTSBOOKING_DB_PATH", str(DATA_DIR / "partsbooking.sqlite")))
CHECKPOINT_PATH = Path(_env("PARTSBOOKING_CHECKPOINT", str(DATA_DIR / "queue_state.json")))
INPUT_FILE = Path(_env("PARTSBOOKING_INPUT", str(PROJECT_ROOT / "prices_input.xlsx")))
IMAGES_DIR = Path(_env("PARTSBOOKING_IMAGES_DIR", str(DATA_DIR / "images")))

# Our own seller code on the price_search listing
OUR_SITE_CODE = _env("PARTSBOOKING_OUR_SITE_CODE", "1269")

# Concurrency: one shared browser, one page per worker
MAX_WORKERS = int(_env("PARTSBOOKING_MAX_WORKERS", "1"))
MAX_PARTS = int(_env("PARTSBOOKING_MAX_PARTS", "0"))  # 0 = no cap

# Timeouts (ms)
NAVIGATION_TIMEOUT = int(_env("PARTSBOOKING_NAV_TIMEOUT", "60000"))
NAVIGATION_WAIT_UNTIL = "domcontentloaded"
API_WAIT_MS = int(_env("PARTSBOOKING_API_WAIT", "60000"))  # second wait is half of this
IMAGE_DOWNLOAD_TIMEOUT_MS = int(_env("PARTSBOOKING_IMAGE_TIMEOUT", "10000"))

# Retries
NAVIGATION_ATTEMPTS = int(_env("PARTSBOOKING_NAV_ATTEMPTS", "3"))
MAX_ATTEMPTS = 5  # task-level retry cap before dead-lettering

# Throttle between tasks, per worker (ms)
REQUEST_THROTTLE_MS = (
    int(_env("PARTSBOOKING_THROTTLE_MIN", "1500")),
    int(_env("PARTSBOOKING_THROTTLE_MAX", "3000")),
)

# Aggregator flush thresholds
FLUSH_BATCH_SIZE = int(_env("PARTSBOOKING_FLUSH_BATCH", "10"))
FLUSH_IDLE_SECONDS = float(_env("PARTSBOOKING_FLUSH_IDLE", "2.0"))
# Results channel bound; workers wait on put when the writer falls behind
AGGREGATOR_QUEUE_SIZE = int(_env("PARTSBOOKING_AGGREGATOR_QUEUE", str(FLUSH_BATCH_SIZE * 10)))

# Logging: show 1 of every LOG_EVERY captures unless verbose
VERBOSE_LOGS = _env("PARTSBOOKING_VERBOSE", "0").lower() in ("1", "true", "yes")
LOG_EVERY = 10
FILTER_LOG_EVERY_N_PAGES = 100

# Browser
HEADLESS = _env("PARTSBOOKING_HEADLESS", "1").lower() in ("1", "true", "yes")
VIEWPORT = {"width": 1280, "height": 800}
USER_AGENT = _env(
    "PARTSBOOKING_USER_AGENT",
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/124.0.0.0 Safari/537.36",
)
ACCEPT_LANGUAGE = "en-US,en;q=0.9,ru;q=0.8"
ANALYTICS_SCRIPT_PATTERN = r"analytics|gtag|google-analytics|yandex|metrika|hotjar|tracker"

# Proxy (rotating, authenticated)
PROXY_SERVER = _env("PROXY_SERVER", "p.webshare.io:80")
PROXY_USER = _env("PROXY_USER", "")
PROXY_PASS = _env("PROXY_PASS", "")


def get_proxy_url() -> str | None:
    if not (PROXY_USER and PROXY_PASS):
        return None
    return f"http://{PROXY_USER}:{PROXY_PASS}@{PROXY_SERVER}"


def get_proxy_settings() -> dict | None:
    """Playwright proxy dict (server, username, password), or None when no credentials."""
    if not (PROXY_USER and PROXY_PASS):
        return None
    return {"server": f"http://{PROXY_SERVER}", "username": PROXY_USER, "password": PROXY_PASS}


# Target site
BASE_URL = "https://partsbooking.ru"
PRODUCT_URL_TEMPLATE = BASE_URL + "/products/{brand_code}/{part}.html"
PRICE_API_PATH = "/price_search/search"

# price_items filters: only listing type 1, drop offers annotated with this region
LISTING_TYPE_ID = 1
EXCLUDED_REGION = "альметьевск"

# Brands the site catalog supports; value is the URL path segment
SUPPORTED_BRANDS = {
    "JOHN DEERE": "JOHN%20DEERE",
    "CLAAS": "CLAAS",
    "MANITOU": "MANITOU",
}
