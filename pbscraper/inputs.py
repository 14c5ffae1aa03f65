"""
Input adapter: read (part number, brand) rows from a .csv or .xlsx file into Tasks.
Header row is detected among the first rows using localized column names.
"""
import csv
import logging
from pathlib import Path

from openpyxl import load_workbook

from pbscraper.config import SUPPORTED_BRANDS
from pbscraper.task_queue import Task

logger = logging.getLogger("pbscraper.inputs")

PART_HEADERS = {"артикул", "арт", "part", "part number", "номер детали", "код товара", "pn", "sku", "код"}
BRAND_HEADERS = {"бренд", "брэнд", "brand", "марка", "производитель", "oem"}
HEADER_SCAN_ROWS = 10


def resolve_brand_code(raw: str | None) -> str | None:
    """Map a free-text brand to the site's URL segment; None when the brand is not supported."""
    brand = str(raw or "").strip().upper()
    if not brand:
        return None
    if "JOHN" in brand and "DEERE" in brand:
        return SUPPORTED_BRANDS["JOHN DEERE"]
    return SUPPORTED_BRANDS.get(brand)


def _cell_text(value) -> str:
    if value is None:
        return ""
    if isinstance(value, float) and value.is_integer():
        # Excel stores numeric part numbers as floats
        return str(int(value))
    return str(value).strip()


def _read_rows(path: Path) -> list[list[str]]:
    if path.suffix.lower() in (".xlsx", ".xlsm"):
        wb = load_workbook(path, read_only=True, data_only=True)
        try:
            ws = wb.worksheets[0]
            return [[_cell_text(v) for v in row] for row in ws.iter_rows(values_only=True)]
        finally:
            wb.close()
    with open(path, newline="", encoding="utf-8-sig") as f:
        return [[_cell_text(v) for v in row] for row in csv.reader(f)]


def detect_columns(rows: list[list[str]]) -> tuple[int, int, int]:
    """
    Return (header_row_index, part_col, brand_col), all 0-based.
    Falls back to no header with part in column 0 and brand in column 1.
    """
    for r, row in enumerate(rows[:HEADER_SCAN_ROWS]):
        part_col = brand_col = None
        for c, value in enumerate(row):
            norm = value.strip().lower()
            if norm in PART_HEADERS:
                part_col = c
            if norm in BRAND_HEADERS:
                brand_col = c
        if part_col is not None and brand_col is not None:
            return r, part_col, brand_col
    return -1, 0, 1


def load_input_tasks(path: Path | str) -> list[Task]:
    """
    Parse the input file into Tasks. Blank rows and duplicate (brand, part) pairs are dropped;
    rows with unsupported brands are logged and skipped.
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Input file not found: {path}")
    rows = _read_rows(path)
    header_idx, part_col, brand_col = detect_columns(rows)
    logger.info("Input %s: header row=%d part col=%d brand col=%d", path.name, header_idx + 1, part_col + 1, brand_col + 1)

    tasks: list[Task] = []
    seen: set[tuple[str, str]] = set()
    unsupported = 0
    for row_no, row in enumerate(rows[header_idx + 1:], start=header_idx + 2):
        part_number = row[part_col].strip() if part_col < len(row) else ""
        brand_name = row[brand_col].strip() if brand_col < len(row) else ""
        if not part_number or not brand_name:
            continue
        if resolve_brand_code(brand_name) is None:
            unsupported += 1
            logger.warning("Row %d: skipping unsupported brand %r for part %s", row_no, brand_name, part_number)
            continue
        key = (brand_name, part_number)
        if key in seen:
            continue
        seen.add(key)
        tasks.append(Task(brand_name=brand_name, part_number=part_number))
    logger.info("Parsed %d tasks (%d unsupported rows skipped)", len(tasks), unsupported)
    return tasks
