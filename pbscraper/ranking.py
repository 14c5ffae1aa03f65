"""
Rank our offer against competitor quotes for one part.
Pure function; the result dict matches the prices table columns.
"""
import math

# Business-facing labels stored in numeric-looking columns
NO_LISTING = "Нет в прайсе"
WE_LEAD = "G&G лидер по позиции"
WE_ARE_LAST = "G&G последний по позиции"

_RANK_FIELDS = (
    "rank_pos", "our_price", "leader_code", "leader_price",
    "over_code", "over_price", "under_code", "under_price",
)


def _to_price(value) -> float | None:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, str):
        value = "".join(value.split())
        # float() accepts digit separators such as "1_000"; numeric coercion here does not
        if not value or "_" in value:
            return None
    try:
        price = float(value)
    except (TypeError, ValueError):
        return None
    return price if math.isfinite(price) else None


def normalize_quotes(quotes) -> list[tuple[str, float]]:
    """(id, price) pairs as (str, float); drops missing ids and non-finite prices."""
    out = []
    for quote in quotes or []:
        try:
            code, raw_price = quote[0], quote[1]
        except (TypeError, IndexError, KeyError):
            continue
        if code is None:
            continue
        price = _to_price(raw_price)
        if price is None:
            continue
        out.append((str(code), price))
    return out


def no_listing_row(part_number: str, brand_name: str) -> dict:
    row = {"part_number": part_number, "brand_name": brand_name}
    row.update({f: NO_LISTING for f in _RANK_FIELDS})
    return row


def rank_price(quotes, our_code, part_number: str, brand_name: str) -> dict:
    """
    Sort quotes by price (stable, ties keep input order) and summarize our position:
    leader (rank 1), over (rank above us), under (rank below us).
    When our code is missing every ranking field is NO_LISTING.
    """
    ranked = sorted(normalize_quotes(quotes), key=lambda q: q[1])
    our_code = str(our_code)
    our_pos = next((i + 1 for i, (code, _) in enumerate(ranked) if code == our_code), None)
    if our_pos is None:
        return no_listing_row(part_number, brand_name)

    our_price = ranked[our_pos - 1][1]
    row = {
        "part_number": part_number,
        "brand_name": brand_name,
        "rank_pos": our_pos,
        "our_price": our_price,
        "leader_code": None,
        "leader_price": None,
        "over_code": None,
        "over_price": None,
        "under_code": None,
        "under_price": None,
    }

    if our_pos == 1:
        row["leader_code"], row["leader_price"] = our_code, our_price
        row["over_code"] = row["over_price"] = WE_LEAD
    else:
        row["leader_code"], row["leader_price"] = ranked[0]
        row["over_code"], row["over_price"] = ranked[our_pos - 2]

    if our_pos == len(ranked):
        row["under_code"] = row["under_price"] = WE_ARE_LAST
    else:
        row["under_code"], row["under_price"] = ranked[our_pos]
    return row
