# madlan_crawler/extract.py
"""Turn captured pages into typed records.

Everything here is a pure function of a `PageSnapshot`. Missing optional
data yields ``None`` / empty lists rather than exceptions; deciding whether
a page is usable is left to the caller (see `validators`). Child lists are
capped at `MAX_CANDIDATES` entries.
"""
import json
import re
from typing import Any, Iterable, List, Optional
from urllib.parse import quote, urljoin, urldefrag, urlsplit

from .browser import PageSnapshot
from .schemas import (
    ConstructionProjectInput, PriceComparisonInput, PropertyBundle, PropertyImageInput,
    PropertyInput, RatingsInput, SchoolInput, TransactionInput,
)
from .utils import logger

BASE_URL = "https://www.madlan.co.il"
MAX_CANDIDATES = 20

PROPERTY_URL_RE = re.compile(r"/(listings|bulletin)/([^/?#]+)")
NAV_LINK_PARTS = ("/2-bd", "/3-bd", "/4-bd", "/5-bd", "/secure-room", "/commercial/")
# keys that mark an API item as a listing rather than some other entity
LISTING_KEYS = ("listingId", "price", "beds", "rooms", "address", "area")

PROPERTY_SELECTORS = {
    "price": '[data-testid="price"], .property-price, .price-value',
    "rooms": '[data-testid="rooms"], .room-count, .rooms-value',
    "size": '[data-testid="size"], .property-size, .size-value',
    "floor": '[data-testid="floor"], .floor-number, .floor-value',
    "total_floors": '[data-testid="total-floors"], .total-floors',
    "address": '[data-testid="address"], .property-address, .address-value',
    "neighborhood": '[data-testid="neighborhood"], .neighborhood, .neighborhood-value',
    "city": '[data-testid="city"], .city, .city-value',
    "property_type": '[data-testid="property-type"], .property-type, .type-value',
    "description": '[data-testid="description"], .property-description, .description-content',
    "contact_name": '[data-testid="contact-name"], .contact-name, .agent-name',
    "contact_phone": '[data-testid="contact-phone"], .contact-phone, .phone-number',
    "contact_agency": '[data-testid="agency"], .agency-name, .agent-agency',
    "listing_date": '[data-testid="listing-date"], .listing-date',
    "entry_date": '[data-testid="entry-date"], .entry-date',
}

AMENITY_SELECTORS = {
    "has_parking": '[data-amenity="parking"], .amenity-parking',
    "has_elevator": '[data-amenity="elevator"], .amenity-elevator',
    "has_balcony": '[data-amenity="balcony"], .amenity-balcony',
    "has_air_conditioning": '[data-amenity="ac"], .amenity-ac',
    "has_security_door": '[data-amenity="security-door"], .amenity-security',
    "has_bars": '[data-amenity="bars"], .amenity-bars',
    "has_storage": '[data-amenity="storage"], .amenity-storage',
    "has_shelter": '[data-amenity="shelter"], .amenity-shelter, .amenity-mamad',
    "is_accessible": '[data-amenity="accessible"], .amenity-accessible',
    "is_renovated": '[data-amenity="renovated"], .amenity-renovated',
    "is_furnished": '[data-amenity="furnished"], .amenity-furnished',
}

IMAGE_SELECTOR = ".gallery-image, img[data-gallery-image], .gallery img"
MAIN_IMAGE_SELECTOR = ".main-image, img[data-main-image]"
NEXT_PAGE_SELECTOR = '.pagination-next, button[aria-label*="הבא"], a[aria-label*="הבא"], a[rel="next"]'

BLOCK_MARKERS = ("press & hold", "סליחה על ההפרעה", "access denied", "rate limit", "too many requests")

RATING_CATEGORIES = (
    ("תחושת קהילה", "community_feeling"),
    ("קהילה", "community_feeling"),
    ("נקיון ותחזוקה", "cleanliness_maintenance"),
    ("נקיון", "cleanliness_maintenance"),
    ("בתי ספר", "schools_quality"),
    ("חינוך", "schools_quality"),
    ("תחבורה ציבורית", "public_transport"),
    ("תחבורה", "public_transport"),
    ("קניות וסידורים", "shopping_convenience"),
    ("קניות", "shopping_convenience"),
    ("בילוי ופנאי", "entertainment_leisure"),
    ("בילוי", "entertainment_leisure"),
    ("פנאי", "entertainment_leisure"),
)
OVERALL_MARKERS = ("דירוג כללי", "ציון כולל", "overall")

ROOMS_RE = re.compile(r"(\d+(?:\.\d+)?)\s*\+?\s*חדרים")
SQM = r"מ[״\"]ר"
APOS = r"['׳]"


# -- URL routing ---------------------------------------------------------------
def is_property_url(url: str) -> bool:
    if not url:
        return False
    path = urlsplit(url).path
    return bool(PROPERTY_URL_RE.search(path)) and not any(p in path for p in NAV_LINK_PARTS)


def extract_property_id(url: str) -> Optional[str]:
    m = PROPERTY_URL_RE.search(urlsplit(url).path) if url else None
    return m.group(2) if m else None


def build_property_url(listing_id) -> str:
    return f"{BASE_URL}/listings/{listing_id}"


def build_search_url(template: str, city: str, page: int = 1) -> str:
    url = template.format(city=quote(city))
    if page > 1:
        url += ("&" if "?" in url else "?") + f"page={page}"
    return url


# -- small helpers -------------------------------------------------------------
def _text(el) -> str:
    return el.get_text(" ", strip=True) if el is not None else ""


def _first_text(soup, selectors: str) -> Optional[str]:
    for sel in selectors.split(","):
        el = soup.select_one(sel.strip())
        text = _text(el)
        if text:
            return text
    return None


def _number(text: Optional[str]) -> Optional[float]:
    if not text:
        return None
    m = re.search(r"\d+(?:\.\d+)?", text.replace(",", ""))
    return float(m.group(0)) if m else None


def _int(value: Optional[float]) -> Optional[int]:
    return int(round(value)) if value is not None else None


def _to_int(raw: str) -> int:
    return int(raw.replace(",", ""))


def _distance_meters(text: str) -> Optional[int]:
    m = re.search(r"(\d+(?:\.\d+)?)\s*(מטר|ק[״\"]מ)", text)
    if not m:
        return None
    value = float(m.group(1))
    return int(round(value * 1000)) if m.group(2).startswith("ק") else int(round(value))


def _unique(items: Iterable[str]) -> List[str]:
    seen = set()
    out = []
    for item in items:
        if item not in seen:
            seen.add(item)
            out.append(item)
    return out


# -- search pages --------------------------------------------------------------
def _api_items(payload: Any) -> List[Any]:
    if isinstance(payload, list):
        return payload
    if not isinstance(payload, dict):
        return []
    if isinstance(payload.get("results"), list):
        return payload["results"]
    data = payload.get("data")
    if isinstance(data, list):
        return data
    if isinstance(data, dict) and isinstance(data.get("results"), list):
        return data["results"]
    return []


def _urls_from_api(snapshot: PageSnapshot) -> List[str]:
    urls = []
    for payload in snapshot.api_payloads:
        for item in _api_items(payload):
            if not isinstance(item, dict):
                continue
            href = item.get("url") or item.get("href")
            if isinstance(href, str) and is_property_url(href):
                urls.append(urljoin(BASE_URL, href))
                continue
            listing_id = item.get("listingId") or item.get("id")
            if not any(k in item for k in LISTING_KEYS):
                continue
            if isinstance(listing_id, (str, int)) and str(listing_id).strip():
                urls.append(build_property_url(str(listing_id).strip()))
    return urls


def extract_property_urls(snapshot: PageSnapshot) -> List[str]:
    """Property detail URLs on a search page, absolute and de-duplicated."""
    urls = _urls_from_api(snapshot)
    if not urls:
        for a in snapshot.soup.select("a[href]"):
            href = urldefrag(urljoin(snapshot.url, a["href"].strip()))[0]
            if is_property_url(href):
                urls.append(href)
    return _unique(urls)


def has_next_page(snapshot: PageSnapshot) -> bool:
    nxt = snapshot.soup.select_one(NEXT_PAGE_SELECTOR)
    if nxt is not None:
        return not (nxt.has_attr("disabled") or nxt.get("aria-disabled") == "true")
    # URL based pagination: keep going while pages still list properties
    return bool(extract_property_urls(snapshot))


def detect_block(snapshot: PageSnapshot) -> Optional[str]:
    """Reason string if the page is an anti-bot interstitial, else None."""
    if snapshot.status in (403, 429):
        return f"http {snapshot.status}"
    text = snapshot.soup.get_text(" ", strip=True).lower()
    for marker in BLOCK_MARKERS:
        if marker in text:
            return marker
    return None


# -- property page -------------------------------------------------------------
def extract_property_fields(snapshot: PageSnapshot, default_city: str) -> Optional[PropertyInput]:
    property_id = extract_property_id(snapshot.url)
    if not property_id:
        return None
    soup = snapshot.soup
    texts = {name: _first_text(soup, sel) for name, sel in PROPERTY_SELECTORS.items()}

    floor_text = texts["floor"]
    floor = 0 if floor_text and "קרקע" in floor_text else _int(_number(floor_text))

    fields = dict(
        id=property_id,
        url=snapshot.url,
        city=texts["city"] or default_city,
        price=_int(_number(texts["price"])),
        rooms=_number(texts["rooms"]),
        size=_number(texts["size"]),
        floor=floor,
        total_floors=_int(_number(texts["total_floors"])),
    )
    for name in ("address", "neighborhood", "property_type", "description", "contact_name",
                 "contact_phone", "contact_agency", "listing_date", "entry_date"):
        fields[name] = texts[name]
    for name, sel in AMENITY_SELECTORS.items():
        fields[name] = soup.select_one(sel) is not None
    return PropertyInput(**fields)


def extract_images(snapshot: PageSnapshot) -> List[PropertyImageInput]:
    soup = snapshot.soup

    def src(el):
        for attr in ("src", "data-src"):
            if el.get(attr):
                return urljoin(snapshot.url, el[attr].strip())
        img = el.find("img") if el.name != "img" else None
        return src(img) if img is not None else None

    main = soup.select_one(MAIN_IMAGE_SELECTOR)
    main_url = src(main) if main is not None else None
    urls = _unique(u for u in (src(el) for el in soup.select(IMAGE_SELECTOR)) if u)
    if main_url and main_url not in urls:
        urls.insert(0, main_url)
    urls = urls[:MAX_CANDIDATES]
    if not main_url and urls:
        main_url = urls[0]
    return [PropertyImageInput(image_url=u, image_order=i, is_main_image=(u == main_url))
            for i, u in enumerate(urls)]


def _transaction_section(soup):
    heading = next((h for h in soup.find_all("h3") if "היסטוריית עסקאות" in h.get_text()), None)
    if heading is None:
        return None
    section = heading.parent
    while section is not None and section.name not in ("body", "[document]"):
        text = section.get_text(" ")
        if "ת. עסקה" in text and "מחיר ב₪" in text:
            return section
        section = section.parent
    return soup.body or soup


def _parse_transaction_row(address: str, row_text: str) -> TransactionInput:
    data = {"transaction_address": address}
    for segment in (s.strip() for s in row_text.split("•")):
        m = re.search(r"(\d{1,2})\.(\d{1,2})\.(\d{4})", segment)
        if m:
            day, month, year = m.groups()
            data["transaction_date"] = f"{year}-{int(month):02d}-{int(day):02d}"
        m = re.search(r"([\d,]+)\s*₪\s*למ[״\"]ר", segment)
        if m:
            data["transaction_price_per_sqm"] = _to_int(m.group(1))
        elif re.search(rf"(\d+)\s*{SQM}", segment):
            data["transaction_size"] = float(re.search(rf"(\d+)\s*{SQM}", segment).group(1))
        m = re.search(rf"(\d+(?:\.\d+)?)\s*חד{APOS}", segment)
        if m:
            data["transaction_rooms"] = float(m.group(1))
        if "קרקע" in segment:
            data["transaction_floor"] = 0
        else:
            m = re.search(r"קומה\s+(\d+)", segment)
            if m:
                data["transaction_floor"] = int(m.group(1))
        m = re.search(r"נבנה ב-(\d{4})", segment)
        if m:
            data["year_built"] = int(m.group(1))
        millions = re.search(rf"(?<![\d.])(\d+(?:\.\d+)?)\s*מ{APOS}\s*₪", segment)
        thousands = re.search(rf"(?<![\d.])(\d+(?:\.\d+)?)\s*א{APOS}\s*₪", segment)
        if millions:
            data["transaction_price"] = int(round(float(millions.group(1)) * 1_000_000))
        elif thousands:
            data["transaction_price"] = int(round(float(thousands.group(1)) * 1_000))

    if data.get("transaction_price") and data.get("transaction_size") and not data.get("transaction_price_per_sqm"):
        data["transaction_price_per_sqm"] = int(round(data["transaction_price"] / data["transaction_size"]))
    return TransactionInput(**data)


def extract_transactions(snapshot: PageSnapshot) -> List[TransactionInput]:
    section = _transaction_section(snapshot.soup)
    if section is None:
        return []
    results, seen = [], set()
    for link in section.find_all("a"):
        text = _text(link)
        if len(text) < 2 or text.isdigit():
            continue
        if any(skip in text for skip in ("סינון", "בסביבה", "מודעות", "פרויקט")):
            continue
        row = link.parent
        for _ in range(5):
            if row is None:
                break
            row_text = row.get_text(" ")
            if re.search(SQM, row_text) and "₪" in row_text and "•" in row_text:
                break
            row = row.parent
        else:
            row = None
        if row is None:
            continue
        tx = _parse_transaction_row(text, row.get_text(" "))
        if not (tx.transaction_date or tx.transaction_price):
            continue
        key = (tx.transaction_address, tx.transaction_date, tx.transaction_price)
        if key in seen:
            continue
        seen.add(key)
        results.append(tx)
        if len(results) >= MAX_CANDIDATES:
            break
    return results


def extract_schools(snapshot: PageSnapshot) -> List[SchoolInput]:
    results = []
    for link in snapshot.soup.find_all("a"):
        text = _text(link)
        if "בית ספר" not in text or "בתי ספר" in text:
            continue
        name_el = link.select_one('.css-1wi4udx, [class*="elbmory1"]')
        name = _text(name_el).replace("בית ספר ", "").strip() if name_el is not None else ""
        if len(name) <= 2:
            continue
        details = link.select('.css-1vf85xs, [class*="elbmory4"]')
        rating = re.search(r"מדד מדלן\s*(\d+)\s*/\s*100", text)
        results.append(SchoolInput(
            school_name=name,
            school_address=_text(link.select_one('.css-pewcrd, [class*="elbmory2"]')) or None,
            school_type=_text(details[0]) or None if len(details) >= 1 else None,
            grades_offered=_text(details[1]) or None if len(details) >= 2 else None,
            school_rating=int(rating.group(1)) if rating else None,
            distance_meters=_distance_meters(text),
        ))
        if len(results) >= MAX_CANDIDATES:
            break
    return results


def _score(text: str) -> Optional[float]:
    m = re.search(r"(\d+(?:\.\d+)?)\s*/\s*(\d+)", text)
    if m:
        score, top = float(m.group(1)), float(m.group(2))
        if top and top != 10:
            score = score / top * 10
        return round(score, 1) if 0 <= score <= 10 else None
    m = re.search(r"\d+(?:\.\d+)?", text)
    if m and 0 <= float(m.group(0)) <= 10:
        return round(float(m.group(0)), 1)
    return None


def extract_ratings(snapshot: PageSnapshot) -> Optional[RatingsInput]:
    soup = snapshot.soup
    found = {}
    for el in soup.find_all(True):
        text = _text(el)
        if not text or len(text) >= 50:
            continue
        for label, field in RATING_CATEGORIES:
            if field in found or label not in text:
                continue
            before, after = text.split(label, 1)
            score = _score(after)
            if score is None:
                score = _score(before)
            if score is None and el.parent is not None:
                for sibling in el.parent.find_all(recursive=False):
                    if sibling is el:
                        continue
                    sib_text = _text(sibling)
                    if re.fullmatch(r"\d+(?:\.\d+)?(\s*/\s*\d+)?", sib_text):
                        score = _score(sib_text)
                        if score is not None:
                            break
            if score is not None:
                found[field] = score
        if "overall_rating" not in found and any(m in text for m in OVERALL_MARKERS):
            score = _score(text)
            if score is not None:
                found["overall_rating"] = score

    for el in soup.select("[data-rating], [data-score]"):
        raw = el.get("data-rating") or el.get("data-score")
        try:
            score = float(raw)
        except (TypeError, ValueError):
            continue
        if not 0 <= score <= 10:
            continue
        label = _text(el)
        for name, field in RATING_CATEGORIES:
            if name in label and field not in found:
                found[field] = round(score, 1)
                break

    if not found:
        return None
    if "overall_rating" not in found:
        found["overall_rating"] = round(sum(found.values()) / len(found), 1)
    return RatingsInput(**found)


def _price_trend(old: int, new: int) -> str:
    change = (new - old) / old * 100
    if abs(change) < 1:
        return "stable"
    return f"up {round(change)}%" if change > 0 else f"down {round(abs(change))}%"


def _plausible_prices(text: str) -> List[int]:
    prices = []
    for raw in re.findall(r"\d[\d,]*", text):
        value = _to_int(raw)
        if 100_000 <= value <= 100_000_000:
            prices.append(value)
    return prices


def extract_price_comparisons(snapshot: PageSnapshot) -> List[PriceComparisonInput]:
    soup = snapshot.soup
    results = {}

    for el in soup.find_all(True):
        text = _text(el)
        if not text or len(text) > 120:
            continue
        matches = list(ROOMS_RE.finditer(text))
        # containers that list several room counts are handled through their children
        if len(matches) != 1:
            continue
        m = matches[0]
        rooms = int(round(float(m.group(1))))
        prices = _plausible_prices(text)
        if rooms in results or not prices:
            continue
        record = {"room_count": rooms}
        if len(prices) == 2:
            record["old_price"], record["new_price"] = min(prices), max(prices)
            record["average_price"] = round(sum(prices) / 2)
            record["price_trend"] = _price_trend(record["old_price"], record["new_price"])
        else:
            record["average_price"] = round(sum(prices) / len(prices))
        results[rooms] = PriceComparisonInput(**record)

    for script in soup.find_all("script"):
        for blob in re.findall(r"\{[^{}]*\"rooms?\"\s*:\s*\d+[^{}]*\"price\"\s*:\s*\d+[^{}]*\}", script.string or ""):
            try:
                data = json.loads(blob)
            except ValueError:
                continue
            rooms = data.get("rooms") or data.get("room")
            if rooms and data.get("price") and int(rooms) not in results:
                results[int(rooms)] = PriceComparisonInput(room_count=int(rooms), average_price=int(data["price"]))

    for el in soup.select('[class*="price-comparison"], [class*="market-price"]'):
        label = el.get("data-rooms") or _text(el.select_one('[class*="label"], [class*="room"]'))
        value = el.get("data-price") or _text(el.select_one('[class*="value"], [class*="amount"]'))
        rm = re.search(r"\d+", label or "")
        pm = re.search(r"\d[\d,]*", value or "")
        if not rm or not pm:
            continue
        rooms, price = int(rm.group(0)), _to_int(pm.group(0))
        if rooms not in results and 100_000 <= price <= 100_000_000:
            results[rooms] = PriceComparisonInput(room_count=rooms, average_price=price)

    return list(results.values())[:MAX_CANDIDATES]


def extract_construction_projects(snapshot: PageSnapshot) -> List[ConstructionProjectInput]:
    results = []
    for link in snapshot.soup.find_all("a"):
        flat = _text(link)
        if len(flat) < 5:
            continue
        if not ("דירות" in flat and re.search(f"חד{APOS}", flat) and "קומ" in flat):
            continue
        lines = [line for line in link.get_text("\n", strip=True).split("\n") if line.strip()]
        if len(lines) < 2 or len(lines[0]) <= 3:
            continue
        data = {"project_name": lines[0]}
        for line in lines[1:]:
            m = re.search(r"(\d+)\s*-\s*(\d+)\s*חד", line)
            if "דירות" in line and m:
                data["room_range"] = f"{m.group(1)}-{m.group(2)}"
                continue
            m = re.search(r"(\d+)\s*קומ", line)
            if m:
                data["total_floors"] = int(m.group(1))
                continue
            if "החל מ" in line:
                m = re.search(r"(\d[\d,]*)\s*₪", line)
                if m:
                    data["starting_price"] = _to_int(m.group(1))
                continue
            if "," in line and "project_location" not in data:
                data["project_location"] = line
        parent_text = _text(link.parent) if link.parent is not None else flat
        data["distance_meters"] = _distance_meters(parent_text)
        results.append(ConstructionProjectInput(**data))
        if len(results) >= MAX_CANDIDATES:
            break
    return results


def _guarded(extractor, snapshot: PageSnapshot, empty):
    try:
        return extractor(snapshot)
    except Exception:
        logger.exception("%s failed on %s", extractor.__name__, snapshot.url)
        return empty


def extract_bundle(snapshot: PageSnapshot, default_city: str) -> Optional[PropertyBundle]:
    """All records on a property page, or None if the page has no listing id.

    A child extractor that breaks on unexpected markup costs only its own
    facet; the property and the other facets are still returned.
    """
    prop = extract_property_fields(snapshot, default_city)
    if prop is None:
        return None
    return PropertyBundle(
        property=prop,
        images=_guarded(extract_images, snapshot, []),
        transactions=_guarded(extract_transactions, snapshot, []),
        schools=_guarded(extract_schools, snapshot, []),
        ratings=_guarded(extract_ratings, snapshot, None),
        price_comparisons=_guarded(extract_price_comparisons, snapshot, []),
        construction_projects=_guarded(extract_construction_projects, snapshot, []),
    )
