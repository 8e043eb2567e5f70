# tests/test_extract.py
import pytest

from madlan_crawler import extract
from madlan_crawler.browser import PageSnapshot
from madlan_crawler.extract import (
    build_property_url, build_search_url, detect_block, extract_bundle, extract_images,
    extract_property_fields, extract_property_id, extract_property_urls, extract_ratings,
    extract_schools, extract_transactions, has_next_page, is_property_url,
)

from helpers import BLOCK_PAGE, EMPTY_PAGE, property_page, search_page

LISTING_URL = "https://www.madlan.co.il/listings/abc123"
SEARCH_URL = "https://www.madlan.co.il/for-sale/%D7%97%D7%99%D7%A4%D7%94"


def _page(html, url=LISTING_URL, **kwargs):
    return PageSnapshot(url=url, html=html, **kwargs)


@pytest.mark.parametrize("url,expected", [
    ("https://www.madlan.co.il/listings/abc123", True),
    ("https://www.madlan.co.il/bulletin/xyz", True),
    ("https://www.madlan.co.il/for-sale/חיפה-ישראל/3-bd", False),
    ("https://www.madlan.co.il/for-sale/חיפה", False),
    ("", False),
])
def test_is_property_url(url, expected):
    assert is_property_url(url) is expected


def test_property_id_and_url_helpers():
    assert extract_property_id("https://www.madlan.co.il/listings/abc123?x=1") == "abc123"
    assert extract_property_id("https://www.madlan.co.il/about") is None
    assert build_property_url("abc123") == LISTING_URL


def test_build_search_url_pages():
    template = "https://www.madlan.co.il/for-sale/{city}?marketplace=residential"
    assert build_search_url(template, "חיפה") == (
        "https://www.madlan.co.il/for-sale/%D7%97%D7%99%D7%A4%D7%94?marketplace=residential")
    assert build_search_url(template, "חיפה", 3).endswith("&page=3")
    assert build_search_url("https://x/{city}", "a", 2) == "https://x/a?page=2"


def test_search_page_urls_and_pagination():
    snap = _page(search_page(["a1", "a2", "a1"], has_next=True), url=SEARCH_URL)
    assert extract_property_urls(snap) == [
        "https://www.madlan.co.il/listings/a1",
        "https://www.madlan.co.il/listings/a2",
    ]
    assert has_next_page(snap) is True
    assert has_next_page(_page(search_page(["a3"]), url=SEARCH_URL)) is False


def test_pagination_falls_back_to_listing_presence():
    with_links = '<html><body><a href="/listings/a9">x</a></body></html>'
    assert has_next_page(_page(with_links, url=SEARCH_URL)) is True
    assert has_next_page(_page(EMPTY_PAGE, url=SEARCH_URL)) is False


def test_api_payload_urls_win_over_anchors():
    payload = {"data": {"results": [
        {"listingId": "x1", "price": 1_200_000},
        {"id": "not-a-listing"},
        {"url": "/listings/x2"},
    ]}}
    snap = _page(search_page(["a1"]), url=SEARCH_URL, api_payloads=[payload])
    assert extract_property_urls(snap) == [
        "https://www.madlan.co.il/listings/x1",
        "https://www.madlan.co.il/listings/x2",
    ]


def test_detect_block():
    assert detect_block(_page(BLOCK_PAGE)) == "press & hold"
    assert detect_block(_page(property_page(), status=429)) == "http 429"
    assert detect_block(_page(property_page())) is None


def test_property_fields():
    prop = extract_property_fields(_page(property_page()), "נשר")
    assert prop.id == "abc123"
    assert prop.url == LISTING_URL
    assert prop.city == "חיפה"
    assert prop.price == 1_850_000
    assert prop.rooms == 4.0
    assert prop.size == 105.0
    assert prop.floor == 3
    assert prop.total_floors == 8
    assert prop.address == "הרצל 10"
    assert prop.neighborhood == "הדר"
    assert prop.description == "דירה מרווחת עם נוף לים"
    assert prop.has_parking is True and prop.has_elevator is True
    assert prop.has_balcony is False


def test_ground_floor_and_default_city():
    html = property_page(floor="קומת קרקע").replace('<div data-testid="city">חיפה</div>', "")
    prop = extract_property_fields(_page(html), "נשר")
    assert prop.floor == 0
    assert prop.city == "נשר"


def test_property_fields_need_listing_id():
    assert extract_property_fields(_page(property_page(), url="https://www.madlan.co.il/about"), "חיפה") is None


def test_images_are_unique_and_ordered():
    images = extract_images(_page(property_page()))
    assert [(i.image_url, i.image_order, i.is_main_image) for i in images] == [
        ("https://www.madlan.co.il/img/1.jpg", 0, True),
        ("https://www.madlan.co.il/img/2.jpg", 1, False),
    ]


def test_transactions():
    first, second = extract_transactions(_page(property_page()))
    assert first.transaction_address == "הרצל 12"
    assert first.transaction_date == "2023-03-15"
    assert first.transaction_price == 1_700_000
    assert first.transaction_size == 120
    assert first.transaction_rooms == 4
    assert first.transaction_floor == 2
    assert first.year_built == 1980
    assert first.transaction_price_per_sqm == 14167
    assert second.transaction_date == "2021-11-02"
    assert second.transaction_price == 950_000
    assert second.transaction_floor == 0


def test_schools():
    schools = extract_schools(_page(property_page()))
    assert [s.school_name for s in schools] == ["הגליל", "הכרמל"]
    first = schools[0]
    assert first.school_address == "רחוב הגליל 1"
    assert first.school_type == "ממלכתי"
    assert first.grades_offered == "א-ו"
    assert first.school_rating == 70
    assert first.distance_meters == 350
    assert schools[1].distance_meters == 1200


def test_schools_without_distance():
    schools = extract_schools(_page(property_page(schools=(("אופק", None),))))
    assert schools[0].distance_meters is None


def test_ratings_average_into_overall():
    ratings = extract_ratings(_page(property_page()))
    assert ratings.community_feeling == 8.0
    assert ratings.cleanliness_maintenance == 6.0
    assert ratings.public_transport == 9.0
    assert ratings.schools_quality is None
    assert ratings.overall_rating == pytest.approx(7.7)


def test_missing_sections_yield_empty_results():
    snap = _page(EMPTY_PAGE)
    assert extract_ratings(snap) is None
    assert extract_transactions(snap) == []
    assert extract_schools(snap) == []
    assert extract_images(snap) == []


def test_bundle():
    bundle = extract_bundle(_page(property_page()), "חיפה")
    assert bundle.property.id == "abc123"
    assert len(bundle.images) == 2
    assert len(bundle.transactions) == 2
    assert len(bundle.schools) == 2

    comparisons = {c.room_count: c for c in bundle.price_comparisons}
    assert sorted(comparisons) == [3, 5]
    three = comparisons[3]
    assert (three.old_price, three.new_price, three.average_price) == (1_500_000, 1_650_000, 1_575_000)
    assert three.price_trend == "up 10%"
    assert comparisons[5].average_price == 2_400_000
    assert comparisons[5].price_trend is None

    project, = bundle.construction_projects
    assert project.project_name == "פרויקט הגפן"
    assert project.room_range == "3-5"
    assert project.total_floors == 12
    assert project.starting_price == 2_100_000
    assert project.project_location == "הגפן 5, חיפה"
    assert project.distance_meters == 1200


def test_bundle_without_listing_id():
    assert extract_bundle(_page(EMPTY_PAGE, url=SEARCH_URL), "חיפה") is None


def test_malformed_transaction_price_is_skipped():
    html = property_page().replace("1.7 מ' ₪", "1.7.2 מ' ₪")
    bundle = extract_bundle(_page(html), "חיפה")
    first, second = bundle.transactions
    assert first.transaction_date == "2023-03-15"
    assert first.transaction_price is None
    assert first.transaction_price_per_sqm is None
    assert second.transaction_price == 950_000


def test_broken_child_extractor_keeps_the_rest(monkeypatch):
    def broken(snapshot):
        raise AttributeError("'NoneType' object has no attribute 'get_text'")

    monkeypatch.setattr(extract, "extract_schools", broken)
    bundle = extract_bundle(_page(property_page()), "חיפה")
    assert bundle.property.id == "abc123"
    assert bundle.schools == []
    assert len(bundle.transactions) == 2
    assert bundle.ratings is not None
