# tests/helpers.py
"""Fake browser and canned madlan pages shared by the tests."""
import asyncio

from madlan_crawler.config import CrawlerConfig

TEST_SEARCH_TEMPLATE = "https://www.madlan.co.il/for-sale/{city}"


def make_config(**overrides) -> CrawlerConfig:
    values = dict(
        city="חיפה",
        search_url_template=TEST_SEARCH_TEMPLATE,
        request_delay_min_ms=0,
        request_delay_max_ms=0,
        browser_launch_delay_min_ms=0,
        browser_launch_delay_max_ms=0,
        max_request_retries=1,
    )
    values.update(overrides)
    return CrawlerConfig(**values)


class FakeClock:
    def __init__(self, start=0.0):
        self.now = start

    def __call__(self):
        return self.now

    async def sleep(self, seconds):
        self.now += seconds
        await asyncio.sleep(0)


# -- pages ---------------------------------------------------------------------
def search_page(listing_ids, has_next=False) -> str:
    cards = "\n".join(
        f'<a href="/listings/{lid}"><div>‏1,{i}00,000 ₪</div><div>4 חד\'</div><div>100 מ"ר</div></a>'
        for i, lid in enumerate(listing_ids, start=1)
    )
    nav = '<a href="/for-sale/חיפה-ישראל/3-bd">3 חדרים</a>'
    if has_next:
        pager = '<a class="pagination-next" href="?page=2">הבא</a>'
    else:
        pager = '<button class="pagination-next" disabled>הבא</button>'
    return f"<html><body>{nav}<div class='results'>{cards}</div>{pager}</body></html>"


def school_links(schools) -> str:
    links = []
    for i, (name, distance) in enumerate(schools):
        dist = f" {distance} מטר" if distance is not None else ""
        links.append(
            f'<a href="/school/{i}"><span class="css-1wi4udx">בית ספר {name}</span>'
            f'<span class="css-pewcrd">רחוב {name} {i + 1}</span>'
            f'<span class="css-1vf85xs">ממלכתי</span><span class="css-1vf85xs">א-ו</span>'
            f" מדד מדלן {70 + i}/100{dist}</a>"
        )
    return "\n".join(links)


DEFAULT_SCHOOLS = (("הגליל", 350), ("הכרמל", 1200))


def property_page(price="‏1,850,000 ₪", rooms="4 חדרים", size='105 מ"ר', floor="קומה 3",
                  schools=DEFAULT_SCHOOLS) -> str:
    return f"""<html><body>
<div data-testid="price">{price}</div>
<div data-testid="rooms">{rooms}</div>
<div data-testid="size">{size}</div>
<div data-testid="floor">{floor}</div>
<div data-testid="total-floors">8</div>
<div data-testid="address">הרצל 10</div>
<div data-testid="neighborhood">הדר</div>
<div data-testid="city">חיפה</div>
<div data-testid="property-type">דירה</div>
<div data-testid="description">  דירה מרווחת עם נוף לים  </div>
<div data-testid="contact-name">ישראל ישראלי</div>
<div class="amenity-parking"></div>
<div data-amenity="elevator"></div>
<div class="gallery"><img src="/img/1.jpg"><img src="/img/2.jpg"><img src="/img/1.jpg"></div>
<section>
  <h3>היסטוריית עסקאות</h3>
  <div>ת. עסקה · כתובת · מחיר ב₪</div>
  <div class="row"><a href="/address/1">הרצל 12</a> • 15.3.2023 • 1.7 מ' ₪ • 120 מ״ר • 4 חד' • קומה 2 • נבנה ב-1980</div>
  <div class="row"><a href="/address/2">הרצל 14</a> • 2.11.2021 • 950 א' ₪ • 80 מ״ר • 3 חד' • קרקע</div>
</section>
<div class="schools">
  <h3>בתי ספר באזור הנכס הזה שכדאי להכיר לפני שקונים</h3>
  {school_links(schools)}
</div>
<div class="ratings">
  <h3>דירוגי השכנים</h3>
  <div>תחושת קהילה 8/10</div>
  <div>נקיון ותחזוקה 6/10</div>
  <div><span>תחבורה ציבורית</span><span>9</span></div>
</div>
<div class="prices">
  <h3>מחירי דירות בשכונה</h3>
  <div>3 חדרים 1,500,000 ₪ 1,650,000 ₪</div>
  <div>5 חדרים 2,400,000 ₪</div>
</div>
<div class="construction">
  <h3>בניה חדשה</h3>
  <div><a href="/projects/1"><div>פרויקט הגפן</div><div>דירות 3-5 חד'</div><div>12 קומות</div>
  <div>החל מ - 2,100,000 ₪</div><div>הגפן 5, חיפה</div></a><span>1.2 ק״מ</span></div>
</div>
</body></html>"""


EMPTY_PAGE = "<html><body></body></html>"
BLOCK_PAGE = "<html><body><h1>Press & Hold</h1><p>סליחה על ההפרעה</p></body></html>"


# -- browser -------------------------------------------------------------------
class FakePage:
    def __init__(self, browser):
        self.browser = browser
        self._url = ""
        self._html = ""
        self._queue = None

    @property
    def url(self):
        return self._url

    async def goto(self, url, timeout_ms):
        self.browser.visits.append(url)
        self._url = url
        response = self.browser.respond(url)
        if isinstance(response, Exception):
            raise response
        self._html, status = response
        for payload in self.browser.api.get(url, ()):
            if self._queue is not None:
                self._queue.put_nowait(payload)
        return status

    async def text(self, selector):
        return None

    async def attribute(self, selector, name):
        return None

    async def wait_for(self, selector, timeout_ms):
        return True

    async def click(self, selector, timeout_ms):
        self.browser.clicks.append(selector)
        return False

    async def content(self):
        return self._html

    def observe_json(self, pattern):
        self._queue = asyncio.Queue(maxsize=50)
        return self._queue

    async def close(self):
        pass


class FakeSession:
    def __init__(self, browser):
        self.browser = browser
        self.closed = False

    async def start(self):
        self.browser.launches += 1
        if self.browser.launches in self.browser.failing_launches:
            raise RuntimeError("chromium crashed")

    async def open_page(self):
        return FakePage(self.browser)

    async def close(self):
        self.closed = True
        self.browser.closes += 1


class FakeBrowser:
    """Serves canned HTML per URL.

    A page value may be an HTML string, an ``(html, status)`` tuple, an
    exception instance, or a list of those served in order (the last one
    repeats).
    """

    def __init__(self):
        self.pages = {}
        self.api = {}
        self.visits = []
        self.clicks = []
        self.launches = 0
        self.closes = 0
        # 1-based launch numbers whose start() raises
        self.failing_launches = set()

    def respond(self, url):
        value = self.pages.get(url, EMPTY_PAGE)
        if isinstance(value, list):
            value = value.pop(0) if len(value) > 1 else value[0]
        if isinstance(value, str):
            return value, 200
        return value

    def session(self):
        return FakeSession(self)
