# tests/test_cli.py
import asyncio
import io

import pytest

from madlan_crawler import cli
from madlan_crawler.config import load_config
from madlan_crawler.context import CrawlContext
from madlan_crawler.schemas import CrawlSummary, ErrorCategory, PropertyBundle, PropertyInput, SchoolInput
from madlan_crawler.services import ingest_property

CITY = "חיפה"


@pytest.fixture(autouse=True)
def env(monkeypatch, tmp_path):
    monkeypatch.setenv("DB_BACKEND", "sqlite")
    monkeypatch.setenv("DB_PATH", str(tmp_path / "cli.db"))
    monkeypatch.setenv("DUCKDB_PATH", str(tmp_path / "cli.duckdb"))
    monkeypatch.setenv("TARGET_CITY", CITY)


def _seed(backend="sqlite"):
    async def work():
        async with CrawlContext(load_config(db_backend=backend)) as ctx:
            await ctx.frontier.enqueue_many(
                [f"https://www.madlan.co.il/listings/p{n}" for n in range(3)], CITY, 1)
            await ctx.frontier.mark_processed("https://www.madlan.co.il/listings/p0", True)
            await ctx.frontier.mark_processed("https://www.madlan.co.il/listings/p1", False, "timeout")
            await ingest_property(ctx.repos, PropertyBundle(
                property=PropertyInput(id="p0", url="https://www.madlan.co.il/listings/p0", city=CITY,
                                       price=1_000_000),
                schools=[SchoolInput(school_name="הגליל")],
            ))
    asyncio.run(work())


def _run(*argv):
    out = io.StringIO()
    code = cli.main(list(argv), out=out)
    return code, out.getvalue()


def test_status_on_empty_store():
    code, out = _run("status")
    assert code == 0
    assert "total:       0" in out
    assert "Recent crawl sessions\n  none" in out


def test_status_lists_recent_sessions():
    async def work():
        async with CrawlContext(load_config()) as ctx:
            sid = await ctx.repos.sessions.start(CITY, 0)
            await ctx.repos.sessions.log_error(sid, ErrorCategory.FETCH, "timeout")
            await ctx.repos.sessions.log_error(sid, ErrorCategory.BLOCKING, "captcha")
            summary = CrawlSummary(city=CITY, found=3, new=1, failed=2)
            await ctx.repos.sessions.complete(sid, summary, "completed")
            return sid

    sid = asyncio.run(work())
    code, out = _run("status")
    assert code == 0
    assert sid[:8] in out
    assert "completed (exhausted): found 3, new 1, updated 0, failed 2" in out
    assert "errors: blocking=1, fetch=1" in out


@pytest.mark.parametrize("backend", ["sqlite", "duckdb"])
def test_status_counts(backend):
    _seed(backend)
    code, out = _run("--backend", backend, "status")
    assert code == 0
    assert "total:       3" in out
    assert "successful:  1" in out
    assert "failed:      1" in out


def test_list_shows_outcomes():
    _seed()
    code, out = _run("list", CITY, "1")
    assert code == 0
    assert "page 1:" in out
    assert "[success] https://www.madlan.co.il/listings/p0" in out
    assert "[failure] https://www.madlan.co.il/listings/p1  (timeout)" in out
    assert "[unset] https://www.madlan.co.il/listings/p2" in out
    assert "3 entries" in out


def test_clear_and_clear_all():
    _seed()
    assert _run("clear", "נשר") == (0, "Removed 0 entries for נשר\n")
    code, out = _run("clear")
    assert code == 0
    assert "Removed 3 entries" in out
    assert _run("clear-all") == (0, "Removed 0 entries\n")


def test_delete_property():
    _seed()
    assert _run("delete-property", "p0") == (0, "Deleted property p0\n")
    code, _ = _run("delete-property", "p0")
    assert code == 1


def test_prune_orphans():
    _seed()
    code, out = _run("prune-orphans")
    assert code == 0
    assert "Removed 0 orphaned rows" in out


def test_usage_errors():
    assert _run("bogus")[0] == 2
    assert _run()[0] == 2
    assert _run("--backend", "postgres", "status")[0] == 2


def test_bad_configuration_is_a_usage_error(monkeypatch):
    monkeypatch.setenv("CONCURRENCY_MIN", "0")
    assert _run("status")[0] == 2
