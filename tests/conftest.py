# tests/conftest.py
import pytest

from madlan_crawler.config import BACKENDS
from madlan_crawler.context import CrawlContext

from helpers import FakeBrowser, make_config


@pytest.fixture(params=BACKENDS)
def config(request, tmp_path):
    # one store per test, on each backend
    return make_config(
        db_backend=request.param,
        db_path=str(tmp_path / "databases" / "properties.db"),
        duckdb_path=str(tmp_path / "databases" / "properties.duckdb"),
    )


@pytest.fixture
async def ctx(config):
    async with CrawlContext(config) as c:
        yield c


@pytest.fixture
def storage(ctx):
    return ctx.storage


@pytest.fixture
def repos(ctx):
    return ctx.repos


@pytest.fixture
def frontier(ctx):
    return ctx.frontier


@pytest.fixture
def browser():
    return FakeBrowser()
