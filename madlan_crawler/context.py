# madlan_crawler/context.py
from .crud import Repositories
from .db import StoragePort, open_storage
from .frontier import Frontier


class CrawlContext:
    """Open storage, expose repositories and frontier, close on exit.

        async with CrawlContext(config) as ctx:
            await ctx.frontier.get_stats(config.city)
    """

    def __init__(self, config, storage: StoragePort = None):
        self.config = config
        self.storage = storage or open_storage(config.db_backend, config.storage_path)
        self.repos = Repositories(self.storage)
        self.frontier = Frontier(self.storage)

    async def __aenter__(self):
        await self.storage.initialize()
        return self

    async def __aexit__(self, *exc):
        await self.storage.close()
