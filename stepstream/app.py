from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from httpx import AsyncClient

from stepstream.config import ClientConfig
from stepstream.history import HttpHistoryStore
from stepstream.interface import ILogger
from stepstream.log import default_logger
from stepstream.session import ResearchSession


def build_client(config: ClientConfig) -> AsyncClient:
    return AsyncClient(base_url=config.base_url, timeout=config.timeout_seconds)


@asynccontextmanager
async def open_session(
    config: ClientConfig,
    *,
    client: AsyncClient | None = None,
    logger: ILogger = default_logger,
) -> AsyncIterator[ResearchSession]:
    """Own the HTTP client and session for the duration of the block.

    A caller-supplied `client` is used as is and left open on exit.
    """
    owns_client = client is None
    http = client if client is not None else build_client(config)
    history = (
        HttpHistoryStore(http, path=config.history_path)
        if config.history_enabled
        else None
    )
    session = ResearchSession(
        http,
        history=history,
        research_path=config.research_path,
        logger=logger,
    )
    try:
        yield session
    finally:
        await session.close()
        if owns_client:
            await http.aclose()
