from __future__ import annotations

from collections.abc import AsyncIterator, Callable

import pytest
import pytest_asyncio
from harness import PeerHarness

from aiosfu.config import SfuConfig
from aiosfu.engine.local import LocalMediaEngine, LocalRouter
from aiosfu.server.coordinator import SignalingCoordinator


@pytest_asyncio.fixture
async def router() -> AsyncIterator[LocalRouter]:
    engine = LocalMediaEngine()
    yield await engine.create_router(SfuConfig().media_codecs)
    await engine.close()


@pytest.fixture
def config() -> SfuConfig:
    return SfuConfig()


@pytest.fixture
def coordinator(router: LocalRouter, config: SfuConfig) -> SignalingCoordinator:
    return SignalingCoordinator(router, config)


@pytest.fixture
def join(coordinator: SignalingCoordinator) -> Callable[[], PeerHarness]:
    return lambda: PeerHarness(coordinator)
