"""
Shared fixtures: a fully wired system on in-memory storage with the default
plans seeded.
"""

import pytest_asyncio

from cryptonest.api.auth import CryptoNestSystem
from cryptonest.async_storage import AsyncInMemoryStorage
from cryptonest.plans import DEFAULT_PLANS

from helpers import make_config


@pytest_asyncio.fixture
async def system():
    """Wired system with seeded plans"""
    system = CryptoNestSystem(config=make_config(), storage=AsyncInMemoryStorage())
    await system.plan_catalog.seed_or_update(DEFAULT_PLANS)
    return system
