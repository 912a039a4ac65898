"""
Mock modules for testing.

Provides in-memory implementations of the database, the repositories
and the clock to enable testing without PostgreSQL or Redis.
"""

from tests.mocks.clock import FakeClock
from tests.mocks.database import MockDatabase
from tests.mocks.repositories import (
    FakeKnowledgeRepository,
    FakeMemoryRepository,
    FakeProfileRepository,
    FakeSourceRepository,
)

__all__ = [
    "FakeClock",
    "MockDatabase",
    "FakeKnowledgeRepository",
    "FakeMemoryRepository",
    "FakeProfileRepository",
    "FakeSourceRepository",
]
