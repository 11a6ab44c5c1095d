"""Pytest configuration and fixtures."""

import os
import uuid
from dataclasses import dataclass

import pytest
import pytest_asyncio

from models import Organisation, OrganisationMembership, User


@dataclass
class TestCase:
    """Seeded users, organisations and memberships.

    marc is member of Apple and Microsoft; peter and marcel of Microsoft.
    Both organisations are owned by admin.
    """

    __test__ = False

    database: object
    admin: User
    marc: User
    peter: User
    marcel: User
    microsoft: Organisation
    apple: Organisation


async def setup_test_case(database) -> TestCase:
    admin = User(name="admin")
    marc = User(name="marc")
    peter = User(name="peter")
    marcel = User(name="marcel")

    microsoft = Organisation(name="Microsoft", owner=admin)
    apple = Organisation(name="Apple", owner=admin)

    for item in (admin, marc, peter, marcel, microsoft, apple):
        await database.add(item)

    await database.add(OrganisationMembership(user=marc, organisation=apple))
    await database.add(OrganisationMembership(user=marc, organisation=microsoft))
    await database.add(OrganisationMembership(user=peter, organisation=microsoft))
    await database.add(OrganisationMembership(user=marcel, organisation=microsoft))

    return TestCase(database, admin, marc, peter, marcel, microsoft, apple)


@pytest_asyncio.fixture
async def database():
    """Create an in-memory database."""
    from odmkit import create_database

    db = create_database("memory://")
    yield db
    await db.close()


@pytest_asyncio.fixture
async def testcase(database):
    """In-memory database seeded with the user/organisation test case."""
    return await setup_test_case(database)


@pytest_asyncio.fixture
async def mongo_database():
    """Create a MongoDB database.

    Set MONGODB_URL environment variable to use a real MongoDB server.
    Otherwise, this fixture is skipped.
    """
    from odmkit import create_database

    url = os.environ.get("MONGODB_URL")
    if not url:
        pytest.skip("MONGODB_URL not set")

    db = create_database(url, database=f"odmkit_test_{uuid.uuid4().hex[:8]}")
    yield db
    await db.storage.drop()
    await db.close()
