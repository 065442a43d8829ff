"""Shared test fixtures."""
import os
from dataclasses import dataclass

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

os.environ["ENVIRONMENT"] = "test"
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///./clusterhub-test.db")

from clusterhub.config import Settings
from clusterhub.db.base import Base
from clusterhub.db.session import build_engine, build_session_factory, get_db_session
from clusterhub.main import app
import clusterhub.models  # noqa: F401
from clusterhub.services.membership import MembershipService
from clusterhub.services.store import EntityStore


@dataclass(frozen=True)
class Seed:
    """Ids of the rows every test starts from.

    alice is the cluster admin; alice, bob and carol are cluster and project
    members; dave is a registered user outside the cluster.
    """

    alice: int
    bob: int
    carol: int
    dave: int
    cluster: int
    company_chat: int
    project: int
    project_chat: int
    task: int


@pytest.fixture
def settings() -> Settings:
    return Settings(environment="test")


@pytest_asyncio.fixture(scope="function")
async def db_engine(tmp_path):
    # A file database so that separate sessions really contend for the lock
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return build_session_factory(db_engine)


@pytest_asyncio.fixture(scope="function")
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest_asyncio.fixture
async def seed(session_factory) -> Seed:
    async with session_factory() as session:
        store = EntityStore(session)
        membership = MembershipService(session)

        alice = await store.create_user("alice", "alice@example.com", "x")
        bob = await store.create_user("bob", "bob@example.com", "x")
        carol = await store.create_user("carol", "carol@example.com", "x")
        dave = await store.create_user("dave", "dave@example.com", "x")

        cluster = await store.create_cluster("Acme", "ACME", with_company_chat=True)
        for user in (alice, bob, carol):
            await membership.add_cluster_member(cluster.id, user.id)

        project = await store.create_project(cluster.id, "Apollo")
        for user in (alice, bob, carol):
            await membership.add_project_member(project.id, user.id)
        task = await store.create_task(project.id, "Design review")

        return Seed(
            alice=alice.id,
            bob=bob.id,
            carol=carol.id,
            dave=dave.id,
            cluster=cluster.id,
            company_chat=cluster.company_chat_id,
            project=project.id,
            project_chat=project.chat_id,
            task=task.id,
        )


@pytest_asyncio.fixture(scope="function")
async def client(session_factory):
    """HTTP test client with overridden DB dependency"""

    async def override_get_db():
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    app.dependency_overrides[get_db_session] = override_get_db
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()


def auth_headers(user_id: int) -> dict:
    """Identity header as set by the upstream auth proxy"""
    return {"X-User-ID": str(user_id)}
