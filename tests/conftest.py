"""Shared fixtures: in-memory SQLite store, RBAC services and cache tiers."""

import pytest
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

import modcore.models  # noqa: F401
from modcore.cache.memory import MemoryCache, MemoryCacheConfig
from modcore.db.base import Base
from modcore.db.session import create_db_engine
from modcore.services.rbac_service import RBACService


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def engine():
    engine = create_db_engine("sqlite://", poolclass=StaticPool)
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def memory_cache():
    cache = MemoryCache(MemoryCacheConfig(default_ttl=60, cleanup_interval=0))
    yield cache
    cache.close()


@pytest.fixture
def rbac():
    return RBACService()


@pytest.fixture
def cached_rbac(memory_cache):
    return RBACService(cache=memory_cache, cache_ttl=60)


@pytest.fixture
def posts(db, rbac):
    """An editor role granting posts.write plus a few loose permissions."""
    write = rbac.create_permission(db, "Write Posts", "posts.write", module="posts")
    delete = rbac.create_permission(db, "Delete Posts", "posts.delete", module="posts")
    publish = rbac.create_permission(db, "Publish Posts", "posts.publish", module="posts")
    view = rbac.create_permission(db, "View Users", "users.view", module="users")
    editor = rbac.create_role(db, "Editor", "editor", "Edits posts")
    rbac.attach_permission_to_role(db, editor.id, write.id)
    return {
        "editor": editor,
        "write": write,
        "delete": delete,
        "publish": publish,
        "view": view,
    }
