# backend/tests/conftest.py
import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from vibespace.config import Settings
from vibespace.models import Base
from vibespace.schemas.proxmox import ProxmoxRuntimeConfig
from vibespace.services.vmid_allocator import process_reservations


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db_session(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def test_settings():
    return Settings(
        database_url="sqlite:///:memory:",
        secret_key="test-secret",
        proxmox_host="pve.test",
        proxmox_token_id="root@pam!vibespace",
        proxmox_token_secret="token-secret",
        proxmox_node="pve",
    )


@pytest.fixture
def runtime_config():
    return ProxmoxRuntimeConfig(
        host="pve.test",
        token_id="root@pam!vibespace",
        token_secret="token-secret",
        node="pve",
    )


@pytest.fixture(autouse=True)
def clear_vmid_reservations():
    process_reservations.clear()
    yield
    process_reservations.clear()
