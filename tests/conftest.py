import httpx
import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from medcheckout.config import get_settings
from medcheckout.database import Base
from medcheckout.main import app as fastapi_app

# Setup test database
SQLALCHEMY_DATABASE_URL = "sqlite:///./test_temp.db"
engine = create_engine(SQLALCHEMY_DATABASE_URL, connect_args={
                       "check_same_thread": False})
TestingSessionLocal = sessionmaker(
    autocommit=False, autoflush=False, bind=engine)


@pytest.fixture(autouse=True)
def setup_db(monkeypatch):
    Base.metadata.create_all(bind=engine)
    # Mock SessionLocal everywhere a session is opened
    monkeypatch.setattr("medcheckout.kv.SessionLocal", TestingSessionLocal)
    monkeypatch.setattr("medcheckout.fanout.SessionLocal", TestingSessionLocal)
    monkeypatch.setattr("medcheckout.admin.SessionLocal", TestingSessionLocal)
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture
def env(monkeypatch):
    """Set environment variables and rebuild the cached Settings."""
    def apply(**values):
        for name, value in values.items():
            monkeypatch.setenv(name, value)
        get_settings.cache_clear()
        return get_settings()

    get_settings.cache_clear()
    yield apply
    get_settings.cache_clear()


@pytest.fixture
def client():
    with TestClient(fastapi_app) as c:
        yield c
    fastapi_app.dependency_overrides.clear()


@pytest.fixture
def http_recorder():
    """Build an httpx.Client whose requests are recorded and answered by ``handler``."""
    def build(handler):
        calls = []

        def transport(request: httpx.Request):
            calls.append(request)
            return handler(request)

        return httpx.Client(transport=httpx.MockTransport(transport)), calls

    return build
