"""Shared fixtures: in-memory database, test client and fake completion client."""
import os

# Must be set before chatmeter modules read the environment
os.environ["DATABASE_URL"] = "sqlite:///:memory:"
os.environ["APP_URL"] = "https://chat.example.com"
os.environ["STRIPE_SECRET_KEY"] = "sk_test_chatmeter"
os.environ["STRIPE_WEBHOOK_SECRET"] = "whsec_test_chatmeter"
os.environ["STRIPE_PRODUCT_PRO"] = "prod_pro"
os.environ["STRIPE_PRODUCT_UNLIMITED"] = "prod_unlimited"
os.environ["PLAN_QUOTA_FREE"] = "10"
os.environ["PLAN_QUOTA_PRO"] = "100"

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from chatmeter.billing.plans import Plan, PlanCatalog, ProductBindings
from chatmeter.chat.completion import CompletionError
from chatmeter.chat.router import get_chat_client
from chatmeter.database import Base, get_db, get_session_factory
from chatmeter.main import app


SQLALCHEMY_DATABASE_URL = "sqlite:///:memory:"

engine = create_engine(
    SQLALCHEMY_DATABASE_URL,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def override_get_db():
    """Override database dependency for tests."""
    try:
        db = TestingSessionLocal()
        yield db
    finally:
        db.close()


app.dependency_overrides[get_db] = override_get_db
app.dependency_overrides[get_session_factory] = lambda: TestingSessionLocal


class FakeCompletionClient:
    """Streams canned chunks, optionally failing after a number of them."""

    def __init__(self, chunks=("Hello", ", ", "world"), fail_after: int | None = None):
        self.chunks = list(chunks)
        self.fail_after = fail_after
        self.calls: list[list[dict[str, str]]] = []

    async def stream(self, messages):
        self.calls.append(list(messages))
        for index, chunk in enumerate(self.chunks):
            if self.fail_after is not None and index >= self.fail_after:
                raise CompletionError("upstream connection reset")
            yield chunk


@pytest.fixture(scope="function")
def db_session():
    """Fresh schema per test."""
    Base.metadata.create_all(bind=engine)
    db = TestingSessionLocal()
    yield db
    db.close()
    Base.metadata.drop_all(bind=engine)


@pytest.fixture(scope="function")
def client(db_session):
    yield TestClient(app)


@pytest.fixture
def install_completion():
    """Install a FakeCompletionClient built with the given arguments."""
    def _install(**kwargs) -> FakeCompletionClient:
        fake = FakeCompletionClient(**kwargs)
        app.dependency_overrides[get_chat_client] = lambda: fake
        return fake
    yield _install
    app.dependency_overrides.pop(get_chat_client, None)


@pytest.fixture
def completion(install_completion):
    return install_completion()


@pytest.fixture
def catalog():
    return PlanCatalog()


@pytest.fixture
def bindings():
    return ProductBindings({Plan.pro: "prod_pro", Plan.unlimited: "prod_unlimited"})


def user_headers(user_id: str = "user-1", email: str | None = "user1@example.com") -> dict[str, str]:
    headers = {"X-User-ID": user_id}
    if email:
        headers["X-User-Email"] = email
    return headers


@pytest.fixture
def auth_headers():
    return user_headers()
