import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool
from fastapi.testclient import TestClient

from main import app
from database import Base, get_db
from models import Group, GroupMember, User
from auth import create_access_token, create_service_token

# Setup in-memory SQLite database for testing
SQLALCHEMY_DATABASE_URL = "sqlite:///:memory:"

engine = create_engine(
    SQLALCHEMY_DATABASE_URL,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

@pytest.fixture(scope="function")
def db_session():
    """Create a fresh database session for each test."""
    Base.metadata.create_all(bind=engine)
    session = TestingSessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)

@pytest.fixture(scope="function")
def client(db_session):
    """Create a FastAPI TestClient with overridden database dependency."""
    def override_get_db():
        try:
            yield db_session
        finally:
            pass

    app.dependency_overrides[get_db] = override_get_db
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.pop(get_db, None)

def make_user(db_session, email, full_name=None):
    user = User(email=email, full_name=full_name, is_active=True)
    db_session.add(user)
    db_session.commit()
    db_session.refresh(user)
    return user

def make_group(db_session, creator, members=(), name="Trip", default_currency="USD"):
    group = Group(name=name, created_by_id=creator.id, default_currency=default_currency)
    db_session.add(group)
    db_session.commit()
    db_session.refresh(group)
    for user in (creator, *members):
        db_session.add(GroupMember(group_id=group.id, user_id=user.id))
    db_session.commit()
    return group

def headers_for(user):
    access_token = create_access_token(data={"sub": user.email})
    return {"Authorization": f"Bearer {access_token}"}

def service_headers(service_name="payments"):
    return {"Authorization": f"Bearer {create_service_token(service_name)}"}

@pytest.fixture
def test_user(db_session):
    """Create a test user and return the user object."""
    return make_user(db_session, "test@example.com", "Test User")

@pytest.fixture
def auth_headers(test_user):
    """Return authorization headers for the test user."""
    return headers_for(test_user)

@pytest.fixture
def alice(db_session):
    return make_user(db_session, "alice@example.com", "Alice")

@pytest.fixture
def bob(db_session):
    return make_user(db_session, "bob@example.com", "Bob")

@pytest.fixture
def charlie(db_session):
    return make_user(db_session, "charlie@example.com", "Charlie")
