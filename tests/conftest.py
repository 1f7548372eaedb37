"""Test configuration: a throwaway SQLite order store and staff tokens."""
import os
import pathlib
import tempfile

# Settings are read once and cached, so the environment must be in place
# before anything under ``app`` is imported.
DB_PATH = pathlib.Path(tempfile.mkdtemp(prefix="order-relay-")) / "orders.db"
os.environ["DATABASE_URL"] = f"sqlite+aiosqlite:///{DB_PATH}"
os.environ["ENV_MODE"] = "development"
os.environ["BROADCAST_BACKEND"] = "memory"
os.environ["JWT_SECRET"] = "test-secret-" + "x" * 32
os.environ["AUTO_CREATE_TABLES"] = "true"

import jwt
import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session

import app.models  # noqa: F401
from app.core.config import get_settings
from app.database import Base
from app.models import MenuItem
from app.services.broadcast import reset_broadcaster
from app.services.realtime import reset_realtime
from app.services.realtime_handler import get_realtime_handler
from app.services.sequence import get_sequence_generator

EVENT_ID = "evt-1"
OTHER_EVENT_ID = "evt-2"

sync_engine = create_engine(f"sqlite:///{DB_PATH}")


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture(autouse=True)
def clean_state():
    """Fresh tables and fresh realtime singletons for every test."""
    Base.metadata.drop_all(sync_engine)
    Base.metadata.create_all(sync_engine)
    reset_broadcaster()
    reset_realtime()
    get_realtime_handler.cache_clear()
    get_sequence_generator.cache_clear()
    yield
    get_realtime_handler.cache_clear()
    reset_realtime()
    reset_broadcaster()


@pytest.fixture
def menu() -> dict[str, str]:
    """Seed a small menu; returns item ids by short name."""
    items = {
        "pizza": MenuItem(event_id=EVENT_ID, name="Pizza", price=12.5, category="Main", requires_prep=True),
        "salad": MenuItem(event_id=EVENT_ID, name="Salad", price=7.0, category="Starter", requires_prep=True),
        "coke": MenuItem(event_id=EVENT_ID, name="Coke", price=2.5, category="Drinks", requires_prep=False),
        "gone": MenuItem(event_id=EVENT_ID, name="Old Soup", price=4.0, is_deleted=True),
        "foreign": MenuItem(event_id=OTHER_EVENT_ID, name="Burger", price=9.0),
    }
    with Session(sync_engine) as session:
        session.add_all(items.values())
        session.commit()
        return {name: item.id for name, item in items.items()}


def make_token(role: str, user_id: str = None, username: str = None, secret: str = None) -> str:
    payload = {
        "user": {
            "id": user_id or f"{role.lower()}-1",
            "role": role,
            "username": username or role.lower(),
        }
    }
    return jwt.encode(payload, secret or get_settings().jwt_secret, algorithm="HS256")


@pytest.fixture
def token():
    return make_token
