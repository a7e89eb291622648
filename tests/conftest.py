import os
import sys
from typing import Iterator

import pytest
import sqlalchemy as sa
from fastapi.testclient import TestClient
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

# Ensure the repository root is on sys.path so tests can import the package
ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), '..'))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)

from practice_calendar import db as calendar_db
from practice_calendar.db.models import Base


@pytest.fixture
def engine() -> Iterator[sa.engine.Engine]:
    engine = sa.create_engine(
        'sqlite://',
        connect_args={'check_same_thread': False},
        poolclass=StaticPool,
        future=True,
    )
    Base.metadata.create_all(engine)
    calendar_db.configure_database(engine)
    yield engine
    Base.metadata.drop_all(engine)


@pytest.fixture
def session(engine) -> Iterator[Session]:
    factory = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False, future=True)
    db_session = factory()
    try:
        yield db_session
    finally:
        db_session.rollback()
        db_session.close()


@pytest.fixture
def client(engine) -> Iterator[TestClient]:
    from practice_calendar import main

    main.DAY_VIEW_CACHE.clear()
    with TestClient(main.app) as test_client:
        yield test_client
    main.DAY_VIEW_CACHE.clear()
