from datetime import datetime

import pytest

from core.config import Settings
from core.db import Database
from core.tables import UserRow
from ledger.service import LedgerService, PointPolicyCatalog
from promise.models import PromiseCreateRequest
from promise.service import PromiseBook, ShareTokenIssuer


@pytest.fixture
def settings() -> Settings:
    return Settings(database_url="sqlite://", share_base_url="https://promise.test/share/")


@pytest.fixture
def database(settings):
    db = Database(settings.database_url)
    db.create_all()
    yield db
    db.drop_all()
    db.engine.dispose()


@pytest.fixture
def make_user(database):
    def _make(nickname: str = "shepherd", point: int = 0) -> int:
        with database.transaction() as session:
            user = UserRow(nickname=nickname, point=point)
            session.add(user)
            session.flush()
            return user.id
    return _make


@pytest.fixture
def catalog(database) -> PointPolicyCatalog:
    return PointPolicyCatalog(database)


@pytest.fixture
def ledger(database) -> LedgerService:
    return LedgerService(database)


@pytest.fixture
def book(database) -> PromiseBook:
    return PromiseBook(database)


@pytest.fixture
def issuer(database, settings) -> ShareTokenIssuer:
    return ShareTokenIssuer(database, settings)


@pytest.fixture
def make_promise(book):
    def _make(owner_id: int, scheduled_at=datetime(2024, 12, 25, 14, 0), title: str = "Lunch at noon"):
        return book.create(owner_id, PromiseCreateRequest(
            title=title,
            scheduled_at=scheduled_at,
            address="Seoul Station",
            body="Meet at exit 1",
        ))
    return _make
