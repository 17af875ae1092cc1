import pytest

from ticketgate.infra import timings
from ticketgate.infra.sql import Database
from ticketgate.token import TokenCodec

from tests.helpers import CHECKSUM_SECRET, KEY, Seed


@pytest.fixture
async def db(tmp_path):
    database = Database(f"sqlite:///{tmp_path / 'ticketgate.db'}")
    await database.open()
    yield database
    await database.close()


@pytest.fixture
def codec():
    return TokenCodec(KEY, CHECKSUM_SECRET)


@pytest.fixture
def seed(db):
    return Seed(db)


@pytest.fixture(autouse=True)
def _fresh_timings():
    timings.reset()
    yield
    timings.reset()
