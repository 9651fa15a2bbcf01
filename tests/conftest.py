import pytest
from sqlalchemy.pool import StaticPool
from sqlmodel import create_engine

from cutterworks.db.session import create_tables
from cutterworks.services.engine import OrderEngine
from cutterworks.services.realtime import Broadcaster
from cutterworks.services.repository import OrderRepository
from cutterworks.services.storage import LocalBlobStore

from helpers import NOW


@pytest.fixture
def db():
    engine = create_engine("sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool)
    create_tables(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def repository(db):
    return OrderRepository(db)


@pytest.fixture
def blob_dir(tmp_path):
    return tmp_path / "blobs"


@pytest.fixture
def order_engine(repository, blob_dir):
    return OrderEngine(
        repository,
        LocalBlobStore(str(blob_dir), "/uploads"),
        Broadcaster(),
        clock=lambda: NOW,
    )


@pytest.fixture
def events(order_engine):
    received = []
    order_engine.broadcaster.subscribe("orders-list", received.append)
    return received
