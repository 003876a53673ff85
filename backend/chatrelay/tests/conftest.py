from collections.abc import Generator

import pytest
from sqlalchemy.engine import Engine

from chatrelay.core.db import init_db, init_queue_db, make_engine


@pytest.fixture()
def db_engine(tmp_path) -> Generator[Engine, None, None]:
    engine = make_engine(f"sqlite:///{tmp_path / 'chatrelay.db'}")
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture()
def queue_db_url(tmp_path) -> str:
    return f"sqlite:///{tmp_path / 'delivery_queue.db'}"


@pytest.fixture()
def queue_engine(queue_db_url) -> Generator[Engine, None, None]:
    engine = make_engine(queue_db_url)
    init_queue_db(engine)
    yield engine
    engine.dispose()
