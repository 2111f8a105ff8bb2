import os

import pytest

from pyln.wtclient.dbm import DBM
from pyln.wtclient.wt_client import WTClient

from helpers import FakeTower


@pytest.fixture
def db_path(tmp_path):
    return os.path.join(str(tmp_path), "watchtower", "watchtower.db")


@pytest.fixture
def dbm(db_path):
    db = DBM(db_path)
    yield db
    db.close()


@pytest.fixture
def wt_client(dbm):
    return WTClient(dbm)


@pytest.fixture
def tower():
    return FakeTower()


@pytest.fixture
def registered_tower(wt_client, tower):
    """A tower the client is subscribed to, reachable at a dummy address."""
    wt_client.add_update_tower(tower.tower_id, "http://localhost:9814", 100, 1000)
    return tower
