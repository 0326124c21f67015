"""Shared fixtures: a throwaway SQLite database per test and small item factories."""

import pytest

from database.db_manager import DatabaseManager
from database.group_store import GroupStore
from database.pool_store import PoolStore
from database.ranking_store import RankingStore
from ranking.engine import ReconciliationEngine
from ranking.models import FRENCH, Identity, Item, RankingContext
from ranking.reconciliation import BoardState, new_entry, promote


def quiet(message):
    pass


@pytest.fixture
def database(tmp_path):
    db = DatabaseManager('test.db', str(tmp_path))
    yield db
    db.disconnect()


@pytest.fixture
def pool_store(database):
    return PoolStore(database)


@pytest.fixture
def ranking_store(database):
    return RankingStore(database)


@pytest.fixture
def group_store(database):
    return GroupStore(database)


@pytest.fixture
def alice():
    return Identity('alice', 'Alice', 'https://example.org/alice.png')


@pytest.fixture
def bob():
    return Identity('bob', 'Bob')


@pytest.fixture
def context(alice):
    return RankingContext.for_identity(alice, 2024, FRENCH)


@pytest.fixture
def engine(pool_store, ranking_store):
    return ReconciliationEngine(pool_store, ranking_store, logger=quiet)


@pytest.fixture
def make_item():
    def factory(item_id, title=None, artist='Artist', year=2024, category=FRENCH, cover=''):
        return Item(item_id, title or f"Album {item_id}", artist, year, cover, category)
    return factory


@pytest.fixture
def make_board(make_item):
    """Board whose pool holds `pool_ids` and whose ranking holds `ranked_ids`, in order."""
    def factory(pool_ids=(), ranked_ids=()):
        board = BoardState()
        for item_id in list(ranked_ids) + [i for i in pool_ids if i not in ranked_ids]:
            board = BoardState(pool=board.pool + (new_entry(make_item(item_id), 'alice'),),
                               ranked=board.ranked)
        for item_id in ranked_ids:
            board = promote(board, item_id)
        return board
    return factory
