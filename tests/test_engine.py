"""Tests for the reconciliation engine: commits, mirror sync and ordering."""

import threading
from concurrent.futures import Future
from unittest import mock

import pytest

from database.db_manager import DatabaseManager
from database.pool_store import PoolStore
from database.ranking_store import RankingStore
from ranking.engine import ReconciliationEngine
from ranking.errors import DuplicateItem, NotInPool, NotRanked, NotSignedIn, WriteError
from ranking.models import FRENCH, INTERNATIONAL, RankingContext, Scope
from sync.bridge import MemorySyncBridge

from conftest import quiet

SOLO_KEY = 'rankings/alice_2024'


def ranked_ids(engine, context):
    return [e.album_id for e in engine.ranked(context)]


def visible_ids(engine, context):
    return [e.item_id for e in engine.visible_pool(context)]


def make_engine(tmp_path, name, bridge=None, logger=quiet, **kwargs):
    database = DatabaseManager(f"{name}.db", str(tmp_path))
    return ReconciliationEngine(PoolStore(database), RankingStore(database), bridge,
                                logger=logger, **kwargs)


class DeferredExecutor:
    """Holds submitted writes until run_all(), like a slow network."""

    def __init__(self):
        self.jobs = []

    def submit(self, fn, *args):
        future = Future()
        self.jobs.append((future, fn, args))
        return future

    def run_all(self):
        jobs, self.jobs = self.jobs, []
        for future, fn, args in jobs:
            try:
                future.set_result(fn(*args))
            except Exception as e:
                future.set_exception(e)


class TestLocalCommands:
    def test_add_and_promote(self, engine, context, make_item):
        engine.add_to_pool(context, make_item('A'))
        assert visible_ids(engine, context) == ['A']
        assert ranked_ids(engine, context) == []

        board = engine.promote(context, 'A')
        assert [(e.album_id, e.rank) for e in board.ranked] == [('A', 1)]
        assert visible_ids(engine, context) == []
        assert engine.pool_store.contains(context.pool_scope, FRENCH, 'A')

    def test_commands_need_identity(self, engine, make_item):
        anonymous = RankingContext(Scope('alice'), 2024, FRENCH, None)
        with pytest.raises(NotSignedIn):
            engine.add_to_pool(anonymous, make_item('A'))

    def test_cannot_edit_someone_elses_ranking(self, engine, bob, make_item):
        foreign = RankingContext(Scope('alice'), 2024, FRENCH, bob)
        with pytest.raises(NotSignedIn):
            engine.add_to_pool(foreign, make_item('A'))

    def test_precondition_errors_surface(self, engine, context, make_item):
        engine.add_to_pool(context, make_item('A'))
        with pytest.raises(NotInPool):
            engine.promote(context, 'Z')
        with pytest.raises(NotRanked):
            engine.demote(context, 'A')
        with pytest.raises(DuplicateItem):
            engine.add_to_pool(context, make_item('A'))
        assert visible_ids(engine, context) == ['A']

    def test_reorder_and_move(self, engine, context, make_item):
        for item_id in 'ABC':
            engine.add_to_pool(context, make_item(item_id))
            engine.promote(context, item_id)
        engine.reorder(context, 'C', 0)
        assert ranked_ids(engine, context) == ['C', 'A', 'B']
        engine.move_ranked(context, 'A', 'down')
        assert ranked_ids(engine, context) == ['C', 'B', 'A']
        assert [e.rank for e in engine.ranked(context)] == [1, 2, 3]

    def test_insert_from_pool(self, engine, context, make_item):
        for item_id in 'ABX':
            engine.add_to_pool(context, make_item(item_id))
        engine.promote(context, 'A')
        engine.promote(context, 'B')
        engine.insert_from_pool(context, 'X', 0)
        assert ranked_ids(engine, context) == ['X', 'A', 'B']

    def test_demote_restores_visibility(self, engine, context, make_item):
        engine.add_to_pool(context, make_item('A'))
        engine.add_to_pool(context, make_item('B'))
        engine.promote(context, 'A')
        engine.promote(context, 'B')
        engine.demote(context, 'A')
        assert [(e.album_id, e.rank) for e in engine.ranked(context)] == [('B', 1)]
        assert visible_ids(engine, context) == ['A']

    def test_remove_ranked_solo_purges_pool_row(self, engine, context, make_item):
        engine.add_to_pool(context, make_item('A'))
        engine.promote(context, 'A')
        engine.remove_ranked(context, 'A')
        assert ranked_ids(engine, context) == []
        assert visible_ids(engine, context) == []

    def test_remove_ranked_in_group_keeps_shared_row(self, engine, alice, make_item):
        context = RankingContext.for_identity(alice, 2024, FRENCH, group_id='g1')
        engine.add_to_pool(context, make_item('A'))
        engine.promote(context, 'A')
        engine.remove_ranked(context, 'A')
        assert ranked_ids(engine, context) == []
        assert visible_ids(engine, context) == ['A']

    def test_add_rejects_item_of_other_category(self, engine, context, make_item):
        with pytest.raises(ValueError):
            engine.add_to_pool(context, make_item('I', category=INTERNATIONAL))
        assert engine.board(context).pool == ()

    def test_remove_pooled(self, engine, context, make_item):
        engine.add_to_pool(context, make_item('A'))
        engine.remove_pooled(context, 'A')
        assert visible_ids(engine, context) == []
        with pytest.raises(NotInPool):
            engine.remove_pooled(context, 'A')

    def test_visible_pool_is_per_year_and_category(self, engine, alice, make_item):
        group_2024 = RankingContext.for_identity(alice, 2024, FRENCH, group_id='g1')
        group_2023 = group_2024.with_year(2023)
        engine.add_to_pool(group_2024, make_item('A'))
        engine.promote(group_2024, 'A')
        # group pools are shared across years: still unranked for 2023
        assert visible_ids(engine, group_2023) == ['A']
        assert visible_ids(engine, group_2024.with_category(INTERNATIONAL)) == []

    def test_listeners_are_told_the_document(self, engine, context, make_item):
        seen = []
        engine.listeners.append(seen.append)
        engine.add_to_pool(context, make_item('A'))
        assert seen == [SOLO_KEY]

    def test_commands_from_many_threads(self, engine, context, make_item):
        ids = [f"T{i}" for i in range(8)]
        for item_id in ids:
            engine.add_to_pool(context, make_item(item_id))
        errors = []

        def work(item_id):
            try:
                engine.promote(context, item_id)
            except Exception as e:
                errors.append(e)

        threads = [threading.Thread(target=work, args=(i,)) for i in ids]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert errors == []
        assert sorted(ranked_ids(engine, context)) == sorted(ids)
        assert [e.rank for e in engine.ranked(context)] == list(range(1, 9))


class TestMirror:
    @pytest.fixture
    def bridge(self):
        return MemorySyncBridge(logger=quiet)

    @pytest.fixture
    def synced(self, tmp_path, bridge, context):
        engine = make_engine(tmp_path, 'device-a', bridge, client_id='device-a')
        engine.open(context)
        return engine

    def test_partial_updates_reach_the_mirror(self, synced, bridge, context, make_item):
        synced.add_to_pool(context, make_item('A'))
        synced.promote(context, 'A')
        document = bridge.get(SOLO_KEY)
        assert document['userId'] == 'alice'
        assert document['username'] == 'Alice'
        assert [e['albumId'] for e in document['french']['ranked']] == ['A']
        assert list(document['french']['pool']) == ['A']
        assert document['origin'] == 'device-a'

    def test_categories_do_not_stomp_each_other(self, synced, bridge, context, make_item):
        international = context.with_category(INTERNATIONAL)
        synced.add_to_pool(context, make_item('F'))
        synced.promote(context, 'F')
        synced.add_to_pool(international, make_item('I', category=INTERNATIONAL))
        synced.promote(international, 'I')
        document = bridge.get(SOLO_KEY)
        assert [e['albumId'] for e in document['french']['ranked']] == ['F']
        assert [e['albumId'] for e in document['international']['ranked']] == ['I']

    def test_noop_reorder_writes_nothing(self, synced, bridge, context, make_item):
        synced.add_to_pool(context, make_item('A'))
        synced.promote(context, 'A')
        with mock.patch.object(bridge, 'persist', wraps=bridge.persist) as persist:
            synced.reorder(context, 'A', 0)
            synced.move_ranked(context, 'A', 'up')
        persist.assert_not_called()

    def test_pool_removal_deletes_the_field(self, synced, bridge, context, make_item):
        synced.add_to_pool(context, make_item('A'))
        synced.add_to_pool(context, make_item('B'))
        synced.remove_pooled(context, 'A')
        assert list(bridge.get(SOLO_KEY)['french']['pool']) == ['B']

    def test_own_echo_is_ignored(self, tmp_path, bridge, context, make_item):
        messages = []
        engine = make_engine(tmp_path, 'echo', bridge, logger=messages.append)
        engine.open(context)
        applied = len(messages)
        engine.add_to_pool(context, make_item('A'))
        engine.promote(context, 'A')
        assert len(messages) == applied

    def test_second_device_follows(self, tmp_path, synced, bridge, context, make_item):
        synced.add_to_pool(context, make_item('A'))
        synced.add_to_pool(context, make_item('B'))

        other = make_engine(tmp_path, 'device-b', bridge, client_id='device-b')
        other.open(context)
        assert sorted(visible_ids(other, context)) == ['A', 'B']

        synced.promote(context, 'B')
        assert ranked_ids(other, context) == ['B']
        assert visible_ids(other, context) == ['A']
        other.reorder(context, 'B', 0)
        other.promote(context, 'A')
        assert ranked_ids(synced, context) == ['B', 'A']

    def test_remote_snapshot_overwrites_local_state(self, synced, bridge, context, make_item):
        synced.add_to_pool(context, make_item('A'))
        synced.promote(context, 'A')
        bridge.set_document(SOLO_KEY, {
            'userId': 'alice', 'year': 2024, 'writeId': 'someone-else',
            'french': {
                'ranked': [{'albumId': 'Z', 'rank': 5, 'title': 'Zed', 'artist': 'Z'}],
                'pool': {'Z': {'id': 'Z', 'title': 'Zed', 'artist': 'Z', 'addedBy': 'alice'}},
            },
        })
        assert [(e.album_id, e.rank) for e in synced.ranked(context)] == [('Z', 1)]
        assert [e.item_id for e in synced.board(context).pool] == ['Z']

    def test_missing_document_resets_year(self, synced, bridge, context, make_item):
        synced.add_to_pool(context, make_item('A'))
        synced.promote(context, 'A')
        bridge.set_document(SOLO_KEY, None)
        assert synced.ranked(context) == []
        assert synced.board(context).pool == ()

    def test_failed_write_keeps_local_state(self, synced, bridge, context, make_item):
        errors = []
        synced.on_write_error = errors.append
        bridge.online = False
        synced.add_to_pool(context, make_item('A'))
        synced.promote(context, 'A')

        assert ranked_ids(synced, context) == ['A']
        assert len(synced.failed_writes) == 2
        assert all(isinstance(e, WriteError) for e in errors)
        assert bridge.get(SOLO_KEY) is None

    def test_retry_sends_current_state(self, synced, bridge, context, make_item):
        bridge.online = False
        synced.add_to_pool(context, make_item('B'))
        synced.promote(context, 'B')
        bridge.online = True
        synced.demote(context, 'B')

        assert synced.retry_failed_writes() == 2
        assert synced.failed_writes == []
        document = bridge.get(SOLO_KEY)
        # replaying the failed promote would have brought B back
        assert document['french']['ranked'] == []
        assert list(document['french']['pool']) == ['B']

    def test_async_writes_can_be_flushed(self, tmp_path, context, make_item):
        from concurrent.futures import ThreadPoolExecutor
        with ThreadPoolExecutor(max_workers=2) as pool:
            bridge = MemorySyncBridge(executor=pool, logger=quiet)
            engine = make_engine(tmp_path, 'async', bridge)
            engine.add_to_pool(context, make_item('A'))
            engine.promote(context, 'A')
            assert engine.flush(timeout=5)
            assert not engine.has_pending_writes
        assert [e['albumId'] for e in bridge.get(SOLO_KEY)['french']['ranked']] == ['A']

    def test_quick_writes_settle_on_the_last_snapshot(self, tmp_path, context, make_item):
        writes = DeferredExecutor()
        bridge = MemorySyncBridge(executor=writes, logger=quiet)
        engine = make_engine(tmp_path, 'slow', bridge)
        engine.open(context)

        engine.add_to_pool(context, make_item('A'))
        engine.promote(context, 'A')
        writes.run_all()

        remote = [e['albumId'] for e in bridge.get(SOLO_KEY)['french']['ranked']]
        assert remote == ['A']
        assert ranked_ids(engine, context) == remote
        assert visible_ids(engine, context) == []

    def test_foreign_write_between_own_writes_is_caught_up(self, tmp_path, alice, context, make_item):
        writes = DeferredExecutor()
        bridge = MemorySyncBridge(executor=writes, logger=quiet)
        first = make_engine(tmp_path, 'device-a', bridge)
        second = make_engine(tmp_path, 'device-b', bridge)
        first.open(context)
        second.open(context)

        first.add_to_pool(context, make_item('X'))
        second.add_to_pool(context, make_item('Y'))
        writes.run_all()

        assert sorted(bridge.get(SOLO_KEY)['french']['pool']) == ['X', 'Y']
        assert sorted(visible_ids(first, context)) == ['X', 'Y']
        assert sorted(visible_ids(second, context)) == ['X', 'Y']

    def test_retry_from_another_thread_is_recognised(self, tmp_path, bridge, context, make_item):
        messages = []
        engine = make_engine(tmp_path, 'retry', bridge, logger=messages.append)
        engine.open(context)
        bridge.online = False
        engine.add_to_pool(context, make_item('A'))
        bridge.online = True

        worker = threading.Thread(target=engine.retry_failed_writes)
        worker.start()
        worker.join()

        applied = [m for m in messages if m.startswith('Applied remote snapshot')]
        # only the initial empty document was applied; the retry's echo was not
        assert len(applied) == 1
        assert list(bridge.get(SOLO_KEY)['french']['pool']) == ['A']
        assert visible_ids(engine, context) == ['A']


class TestGroups:
    @pytest.fixture
    def bridge(self):
        return MemorySyncBridge(logger=quiet)

    def test_members_share_the_pool_not_the_ranking(self, tmp_path, bridge, alice, bob, make_item):
        alice_ctx = RankingContext.for_identity(alice, 2024, FRENCH, group_id='g1')
        bob_ctx = RankingContext.for_identity(bob, 2024, FRENCH, group_id='g1')
        alice_engine = make_engine(tmp_path, 'alice', bridge)
        bob_engine = make_engine(tmp_path, 'bob', bridge)
        alice_engine.open(alice_ctx)
        bob_engine.open(bob_ctx)

        alice_engine.add_to_pool(alice_ctx, make_item('A'))
        assert visible_ids(bob_engine, bob_ctx) == ['A']
        assert bob_engine.board(bob_ctx).pool[0].added_by == 'alice'

        bob_engine.promote(bob_ctx, 'A')
        assert ranked_ids(bob_engine, bob_ctx) == ['A']
        assert ranked_ids(alice_engine, alice_ctx) == []
        assert visible_ids(alice_engine, alice_ctx) == ['A']
        assert list(bridge.get('groups/g1/pools/French')['albums']) == ['A']
        assert bridge.get('groups/g1/rankings/bob_2024')['groupId'] == 'g1'

    def test_second_member_to_add_gets_the_first_entry(self, tmp_path, alice, bob, make_item):
        writes = DeferredExecutor()
        bridge = MemorySyncBridge(executor=writes, logger=quiet)
        alice_ctx = RankingContext.for_identity(alice, 2024, FRENCH, group_id='g1')
        bob_ctx = RankingContext.for_identity(bob, 2024, FRENCH, group_id='g1')
        alice_engine = make_engine(tmp_path, 'alice', bridge)
        bob_engine = make_engine(tmp_path, 'bob', bridge)
        alice_engine.open(alice_ctx)

        alice_engine.add_to_pool(alice_ctx, make_item('Y', title='First'))
        with pytest.raises(DuplicateItem):
            bob_engine.add_to_pool(bob_ctx, make_item('Y', title='Second'))
        writes.run_all()

        assert bridge.get('groups/g1/pools/French')['albums']['Y']['addedBy'] == 'alice'
        for engine, ctx in ((alice_engine, alice_ctx), (bob_engine, bob_ctx)):
            pool = engine.board(ctx).pool
            assert [(e.item_id, e.added_by, e.item.title) for e in pool] == [('Y', 'alice', 'First')]

    def test_racing_adds_have_one_winner(self, tmp_path, bridge, alice, bob, make_item):
        engines = {
            'alice': make_engine(tmp_path, 'alice', bridge),
            'bob': make_engine(tmp_path, 'bob', bridge),
        }
        contexts = {
            'alice': RankingContext.for_identity(alice, 2024, FRENCH, group_id='g1'),
            'bob': RankingContext.for_identity(bob, 2024, FRENCH, group_id='g1'),
        }
        for user, engine in engines.items():
            engine.open(contexts[user])
        barrier = threading.Barrier(2)
        results = {}

        def contribute(user):
            barrier.wait()
            try:
                engines[user].add_to_pool(contexts[user], make_item('Y'))
                results[user] = 'ok'
            except DuplicateItem:
                results[user] = 'duplicate'

        threads = [threading.Thread(target=contribute, args=(u,)) for u in engines]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert sorted(results.values()) == ['duplicate', 'ok']
        winner = next(u for u, r in results.items() if r == 'ok')
        assert bridge.get('groups/g1/pools/French')['albums']['Y']['addedBy'] == winner
        for user, engine in engines.items():
            pool = engine.board(contexts[user]).pool
            assert [(e.item_id, e.added_by) for e in pool] == [('Y', winner)]

    def test_unreachable_store_keeps_the_add_local(self, tmp_path, bridge, alice, make_item):
        context = RankingContext.for_identity(alice, 2024, FRENCH, group_id='g1')
        engine = make_engine(tmp_path, 'alice', bridge)
        bridge.online = False
        engine.add_to_pool(context, make_item('Y'))
        assert visible_ids(engine, context) == ['Y']
        assert [f.key for f in engine.failed_writes] == ['groups/g1/pools/French']

        bridge.online = True
        assert engine.retry_failed_writes() == 1
        assert list(bridge.get('groups/g1/pools/French')['albums']) == ['Y']
