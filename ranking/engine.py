# ranking/engine.py

import queue
import threading
import uuid
from collections import namedtuple
from concurrent.futures import wait

from ranking import reconciliation as rec
from ranking.errors import DuplicateItem, NotSignedIn, WriteError
from ranking.models import CATEGORIES, Identity, PoolEntry, category_key
from sync.documents import (
    group_pool_key,
    parse_pool_document,
    parse_ranking_document,
    pool_changes,
    pool_update,
    ranking_document_key,
    ranking_update,
)
from utilities.helpers import log_message, parse_timestamp

FailedWrite = namedtuple('FailedWrite', 'key update context error')


class _Outcome:
    def __init__(self):
        self.done = threading.Event()
        self.result = None
        self.error = None


class ReconciliationEngine:
    """
    Mediates every change to the pool and ranking stores.

    Local commands and remote snapshots go through one ordered queue and are
    applied one at a time. A command computes the whole resulting board
    first, commits pool and ranking changes in a single transaction, then
    hands the partial update to the sync bridge without waiting for it.
    A snapshot from the bridge overwrites local state for its document,
    unless it only echoes writes this engine already holds locally. New
    entries of a shared group pool are claimed remotely before the commit.
    """

    def __init__(self, pool_store, ranking_store, bridge=None, logger=None,
                 client_id=None, on_write_error=None):
        self.pool_store = pool_store
        self.ranking_store = ranking_store
        self.database = pool_store.database
        self.bridge = bridge
        self.logger = logger or log_message
        self.client_id = client_id or uuid.uuid4().hex
        self.on_write_error = on_write_error

        self.events = queue.Queue()
        self.listeners = []
        self.pending_writes = []
        self.failed_writes = []

        self._lock = threading.Lock()
        self._writes_lock = threading.Lock()
        self._drainer = None
        # writeIds sent per document and not echoed back yet, oldest first
        self._in_flight = {}
        # documents overwritten by a foreign snapshot while own writes were in flight
        self._overwritten = set()
        self._targets = {}
        self._subscriptions = {}

    # ---- reads ---------------------------------------------------------

    def board(self, context):
        return rec.BoardState(
            pool=tuple(self.pool_store.list(context.pool_scope, context.category)),
            ranked=tuple(self.ranking_store.get(context.ranking_scope, context.category, context.year)),
        )

    def visible_pool(self, context):
        return rec.visible_pool(self.board(context))

    def ranked(self, context):
        return list(self.board(context).ranked)

    # ---- commands ------------------------------------------------------

    def add_to_pool(self, context, item):
        if item.category != context.category:
            raise ValueError(
                f"Album {item.id} belongs to the {item.category} category, not {context.category}"
            )

        def add(board):
            return rec.add_to_pool(board, rec.new_entry(item, context.actor))
        return self.execute(context, add, exclusive=True)

    def promote(self, context, item_id):
        return self.execute(context, rec.promote, item_id)

    def demote(self, context, album_id):
        return self.execute(context, rec.demote, album_id, context.category, context.actor)

    def reorder(self, context, album_id, target_index):
        return self.execute(context, rec.reorder, album_id, target_index)

    def insert_from_pool(self, context, item_id, target_index):
        return self.execute(context, rec.insert_from_pool, item_id, target_index)

    def move_ranked(self, context, album_id, direction):
        return self.execute(context, rec.move_ranked, album_id, direction)

    def remove_ranked(self, context, album_id):
        # a group pool row belongs to the whole group and stays
        return self.execute(context, rec.remove_ranked, album_id, not context.scope.is_group)

    def remove_pooled(self, context, item_id):
        return self.execute(context, rec.remove_pooled, item_id)

    def execute(self, context, operation, *args, exclusive=False):
        """
        Queue `operation(board, *args)` for the context's board and return the
        resulting board. With `exclusive`, a group pool entry the operation
        adds must not exist remotely yet: losing that race raises DuplicateItem.
        """
        identity = context.identity
        if identity is None:
            raise NotSignedIn("Sign in to edit rankings")
        if identity.user_id != context.scope.user_id:
            raise NotSignedIn(f"{identity.user_id} cannot edit the ranking of {context.scope.user_id}")

        outcome = _Outcome()
        self.events.put(('command', context, operation, args, exclusive, outcome))
        if self._drainer == threading.get_ident():
            # issued from a listener while this thread drains the queue
            while not outcome.done.is_set():
                event = self._take()
                if event is None:
                    break
                self._dispatch(event)
        else:
            self.process_events()
            outcome.done.wait()

        if outcome.error is not None:
            raise outcome.error
        return outcome.result

    # ---- event queue ---------------------------------------------------

    def process_events(self):
        """Drain the queue in order. Returns how many events this call applied."""
        with self._lock:
            if self._drainer is not None:
                return 0
            self._drainer = threading.get_ident()
        handled = 0
        try:
            while True:
                with self._lock:
                    try:
                        event = self.events.get_nowait()
                    except queue.Empty:
                        self._drainer = None
                        return handled
                self._dispatch(event)
                handled += 1
        except BaseException:
            with self._lock:
                self._drainer = None
            raise

    def _take(self):
        with self._lock:
            try:
                return self.events.get_nowait()
            except queue.Empty:
                return None

    def _dispatch(self, event):
        kind = event[0]
        if kind == 'command':
            _, context, operation, args, exclusive, outcome = event
            try:
                outcome.result = self._apply_command(context, operation, args, exclusive)
            except Exception as e:
                # re-raised by execute() in the calling thread
                outcome.error = e
            finally:
                outcome.done.set()
        elif kind == 'snapshot':
            _, key, document = event
            self._apply_snapshot(key, document)
        else:
            raise ValueError(f"Unknown event kind {kind!r}")

    def _apply_command(self, context, operation, args, exclusive=False):
        before = self.board(context)
        after = operation(before, *args)
        if after is before:
            return after

        after, claimed = self._claim_pool_entries(context, before, after, exclusive)
        old_ids = {e.item_id for e in before.pool}
        new_ids = {e.item_id for e in after.pool}
        with self.database.transaction():
            for item_id in old_ids - new_ids:
                self.pool_store.remove(context.pool_scope, context.category, item_id)
            for entry in reversed(after.pool):
                if entry.item_id not in old_ids:
                    self.pool_store.add(context.pool_scope, context.category, entry.item,
                                        entry.added_by, entry.added_at)
            if after.ranked != before.ranked:
                self.ranking_store.replace(context.ranking_scope, context.category,
                                           context.year, after.ranked)
            self.ranking_store.touch(context.ranking_scope, context.year,
                                     context.identity, context.scope.group_id)

        self._persist(context, before, after, claimed)
        self._notify(ranking_document_key(context.scope, context.year))
        return after

    def _claim_pool_entries(self, context, before, after, exclusive):
        """
        Write new group pool entries to the shared remote pool before they
        are committed locally, so that members racing to add the same album
        see a single winner. The loser gets the winner's entry: DuplicateItem
        for an exclusive add, the remote row silently adopted otherwise.
        Returns the board to commit and the ids already sent.
        """
        claimed = set()
        if self.bridge is None or not context.scope.is_group:
            return after, claimed

        old_ids = {e.item_id for e in before.pool}
        key = group_pool_key(context.scope.group_id, context.category)
        pool = list(after.pool)
        for idx, entry in enumerate(pool):
            if entry.item_id in old_ids:
                continue
            update = pool_update({entry.item_id: entry.to_dict()}, self.client_id, uuid.uuid4().hex)
            self._track(key, update['writeId'])
            claimed.add(entry.item_id)
            try:
                existing = self.bridge.claim(key, f"albums/{entry.item_id}", update)
            except WriteError as e:
                # the add stays local until retry_failed_writes
                self._forget(key, update['writeId'])
                self._write_failed(key, update, context, e)
                continue
            if existing is None:
                continue

            self._forget(key, update['writeId'])
            winner = PoolEntry.from_dict(dict(existing, id=entry.item_id), context.category)
            if exclusive:
                self._adopt(context, winner)
                raise DuplicateItem(
                    f"'{entry.item.artist} - {entry.item.title}' was already added by {winner.added_by}"
                )
            pool[idx] = winner
        return rec.BoardState(pool=tuple(pool), ranked=after.ranked), claimed

    def _adopt(self, context, entry):
        with self.database.transaction():
            if not self.pool_store.contains(context.pool_scope, context.category, entry.item_id):
                self.pool_store.add(context.pool_scope, context.category, entry.item,
                                    entry.added_by, entry.added_at)
        self._notify(group_pool_key(context.scope.group_id, context.category))

    # ---- remote mirror -------------------------------------------------

    def open(self, context):
        """Subscribe to the remote documents behind a context (its year, both categories)."""
        if self.bridge is None:
            return
        scope = context.scope
        self._subscribe(ranking_document_key(scope, context.year), ('ranking', scope, context.year))
        if scope.is_group:
            for category in CATEGORIES:
                self._subscribe(group_pool_key(scope.group_id, category), ('pool', scope, category))

    def close(self):
        for unsubscribe in self._subscriptions.values():
            unsubscribe()
        self._subscriptions.clear()
        self._targets.clear()

    def _subscribe(self, key, target):
        if key in self._subscriptions:
            return
        self._targets[key] = target
        self._subscriptions[key] = self.bridge.subscribe(
            key, lambda document, key=key: self.receive_snapshot(key, document)
        )

    def receive_snapshot(self, key, document):
        """Bridge callback; may run on any thread."""
        self.events.put(('snapshot', key, document))
        self.process_events()

    def _apply_snapshot(self, key, document):
        target = self._targets.get(key)
        if target is None:
            self.logger(f"Ignoring snapshot for unsubscribed document {key}")
            return
        write_id = (document or {}).get('writeId')
        if self._holds_snapshot(key, write_id):
            return

        kind, scope, detail = target
        with self.database.transaction():
            if kind == 'ranking':
                year = detail
                for category, section in parse_ranking_document(document).items():
                    self.ranking_store.replace(scope.ranking_scope, category, year, section['ranked'])
                    if not scope.is_group:
                        self.pool_store.overwrite(scope.pool_scope(year), category, section['pool'])
                if document:
                    owner = Identity(
                        document.get('userId') or scope.user_id,
                        document.get('username') or 'Anonymous',
                        document.get('avatarUrl') or '',
                    )
                    self.ranking_store.touch(scope.ranking_scope, year, owner, scope.group_id,
                                             parse_timestamp(document.get('updatedAt')))
            else:
                category = detail
                self.pool_store.overwrite(scope.group_id, category, parse_pool_document(document, category))

        self.logger(f"Applied remote snapshot for {key}")
        self._notify(key)

    def _holds_snapshot(self, key, write_id):
        """
        True when local state already holds what the snapshot carries.
        The echo of an older own write is skipped while newer writes are on
        their way, since a later echo includes it. The echo of the newest
        write is skipped unless a foreign snapshot overwrote local state in
        the meantime. Any other snapshot is foreign.
        """
        with self._writes_lock:
            pending = self._in_flight.get(key, [])
            if write_id and write_id in pending:
                del pending[:pending.index(write_id) + 1]
                if pending:
                    return True
                if key in self._overwritten:
                    self._overwritten.discard(key)
                    return False
                return True
            if pending:
                self._overwritten.add(key)
            return False

    def _track(self, key, write_id):
        with self._writes_lock:
            self._in_flight.setdefault(key, []).append(write_id)

    def _forget(self, key, write_id):
        with self._writes_lock:
            pending = self._in_flight.get(key, [])
            if write_id in pending:
                pending.remove(write_id)
            if not pending:
                self._overwritten.discard(key)

    def _persist(self, context, before, after, claimed=()):
        if self.bridge is None:
            return
        changes = pool_changes(before.pool, after.pool)
        ranked = after.ranked if after.ranked != before.ranked else None
        doc_pool = changes
        if context.scope.is_group:
            doc_pool = None
            changes = {item_id: data for item_id, data in changes.items() if item_id not in claimed}
            if changes:
                key = group_pool_key(context.scope.group_id, context.category)
                self._send(key, pool_update(changes, self.client_id, uuid.uuid4().hex), context)
        if ranked is not None or doc_pool:
            key = ranking_document_key(context.scope, context.year)
            update = ranking_update(context, self.client_id, uuid.uuid4().hex, ranked=ranked, pool=doc_pool)
            self._send(key, update, context)

    def _send(self, key, update, context):
        self._track(key, update['writeId'])
        future = self.bridge.persist(key, update)
        with self._writes_lock:
            self.pending_writes.append(future)
        future.add_done_callback(lambda f: self._write_finished(key, update, context, f))
        return future

    def _write_finished(self, key, update, context, future):
        with self._writes_lock:
            if future in self.pending_writes:
                self.pending_writes.remove(future)
        error = future.exception()
        if error is None:
            return
        self._forget(key, update['writeId'])
        self._write_failed(key, update, context, error)

    def _write_failed(self, key, update, context, error):
        if not isinstance(error, WriteError):
            error = WriteError(str(error), key, update)
        # local state stays as it is; the user decides when to retry
        with self._writes_lock:
            self.failed_writes.append(FailedWrite(key, update, context, error))
        self.logger(f"Save failed for {key}: {error}")
        if self.on_write_error:
            self.on_write_error(error)

    @property
    def has_pending_writes(self):
        with self._writes_lock:
            return any(not f.done() for f in self.pending_writes)

    def flush(self, timeout=None):
        """Wait for issued writes; True when none is left running."""
        with self._writes_lock:
            pending = list(self.pending_writes)
        _, not_done = wait(pending, timeout=timeout)
        return not not_done

    def retry_failed_writes(self):
        """
        Re-send every failed write. Fields the failed update touched are
        rebuilt from current local state, so a retry never brings back
        something changed locally since.
        """
        with self._writes_lock:
            failed, self.failed_writes = self.failed_writes, []
        for failure in failed:
            self._send(failure.key, self._refresh(failure), failure.context)
        return len(failed)

    def _refresh(self, failure):
        context = failure.context
        board = self.board(context)
        current = {e.item_id: e.to_dict() for e in board.pool}
        write_id = uuid.uuid4().hex
        if 'albums' in failure.update:
            changes = {item_id: current.get(item_id) for item_id in failure.update['albums']}
            return pool_update(changes, self.client_id, write_id)
        section = failure.update.get(category_key(context.category)) or {}
        ranked = board.ranked if 'ranked' in section else None
        pool = {item_id: current.get(item_id) for item_id in section.get('pool', {})}
        return ranking_update(context, self.client_id, write_id, ranked=ranked, pool=pool)

    def _notify(self, key):
        for listener in list(self.listeners):
            listener(key)
