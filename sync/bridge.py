import copy
import threading
from abc import ABC, abstractmethod
from concurrent.futures import Future

from ranking.errors import WriteError
from utilities.helpers import log_message


def merge_fields(target: dict, update: dict) -> dict:
    """
    Field-level merge of a partial update into a document, in place.
    Nested dicts merge key by key, any other value replaces the field and
    None deletes it.
    """
    for key, value in update.items():
        if value is None:
            target.pop(key, None)
        elif isinstance(value, dict):
            current = target.get(key)
            if not isinstance(current, dict):
                current = target[key] = {}
            merge_fields(current, value)
        else:
            target[key] = copy.deepcopy(value)
    return target


def field_value(document, path):
    """Value at a slash-separated path inside a document, or None."""
    value = document
    for part in [p for p in path.split('/') if p]:
        if not isinstance(value, dict):
            return None
        value = value.get(part)
    return value


class SyncBridge(ABC):
    """
    Real-time mirror of the local stores in a remote document store.
    Snapshots arrive through subscribe(); writes are partial updates that
    the store merges field by field.
    """

    @abstractmethod
    def subscribe(self, key, on_snapshot):
        """Call on_snapshot(document or None) on every change; return an unsubscribe callable."""
        raise NotImplementedError

    @abstractmethod
    def persist(self, key, update) -> Future:
        """Merge `update` into document `key`; the future fails with WriteError."""
        raise NotImplementedError

    @abstractmethod
    def claim(self, key, field, update):
        """
        Merge `update` into document `key` only while `field` is absent.
        Returns None when the update was written, or the value already at
        `field` when another writer got there first. Raises WriteError when
        the store cannot be reached. Blocks until the store has answered.
        """
        raise NotImplementedError

    def close(self):
        pass


class MemorySyncBridge(SyncBridge):
    """
    In-process document store. Several engines sharing one instance behave
    like clients of the same remote database. Writes run inline unless an
    executor is given.
    """
    def __init__(self, executor=None, logger=None):
        self.documents = {}
        self.executor = executor
        self.online = True
        self.logger = logger or log_message
        self._subscribers = {}
        self._lock = threading.RLock()

    def subscribe(self, key, on_snapshot):
        with self._lock:
            self._subscribers.setdefault(key, []).append(on_snapshot)
            document = copy.deepcopy(self.documents.get(key))
        on_snapshot(document)

        def unsubscribe():
            with self._lock:
                callbacks = self._subscribers.get(key, [])
                if on_snapshot in callbacks:
                    callbacks.remove(on_snapshot)
        return unsubscribe

    def persist(self, key, update):
        if self.executor is not None:
            return self.executor.submit(self._write, key, update)
        future = Future()
        try:
            future.set_result(self._write(key, update))
        except WriteError as e:
            future.set_exception(e)
        return future

    def claim(self, key, field, update):
        if not self.online:
            raise WriteError(f"Remote store unreachable, could not save {key}", key, update)
        with self._lock:
            existing = field_value(self.documents.get(key), field)
            if existing is not None:
                return copy.deepcopy(existing)
            merge_fields(self.documents.setdefault(key, {}), update)
        self._notify(key)
        return None

    def get(self, key):
        with self._lock:
            return copy.deepcopy(self.documents.get(key))

    def set_document(self, key, document):
        """Overwrite (or delete, with None) a whole document and notify subscribers."""
        with self._lock:
            if document is None:
                self.documents.pop(key, None)
            else:
                self.documents[key] = copy.deepcopy(document)
        self._notify(key)

    def _write(self, key, update):
        if not self.online:
            raise WriteError(f"Remote store unreachable, could not save {key}", key, update)
        with self._lock:
            merge_fields(self.documents.setdefault(key, {}), update)
        self._notify(key)
        return True

    def _notify(self, key):
        with self._lock:
            callbacks = list(self._subscribers.get(key, []))
            document = self.documents.get(key)
        for callback in callbacks:
            callback(copy.deepcopy(document))
