import copy
import json
import threading
from concurrent.futures import ThreadPoolExecutor

import requests

from ranking.errors import WriteError
from sync.bridge import SyncBridge, field_value, merge_fields
from utilities.helpers import log_message


def apply_stream_event(document, event, path, data):
    """Apply one `put` or `patch` event of the streaming API to a local copy of the document."""
    parts = [p for p in (path or '/').split('/') if p]
    if not parts:
        if event == 'put':
            return copy.deepcopy(data)
        return merge_fields(document if isinstance(document, dict) else {}, data or {})

    if not isinstance(document, dict):
        document = {}
    parent = document
    for part in parts[:-1]:
        if not isinstance(parent.get(part), dict):
            parent[part] = {}
        parent = parent[part]

    leaf = parts[-1]
    if event == 'put':
        if data is None:
            parent.pop(leaf, None)
        else:
            parent[leaf] = copy.deepcopy(data)
    else:
        if not isinstance(parent.get(leaf), dict):
            parent[leaf] = {}
        merge_fields(parent[leaf], data or {})
    return document


def _without(update, field):
    """Copy of `update` minus the value at `field`, dropping parents left empty."""
    trimmed = copy.deepcopy(update)
    parts = [p for p in field.split('/') if p]
    trail = [trimmed]
    for part in parts[:-1]:
        child = trail[-1].get(part)
        if not isinstance(child, dict):
            return trimmed
        trail.append(child)
    trail[-1].pop(parts[-1], None)
    for parent, part in zip(reversed(trail[:-1]), reversed(parts[:-1])):
        if parent.get(part) == {}:
            parent.pop(part)
    return trimmed


class FirebaseRestBridge(SyncBridge):
    """
    Sync bridge backed by the Firebase Realtime Database REST API.
    PATCH merges children server-side (null deletes), which is exactly the
    field-level merge the engine relies on. Subscriptions use the
    text/event-stream endpoint, one listener thread per document.
    """
    def __init__(self, base_url, auth_token=None, session=None, executor=None,
                 logger=None, timeout=10):
        if not base_url:
            raise RuntimeError("Missing Firebase database URL")
        self.base_url = base_url.rstrip('/')
        self.auth_token = auth_token
        self.session = session or requests.Session()
        self.executor = executor or ThreadPoolExecutor(max_workers=4, thread_name_prefix='sonora-sync')
        self.logger = logger or log_message
        self.timeout = timeout
        self._stops = []

    def _url(self, key):
        return f"{self.base_url}/{key.strip('/')}.json"

    def _params(self):
        return {'auth': self.auth_token} if self.auth_token else {}

    def persist(self, key, update):
        return self.executor.submit(self._patch, key, update)

    def _patch(self, key, update):
        try:
            r = self.session.patch(
                self._url(key), params=self._params(), json=update, timeout=self.timeout
            )
            r.raise_for_status()
        except requests.RequestException as e:
            raise WriteError(f"Could not save {key}: {e}", key, update) from e
        return True

    def claim(self, key, field, update, attempts=3):
        """
        Conditional create of `field` using the ETag protocol: read the
        child with its ETag, then PUT with if-match so a concurrent writer
        makes the server answer 412. The rest of the update (document
        metadata) is PATCHed once the field is ours.
        """
        url = self._url(f"{key}/{field}")
        value = field_value(update, field)
        try:
            for _ in range(attempts):
                r = self.session.get(url, params=self._params(),
                                     headers={'X-Firebase-ETag': 'true'}, timeout=self.timeout)
                r.raise_for_status()
                existing = r.json()
                if existing is not None:
                    return existing

                r = self.session.put(url, params=self._params(), json=value,
                                     headers={'if-match': r.headers.get('ETag', '')},
                                     timeout=self.timeout)
                if r.status_code == 412:
                    # somebody wrote the field between our read and write
                    existing = r.json()
                    if existing is not None:
                        return existing
                    continue
                r.raise_for_status()
                self._patch(key, _without(update, field))
                return None
        except requests.RequestException as e:
            raise WriteError(f"Could not save {key}: {e}", key, update) from e
        raise WriteError(f"Could not claim {field} in {key}: too much contention", key, update)

    def fetch(self, key):
        r = self.session.get(self._url(key), params=self._params(), timeout=self.timeout)
        r.raise_for_status()
        return r.json()

    def subscribe(self, key, on_snapshot):
        stop = threading.Event()
        self._stops.append(stop)
        listener = threading.Thread(
            target=self._listen, args=(key, on_snapshot, stop),
            name=f"sonora-listen-{key}", daemon=True
        )
        listener.start()
        return stop.set

    def close(self):
        for stop in self._stops:
            stop.set()
        self.executor.shutdown(wait=False)

    def _listen(self, key, on_snapshot, stop):
        try:
            with self.session.get(
                self._url(key), params=self._params(),
                headers={'Accept': 'text/event-stream'},
                stream=True, timeout=(self.timeout, None)
            ) as resp:
                resp.raise_for_status()
                self.read_stream(resp.iter_lines(decode_unicode=True), on_snapshot, stop)
        except requests.RequestException as e:
            self.logger(f"Subscription to {key} ended: {e}")

    def read_stream(self, lines, on_snapshot, stop=None):
        """Turn server-sent events into full-document snapshots."""
        document = None
        event = None
        for line in lines:
            if stop is not None and stop.is_set():
                break
            if not line:
                event = None
                continue
            if line.startswith('event:'):
                event = line[len('event:'):].strip()
            elif line.startswith('data:'):
                raw = line[len('data:'):].strip()
                if event in ('put', 'patch'):
                    payload = json.loads(raw)
                    document = apply_stream_event(document, event, payload.get('path'), payload.get('data'))
                    on_snapshot(copy.deepcopy(document) if document else None)
                elif event in ('cancel', 'auth_revoked'):
                    self.logger(f"Stream closed by server ({event})")
                    break
        return document
