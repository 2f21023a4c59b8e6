"""Clients for the hosted key-value tree that holds all library records.

The tree is addressed with ``/``-separated paths such as ``borrows/-Nabc``
or ``fines/-Nxyz/paid``.  Every backend supports the same four primitives:

* ``get(path)``: the whole subtree below ``path`` (``None`` when absent).
* ``set(path, value)``: replace the subtree; ``None`` deletes it.
* ``update(mapping)``: write several paths together, all or nothing.
* ``push(path, value)``: append a child under a generated, time-ordered key.
"""

import copy
import logging
import random
import threading
import time

import requests
from django.conf import settings

from .exceptions import InvalidPathError, RecordStoreError

logger = logging.getLogger(__name__)

FORBIDDEN_CHARACTERS = set('.#$[]')
PUSH_CHARS = '-0123456789ABCDEFGHIJKLMNOPQRSTUVWXYZ_abcdefghijklmnopqrstuvwxyz'


def split_path(path):
    """Return the segments of ``path``; the root is the empty list."""
    if path is None:
        raise InvalidPathError("Path must not be None.")
    stripped = str(path).strip('/')
    segments = stripped.split('/') if stripped else []
    for segment in segments:
        if not segment:
            raise InvalidPathError(f"Empty segment in path '{path}'.")
        if FORBIDDEN_CHARACTERS & set(segment):
            raise InvalidPathError(f"Illegal character in path '{path}'.")
    return segments


def join_path(*parts):
    return '/'.join(str(part).strip('/') for part in parts if str(part).strip('/'))


class PushKeyGenerator:
    """Chronologically sortable keys in the style of realtime-database push ids."""

    def __init__(self):
        self._lock = threading.Lock()
        self._last_time = 0
        self._last_random = [0] * 12

    def __call__(self):
        with self._lock:
            now = int(time.time() * 1000)
            duplicate = now == self._last_time
            self._last_time = now

            time_chars = []
            for _ in range(8):
                time_chars.append(PUSH_CHARS[now % 64])
                now //= 64
            key = ''.join(reversed(time_chars))

            if not duplicate:
                self._last_random = [random.randrange(64) for _ in range(12)]
            else:
                # same millisecond: increment the random part so keys stay ordered
                index = 11
                while index >= 0 and self._last_random[index] == 63:
                    self._last_random[index] = 0
                    index -= 1
                if index >= 0:
                    self._last_random[index] += 1
            return key + ''.join(PUSH_CHARS[n] for n in self._last_random)


class RecordStore:
    """Interface shared by all record store backends."""

    _key_generator = PushKeyGenerator()

    def new_key(self):
        """A fresh child key, for records written through ``update``."""
        return self._key_generator()

    def get(self, path):
        raise NotImplementedError

    def set(self, path, value):
        raise NotImplementedError

    def update(self, values):
        raise NotImplementedError

    def push(self, path, value):
        raise NotImplementedError

    def remove(self, path):
        self.set(path, None)


class MemoryRecordStore(RecordStore):
    """Process-local tree, used for development and tests."""

    def __init__(self, data=None):
        self._root = copy.deepcopy(data) if data else {}
        self._lock = threading.RLock()
        self.writes = 0

    def get(self, path=''):
        segments = split_path(path)
        with self._lock:
            node = self._root
            for segment in segments:
                if not isinstance(node, dict) or segment not in node:
                    return None
                node = node[segment]
            return copy.deepcopy(node)

    def set(self, path, value):
        segments = split_path(path)
        with self._lock:
            self._write(self._root, segments, value)
            self.writes += 1

    def update(self, values):
        prepared = [(split_path(path), value) for path, value in values.items()]
        if not prepared:
            return
        with self._lock:
            staged = copy.deepcopy(self._root)
            for segments, value in prepared:
                if not segments:
                    raise InvalidPathError("Multi-path update cannot replace the root.")
                self._write(staged, segments, value)
            self._root = staged
            self.writes += 1

    def push(self, path, value):
        key = self.new_key()
        self.set(join_path(path, key), value)
        return key

    def dump(self):
        with self._lock:
            return copy.deepcopy(self._root)

    @staticmethod
    def _write(root, segments, value):
        if not segments:
            root.clear()
            if isinstance(value, dict):
                root.update(copy.deepcopy(value))
            return

        parents = [root]
        node = root
        for segment in segments[:-1]:
            child = node.get(segment)
            if not isinstance(child, dict):
                if value is None:
                    return
                child = {}
                node[segment] = child
            node = child
            parents.append(node)

        if value is None:
            node.pop(segments[-1], None)
            # prune parents left empty by the delete
            for depth in range(len(segments) - 1, 0, -1):
                if parents[depth]:
                    break
                parents[depth - 1].pop(segments[depth - 1], None)
        else:
            node[segments[-1]] = copy.deepcopy(value)


class FirebaseRecordStore(RecordStore):
    """Firebase Realtime Database over its REST interface."""

    def __init__(self, database_url, auth_token='', timeout=10, session=None):
        if not database_url:
            raise RecordStoreError("A database URL is required for the Firebase record store.")
        self.database_url = database_url.rstrip('/')
        self.auth_token = auth_token
        self.timeout = timeout
        self.session = session or requests.Session()

    def _url(self, path):
        return f"{self.database_url}/{join_path(*split_path(path))}.json"

    def _request(self, method, path, payload=None):
        params = {'auth': self.auth_token} if self.auth_token else None
        url = self._url(path)
        try:
            response = self.session.request(method, url, json=payload, params=params, timeout=self.timeout)
        except requests.RequestException as exc:
            logger.error("Record store %s %s failed: %s", method, path or '/', exc)
            raise RecordStoreError(f"{method} {path or '/'} failed: {exc}") from exc

        if response.status_code >= 400:
            try:
                detail = response.json().get('error', response.text)
            except (ValueError, AttributeError):
                detail = response.text
            logger.error("Record store %s %s returned %s: %s", method, path or '/', response.status_code, detail)
            raise RecordStoreError(f"{method} {path or '/'} returned {response.status_code}: {detail}")

        if not response.content:
            return None
        try:
            return response.json()
        except ValueError as exc:
            raise RecordStoreError(f"{method} {path or '/'} returned invalid JSON") from exc

    def get(self, path=''):
        return self._request('GET', path)

    def set(self, path, value):
        if value is None:
            self._request('DELETE', path)
        else:
            self._request('PUT', path, value)

    def update(self, values):
        if not values:
            return
        body = {}
        for path, value in values.items():
            segments = split_path(path)
            if not segments:
                raise InvalidPathError("Multi-path update cannot replace the root.")
            body['/'.join(segments)] = value
        self._request('PATCH', '', body)

    def push(self, path, value):
        result = self._request('POST', path, value)
        if not isinstance(result, dict) or 'name' not in result:
            raise RecordStoreError(f"POST {path} did not return a generated key")
        return result['name']


_store = None
_store_lock = threading.Lock()


def build_record_store(config):
    backend = config.get('BACKEND', 'memory')
    if backend == 'memory':
        return MemoryRecordStore()
    if backend == 'firebase':
        return FirebaseRecordStore(
            config.get('DATABASE_URL', ''),
            auth_token=config.get('AUTH_TOKEN', ''),
            timeout=config.get('TIMEOUT', 10),
        )
    raise RecordStoreError(f"Unknown record store backend '{backend}'.")


def get_record_store():
    """Return the process-wide store configured by ``settings.RECORD_STORE``."""
    global _store
    with _store_lock:
        if _store is None:
            _store = build_record_store(getattr(settings, 'RECORD_STORE', {}))
            logger.info("Using %s record store", type(_store).__name__)
        return _store


def reset_record_store(store=None):
    global _store
    with _store_lock:
        _store = store
