from __future__ import annotations

import copy
import logging
import time
from abc import ABC, abstractmethod
from itertools import count
from threading import RLock
from typing import TYPE_CHECKING, Any, Callable, Optional
from uuid import uuid4

if TYPE_CHECKING:
    from crm_backend.app.persistence import SnapshotPersistence

logger = logging.getLogger("coaching_crm.store")

ChangeCallback = Callable[[Any], None]
Unsubscribe = Callable[[], None]

_FORBIDDEN_KEY_CHARS = frozenset(".#$[]")


def split_path(path: str) -> tuple[str, ...]:
    return tuple(part for part in path.strip().split("/") if part)


def join_path(*parts: str) -> str:
    return "/".join(segment for part in parts for segment in split_path(part))


def validate_key(key: str) -> str:
    if not key or "/" in key or _FORBIDDEN_KEY_CHARS.intersection(key):
        raise StoreWriteError(f"invalid path segment: {key!r}")
    return key


def new_key() -> str:
    # millisecond prefix keeps generated keys roughly in creation order
    return f"{int(time.time() * 1000):012x}{uuid4().hex[:8]}"


class StoreError(Exception):
    pass


class StoreWriteError(StoreError):
    pass


class StorePersistenceError(StoreWriteError):
    pass


class RecordNotFoundError(StoreError):
    pass


class UnsupportedCollectionError(StoreError):
    pass


class RecordStore(ABC):
    """Path-addressed document store with live subscriptions.

    A value is any JSON-like structure. `None` stands for "absent": reading a
    missing path returns `None` and writing `None` deletes the path.
    """

    @abstractmethod
    def read_once(self, path: str) -> Any:
        ...

    @abstractmethod
    def subscribe(self, path: str, on_change: ChangeCallback) -> Unsubscribe:
        """Deliver the value at `path` now and after every change touching it."""

    @abstractmethod
    def write(self, path: str, value: Any) -> None:
        ...

    @abstractmethod
    def multi_write(self, updates: dict[str, Any]) -> None:
        """Apply every path in `updates` as one unit; a `None` value deletes its path."""

    def new_key(self) -> str:
        return new_key()

    def push_create(self, path: str, value: Any) -> str:
        key = self.new_key()
        self.write(join_path(path, key), value)
        return key

    def delete(self, path: str) -> None:
        self.write(path, None)


def _clean(value: Any) -> Any:
    """Drop `None` members and empty containers, the way the hosted store does."""
    if isinstance(value, dict):
        cleaned = {}
        for key, item in value.items():
            item = _clean(item)
            if item is not None:
                cleaned[str(key)] = item
        return cleaned or None
    if isinstance(value, (list, tuple)):
        items = [_clean(item) for item in value]
        items = [item for item in items if item is not None]
        return items or None
    return value


def _is_related(a: tuple[str, ...], b: tuple[str, ...]) -> bool:
    shortest = min(len(a), len(b))
    return a[:shortest] == b[:shortest]


def _apply(tree: dict[str, Any], parts: tuple[str, ...], value: Any) -> None:
    cleaned = _clean(copy.deepcopy(value))
    if cleaned is None:
        _remove(tree, parts)
        return
    node = tree
    for part in parts[:-1]:
        child = node.get(part)
        if not isinstance(child, dict):
            child = {}
            node[part] = child
        node = child
    node[parts[-1]] = cleaned


def _remove(tree: dict[str, Any], parts: tuple[str, ...]) -> None:
    trail: list[dict[str, Any]] = []
    node: Any = tree
    for part in parts[:-1]:
        if not isinstance(node, dict) or not isinstance(node.get(part), dict):
            return
        trail.append(node)
        node = node[part]
    if not isinstance(node, dict) or parts[-1] not in node:
        return
    del node[parts[-1]]
    # prune containers emptied by the delete
    for parent, part in zip(reversed(trail), reversed(parts[:-1])):
        if parent[part]:
            break
        del parent[part]


class InMemoryRecordStore(RecordStore):
    def __init__(self, persistence: Optional["SnapshotPersistence"] = None) -> None:
        self._lock = RLock()
        self.persistence = persistence
        self._tree: dict[str, Any] = {}
        self._subscriptions: dict[int, tuple[tuple[str, ...], ChangeCallback]] = {}
        self._subscription_ids = count(1)

        if self.persistence:
            snapshot = self.persistence.load_snapshot()
            if snapshot:
                self._tree = snapshot

    def read_once(self, path: str) -> Any:
        with self._lock:
            return copy.deepcopy(self._get(split_path(path)))

    def subscribe(self, path: str, on_change: ChangeCallback) -> Unsubscribe:
        parts = split_path(path)
        with self._lock:
            subscription_id = next(self._subscription_ids)
            self._subscriptions[subscription_id] = (parts, on_change)
            self._deliver(parts, on_change)

        def unsubscribe() -> None:
            with self._lock:
                self._subscriptions.pop(subscription_id, None)

        return unsubscribe

    def subscription_count(self) -> int:
        with self._lock:
            return len(self._subscriptions)

    def write(self, path: str, value: Any) -> None:
        parts = self._require_path(path)
        with self._lock:
            self._commit([(parts, value)])

    def multi_write(self, updates: dict[str, Any]) -> None:
        if not updates:
            return
        entries = [(self._require_path(path), value) for path, value in updates.items()]
        ordered = sorted(parts for parts, _ in entries)
        for previous, current in zip(ordered, ordered[1:]):
            if current[: len(previous)] == previous:
                raise StoreWriteError(
                    "overlapping paths in multi-path write: "
                    f"{'/'.join(previous)} and {'/'.join(current)}"
                )
        with self._lock:
            self._commit(entries)

    @staticmethod
    def _require_path(path: str) -> tuple[str, ...]:
        parts = split_path(path)
        if not parts:
            raise StoreWriteError("write path must not be empty")
        for part in parts:
            validate_key(part)
        return parts

    def _get(self, parts: tuple[str, ...]) -> Any:
        node: Any = self._tree
        for part in parts:
            if not isinstance(node, dict) or part not in node:
                return None
            node = node[part]
        return node

    def _commit(self, entries: list[tuple[tuple[str, ...], Any]]) -> None:
        # the live tree is replaced only after the new state has been saved
        tree = copy.deepcopy(self._tree)
        for parts, value in entries:
            _apply(tree, parts, value)
        self._persist_state(tree)
        self._tree = tree
        self._notify([parts for parts, _ in entries])

    def _notify(self, touched: list[tuple[str, ...]]) -> None:
        for parts, callback in list(self._subscriptions.values()):
            if any(_is_related(parts, item) for item in touched):
                self._deliver(parts, callback)

    def _deliver(self, parts: tuple[str, ...], callback: ChangeCallback) -> None:
        try:
            callback(copy.deepcopy(self._get(parts)))
        except Exception:
            logger.exception("subscriber_failed path=%s", "/".join(parts) or "/")

    def _persist_state(self, tree: dict[str, Any]) -> None:
        if not self.persistence:
            return
        try:
            self.persistence.save_snapshot(tree)
        except Exception as exc:
            logger.exception("snapshot_save_failed")
            raise StorePersistenceError("record snapshot could not be saved") from exc

