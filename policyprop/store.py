"""An in-memory object store with get, list, create, update and delete."""

from __future__ import annotations

import copy
import itertools
import threading
from collections.abc import Mapping
from typing import Any


class NotFoundError(LookupError):
    """Raised when an object does not exist in the store."""

    def __init__(self, kind: str, namespace: str, name: str) -> None:
        self.kind = kind
        self.namespace = namespace
        self.name = name
        location = f"{namespace}/{name}" if namespace else name
        super().__init__(f'{kind} "{location}" not found')


def _key(obj: Any) -> tuple[str, str, str]:
    return (obj.KIND, obj.namespace, obj.name)


class ObjectStore:
    """Thread-safe store of resource objects keyed by kind, namespace and name.

    Objects are copied on the way in and on the way out, so callers never
    share state with the store.
    """

    def __init__(self) -> None:
        self._objects: dict[tuple[str, str, str], Any] = {}
        self._versions = itertools.count(1)
        self._lock = threading.RLock()

    def _stamp(self, obj: Any) -> Any:
        stored = copy.deepcopy(obj)
        stored.resource_version = str(next(self._versions))
        obj.resource_version = stored.resource_version
        self._objects[_key(stored)] = stored
        return obj

    def add(self, obj: Any) -> Any:
        """Insert or replace an object, giving it a new resource version."""
        with self._lock:
            return self._stamp(obj)

    def get(self, kind: str, namespace: str, name: str) -> Any:
        """Return a copy of the object, or raise NotFoundError."""
        with self._lock:
            try:
                return copy.deepcopy(self._objects[(kind, namespace, name)])
            except KeyError:
                raise NotFoundError(kind, namespace, name) from None

    def list(
        self,
        kind: str,
        namespace: str | None = None,
        labels: Mapping[str, str] | None = None,
    ) -> list[Any]:
        """Copies of the objects of a kind, optionally filtered, sorted by namespace and name."""
        wanted = dict(labels or {})
        with self._lock:
            found = [
                copy.deepcopy(obj)
                for (obj_kind, obj_ns, _), obj in self._objects.items()
                if obj_kind == kind
                and (namespace is None or obj_ns == namespace)
                and all(obj.labels.get(k) == v for k, v in wanted.items())
            ]
        return sorted(found, key=lambda obj: (obj.namespace, obj.name))

    def create(self, obj: Any) -> Any:
        """Store a new object; raise ValueError if it already exists."""
        with self._lock:
            if _key(obj) in self._objects:
                kind, namespace, name = _key(obj)
                raise ValueError(f'{kind} "{namespace}/{name}" already exists')
            return self._stamp(obj)

    def update(self, obj: Any) -> Any:
        """Replace an existing object; raise NotFoundError if it is missing."""
        with self._lock:
            if _key(obj) not in self._objects:
                raise NotFoundError(*_key(obj))
            return self._stamp(obj)

    def delete(self, obj: Any) -> None:
        """Remove an object; raise NotFoundError if it is missing."""
        with self._lock:
            try:
                del self._objects[_key(obj)]
            except KeyError:
                raise NotFoundError(*_key(obj)) from None