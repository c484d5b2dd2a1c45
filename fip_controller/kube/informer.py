"""List-then-watch caches of cluster objects.

Each ``Informer`` keeps an eventually-consistent snapshot of one resource
type keyed by ``namespace/name`` (or ``name`` for cluster-scoped types) and
notifies registered handlers of adds, updates and deletes. Objects are kept
as plain JSON dicts; readers get deep copies.
"""

import copy
import random
import threading
from typing import Any, Callable, Dict, List, Optional

from kubernetes import watch
from kubernetes.client import ApiException
from oslo_log import log as logging

from ..models import object_key

LOG = logging.getLogger(__name__)

MAX_WATCH_BACKOFF = 30


def _list_resource_version(response: Any) -> Optional[str]:
    if isinstance(response, dict):
        return (response.get("metadata") or {}).get("resourceVersion")
    metadata = getattr(response, "metadata", None)
    return getattr(metadata, "resource_version", None)


def _resource_version(obj: Dict[str, Any]) -> Optional[str]:
    return (obj.get("metadata") or {}).get("resourceVersion")


class Informer:
    """Cache of one resource type fed by a list call and a watch stream."""

    def __init__(
        self,
        name: str,
        list_func: Callable[..., Any],
        items_func: Callable[[Any], List[Dict[str, Any]]],
        watch_timeout: int = 300,
        **list_kwargs,
    ):
        """Initialize the informer.

        Args:
            name: Resource name used in log messages
            list_func: kubernetes list call; also used as the watch source
            items_func: Converts a list response into plain dicts
            watch_timeout: Server-side timeout of one watch stream
            list_kwargs: Extra arguments for ``list_func``
        """
        self.name = name
        self._list_func = list_func
        self._items_func = items_func
        self._list_kwargs = list_kwargs
        self._watch_timeout = watch_timeout

        self._cache: Dict[str, Dict[str, Any]] = {}
        self._lock = threading.Lock()
        self._add_handlers: List[Callable] = []
        self._update_handlers: List[Callable] = []
        self._delete_handlers: List[Callable] = []

        self.has_synced = threading.Event()
        self._stop = threading.Event()
        self._watcher: Optional[watch.Watch] = None
        self._thread: Optional[threading.Thread] = None

    def add_event_handler(
        self,
        on_add: Optional[Callable[[Dict[str, Any]], None]] = None,
        on_update: Optional[Callable[[Dict[str, Any], Dict[str, Any]], None]] = None,
        on_delete: Optional[Callable[[Dict[str, Any]], None]] = None,
    ) -> None:
        if on_add:
            self._add_handlers.append(on_add)
        if on_update:
            self._update_handlers.append(on_update)
        if on_delete:
            self._delete_handlers.append(on_delete)

    # Cache access

    def get(self, key: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            obj = self._cache.get(key)
            return copy.deepcopy(obj) if obj is not None else None

    def list(self) -> List[Dict[str, Any]]:
        with self._lock:
            return [copy.deepcopy(obj) for obj in self._cache.values()]

    def __len__(self) -> int:
        with self._lock:
            return len(self._cache)

    # Event delivery

    def _notify(self, handlers: List[Callable], *objs: Dict[str, Any]) -> None:
        for handler in handlers:
            try:
                handler(*[copy.deepcopy(obj) for obj in objs])
            except Exception:
                LOG.exception("%s informer handler %s failed", self.name, handler)

    def _upsert(self, obj: Dict[str, Any]) -> None:
        key = object_key(obj)
        with self._lock:
            old = self._cache.get(key)
            self._cache[key] = obj
        if old is None:
            self._notify(self._add_handlers, obj)
        else:
            self._notify(self._update_handlers, old, obj)

    def _remove(self, obj: Dict[str, Any]) -> None:
        key = object_key(obj)
        with self._lock:
            old = self._cache.pop(key, None)
        self._notify(self._delete_handlers, old if old is not None else obj)

    def handle_event(self, event_type: str, obj: Dict[str, Any]) -> None:
        """Apply one watch event to the cache."""
        if event_type in ("ADDED", "MODIFIED"):
            self._upsert(obj)
        elif event_type == "DELETED":
            self._remove(obj)
        else:
            LOG.debug("%s informer ignoring %s event", self.name, event_type)

    def replace(self, items: List[Dict[str, Any]]) -> None:
        """Replace the cache with a fresh list, emitting the differences."""
        fresh = {object_key(obj): obj for obj in items}
        with self._lock:
            stale = [obj for key, obj in self._cache.items() if key not in fresh]
            previous = dict(self._cache)

        for obj in stale:
            self._remove(obj)
        for key, obj in fresh.items():
            old = previous.get(key)
            if old is not None and _resource_version(old) == _resource_version(obj):
                continue
            self._upsert(obj)

    # Run loop

    def relist(self) -> Optional[str]:
        response = self._list_func(**self._list_kwargs)
        self.replace(self._items_func(response))
        return _list_resource_version(response)

    def run(self) -> None:
        """List then watch until ``stop()`` is called.

        An expired resource version (410) or an ERROR event triggers a fresh
        list. Other failures back off exponentially with jitter.
        """
        resource_version = None
        backoff = 1
        while not self._stop.is_set():
            try:
                if resource_version is None:
                    resource_version = self.relist()
                    if not self.has_synced.is_set():
                        LOG.info("%s informer synced with %d objects", self.name, len(self))
                        self.has_synced.set()

                self._watcher = watch.Watch()
                for event in self._watcher.stream(
                    self._list_func,
                    resource_version=resource_version,
                    timeout_seconds=self._watch_timeout,
                    **self._list_kwargs,
                ):
                    if self._stop.is_set():
                        break
                    event_type = event.get("type", "")
                    obj = event.get("raw_object") or {}
                    if event_type == "ERROR":
                        LOG.warning("%s watch returned error %s, re-listing", self.name, obj.get("message"))
                        resource_version = None
                        break
                    resource_version = _resource_version(obj) or resource_version
                    self.handle_event(event_type, obj)
                backoff = 1
            except ApiException as e:
                if e.status == 410:
                    LOG.warning("%s watch resource version expired, re-listing", self.name)
                    resource_version = None
                    continue
                LOG.exception("%s watch failed", self.name)
                resource_version = None
                self._stop.wait(backoff * (0.5 + random.random()))
                backoff = min(backoff * 2, MAX_WATCH_BACKOFF)
            except Exception:
                LOG.exception("Unexpected %s watch error", self.name)
                resource_version = None
                self._stop.wait(backoff * (0.5 + random.random()))
                backoff = min(backoff * 2, MAX_WATCH_BACKOFF)

    def start(self) -> threading.Thread:
        self._thread = threading.Thread(target=self.run, name=f"informer-{self.name}", daemon=True)
        self._thread.start()
        return self._thread

    def stop(self) -> None:
        self._stop.set()
        watcher = self._watcher
        if watcher is not None:
            watcher.stop()

    def join(self, timeout: Optional[float] = None) -> None:
        if self._thread is not None:
            self._thread.join(timeout)
