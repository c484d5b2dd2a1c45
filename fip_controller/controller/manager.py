"""Controller manager.

Owns the informers, work queues, worker threads and periodic loops, and
starts them in order: caches first, then the one-shot Fip initialisation,
then workers and loops.
"""

import threading
import time
from typing import Any, Callable, Dict, List, Optional

from oslo_log import log as logging

from ..configuration import ControllerConfig
from ..kube import Informer, ResourceStore
from ..neutron import NeutronClient
from .fip_gc import FipGarbageCollector
from .fip_patch import FipPatchApplier
from .fip_pod import PodAllocationHandler
from .fip_sync import FipSynchronizer
from .port import PortReconciler
from .workqueue import start_workers

LOG = logging.getLogger(__name__)


class NeutronController:
    """Floating IP and port reconciliation controller."""

    def __init__(self, config: ControllerConfig, store: ResourceStore, neutron: NeutronClient):
        self.config = config
        self.store = store
        self.neutron = neutron

        self._stop = threading.Event()
        self._threads: List[threading.Thread] = []
        self.started = False

        self.fip_informer = Informer("fip", store.list_fips, store.list_items)
        self.port_informer = Informer("port", store.list_ports, store.list_items)
        self.vpc_informer = Informer("vpc", store.list_vpcs, store.list_items)
        self.pod_informer = Informer("pod", store.list_pods, store.list_items)

        self.applier = FipPatchApplier(store, config)
        self.ports = PortReconciler(store, neutron, self.port_informer, config)
        self.pods = PodAllocationHandler(store, neutron, self.vpc_informer, self.applier, config)
        self.synchronizer = FipSynchronizer(
            store, neutron, self.vpc_informer, self.fip_informer, self.applier, config
        )
        self.gc = FipGarbageCollector(
            store, neutron, self.fip_informer, self.pod_informer, self.applier, config, stop_event=self._stop
        )

        self.port_informer.add_event_handler(
            on_add=self.ports.enqueue_add,
            on_update=self.ports.enqueue_update,
            on_delete=self.ports.enqueue_delete,
        )
        self.pod_informer.add_event_handler(
            on_add=self.pods.enqueue_add,
            on_delete=self.pods.enqueue_delete,
        )

    @classmethod
    def from_conf(cls, conf) -> "NeutronController":
        config = ControllerConfig.from_conf(conf)
        return cls(config, ResourceStore.from_config(config), NeutronClient.from_conf(conf, config))

    @property
    def informers(self) -> List[Informer]:
        return [self.fip_informer, self.port_informer, self.vpc_informer, self.pod_informer]

    def queues(self):
        """Return ``(action, queue, handler)`` for every work queue."""
        return [
            ("sync fip", self.applier.queue, self.applier.handle_sync_fip),
            ("handle pod fip", self.pods.queue, self.pods.handle_pod_event),
        ] + self.ports.queues()

    # Lifecycle

    def wait_for_cache_sync(self, timeout: Optional[float] = None) -> bool:
        """Block until every informer has completed its initial list."""
        deadline = None if timeout is None else time.monotonic() + timeout
        for informer in self.informers:
            while not informer.has_synced.wait(0.1):
                if self._stop.is_set():
                    return False
                if deadline is not None and time.monotonic() > deadline:
                    LOG.error("%s informer failed to sync within %s s", informer.name, timeout)
                    return False
        return True

    def start(self, sync_timeout: Optional[float] = None) -> None:
        """Start caches, initialise Fips, then start workers and loops.

        Raises:
            RuntimeError: caches did not sync
            NeutronError: Fip initialisation failed
        """
        for informer in self.informers:
            informer.start()

        LOG.info("wait for informers to sync")
        if not self.wait_for_cache_sync(sync_timeout):
            raise RuntimeError("informers failed to sync")

        self.synchronizer.init_fip()

        for action, queue, handle in self.queues():
            self._threads.extend(
                start_workers(action, queue, handle, self.config.worker_count, self.config.queue_max_retries)
            )

        self._start_loop("sync-fip", self.config.fip_sync_interval, self.synchronizer.sync_fip)
        self._start_loop("gc-fip", self.config.fip_gc_interval, self.gc.gc_fip)
        self.started = True
        LOG.info("controller started with %d workers per queue", self.config.worker_count)

    def _start_loop(self, name: str, interval: float, func: Callable[[], None]) -> None:
        thread = threading.Thread(target=self._run_loop, args=(name, interval, func), name=name, daemon=True)
        thread.start()
        self._threads.append(thread)

    def _run_loop(self, name: str, interval: float, func: Callable[[], None]) -> None:
        while not self._stop.is_set():
            try:
                func()
            except Exception:
                LOG.exception("%s loop iteration failed", name)
            if self._stop.wait(interval):
                break
        LOG.debug("%s loop exiting", name)

    def run(self) -> None:
        """Start and block until ``stop()`` is called, then shut down."""
        try:
            self.start()
            self._stop.wait()
        finally:
            self.shutdown()

    def stop(self) -> None:
        self._stop.set()

    def shutdown(self, timeout: float = 30.0) -> None:
        """Stop informers and queues and wait for in-flight items."""
        LOG.info("shutting down controller")
        self._stop.set()
        for informer in self.informers:
            informer.stop()
        for _, queue, _ in self.queues():
            queue.shut_down()
        deadline = time.monotonic() + timeout
        for thread in self._threads:
            thread.join(max(0.0, deadline - time.monotonic()))
        self.started = False

    # Introspection

    @property
    def ready(self) -> bool:
        return self.started and not self._stop.is_set() and all(i.has_synced.is_set() for i in self.informers)

    def status(self) -> Dict[str, Any]:
        return {
            "started": self.started,
            "ready": self.ready,
            "informers": {i.name: {"synced": i.has_synced.is_set(), "objects": len(i)} for i in self.informers},
            "queues": {queue.name: len(queue) for _, queue, _ in self.queues()},
            "workers": sum(1 for t in self._threads if t.is_alive()),
        }
