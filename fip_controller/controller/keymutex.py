"""Per-key mutual exclusion."""

from oslo_concurrency import lockutils


class KeyMutex:
    """Named locks owned by one component.

    Locks are created on first use and released by ``lockutils`` once no
    caller holds a reference to them.
    """

    def __init__(self, name: str):
        self.name = name
        self._semaphores = lockutils.Semaphores()

    def lock(self, key: str):
        return lockutils.lock(f"{self.name}-{key}", semaphores=self._semaphores, do_log=False)

    def __len__(self) -> int:
        return len(self._semaphores)
