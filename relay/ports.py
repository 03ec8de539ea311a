from __future__ import annotations

import logging
import threading
from typing import Dict, Hashable, Optional

from .errors import NoFreePortError

LOG = logging.getLogger("relay.ports")


class PortAllocator:
    """Hands out output ports from [base_port, base_port + count).

    The scan and the insert into the bound set happen under one lock, so two
    concurrent acquire() calls can never return the same port. A port only
    goes back to the pool through release(), which the supervisor calls after
    the owning process has been reaped.
    """

    def __init__(self, base_port: int, count: int) -> None:
        if count < 1:
            raise ValueError("count must be positive")
        self.base_port = base_port
        self.count = count
        self._bound: Dict[int, Hashable] = {}
        self._lock = threading.Lock()

    def acquire(self, owner: Hashable) -> int:
        with self._lock:
            for port in range(self.base_port, self.base_port + self.count):
                if port not in self._bound:
                    self._bound[port] = owner
                    LOG.debug("port %d acquired by %s", port, owner)
                    return port
        raise NoFreePortError(
            f"all {self.count} ports in {self.base_port}-{self.base_port + self.count - 1} are bound",
            phase="allocate",
        )

    def release(self, port: int) -> bool:
        with self._lock:
            owner = self._bound.pop(port, None)
        if owner is None:
            LOG.warning("release of port %d which is not bound", port)
            return False
        LOG.debug("port %d released by %s", port, owner)
        return True

    def owner(self, port: int) -> Optional[Hashable]:
        with self._lock:
            return self._bound.get(port)

    def bound(self) -> Dict[int, Hashable]:
        with self._lock:
            return dict(self._bound)
