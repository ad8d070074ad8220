"""
=============================================================================
SERVER REGISTRY
=============================================================================

The ordered list of servers in this process and the descriptor offset of
each listening address.

=============================================================================
WHY OFFSETS MATTER
=============================================================================

A forked child receives its listeners as plain numbers: fd 3, fd 4, ...
Nothing on a file descriptor says which address it belongs to, so parent
and child have to agree on the order out of band:

    Parent registry                      Child command line
    ───────────────                      ──────────────────
    ":8080"  → offset 0  ─── fd 3 ───►   --socketorder=:8080,:8443
    ":8443"  → offset 1  ─── fd 4 ───►                  │      │
                                                     fd 3   fd 4

The child seeds its registry from --socketorder, so ":8443" gets offset 1
in the child no matter in which order its code registers the servers.

An offset is assigned the first time an address is registered and never
changes or gets reused while the process lives.

=============================================================================
"""

import threading
import logging
from enum import Enum
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence

from .errors import DescriptorMismatch
from .core.listener import GraceListener


logger = logging.getLogger(__name__)


class Protocol(Enum):
    """Listener kind."""
    TCP = "tcp"
    TLS = "tls"


@dataclass(frozen=True)
class ListenerEntry:
    """
    What the fork coordinator needs to know about one server.

    For TLS servers `listener` is still the raw TCP listener underneath the
    TLS layer, so exporting a descriptor looks the same for both kinds.
    """
    address: str
    protocol: Protocol
    listener: GraceListener


class ServerRegistry:
    """
    Ordered record of servers and their stable descriptor offsets.

    Usage:
        registry = ServerRegistry()                    # original process
        registry = ServerRegistry([":8080", ":8443"],  # forked child
                                  inherited=True)
        offset = registry.register(server)
    """

    def __init__(self, socket_order: Optional[Sequence[str]] = None, inherited: bool = False):
        """
        Args:
            socket_order: Addresses from --socketorder, in descriptor order.
            inherited: True in a forked child. Without socket_order a child
                       holds exactly one descriptor, at offset 0.

        Raises:
            DescriptorMismatch: If socket_order lists an address twice.
        """
        # Held by the fork coordinator for the whole of descriptor assembly
        self.lock = threading.RLock()

        self.inherited = inherited
        self._servers: list = []
        self._offsets: Dict[str, int] = {}
        self._socket_order = list(socket_order) if socket_order else None

        if self._socket_order:
            for offset, address in enumerate(self._socket_order):
                if address in self._offsets:
                    raise DescriptorMismatch(
                        f"Address {address} appears twice in socket order", address
                    )
                self._offsets[address] = offset

    def register(self, server) -> int:
        """
        Add a server and return its descriptor offset.

        Raises:
            ValueError: If a server for this address is already registered.
            DescriptorMismatch: If this child has no descriptor for the address.
        """
        address = server.address
        with self.lock:
            if any(s.address == address for s in self._servers):
                raise ValueError(f"A server for {address} is already registered")

            if self._socket_order is not None:
                if address not in self._offsets:
                    raise DescriptorMismatch(
                        f"{address} is not in the inherited socket order "
                        f"{','.join(self._socket_order)}",
                        address,
                    )
            elif self.inherited and self._servers:
                raise DescriptorMismatch(
                    f"Inherited a single listener but {address} is a second "
                    f"address and no socket order was given",
                    address,
                )
            else:
                self._offsets.setdefault(address, len(self._offsets))

            self._servers.append(server)
            offset = self._offsets[address]

        logger.debug(f"Registered {address} at descriptor offset {offset}")
        return offset

    def offset(self, address: str) -> int:
        """Descriptor offset of a registered (or pre-seeded) address."""
        with self.lock:
            return self._offsets[address]

    @property
    def servers(self) -> List:
        """Registered servers in registration order."""
        with self.lock:
            return list(self._servers)

    @property
    def addresses(self) -> List[str]:
        """Registered addresses ordered by descriptor offset."""
        with self.lock:
            return sorted(
                (s.address for s in self._servers), key=self._offsets.__getitem__
            )

    def __len__(self) -> int:
        with self.lock:
            return len(self._servers)

    def check_complete(self):
        """
        Make sure a child registered every inherited address.

        A child that registered fewer addresses than its parent handed
        over would silently drop a listener.

        Raises:
            DescriptorMismatch: If the registered set differs from the order.
        """
        if self._socket_order is None:
            return
        with self.lock:
            registered = {s.address for s in self._servers}
        missing = [a for a in self._socket_order if a not in registered]
        if missing:
            raise DescriptorMismatch(
                f"No server registered for inherited address(es): {','.join(missing)}",
                missing[0],
            )

    def entries(self) -> List[ListenerEntry]:
        """
        One ListenerEntry per server, ordered by descriptor offset.

        Callers that need a consistent snapshot across a fork hold `lock`.
        """
        with self.lock:
            servers = sorted(self._servers, key=lambda s: self._offsets[s.address])
            return [s.listener_entry() for s in servers]
