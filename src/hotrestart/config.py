"""
=============================================================================
GRACEFUL RESTART CONFIGURATION
=============================================================================

Centralized configuration for the listeners and the restart machinery.

=============================================================================
CONFIGURATION SOURCES
=============================================================================

    ┌─────────────────────────────────────────────────────────────────────┐
    │                    CONFIGURATION HIERARCHY                          │
    ├─────────────────────────────────────────────────────────────────────┤
    │                                                                      │
    │   Priority (highest to lowest):                                     │
    │                                                                      │
    │   1. Command-line arguments                                         │
    │      └── python -m hotrestart --drain-timeout 10                   │
    │                                                                      │
    │   2. Environment variables                                          │
    │      └── GRACE_DRAIN_TIMEOUT=10 python -m hotrestart               │
    │                                                                      │
    │   3. Default values (in this dataclass)                            │
    │                                                                      │
    └─────────────────────────────────────────────────────────────────────┘

A forked child is started with the parent's own command line, so it ends
up with the same configuration as the parent without any extra plumbing.

=============================================================================
HANDOFF MODES
=============================================================================

    GRACEFUL (default)
        The old process keeps serving after the fork. Whoever manages the
        deployment sends it SIGTERM once the new one looks healthy.

    IMMEDIATE
        The child confirms it holds every listener, then sends SIGTERM to
        its parent itself. If the child dies before that point the parent
        never hears about it and simply keeps serving.

=============================================================================
"""

import os
from enum import Enum
from dataclasses import dataclass, field
from typing import Optional, List

from .core.listener import parse_address


class HandoffMode(Enum):
    """Who tells the old process to stop after a fork."""
    GRACEFUL = "graceful"    # An external supervisor sends SIGTERM
    IMMEDIATE = "immediate"  # The ready child sends SIGTERM to its parent


def split_addresses(value: Optional[str]) -> List[str]:
    if not value:
        return []
    return [part.strip() for part in value.split(",") if part.strip()]


@dataclass
class GraceConfig:
    """
    Configuration for a graceful-restart server process.

    =========================================================================
    CONFIGURATION GROUPS
    =========================================================================

    LISTENERS
    - addresses, tls_addresses, cert_file, key_file, backlog

    CONNECTIONS
    - keepalive_period, connection_timeout, linger

    RESTART / SHUTDOWN
    - drain_timeout, handoff, ready_timeout, accept_poll_interval

    LOGGING
    - log_level

    =========================================================================
    """

    # ─────────────────────────────────────────────────────────────────────
    # LISTENERS
    # ─────────────────────────────────────────────────────────────────────

    addresses: List[str] = field(default_factory=lambda: ["127.0.0.1:8080"])
    """
    Plain TCP listen addresses, in registration order.
    This order becomes the descriptor order handed to a forked child.
    """

    tls_addresses: List[str] = field(default_factory=list)
    """TLS listen addresses, registered after the plain ones."""

    cert_file: Optional[str] = None
    """PEM certificate (chain) for TLS listeners."""

    key_file: Optional[str] = None
    """PEM private key matching cert_file."""

    backlog: int = 128
    """Accept queue length for freshly bound sockets."""

    # ─────────────────────────────────────────────────────────────────────
    # CONNECTIONS
    # ─────────────────────────────────────────────────────────────────────

    keepalive_period: float = 180.0
    """TCP keepalive idle time applied to every accepted connection."""

    connection_timeout: Optional[float] = 30.0
    """
    Read/write timeout on accepted sockets.
    None = blocking, a stuck client then holds up the drain until
    drain_timeout fires.
    """

    linger: float = 0.5
    """Seconds spent reading leftover client data when closing."""

    # ─────────────────────────────────────────────────────────────────────
    # RESTART / SHUTDOWN
    # ─────────────────────────────────────────────────────────────────────

    drain_timeout: Optional[float] = 60.0
    """
    How long shutdown waits for in-flight connections.
    None or a negative value = wait forever.
    """

    handoff: HandoffMode = HandoffMode.GRACEFUL
    """What happens to the parent once a child is running."""

    ready_timeout: float = 10.0
    """How long the parent watches for the child's readiness byte."""

    accept_poll_interval: float = 0.5
    """Upper bound on how long a closed listener keeps accept() blocked."""

    # ─────────────────────────────────────────────────────────────────────
    # LOGGING
    # ─────────────────────────────────────────────────────────────────────

    log_level: str = "INFO"
    """Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)."""

    @property
    def drain_enabled(self) -> bool:
        """True if shutdown should start a drain timer."""
        return self.drain_timeout is not None and self.drain_timeout >= 0

    @classmethod
    def from_env(cls) -> "GraceConfig":
        """
        Create configuration from environment variables.

        =====================================================================
        ENVIRONMENT VARIABLES
        =====================================================================

        GRACE_LISTEN         Comma-separated TCP addresses
        GRACE_TLS_LISTEN     Comma-separated TLS addresses
        GRACE_CERT_FILE      TLS certificate
        GRACE_KEY_FILE       TLS private key
        GRACE_DRAIN_TIMEOUT  Seconds, negative disables (default: 60)
        GRACE_HANDOFF        graceful | immediate (default: graceful)
        GRACE_TIMEOUT        Per-connection timeout (default: 30)
        GRACE_LOG_LEVEL      Logging level (default: INFO)

        =====================================================================
        """
        config = cls()
        addresses = split_addresses(os.getenv("GRACE_LISTEN"))
        if addresses:
            config.addresses = addresses
        config.tls_addresses = split_addresses(os.getenv("GRACE_TLS_LISTEN"))
        config.cert_file = os.getenv("GRACE_CERT_FILE")
        config.key_file = os.getenv("GRACE_KEY_FILE")
        config.drain_timeout = float(os.getenv("GRACE_DRAIN_TIMEOUT", "60"))
        config.handoff = HandoffMode(os.getenv("GRACE_HANDOFF", "graceful").lower())
        config.connection_timeout = float(os.getenv("GRACE_TIMEOUT", "30"))
        config.log_level = os.getenv("GRACE_LOG_LEVEL", "INFO")
        return config

    def validate(self) -> None:
        """
        Validate configuration values.

        Raises:
            ValueError: On the first problem found.
        """
        all_addresses = list(self.addresses) + list(self.tls_addresses)
        if not all_addresses:
            raise ValueError("At least one listen address is required")

        seen = set()
        for address in all_addresses:
            parse_address(address)  # Raises ValueError
            if address in seen:
                raise ValueError(f"Duplicate listen address: {address}")
            seen.add(address)

        if self.tls_addresses and not (self.cert_file and self.key_file):
            raise ValueError("TLS listeners need both cert_file and key_file")

        if self.backlog < 1:
            raise ValueError("backlog must be >= 1")

        if self.connection_timeout is not None and self.connection_timeout <= 0:
            raise ValueError("connection_timeout must be > 0")

        if self.ready_timeout <= 0:
            raise ValueError("ready_timeout must be > 0")

        if self.accept_poll_interval <= 0:
            raise ValueError("accept_poll_interval must be > 0")
