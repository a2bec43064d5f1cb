"""
Per-Vault Lease Manager

Time-bounded exclusive claims on vaults so that at most one cycle processes
a vault at any time. Acquisition never blocks: a vault whose lease is held is
skipped for the tick, not queued.

An expired lease (holder crashed or hung past the TTL) may be taken over by
the next caller; the previous holder's release then becomes a no-op.
"""

import logging
import time
import uuid
from contextlib import contextmanager
from dataclasses import dataclass
from threading import Lock
from typing import Callable, Dict, Iterator, Optional

from core.exceptions import LeaseUnavailable

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class VaultLease:
    vault_id: str
    token: str
    owner: str
    acquired_at: float
    expires_at: float

    def remaining(self, now: float) -> float:
        return max(0.0, self.expires_at - now)


class VaultLeaseManager:
    """
    In-process, thread-safe lease table.

    Usage:
        leases = VaultLeaseManager(ttl_seconds=300)
        lease = leases.try_acquire("vault-1")
        if lease is None:
            return  # another cycle owns it
        try:
            ...
        finally:
            leases.release(lease)
    """

    def __init__(self, ttl_seconds: float = 300.0, clock: Callable[[], float] = time.monotonic):
        if ttl_seconds <= 0:
            raise ValueError(f"ttl_seconds must be positive, got {ttl_seconds}")
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._leases: Dict[str, VaultLease] = {}
        self._lock = Lock()

    def try_acquire(self, vault_id: str, owner: str = "scheduler") -> Optional[VaultLease]:
        """
        Returns:
            The lease, or None if another live lease holds the vault
        """
        now = self._clock()
        with self._lock:
            current = self._leases.get(vault_id)
            if current is not None:
                if current.expires_at > now:
                    logger.debug(
                        f"Lease for vault {vault_id} held by {current.owner} "
                        f"({current.remaining(now):.1f}s left)"
                    )
                    return None
                logger.warning(
                    f"Lease for vault {vault_id} held by {current.owner} expired, taking over"
                )

            lease = VaultLease(
                vault_id=vault_id,
                token=uuid.uuid4().hex,
                owner=owner,
                acquired_at=now,
                expires_at=now + self.ttl_seconds,
            )
            self._leases[vault_id] = lease
            return lease

    def renew(self, lease: VaultLease) -> VaultLease:
        """
        Extend a held lease by a full TTL from now.

        Raises:
            LeaseUnavailable: if the lease expired or was taken over
        """
        now = self._clock()
        with self._lock:
            current = self._leases.get(lease.vault_id)
            if current is None or current.token != lease.token or current.expires_at <= now:
                logger.warning(f"Lease for vault {lease.vault_id} lost before renewal (owner {lease.owner})")
                raise LeaseUnavailable(lease.vault_id)
            renewed = VaultLease(
                vault_id=lease.vault_id,
                token=lease.token,
                owner=lease.owner,
                acquired_at=lease.acquired_at,
                expires_at=now + self.ttl_seconds,
            )
            self._leases[lease.vault_id] = renewed
            return renewed

    def release(self, lease: VaultLease) -> bool:
        """Release a lease. Returns False if it was already lost (expired and taken over)."""
        with self._lock:
            current = self._leases.get(lease.vault_id)
            if current is None or current.token != lease.token:
                logger.warning(f"Lease for vault {lease.vault_id} was lost before release")
                return False
            del self._leases[lease.vault_id]
            return True

    def is_held(self, vault_id: str) -> bool:
        now = self._clock()
        with self._lock:
            current = self._leases.get(vault_id)
            return current is not None and current.expires_at > now

    @contextmanager
    def hold(self, vault_id: str, owner: str = "scheduler") -> Iterator[VaultLease]:
        """
        Context manager form.

        Raises:
            LeaseUnavailable: if the vault is already leased
        """
        lease = self.try_acquire(vault_id, owner=owner)
        if lease is None:
            raise LeaseUnavailable(vault_id)
        try:
            yield lease
        finally:
            self.release(lease)
