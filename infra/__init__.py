"""Infrastructure modules for the vault engine"""

from .metrics import MetricsRecorder, CycleStats  # noqa: F401
from .lease import VaultLease, VaultLeaseManager  # noqa: F401
from .rate_limiter import RateLimiter  # noqa: F401
from .vault_store import InMemoryVaultStore, SQLiteVaultStore, VaultStore, build_store  # noqa: F401

__all__ = [
	"MetricsRecorder",
	"CycleStats",
	"VaultLease",
	"VaultLeaseManager",
	"RateLimiter",
	"VaultStore",
	"InMemoryVaultStore",
	"SQLiteVaultStore",
	"build_store",
]
