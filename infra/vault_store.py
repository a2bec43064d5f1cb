"""
Vault Engine Infrastructure: Vault Store

Durable vault, allocation, take-profit and history records.

Backends:
- InMemoryVaultStore: dry runs and tests
- SQLiteVaultStore: single-file persistence

Write-side invariants live in the base class so every backend enforces them:
- set_allocations re-validates the full set (100% ± 0.01%, unique assets)
- one take-profit setting per vault
- history entries are created PENDING and finalized exactly once
- one retry per history entry (retry ledger)
"""

import json
import logging
import sqlite3
from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from threading import RLock
from typing import Any, Dict, Iterator, List, Optional, Sequence

from core.exceptions import HistoryNotFound, TakeProfitSettingExists, VaultNotFound
from core.models import (
    Allocation,
    HistoryEntry,
    HistoryKind,
    HistoryStatus,
    InstructionOutcome,
    RebalanceCadence,
    TakeProfitSetting,
    TakeProfitStrategy,
    Vault,
    to_decimal,
    utcnow,
    validate_allocation_set,
)

logger = logging.getLogger(__name__)

VAULT_FIELDS = {
    "owner", "name", "drift_threshold_bp", "rebalance_cadence",
    "last_rebalanced_at", "auto_rebalance", "stable_asset",
}


@dataclass(frozen=True)
class RetryRecord:
    """Ledger entry: the result of retrying one history entry."""
    history_id: str
    outcome_status: str
    result_history_ids: List[str]
    recorded_at: datetime


class VaultStore(ABC):
    """Abstract store consumed by the scheduler."""

    # Vaults

    @abstractmethod
    def list_vaults(self) -> List[Vault]:
        ...

    @abstractmethod
    def get_vault(self, vault_id: str) -> Vault:
        """Raises VaultNotFound."""

    @abstractmethod
    def add_vault(self, vault: Vault) -> Vault:
        ...

    @abstractmethod
    def _write_vault(self, vault: Vault) -> None:
        ...

    @abstractmethod
    def delete_vault(self, vault_id: str) -> None:
        """Delete a vault with its allocations and take-profit setting."""

    def update_vault(self, vault_id: str, **fields) -> Vault:
        unknown = set(fields) - VAULT_FIELDS
        if unknown:
            raise ValueError(f"Cannot update vault fields: {sorted(unknown)}")
        vault = self.get_vault(vault_id).with_updates(**fields)
        self._write_vault(vault)
        return vault

    # Allocations

    @abstractmethod
    def get_allocations(self, vault_id: str) -> List[Allocation]:
        ...

    @abstractmethod
    def _write_allocations(self, vault_id: str, allocations: List[Allocation]) -> None:
        ...

    def set_allocations(self, vault_id: str, allocations: Sequence[Allocation]) -> List[Allocation]:
        """Replace a vault's allocation set after validating it as a whole."""
        self.get_vault(vault_id)
        allocations = list(allocations)
        for alloc in allocations:
            if alloc.vault_id != vault_id:
                raise ValueError(f"Allocation for {alloc.asset} belongs to vault {alloc.vault_id}, not {vault_id}")
        validate_allocation_set(vault_id, allocations)
        self._write_allocations(vault_id, allocations)
        return allocations

    # Take-profit settings

    @abstractmethod
    def get_take_profit_setting(self, vault_id: str) -> Optional[TakeProfitSetting]:
        ...

    @abstractmethod
    def _write_take_profit_setting(self, setting: TakeProfitSetting) -> None:
        ...

    def create_take_profit_setting(self, setting: TakeProfitSetting) -> TakeProfitSetting:
        self.get_vault(setting.vault_id)
        with self._write_lock():
            if self.get_take_profit_setting(setting.vault_id) is not None:
                raise TakeProfitSettingExists(setting.vault_id)
            self._write_take_profit_setting(setting)
        return setting

    def update_take_profit_setting(self, setting: TakeProfitSetting) -> TakeProfitSetting:
        with self._write_lock():
            if self.get_take_profit_setting(setting.vault_id) is None:
                raise ValueError(f"Vault {setting.vault_id} has no take-profit setting to update")
            self._write_take_profit_setting(setting)
        return setting

    # History

    @abstractmethod
    def create_history(self, entry: HistoryEntry) -> HistoryEntry:
        ...

    @abstractmethod
    def get_history(self, history_id: str) -> HistoryEntry:
        """Raises HistoryNotFound."""

    @abstractmethod
    def list_history(self, vault_id: str, kind: Optional[HistoryKind] = None) -> List[HistoryEntry]:
        """Entries oldest first."""

    @abstractmethod
    def _write_history(self, entry: HistoryEntry) -> None:
        ...

    def finalize_history(
        self,
        history_id: str,
        status: HistoryStatus,
        outcomes: Optional[List[InstructionOutcome]] = None,
        detail: Optional[Dict[str, Any]] = None,
        failure_reason: Optional[str] = None,
    ) -> HistoryEntry:
        if status == HistoryStatus.PENDING:
            raise ValueError("Cannot finalize a history entry as pending")
        with self._write_lock():
            entry = self.get_history(history_id)
            if entry.is_terminal():
                raise ValueError(f"History entry {history_id} already finalized as {entry.status.value}")
            entry.status = status
            entry.finalized_at = utcnow()
            entry.outcomes = list(outcomes or [])
            if detail:
                entry.detail.update(detail)
            entry.failure_reason = failure_reason
            self._write_history(entry)
        return entry

    # Retry ledger

    @abstractmethod
    def get_retry(self, history_id: str) -> Optional[RetryRecord]:
        ...

    @abstractmethod
    def record_retry(self, history_id: str, outcome_status: str, result_history_ids: List[str]) -> RetryRecord:
        ...

    @abstractmethod
    def _write_lock(self):
        """Context manager serializing read-check-write sequences."""


class InMemoryVaultStore(VaultStore):
    """Dict-backed store. Thread-safe."""

    def __init__(self):
        self._lock = RLock()
        self._vaults: Dict[str, Vault] = {}
        self._allocations: Dict[str, List[Allocation]] = {}
        self._settings: Dict[str, TakeProfitSetting] = {}
        self._history: Dict[str, Dict[str, Any]] = {}
        self._retries: Dict[str, RetryRecord] = {}

    @contextmanager
    def _write_lock(self) -> Iterator[None]:
        with self._lock:
            yield

    def list_vaults(self) -> List[Vault]:
        with self._lock:
            return [self._vaults[k] for k in sorted(self._vaults)]

    def get_vault(self, vault_id: str) -> Vault:
        with self._lock:
            try:
                return self._vaults[vault_id]
            except KeyError:
                raise VaultNotFound(vault_id) from None

    def add_vault(self, vault: Vault) -> Vault:
        with self._lock:
            if vault.id in self._vaults:
                raise ValueError(f"Vault {vault.id} already exists")
            self._vaults[vault.id] = vault
            self._allocations[vault.id] = []
        return vault

    def _write_vault(self, vault: Vault) -> None:
        with self._lock:
            self._vaults[vault.id] = vault

    def delete_vault(self, vault_id: str) -> None:
        with self._lock:
            self.get_vault(vault_id)
            del self._vaults[vault_id]
            self._allocations.pop(vault_id, None)
            self._settings.pop(vault_id, None)

    def get_allocations(self, vault_id: str) -> List[Allocation]:
        with self._lock:
            return list(self._allocations.get(vault_id, []))

    def _write_allocations(self, vault_id: str, allocations: List[Allocation]) -> None:
        with self._lock:
            self._allocations[vault_id] = list(allocations)

    def get_take_profit_setting(self, vault_id: str) -> Optional[TakeProfitSetting]:
        with self._lock:
            return self._settings.get(vault_id)

    def _write_take_profit_setting(self, setting: TakeProfitSetting) -> None:
        with self._lock:
            self._settings[setting.vault_id] = setting

    def create_history(self, entry: HistoryEntry) -> HistoryEntry:
        with self._lock:
            if entry.id in self._history:
                raise ValueError(f"History entry {entry.id} already exists")
            self._history[entry.id] = entry.to_dict()
        return entry

    def get_history(self, history_id: str) -> HistoryEntry:
        with self._lock:
            try:
                return HistoryEntry.from_dict(self._history[history_id])
            except KeyError:
                raise HistoryNotFound(history_id) from None

    def list_history(self, vault_id: str, kind: Optional[HistoryKind] = None) -> List[HistoryEntry]:
        with self._lock:
            entries = [
                HistoryEntry.from_dict(data) for data in self._history.values()
                if data["vault_id"] == vault_id and (kind is None or data["kind"] == kind.value)
            ]
        return sorted(entries, key=lambda e: e.created_at)

    def _write_history(self, entry: HistoryEntry) -> None:
        with self._lock:
            self._history[entry.id] = entry.to_dict()

    def get_retry(self, history_id: str) -> Optional[RetryRecord]:
        with self._lock:
            return self._retries.get(history_id)

    def record_retry(self, history_id: str, outcome_status: str, result_history_ids: List[str]) -> RetryRecord:
        with self._lock:
            existing = self._retries.get(history_id)
            if existing is not None:
                return existing
            record = RetryRecord(history_id, outcome_status, list(result_history_ids), utcnow())
            self._retries[history_id] = record
            return record


def _ts(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _parse_ts(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


class SQLiteVaultStore(VaultStore):
    """
    SQLite-backed store.

    One connection per operation; an RLock serializes writers within the
    process.
    """

    def __init__(self, path: str = "data/vaults.db"):
        self.db_file = Path(path)
        self.db_file.parent.mkdir(parents=True, exist_ok=True)
        self._lock = RLock()
        self._init_schema()
        logger.info(f"SQLiteVaultStore initialized at {self.db_file}")

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        conn = sqlite3.connect(str(self.db_file))
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    @contextmanager
    def _write_lock(self) -> Iterator[None]:
        with self._lock:
            yield

    def _init_schema(self) -> None:
        with self._connect() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS vaults (
                    id TEXT PRIMARY KEY,
                    owner TEXT NOT NULL,
                    name TEXT NOT NULL DEFAULT '',
                    drift_threshold_bp INTEGER NOT NULL,
                    rebalance_cadence TEXT NOT NULL,
                    last_rebalanced_at TEXT,
                    auto_rebalance INTEGER NOT NULL,
                    stable_asset TEXT NOT NULL
                )
            """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS allocations (
                    vault_id TEXT NOT NULL REFERENCES vaults(id) ON DELETE CASCADE,
                    position INTEGER NOT NULL,
                    asset TEXT NOT NULL,
                    target_bp INTEGER NOT NULL,
                    amount_held TEXT,
                    PRIMARY KEY (vault_id, asset)
                )
            """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS take_profit_settings (
                    vault_id TEXT PRIMARY KEY REFERENCES vaults(id) ON DELETE CASCADE,
                    strategy TEXT NOT NULL,
                    threshold_pct TEXT,
                    interval_seconds INTEGER,
                    percentage_to_sell TEXT NOT NULL,
                    baseline_value_usd TEXT,
                    last_execution_at TEXT,
                    active INTEGER NOT NULL
                )
            """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS history (
                    id TEXT PRIMARY KEY,
                    vault_id TEXT NOT NULL,
                    kind TEXT NOT NULL,
                    status TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    payload TEXT NOT NULL
                )
            """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS retries (
                    history_id TEXT PRIMARY KEY,
                    outcome_status TEXT NOT NULL,
                    result_history_ids TEXT NOT NULL,
                    recorded_at TEXT NOT NULL
                )
            """)
            conn.execute("CREATE INDEX IF NOT EXISTS idx_history_vault ON history(vault_id, created_at)")

    # Vaults

    @staticmethod
    def _vault_from_row(row: sqlite3.Row) -> Vault:
        return Vault(
            id=row["id"],
            owner=row["owner"],
            name=row["name"],
            drift_threshold_bp=row["drift_threshold_bp"],
            rebalance_cadence=RebalanceCadence(row["rebalance_cadence"]),
            last_rebalanced_at=_parse_ts(row["last_rebalanced_at"]),
            auto_rebalance=bool(row["auto_rebalance"]),
            stable_asset=row["stable_asset"],
        )

    def list_vaults(self) -> List[Vault]:
        with self._connect() as conn:
            rows = conn.execute("SELECT * FROM vaults ORDER BY id").fetchall()
        return [self._vault_from_row(r) for r in rows]

    def get_vault(self, vault_id: str) -> Vault:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM vaults WHERE id = ?", (vault_id,)).fetchone()
        if row is None:
            raise VaultNotFound(vault_id)
        return self._vault_from_row(row)

    def add_vault(self, vault: Vault) -> Vault:
        with self._lock, self._connect() as conn:
            try:
                conn.execute(
                    """INSERT INTO vaults (id, owner, name, drift_threshold_bp, rebalance_cadence,
                                           last_rebalanced_at, auto_rebalance, stable_asset)
                       VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
                    (vault.id, vault.owner, vault.name, vault.drift_threshold_bp, vault.rebalance_cadence.value,
                     _ts(vault.last_rebalanced_at), int(vault.auto_rebalance), vault.stable_asset),
                )
            except sqlite3.IntegrityError as e:
                raise ValueError(f"Vault {vault.id} already exists") from e
        return vault

    def _write_vault(self, vault: Vault) -> None:
        with self._lock, self._connect() as conn:
            conn.execute(
                """UPDATE vaults SET owner = ?, name = ?, drift_threshold_bp = ?, rebalance_cadence = ?,
                                     last_rebalanced_at = ?, auto_rebalance = ?, stable_asset = ?
                   WHERE id = ?""",
                (vault.owner, vault.name, vault.drift_threshold_bp, vault.rebalance_cadence.value,
                 _ts(vault.last_rebalanced_at), int(vault.auto_rebalance), vault.stable_asset, vault.id),
            )

    def delete_vault(self, vault_id: str) -> None:
        self.get_vault(vault_id)
        with self._lock, self._connect() as conn:
            conn.execute("DELETE FROM vaults WHERE id = ?", (vault_id,))

    # Allocations

    def get_allocations(self, vault_id: str) -> List[Allocation]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM allocations WHERE vault_id = ? ORDER BY position", (vault_id,)
            ).fetchall()
        return [
            Allocation(
                vault_id=r["vault_id"],
                asset=r["asset"],
                target_bp=r["target_bp"],
                amount_held=to_decimal(r["amount_held"]) if r["amount_held"] is not None else None,
            )
            for r in rows
        ]

    def _write_allocations(self, vault_id: str, allocations: List[Allocation]) -> None:
        with self._lock, self._connect() as conn:
            conn.execute("DELETE FROM allocations WHERE vault_id = ?", (vault_id,))
            conn.executemany(
                "INSERT INTO allocations (vault_id, position, asset, target_bp, amount_held) VALUES (?, ?, ?, ?, ?)",
                [
                    (vault_id, i, a.asset, a.target_bp, str(a.amount_held) if a.amount_held is not None else None)
                    for i, a in enumerate(allocations)
                ],
            )

    # Take-profit settings

    def get_take_profit_setting(self, vault_id: str) -> Optional[TakeProfitSetting]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM take_profit_settings WHERE vault_id = ?", (vault_id,)).fetchone()
        if row is None:
            return None
        return TakeProfitSetting(
            vault_id=row["vault_id"],
            strategy=TakeProfitStrategy(row["strategy"]),
            threshold_pct=to_decimal(row["threshold_pct"]) if row["threshold_pct"] is not None else None,
            interval_seconds=row["interval_seconds"],
            percentage_to_sell=to_decimal(row["percentage_to_sell"]),
            baseline_value_usd=(
                to_decimal(row["baseline_value_usd"]) if row["baseline_value_usd"] is not None else None
            ),
            last_execution_at=_parse_ts(row["last_execution_at"]),
            active=bool(row["active"]),
        )

    def _write_take_profit_setting(self, setting: TakeProfitSetting) -> None:
        with self._lock, self._connect() as conn:
            conn.execute(
                """INSERT OR REPLACE INTO take_profit_settings
                   (vault_id, strategy, threshold_pct, interval_seconds, percentage_to_sell,
                    baseline_value_usd, last_execution_at, active)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
                (
                    setting.vault_id,
                    setting.strategy.value,
                    str(setting.threshold_pct) if setting.threshold_pct is not None else None,
                    setting.interval_seconds,
                    str(setting.percentage_to_sell),
                    str(setting.baseline_value_usd) if setting.baseline_value_usd is not None else None,
                    _ts(setting.last_execution_at),
                    int(setting.active),
                ),
            )

    # History

    def create_history(self, entry: HistoryEntry) -> HistoryEntry:
        with self._lock, self._connect() as conn:
            try:
                conn.execute(
                    "INSERT INTO history (id, vault_id, kind, status, created_at, payload) VALUES (?, ?, ?, ?, ?, ?)",
                    (entry.id, entry.vault_id, entry.kind.value, entry.status.value,
                     entry.created_at.isoformat(), json.dumps(entry.to_dict(), default=str)),
                )
            except sqlite3.IntegrityError as e:
                raise ValueError(f"History entry {entry.id} already exists") from e
        return entry

    def get_history(self, history_id: str) -> HistoryEntry:
        with self._connect() as conn:
            row = conn.execute("SELECT payload FROM history WHERE id = ?", (history_id,)).fetchone()
        if row is None:
            raise HistoryNotFound(history_id)
        return HistoryEntry.from_dict(json.loads(row["payload"]))

    def list_history(self, vault_id: str, kind: Optional[HistoryKind] = None) -> List[HistoryEntry]:
        sql = "SELECT payload FROM history WHERE vault_id = ?"
        params: List[Any] = [vault_id]
        if kind is not None:
            sql += " AND kind = ?"
            params.append(kind.value)
        sql += " ORDER BY created_at, rowid"
        with self._connect() as conn:
            rows = conn.execute(sql, params).fetchall()
        return [HistoryEntry.from_dict(json.loads(r["payload"])) for r in rows]

    def _write_history(self, entry: HistoryEntry) -> None:
        with self._lock, self._connect() as conn:
            conn.execute(
                "UPDATE history SET status = ?, payload = ? WHERE id = ?",
                (entry.status.value, json.dumps(entry.to_dict(), default=str), entry.id),
            )

    # Retry ledger

    def get_retry(self, history_id: str) -> Optional[RetryRecord]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM retries WHERE history_id = ?", (history_id,)).fetchone()
        if row is None:
            return None
        return RetryRecord(
            history_id=row["history_id"],
            outcome_status=row["outcome_status"],
            result_history_ids=json.loads(row["result_history_ids"]),
            recorded_at=datetime.fromisoformat(row["recorded_at"]),
        )

    def record_retry(self, history_id: str, outcome_status: str, result_history_ids: List[str]) -> RetryRecord:
        with self._lock:
            existing = self.get_retry(history_id)
            if existing is not None:
                return existing
            record = RetryRecord(history_id, outcome_status, list(result_history_ids), utcnow())
            with self._connect() as conn:
                conn.execute(
                    "INSERT INTO retries (history_id, outcome_status, result_history_ids, recorded_at) "
                    "VALUES (?, ?, ?, ?)",
                    (history_id, outcome_status, json.dumps(record.result_history_ids),
                     record.recorded_at.isoformat()),
                )
            return record


def build_store(backend: str = "memory", path: Optional[str] = None) -> VaultStore:
    if backend == "memory":
        return InMemoryVaultStore()
    if backend == "sqlite":
        return SQLiteVaultStore(path or "data/vaults.db")
    raise ValueError(f"Unknown store backend: {backend}")
