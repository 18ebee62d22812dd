"""SQLite-backed persistence layer for users, positions and rebalancing records."""
from __future__ import annotations

import asyncio
import sqlite3
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Iterable, Optional, TypeVar

from analysis.models import RecommendationDraft
from storage.models import (
    PositionRecord,
    RebalanceHistoryRecord,
    RecommendationRecord,
    RecommendationStatus,
    UserRecord,
    WalletRecord,
    month_bucket,
)

ISO_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"

T = TypeVar("T")


def _now() -> str:
    return datetime.now(timezone.utc).strftime(ISO_FORMAT)


def _parse_time(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    return datetime.strptime(value, ISO_FORMAT).replace(tzinfo=timezone.utc)


class SQLiteRepository:
    """Provides async-friendly helpers for users, positions and recommendations."""

    def __init__(self, db_path: Path | str = Path("data/yieldshift.db")) -> None:
        self.db_path = Path(db_path)
        if self.db_path != Path(":memory:"):
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()
        self._connection = sqlite3.connect(
            str(self.db_path),
            detect_types=sqlite3.PARSE_DECLTYPES,
            check_same_thread=False,
        )
        self._connection.row_factory = sqlite3.Row
        self._configure()
        self._create_schema()

    def _configure(self) -> None:
        with self._lock:
            cursor = self._connection.cursor()
            try:
                cursor.execute("PRAGMA journal_mode=WAL;")
            except sqlite3.DatabaseError:
                pass
            cursor.execute("PRAGMA foreign_keys=ON;")
            cursor.close()

    def _create_schema(self) -> None:
        statements = [
            """
            CREATE TABLE IF NOT EXISTS app_user (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                external_id TEXT NOT NULL UNIQUE,
                subscription_tier TEXT NOT NULL DEFAULT 'free',
                created_at TEXT NOT NULL
            );
            """,
            """
            CREATE TABLE IF NOT EXISTS wallet (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                user_id INTEGER NOT NULL,
                address TEXT NOT NULL,
                chain TEXT NOT NULL,
                UNIQUE (user_id, address, chain),
                FOREIGN KEY (user_id) REFERENCES app_user(id) ON DELETE CASCADE
            );
            """,
            """
            CREATE TABLE IF NOT EXISTS position (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                wallet_id INTEGER NOT NULL,
                protocol TEXT NOT NULL,
                pool_id TEXT NOT NULL,
                asset_symbol TEXT NOT NULL,
                balance TEXT NOT NULL,
                apy REAL NOT NULL DEFAULT 0,
                tvl_usd REAL NOT NULL DEFAULT 0,
                FOREIGN KEY (wallet_id) REFERENCES wallet(id) ON DELETE CASCADE
            );
            """,
            """
            CREATE TABLE IF NOT EXISTS recommendation (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                user_id INTEGER NOT NULL,
                from_pool_id TEXT,
                from_protocol TEXT,
                to_pool_id TEXT NOT NULL,
                to_protocol TEXT NOT NULL,
                asset_symbol TEXT NOT NULL,
                from_asset_symbol TEXT,
                amount TEXT NOT NULL,
                current_apy REAL,
                target_apy REAL NOT NULL,
                net_gain_usd_per_year REAL NOT NULL,
                risk_score INTEGER NOT NULL,
                reason TEXT NOT NULL,
                status TEXT NOT NULL DEFAULT 'pending',
                created_at TEXT NOT NULL,
                executed_at TEXT,
                shift_id TEXT,
                FOREIGN KEY (user_id) REFERENCES app_user(id) ON DELETE CASCADE
            );
            """,
            """
            CREATE TABLE IF NOT EXISTS rebalance_history (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                user_id INTEGER NOT NULL,
                recommendation_id INTEGER NOT NULL,
                shift_id TEXT NOT NULL,
                from_protocol TEXT,
                to_protocol TEXT NOT NULL,
                asset TEXT NOT NULL,
                amount TEXT NOT NULL,
                status TEXT NOT NULL,
                month_bucket TEXT NOT NULL,
                created_at TEXT NOT NULL,
                FOREIGN KEY (user_id) REFERENCES app_user(id) ON DELETE CASCADE
            );
            """,
            """
            CREATE INDEX IF NOT EXISTS idx_recommendation_user_status
                ON recommendation(user_id, status);
            """,
            """
            CREATE UNIQUE INDEX IF NOT EXISTS idx_recommendation_pending_target
                ON recommendation(user_id, to_pool_id, asset_symbol)
                WHERE status = 'pending';
            """,
            """
            CREATE INDEX IF NOT EXISTS idx_recommendation_shift
                ON recommendation(shift_id);
            """,
            """
            CREATE INDEX IF NOT EXISTS idx_rebalance_history_user_month
                ON rebalance_history(user_id, month_bucket);
            """,
            """
            CREATE INDEX IF NOT EXISTS idx_rebalance_history_shift
                ON rebalance_history(shift_id);
            """,
        ]

        with self._lock:
            cursor = self._connection.cursor()
            for statement in statements:
                cursor.execute(statement)
            self._connection.commit()
            cursor.close()

    async def _run(self, func: Callable[..., T], *args) -> T:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, func, *args)

    # --- Users (identity / billing collaborators) ---

    async def resolve_user(self, external_id: str) -> UserRecord:
        """Returns the user for an identity-provider id, creating a free user on first sight."""
        return await self._run(self._resolve_user_sync, str(external_id))

    def _resolve_user_sync(self, external_id: str) -> UserRecord:
        with self._lock:
            cursor = self._connection.cursor()
            cursor.execute(
                """
                INSERT OR IGNORE INTO app_user (external_id, subscription_tier, created_at)
                VALUES (?, 'free', ?)
                """,
                (external_id, _now()),
            )
            self._connection.commit()
            cursor.execute("SELECT * FROM app_user WHERE external_id = ?", (external_id,))
            row = cursor.fetchone()
            cursor.close()
        return self._user_from_row(row)

    async def fetch_user(self, user_id: int) -> Optional[UserRecord]:
        return await self._run(self._fetch_user_sync, user_id)

    def _fetch_user_sync(self, user_id: int) -> Optional[UserRecord]:
        with self._lock:
            cursor = self._connection.cursor()
            cursor.execute("SELECT * FROM app_user WHERE id = ?", (user_id,))
            row = cursor.fetchone()
            cursor.close()
        return self._user_from_row(row) if row is not None else None

    async def set_subscription_tier(self, user_id: int, tier: str) -> None:
        await self._run(self._set_subscription_tier_sync, user_id, tier)

    def _set_subscription_tier_sync(self, user_id: int, tier: str) -> None:
        with self._lock:
            cursor = self._connection.cursor()
            cursor.execute(
                "UPDATE app_user SET subscription_tier = ? WHERE id = ?",
                (tier, user_id),
            )
            self._connection.commit()
            cursor.close()

    # --- Wallets and positions ---

    async def add_wallet(self, user_id: int, address: str, chain: str) -> int:
        return await self._run(self._add_wallet_sync, user_id, address, chain)

    def _add_wallet_sync(self, user_id: int, address: str, chain: str) -> int:
        with self._lock:
            cursor = self._connection.cursor()
            cursor.execute(
                "INSERT OR IGNORE INTO wallet (user_id, address, chain) VALUES (?, ?, ?)",
                (user_id, address, chain),
            )
            cursor.execute(
                "SELECT id FROM wallet WHERE user_id = ? AND address = ? AND chain = ?",
                (user_id, address, chain),
            )
            wallet_id = cursor.fetchone()["id"]
            self._connection.commit()
            cursor.close()
        return wallet_id

    async def fetch_wallets(self, user_id: int) -> list[WalletRecord]:
        return await self._run(self._fetch_wallets_sync, user_id)

    def _fetch_wallets_sync(self, user_id: int) -> list[WalletRecord]:
        with self._lock:
            cursor = self._connection.cursor()
            cursor.execute("SELECT * FROM wallet WHERE user_id = ? ORDER BY id", (user_id,))
            rows = cursor.fetchall()
            cursor.close()
        return [
            WalletRecord(id=row["id"], user_id=row["user_id"], address=row["address"], chain=row["chain"])
            for row in rows
        ]

    async def replace_wallet_positions(self, wallet_id: int, positions: Iterable[PositionRecord]) -> None:
        """Swaps in a fresh scan of a wallet's positions."""
        await self._run(self._replace_wallet_positions_sync, wallet_id, list(positions))

    def _replace_wallet_positions_sync(self, wallet_id: int, positions: list[PositionRecord]) -> None:
        with self._lock:
            cursor = self._connection.cursor()
            try:
                cursor.execute("DELETE FROM position WHERE wallet_id = ?", (wallet_id,))
                cursor.executemany(
                    """
                    INSERT INTO position (wallet_id, protocol, pool_id, asset_symbol, balance, apy, tvl_usd)
                    VALUES (?, ?, ?, ?, ?, ?, ?)
                    """,
                    [
                        (wallet_id, p.protocol, p.pool_id, p.asset_symbol, p.balance, p.apy, p.tvl_usd)
                        for p in positions
                    ],
                )
                self._connection.commit()
            except sqlite3.Error:
                self._connection.rollback()
                raise
            finally:
                cursor.close()

    async def fetch_positions(self, user_id: int) -> list[PositionRecord]:
        return await self._run(self._fetch_positions_sync, user_id)

    def _fetch_positions_sync(self, user_id: int) -> list[PositionRecord]:
        with self._lock:
            cursor = self._connection.cursor()
            cursor.execute(
                """
                SELECT p.* FROM position p
                JOIN wallet w ON w.id = p.wallet_id
                WHERE w.user_id = ?
                ORDER BY CAST(p.balance AS REAL) DESC, p.id ASC
                """,
                (user_id,),
            )
            rows = cursor.fetchall()
            cursor.close()
        return [
            PositionRecord(
                wallet_ref=row["wallet_id"],
                protocol=row["protocol"],
                pool_id=row["pool_id"],
                asset_symbol=row["asset_symbol"],
                balance=row["balance"],
                apy=row["apy"],
                tvl_usd=row["tvl_usd"],
            )
            for row in rows
        ]

    # --- Recommendations ---

    async def replace_pending_recommendations(
        self, user_id: int, drafts: Iterable[RecommendationDraft]
    ) -> list[RecommendationRecord]:
        """Deletes the user's pending recommendations, then inserts the new batch as pending.

        At most one pending row may exist per (user, target pool, asset); a batch
        that repeats a target raises ``sqlite3.IntegrityError`` and leaves the
        previous pending batch untouched.
        """
        return await self._run(self._replace_recommendations_sync, user_id, list(drafts))

    def _replace_recommendations_sync(
        self, user_id: int, drafts: list[RecommendationDraft]
    ) -> list[RecommendationRecord]:
        created_at = _now()
        inserted_ids: list[int] = []
        with self._lock:
            cursor = self._connection.cursor()
            try:
                cursor.execute(
                    "DELETE FROM recommendation WHERE user_id = ? AND status = ?",
                    (user_id, RecommendationStatus.PENDING.value),
                )
                for draft in drafts:
                    cursor.execute(
                        """
                        INSERT INTO recommendation (
                            user_id,
                            from_pool_id,
                            from_protocol,
                            to_pool_id,
                            to_protocol,
                            asset_symbol,
                            from_asset_symbol,
                            amount,
                            current_apy,
                            target_apy,
                            net_gain_usd_per_year,
                            risk_score,
                            reason,
                            status,
                            created_at
                        ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                        """,
                        (
                            user_id,
                            draft.from_pool_id,
                            draft.from_protocol,
                            draft.to_pool_id,
                            draft.to_protocol,
                            draft.asset_symbol,
                            draft.from_asset_symbol,
                            draft.amount,
                            draft.current_apy,
                            draft.target_apy,
                            draft.net_gain_usd_per_year,
                            draft.risk_score,
                            draft.reason,
                            RecommendationStatus.PENDING.value,
                            created_at,
                        ),
                    )
                    inserted_ids.append(cursor.lastrowid)
                self._connection.commit()
            except sqlite3.Error:
                self._connection.rollback()
                raise
            finally:
                cursor.close()
        return [self._fetch_recommendation_sync(rec_id) for rec_id in inserted_ids]

    async def fetch_recommendation(self, recommendation_id: int) -> Optional[RecommendationRecord]:
        return await self._run(self._fetch_recommendation_sync, recommendation_id)

    def _fetch_recommendation_sync(self, recommendation_id: int) -> Optional[RecommendationRecord]:
        with self._lock:
            cursor = self._connection.cursor()
            cursor.execute("SELECT * FROM recommendation WHERE id = ?", (recommendation_id,))
            row = cursor.fetchone()
            cursor.close()
        return self._recommendation_from_row(row) if row is not None else None

    async def fetch_pending_recommendations(self, user_id: int) -> list[RecommendationRecord]:
        """Pending recommendations for a user, best net gain first."""
        return await self._run(self._fetch_recommendations_sync, user_id, RecommendationStatus.PENDING.value)

    async def fetch_recommendations(
        self, user_id: int, status: Optional[RecommendationStatus] = None
    ) -> list[RecommendationRecord]:
        return await self._run(
            self._fetch_recommendations_sync,
            user_id,
            status.value if status is not None else None,
        )

    def _fetch_recommendations_sync(self, user_id: int, status: Optional[str]) -> list[RecommendationRecord]:
        with self._lock:
            cursor = self._connection.cursor()
            cursor.execute(
                """
                SELECT * FROM recommendation
                WHERE user_id = ?
                  AND (? IS NULL OR status = ?)
                ORDER BY net_gain_usd_per_year DESC, id ASC
                """,
                (user_id, status, status),
            )
            rows = cursor.fetchall()
            cursor.close()
        return [self._recommendation_from_row(row) for row in rows]

    async def transition_recommendation(
        self,
        recommendation_id: int,
        target: RecommendationStatus,
        *,
        expected: Optional[RecommendationStatus] = None,
    ) -> bool:
        """Moves a recommendation to ``target``.

        Returns False when the row is missing or no longer in ``expected``.
        Raises InvalidStatusTransition for edges the state machine forbids.
        """
        return await self._run(self._transition_recommendation_sync, recommendation_id, target, expected)

    def _transition_recommendation_sync(
        self,
        recommendation_id: int,
        target: RecommendationStatus,
        expected: Optional[RecommendationStatus],
    ) -> bool:
        with self._lock:
            cursor = self._connection.cursor()
            try:
                cursor.execute("SELECT status FROM recommendation WHERE id = ?", (recommendation_id,))
                row = cursor.fetchone()
                if row is None:
                    return False
                current = RecommendationStatus(row["status"])
                if expected is not None and current is not expected:
                    return False
                current.ensure_transition(target)
                cursor.execute(
                    "UPDATE recommendation SET status = ? WHERE id = ? AND status = ?",
                    (target.value, recommendation_id, current.value),
                )
                updated = cursor.rowcount == 1
                self._connection.commit()
            finally:
                cursor.close()
        return updated

    async def mark_recommendation_executed(
        self,
        recommendation_id: int,
        shift_id: str,
        executed_at: Optional[datetime] = None,
    ) -> Optional[int]:
        """Flips a pending recommendation to executed and appends its history entry.

        Both writes share one transaction. The status is re-checked inside the
        UPDATE, so None is returned when the recommendation stopped being pending.
        """
        executed_at = executed_at or datetime.now(timezone.utc)
        return await self._run(self._mark_recommendation_executed_sync, recommendation_id, shift_id, executed_at)

    def _mark_recommendation_executed_sync(
        self, recommendation_id: int, shift_id: str, executed_at: datetime
    ) -> Optional[int]:
        with self._lock:
            cursor = self._connection.cursor()
            try:
                cursor.execute(
                    """
                    UPDATE recommendation
                    SET status = ?, executed_at = ?, shift_id = ?
                    WHERE id = ? AND status = ?
                    """,
                    (
                        RecommendationStatus.EXECUTED.value,
                        executed_at.strftime(ISO_FORMAT),
                        shift_id,
                        recommendation_id,
                        RecommendationStatus.PENDING.value,
                    ),
                )
                if cursor.rowcount != 1:
                    self._connection.rollback()
                    return None
                cursor.execute("SELECT * FROM recommendation WHERE id = ?", (recommendation_id,))
                rec = cursor.fetchone()
                cursor.execute(
                    """
                    INSERT INTO rebalance_history (
                        user_id,
                        recommendation_id,
                        shift_id,
                        from_protocol,
                        to_protocol,
                        asset,
                        amount,
                        status,
                        month_bucket,
                        created_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        rec["user_id"],
                        recommendation_id,
                        shift_id,
                        rec["from_protocol"],
                        rec["to_protocol"],
                        rec["asset_symbol"],
                        rec["amount"],
                        "pending",
                        month_bucket(executed_at),
                        executed_at.strftime(ISO_FORMAT),
                    ),
                )
                history_id = cursor.lastrowid
                self._connection.commit()
            except sqlite3.Error:
                self._connection.rollback()
                raise
            finally:
                cursor.close()
        return history_id

    async def complete_recommendations_for_shift(self, shift_id: str) -> int:
        """Marks the executed recommendation behind a settled shift as completed."""
        return await self._run(self._complete_recommendations_for_shift_sync, shift_id)

    def _complete_recommendations_for_shift_sync(self, shift_id: str) -> int:
        with self._lock:
            cursor = self._connection.cursor()
            cursor.execute(
                "UPDATE recommendation SET status = ? WHERE shift_id = ? AND status = ?",
                (
                    RecommendationStatus.COMPLETED.value,
                    shift_id,
                    RecommendationStatus.EXECUTED.value,
                ),
            )
            updated = cursor.rowcount
            self._connection.commit()
            cursor.close()
        return updated

    # --- Rebalance history ---

    async def count_history_for_month(self, user_id: int, bucket: str) -> int:
        return await self._run(self._count_history_for_month_sync, user_id, bucket)

    def _count_history_for_month_sync(self, user_id: int, bucket: str) -> int:
        with self._lock:
            cursor = self._connection.cursor()
            cursor.execute(
                "SELECT COUNT(*) AS total FROM rebalance_history WHERE user_id = ? AND month_bucket = ?",
                (user_id, bucket),
            )
            total = cursor.fetchone()["total"]
            cursor.close()
        return int(total)

    async def fetch_history(self, user_id: int, limit: int = 50) -> list[RebalanceHistoryRecord]:
        return await self._run(self._fetch_history_sync, user_id, limit)

    def _fetch_history_sync(self, user_id: int, limit: int) -> list[RebalanceHistoryRecord]:
        with self._lock:
            cursor = self._connection.cursor()
            cursor.execute(
                """
                SELECT * FROM rebalance_history
                WHERE user_id = ?
                ORDER BY created_at DESC, id DESC
                LIMIT ?
                """,
                (user_id, limit),
            )
            rows = cursor.fetchall()
            cursor.close()
        return [self._history_from_row(row) for row in rows]

    async def fetch_history_by_shift(self, shift_id: str) -> Optional[RebalanceHistoryRecord]:
        return await self._run(self._fetch_history_by_shift_sync, shift_id)

    def _fetch_history_by_shift_sync(self, shift_id: str) -> Optional[RebalanceHistoryRecord]:
        with self._lock:
            cursor = self._connection.cursor()
            cursor.execute("SELECT * FROM rebalance_history WHERE shift_id = ?", (shift_id,))
            row = cursor.fetchone()
            cursor.close()
        return self._history_from_row(row) if row is not None else None

    async def fetch_open_shift_ids(self, final_statuses: Iterable[str]) -> list[str]:
        return await self._run(self._fetch_open_shift_ids_sync, list(final_statuses))

    def _fetch_open_shift_ids_sync(self, final_statuses: list[str]) -> list[str]:
        placeholders = ", ".join("?" for _ in final_statuses) or "''"
        with self._lock:
            cursor = self._connection.cursor()
            cursor.execute(
                f"""
                SELECT DISTINCT shift_id FROM rebalance_history
                WHERE status NOT IN ({placeholders})
                ORDER BY shift_id
                """,
                tuple(final_statuses),
            )
            rows = cursor.fetchall()
            cursor.close()
        return [row["shift_id"] for row in rows]

    async def update_history_status(self, shift_id: str, status: str) -> int:
        return await self._run(self._update_history_status_sync, shift_id, status)

    def _update_history_status_sync(self, shift_id: str, status: str) -> int:
        with self._lock:
            cursor = self._connection.cursor()
            cursor.execute(
                "UPDATE rebalance_history SET status = ? WHERE shift_id = ?",
                (status, shift_id),
            )
            updated = cursor.rowcount
            self._connection.commit()
            cursor.close()
        return updated

    async def close(self) -> None:
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, self._close_sync)

    def _close_sync(self) -> None:
        with self._lock:
            self._connection.commit()
            self._connection.close()

    # --- Row mapping ---

    @staticmethod
    def _user_from_row(row: sqlite3.Row) -> UserRecord:
        return UserRecord(
            id=row["id"],
            external_id=row["external_id"],
            subscription_tier=row["subscription_tier"],
            created_at=_parse_time(row["created_at"]),
        )

    @staticmethod
    def _recommendation_from_row(row: sqlite3.Row) -> RecommendationRecord:
        return RecommendationRecord(
            id=row["id"],
            user_id=row["user_id"],
            from_pool_id=row["from_pool_id"],
            from_protocol=row["from_protocol"],
            to_pool_id=row["to_pool_id"],
            to_protocol=row["to_protocol"],
            asset_symbol=row["asset_symbol"],
            from_asset_symbol=row["from_asset_symbol"],
            amount=row["amount"],
            current_apy=row["current_apy"],
            target_apy=row["target_apy"],
            net_gain_usd_per_year=row["net_gain_usd_per_year"],
            risk_score=row["risk_score"],
            reason=row["reason"],
            status=RecommendationStatus(row["status"]),
            created_at=_parse_time(row["created_at"]),
            executed_at=_parse_time(row["executed_at"]),
            shift_id=row["shift_id"],
        )

    @staticmethod
    def _history_from_row(row: sqlite3.Row) -> RebalanceHistoryRecord:
        return RebalanceHistoryRecord(
            id=row["id"],
            user_id=row["user_id"],
            recommendation_id=row["recommendation_id"],
            shift_id=row["shift_id"],
            from_protocol=row["from_protocol"],
            to_protocol=row["to_protocol"],
            asset=row["asset"],
            amount=row["amount"],
            status=row["status"],
            month_bucket=row["month_bucket"],
            created_at=_parse_time(row["created_at"]),
        )


__all__ = [
    "SQLiteRepository",
    "UserRecord",
    "WalletRecord",
    "PositionRecord",
    "RecommendationRecord",
    "RebalanceHistoryRecord",
]
