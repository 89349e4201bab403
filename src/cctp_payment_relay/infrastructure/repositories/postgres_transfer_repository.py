"""PostgreSQL repository implementation for transfer records."""

from __future__ import annotations

import asyncio
from collections.abc import Collection
from datetime import datetime

import asyncpg  # type: ignore[import-untyped]

from cctp_payment_relay.domain.entities import ClaimResult, TransferRecord
from cctp_payment_relay.domain.errors import PersistenceReadError, PersistenceWriteError
from cctp_payment_relay.domain.ports import TransferRecordRepository
from cctp_payment_relay.domain.transfer_types import TransferOperation, TransferStatus

_SELECT_COLUMNS = """
    operation,
    source_tx_hash,
    job_id,
    dispute_id,
    source_chain,
    source_domain,
    destination_chain,
    destination_domain,
    status,
    step,
    burn_tx_hash,
    attestation_message,
    attestation_signature,
    recipient,
    amount,
    completion_tx_hash,
    last_error,
    attempt,
    created_at,
    updated_at,
    completed_at
"""

_INSERT_VALUES = """
    (
        operation,
        source_tx_hash,
        job_id,
        dispute_id,
        source_chain,
        source_domain,
        destination_chain,
        destination_domain,
        status,
        step,
        burn_tx_hash,
        attestation_message,
        attestation_signature,
        recipient,
        amount,
        completion_tx_hash,
        last_error,
        attempt,
        created_at,
        updated_at,
        completed_at
    ) VALUES (
        $1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11,
        $12, $13, $14, $15, $16, $17, $18, $19, $20, $21
    )
"""


def _status_rank_sql(column: str) -> str:
    return (
        f"CASE {column} WHEN 'pending' THEN 0 "
        f"WHEN 'polling_attestation' THEN 1 ELSE 2 END"
    )


class PostgresTransferRepository(TransferRecordRepository):
    """Transfer repository backed by PostgreSQL."""

    def __init__(
        self,
        dsn: str,
        min_pool_size: int = 1,
        max_pool_size: int = 10,
    ) -> None:
        self._dsn = dsn
        self._min_pool_size = min_pool_size
        self._max_pool_size = max_pool_size
        self._pool: asyncpg.Pool | None = None
        self._pool_lock = asyncio.Lock()

    async def get(
        self,
        operation: TransferOperation,
        source_tx_hash: str,
    ) -> TransferRecord | None:
        """Return by natural key."""

        try:
            pool = await self._get_pool()
            row = await pool.fetchrow(
                f"""
                SELECT {_SELECT_COLUMNS}
                FROM cctp_transfers
                WHERE operation = $1 AND source_tx_hash = $2
                """,
                operation.value,
                source_tx_hash,
            )
        except (asyncpg.PostgresError, OSError) as exc:
            raise PersistenceReadError(
                f"Failed to read {operation} transfer {source_tx_hash}: {exc}"
            ) from exc
        if row is None:
            return None
        return self._to_entity(row)

    async def get_latest_for_job(
        self,
        operation: TransferOperation,
        job_id: str,
    ) -> TransferRecord | None:
        """Return newest record of one operation on a job."""

        try:
            pool = await self._get_pool()
            row = await pool.fetchrow(
                f"""
                SELECT {_SELECT_COLUMNS}
                FROM cctp_transfers
                WHERE operation = $1 AND job_id = $2
                ORDER BY created_at DESC
                LIMIT 1
                """,
                operation.value,
                job_id,
            )
        except (asyncpg.PostgresError, OSError) as exc:
            raise PersistenceReadError(
                f"Failed to read {operation} transfer of job '{job_id}': {exc}"
            ) from exc
        if row is None:
            return None
        return self._to_entity(row)

    async def list_by_status(
        self,
        statuses: Collection[TransferStatus],
    ) -> list[TransferRecord]:
        """Return records in the given statuses, oldest first."""

        if not statuses:
            return []
        try:
            pool = await self._get_pool()
            rows = await pool.fetch(
                f"""
                SELECT {_SELECT_COLUMNS}
                FROM cctp_transfers
                WHERE status = ANY($1::text[])
                ORDER BY created_at ASC
                """,
                [status.value for status in statuses],
            )
        except (asyncpg.PostgresError, OSError) as exc:
            raise PersistenceReadError(f"Failed to list transfers: {exc}") from exc
        return [self._to_entity(row) for row in rows]

    async def claim(self, record: TransferRecord) -> ClaimResult:
        """Insert pending row, or restart it when the stored row has failed."""

        try:
            pool = await self._get_pool()
            async with pool.acquire() as connection:
                async with connection.transaction():
                    row = await connection.fetchrow(
                        f"""
                        INSERT INTO cctp_transfers {_INSERT_VALUES}
                        ON CONFLICT (operation, source_tx_hash) DO UPDATE SET
                            status = 'pending',
                            step = 'initiated',
                            last_error = NULL,
                            completion_tx_hash = NULL,
                            completed_at = NULL,
                            attempt = cctp_transfers.attempt + 1,
                            updated_at = NOW()
                        WHERE cctp_transfers.status = 'failed'
                        RETURNING {_SELECT_COLUMNS}
                        """,
                        *self._row_values(record),
                    )
                    if row is not None:
                        return ClaimResult(record=self._to_entity(row), claimed=True)

                    existing = await connection.fetchrow(
                        f"""
                        SELECT {_SELECT_COLUMNS}
                        FROM cctp_transfers
                        WHERE operation = $1 AND source_tx_hash = $2
                        """,
                        record.operation.value,
                        record.source_tx_hash,
                    )
        except (asyncpg.PostgresError, OSError) as exc:
            raise PersistenceWriteError(
                f"Failed to claim {record.operation} transfer {record.source_tx_hash}: {exc}"
            ) from exc

        assert existing is not None
        return ClaimResult(record=self._to_entity(existing), claimed=False)

    async def upsert(self, record: TransferRecord) -> TransferRecord:
        """Insert or update; regressive status updates leave the row untouched."""

        try:
            pool = await self._get_pool()
            async with pool.acquire() as connection:
                row = await connection.fetchrow(
                    f"""
                    INSERT INTO cctp_transfers {_INSERT_VALUES}
                    ON CONFLICT (operation, source_tx_hash) DO UPDATE SET
                        job_id = EXCLUDED.job_id,
                        dispute_id = EXCLUDED.dispute_id,
                        source_chain = EXCLUDED.source_chain,
                        source_domain = EXCLUDED.source_domain,
                        destination_chain = EXCLUDED.destination_chain,
                        destination_domain = EXCLUDED.destination_domain,
                        status = EXCLUDED.status,
                        step = EXCLUDED.step,
                        burn_tx_hash = EXCLUDED.burn_tx_hash,
                        attestation_message = EXCLUDED.attestation_message,
                        attestation_signature = EXCLUDED.attestation_signature,
                        recipient = EXCLUDED.recipient,
                        amount = EXCLUDED.amount,
                        completion_tx_hash = EXCLUDED.completion_tx_hash,
                        last_error = EXCLUDED.last_error,
                        attempt = GREATEST(cctp_transfers.attempt, EXCLUDED.attempt),
                        completed_at = EXCLUDED.completed_at,
                        updated_at = NOW()
                    WHERE cctp_transfers.status NOT IN ('completed', 'failed')
                      AND (
                        EXCLUDED.status = 'failed'
                        OR {_status_rank_sql("EXCLUDED.status")}
                           >= {_status_rank_sql("cctp_transfers.status")}
                      )
                    RETURNING {_SELECT_COLUMNS}
                    """,
                    *self._row_values(record),
                )
                if row is None:
                    row = await connection.fetchrow(
                        f"""
                        SELECT {_SELECT_COLUMNS}
                        FROM cctp_transfers
                        WHERE operation = $1 AND source_tx_hash = $2
                        """,
                        record.operation.value,
                        record.source_tx_hash,
                    )
        except (asyncpg.PostgresError, OSError) as exc:
            raise PersistenceWriteError(
                f"Failed to persist {record.operation} transfer {record.source_tx_hash}: {exc}"
            ) from exc

        assert row is not None
        return self._to_entity(row)

    async def close(self) -> None:
        """Close the pool if it was initialized."""

        pool = self._pool
        self._pool = None
        if pool is not None:
            await pool.close()

    async def _get_pool(self) -> asyncpg.Pool:
        if self._pool is not None:
            return self._pool

        async with self._pool_lock:
            if self._pool is None:
                pool = await asyncpg.create_pool(
                    dsn=self._dsn,
                    min_size=self._min_pool_size,
                    max_size=self._max_pool_size,
                )
                await self._ensure_schema(pool)
                self._pool = pool
        assert self._pool is not None
        return self._pool

    async def _ensure_schema(self, pool: asyncpg.Pool) -> None:
        await pool.execute(
            """
            CREATE TABLE IF NOT EXISTS cctp_transfers (
                operation TEXT NOT NULL,
                source_tx_hash TEXT NOT NULL,
                job_id TEXT NOT NULL,
                dispute_id TEXT,
                source_chain TEXT NOT NULL,
                source_domain INTEGER NOT NULL,
                destination_chain TEXT NOT NULL,
                destination_domain INTEGER NOT NULL,
                status TEXT NOT NULL,
                step TEXT NOT NULL,
                burn_tx_hash TEXT,
                attestation_message TEXT,
                attestation_signature TEXT,
                recipient TEXT,
                amount TEXT,
                completion_tx_hash TEXT,
                last_error TEXT,
                attempt INTEGER NOT NULL DEFAULT 1,
                created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
                updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
                completed_at TIMESTAMPTZ,
                PRIMARY KEY (operation, source_tx_hash)
            );
            CREATE INDEX IF NOT EXISTS idx_cctp_transfers_job
                ON cctp_transfers (job_id, operation, created_at DESC);
            CREATE INDEX IF NOT EXISTS idx_cctp_transfers_active
                ON cctp_transfers (status, created_at)
                WHERE status IN ('pending', 'polling_attestation');
            """
        )

    def _row_values(self, record: TransferRecord) -> tuple[object, ...]:
        return (
            record.operation.value,
            record.source_tx_hash,
            record.job_id,
            record.dispute_id,
            record.source_chain,
            record.source_domain,
            record.destination_chain,
            record.destination_domain,
            record.status.value,
            record.step,
            record.burn_tx_hash,
            record.attestation_message,
            record.attestation_signature,
            record.recipient,
            None if record.amount is None else str(record.amount),
            record.completion_tx_hash,
            record.last_error,
            record.attempt,
            record.created_at,
            record.updated_at,
            record.completed_at,
        )

    def _to_entity(self, row: asyncpg.Record) -> TransferRecord:
        raw_amount = row["amount"]
        return TransferRecord(
            operation=TransferOperation(str(row["operation"])),
            job_id=str(row["job_id"]),
            source_tx_hash=str(row["source_tx_hash"]),
            source_chain=str(row["source_chain"]),
            source_domain=int(row["source_domain"]),
            destination_chain=str(row["destination_chain"]),
            destination_domain=int(row["destination_domain"]),
            status=TransferStatus(str(row["status"])),
            step=str(row["step"]),
            dispute_id=self._as_optional_str(row["dispute_id"]),
            burn_tx_hash=self._as_optional_str(row["burn_tx_hash"]),
            attestation_message=self._as_optional_str(row["attestation_message"]),
            attestation_signature=self._as_optional_str(row["attestation_signature"]),
            recipient=self._as_optional_str(row["recipient"]),
            amount=None if raw_amount is None else int(raw_amount),
            completion_tx_hash=self._as_optional_str(row["completion_tx_hash"]),
            last_error=self._as_optional_str(row["last_error"]),
            attempt=int(row["attempt"]),
            created_at=self._as_datetime(row["created_at"]),
            updated_at=self._as_datetime(row["updated_at"]),
            completed_at=row["completed_at"],
        )

    def _as_optional_str(self, value: object) -> str | None:
        if value is None:
            return None
        return str(value)

    def _as_datetime(self, value: object) -> datetime:
        if not isinstance(value, datetime):
            raise TypeError(f"Expected timestamp column, got {type(value)!r}.")
        return value


__all__ = ["PostgresTransferRepository"]
