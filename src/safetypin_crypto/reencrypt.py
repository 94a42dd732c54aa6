"""
Bulk re-encryption of stored envelopes after key rotation.

Walks one encrypted column of a PostgreSQL table in id-ordered batches and
rewrites every value that was not written under the service's active key
version. Each batch is updated in its own transaction, so an interrupted
run can simply be started again: rows already at the active version are
skipped.

Security Note:
    Plaintext exists in memory only while a single value is re-encrypted.
    Never log plaintext or ciphertext values.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any

import asyncpg

from .errors import EncryptionError
from .log import get_logger
from .service import FieldEncryptionService

logger = get_logger(__name__)

_IDENTIFIER = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*(\.[A-Za-z_][A-Za-z0-9_]*)?$")


@dataclass
class ReencryptionStats:
    """Counters for one re-encryption run."""

    scanned: int = 0
    reencrypted: int = 0
    skipped: int = 0
    errors: int = 0

    def __str__(self) -> str:
        return (
            f"scanned={self.scanned} reencrypted={self.reencrypted} "
            f"skipped={self.skipped} errors={self.errors}"
        )


def quote_identifier(name: str) -> str:
    """
    Validate and double-quote a (optionally schema-qualified) SQL identifier.

    Raises:
        ValueError: If name is not a plain identifier
    """
    if not _IDENTIFIER.match(name):
        raise ValueError(f"Invalid SQL identifier: {name!r}")
    return ".".join(f'"{part}"' for part in name.split("."))


async def reencrypt_column(
    pool: asyncpg.Pool,
    service: FieldEncryptionService,
    table: str,
    id_column: str,
    value_column: str,
    batch_size: int = 100,
) -> ReencryptionStats:
    """
    Re-encrypt every stale envelope in table.value_column.

    Values already tagged with the active version are decrypted before they
    are skipped; one that does not authenticate under this service's key
    (written by another instance with a fresh key) is counted as an error.

    Args:
        pool: asyncpg connection pool
        service: Initialized (or lazily initializing) encryption service
        table: Table name, optionally schema-qualified
        id_column: Unique, orderable key column used for batching
        value_column: Column holding envelope tokens
        batch_size: Rows per batch/transaction

    Returns:
        ReencryptionStats for the run

    Raises:
        ValueError: If an identifier is invalid or batch_size < 1
        asyncpg.PostgresError: On database errors (the current batch rolls back)
    """
    if batch_size < 1:
        raise ValueError("batch_size must be at least 1")

    tbl = quote_identifier(table)
    id_col = quote_identifier(id_column)
    val_col = quote_identifier(value_column)

    select_first = (
        f"SELECT {id_col} AS id, {val_col} AS value FROM {tbl} "
        f"WHERE {val_col} IS NOT NULL ORDER BY {id_col} LIMIT $1"
    )
    select_next = (
        f"SELECT {id_col} AS id, {val_col} AS value FROM {tbl} "
        f"WHERE {val_col} IS NOT NULL AND {id_col} > $2 ORDER BY {id_col} LIMIT $1"
    )
    # Compare-and-set on the old value so concurrent writers are not overwritten.
    update = (
        f"UPDATE {tbl} SET {val_col} = $1 "
        f"WHERE {id_col} = $2 AND {val_col} = $3"
    )

    await service.initialize()
    stats = ReencryptionStats()
    last_id: Any = None
    batch_num = 0

    logger.info(
        "reencryption_started",
        table=table,
        column=value_column,
        active_version=service.active_version,
        batch_size=batch_size,
    )

    while True:
        async with pool.acquire() as conn:
            if last_id is None:
                rows = await conn.fetch(select_first, batch_size)
            else:
                rows = await conn.fetch(select_next, batch_size, last_id)

            if not rows:
                break

            batch_num += 1
            async with conn.transaction():
                for row in rows:
                    stats.scanned += 1
                    row_id = row["id"]
                    token = row["value"]

                    try:
                        if not service.needs_reencrypt(token):
                            # The version matches; check the key does too.
                            await service.decrypt(token)
                            stats.skipped += 1
                            continue
                        new_token = await service.reencrypt(token)
                    except EncryptionError as err:
                        logger.error(
                            "reencryption_row_failed",
                            table=table,
                            row_id=str(row_id),
                            error_type=type(err).__name__,
                        )
                        stats.errors += 1
                        continue

                    status = await conn.execute(update, new_token, row_id, token)
                    if status.endswith(" 0"):
                        stats.skipped += 1
                    else:
                        stats.reencrypted += 1

            last_id = rows[-1]["id"]

        logger.info("reencryption_batch_done", batch=batch_num, rows=len(rows))

    logger.info("reencryption_complete", table=table, column=value_column, stats=str(stats))
    return stats
