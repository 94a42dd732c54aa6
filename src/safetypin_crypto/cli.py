"""
SafetyPin field encryption CLI.

Usage:
    safetypin-crypto hash VALUE
    safetypin-crypto gen-id [--length N]
    safetypin-crypto reencrypt --table T --id-column C --value-column V [--batch-size N]

Or run directly:
    python -m safetypin_crypto.cli ...

The reencrypt command reads DATABASE_URL and the encryption settings from
the environment or a .env file.
"""

from __future__ import annotations

import argparse
import asyncio
import os
import sys
from typing import List, Optional

import asyncpg
from dotenv import load_dotenv

from .config import create_service
from .crypto import DEFAULT_SECURE_ID_LENGTH, generate_secure_id, hash_for_lookup
from .errors import ConfigError, EncryptionError
from .log import configure_logging
from .reencrypt import reencrypt_column


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="safetypin-crypto",
        description="Field encryption utilities for SafetyPin Cloud",
    )
    commands = parser.add_subparsers(dest="command", required=True)

    hash_cmd = commands.add_parser("hash", help="print the lookup hash of a value")
    hash_cmd.add_argument("value")

    id_cmd = commands.add_parser("gen-id", help="print a secure random identifier")
    id_cmd.add_argument("--length", type=int, default=DEFAULT_SECURE_ID_LENGTH)

    re_cmd = commands.add_parser(
        "reencrypt", help="re-encrypt a column under the active key version"
    )
    re_cmd.add_argument("--table", required=True)
    re_cmd.add_argument("--id-column", required=True)
    re_cmd.add_argument("--value-column", required=True)
    re_cmd.add_argument("--batch-size", type=int, default=100)

    return parser


async def run_reencrypt(args: argparse.Namespace) -> int:
    """Run a column re-encryption against DATABASE_URL."""
    load_dotenv()

    database_url = os.environ.get("DATABASE_URL")
    if not database_url:
        print("ERROR: DATABASE_URL must be set in environment or .env file", file=sys.stderr)
        return 1

    try:
        service = create_service()
    except ConfigError as e:
        print(f"ERROR: {e}", file=sys.stderr)
        return 1

    if service.production:
        # KMS data keys live only as long as the process that generated them.
        print(
            "ERROR: reencrypt is unavailable in production: a new process cannot "
            "hold the data key that wrote the stored values",
            file=sys.stderr,
        )
        return 1

    pool = await asyncpg.create_pool(database_url)
    try:
        async with service:
            stats = await reencrypt_column(
                pool,
                service,
                args.table,
                args.id_column,
                args.value_column,
                batch_size=args.batch_size,
            )
    finally:
        await pool.close()

    print(f"Re-encryption complete: {stats}")
    return 1 if stats.errors else 0


def main(argv: Optional[List[str]] = None) -> int:
    """Entry point for the safetypin-crypto console script."""
    args = _build_parser().parse_args(argv)

    if args.command == "hash":
        print(hash_for_lookup(args.value))
        return 0

    if args.command == "gen-id":
        try:
            print(generate_secure_id(args.length))
        except ValueError as e:
            print(f"ERROR: {e}", file=sys.stderr)
            return 2
        return 0

    configure_logging()
    try:
        return asyncio.run(run_reencrypt(args))
    except (EncryptionError, ValueError) as e:
        print(f"ERROR: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
