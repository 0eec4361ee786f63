#!/usr/bin/env python3
"""
CRM Gateway — Master key issuer
Master keys bypass tenant isolation, so they are never issued over HTTP.
Run this with database access; the plaintext key is printed once and only
its SHA-256 digest is stored.

Usage:
    python scripts/create_master_key.py --name "Provisioning service"
    python scripts/create_master_key.py --name "Backfill" --expires-in-days 7 --scopes read
"""

import asyncio
import argparse
from datetime import timedelta

from credentials import DEFAULT_SCOPES, KNOWN_SCOPES, generate_api_key
from database import get_db_context, init_db
from models import APIKey, KeyType, utcnow


async def create_master_key(name: str, scopes, expires_in_days=None) -> str:
    raw_key, key_hash, key_prefix = generate_api_key(KeyType.MASTER)
    expires_at = utcnow() + timedelta(days=expires_in_days) if expires_in_days else None

    await init_db()
    async with get_db_context() as db:
        db.add(APIKey(
            name=name,
            key_hash=key_hash,
            key_prefix=key_prefix,
            type=KeyType.MASTER,
            organization_id=None,
            scopes=list(scopes),
            expires_at=expires_at,
        ))
    return raw_key


def main():
    parser = argparse.ArgumentParser(description="Issue a master API key out of band")
    parser.add_argument("--name", required=True, help="Label shown in key listings")
    parser.add_argument("--scopes", nargs="+", default=list(DEFAULT_SCOPES), choices=sorted(KNOWN_SCOPES))
    parser.add_argument("--expires-in-days", type=int, default=None)
    args = parser.parse_args()

    raw_key = asyncio.run(create_master_key(args.name, args.scopes, args.expires_in_days))
    print("Master key (shown once, store it securely):")
    print(raw_key)


if __name__ == "__main__":
    main()
