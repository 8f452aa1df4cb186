#!/usr/bin/env python3
"""
Script to refresh the dungeons of the configured kingdoms.

By default only dungeons whose attack cooldown elapsed are re-read; --scan
walks the whole map and records every dungeon (first run of a server).

Usage:
    python3 scripts/update_dungeons.py
    python3 scripts/update_dungeons.py --scan --kingdom 0
"""

import argparse
import asyncio
import sys
from pathlib import Path
from dotenv import load_dotenv

# Load environment variables
load_dotenv(Path(__file__).parent.parent / ".env")

# Add src directory to path
backend_dir = Path(__file__).parent.parent
src_dir = backend_dir / "src"
sys.path.insert(0, str(src_dir))

from config import Config
from database.supabase_client import SupabaseClient
from gge_api.client import GGEAPIClient
from gge_api.retry import RetryingFetcher
from refresh.dungeons import DungeonRefresher
from utils.logger import setup_logging


async def update_dungeons(scan: bool, kingdoms):
    """Scan or update dungeons once."""
    config = Config()
    setup_logging(config)

    kingdoms = kingdoms or config.dungeon_kingdom_ids
    db = SupabaseClient(config)
    api = GGEAPIClient(config)
    fetcher = RetryingFetcher(api, delay_scale=config.retry_delay_scale, max_delay=config.max_retry_delay)
    refresher = DungeonRefresher(db, fetcher, config)

    try:
        for kingdom in kingdoms:
            if scan:
                count = await refresher.scan(kingdom)
                print(f"Kingdom {kingdom}: {count} dungeons recorded")
            else:
                count = await refresher.update_due(kingdom)
                print(f"Kingdom {kingdom}: {count} dungeons updated")
    finally:
        await api.close()
        db.close()

    if refresher.errors:
        print(f"\n{refresher.errors} error(s) during the dungeon refresh")
        sys.exit(1)


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Refresh dungeons from the empire API map")
    parser.add_argument("--scan", action="store_true", help="Walk the whole map instead of due dungeons")
    parser.add_argument("--kingdom", type=int, action="append", help="Kingdom id (repeatable)")
    args = parser.parse_args()
    asyncio.run(update_dungeons(args.scan, args.kingdom))
