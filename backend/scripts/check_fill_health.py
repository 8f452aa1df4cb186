#!/usr/bin/env python3
"""
Check fill health by reading the progress markers and the last server statistics row.
Shows whether a pass is running, how long the last one took, its critical error count,
and how old the last statistics row is.
Run from repo root or backend/ with .env in backend/ or repo root.
Usage:
  python backend/scripts/check_fill_health.py
  python scripts/check_fill_health.py --max-age-minutes 90
Exit code: 0 if the last statistics row is recent and the last pass had no critical errors, else 1.
"""

import sys
from pathlib import Path
from datetime import datetime, timezone

# Load .env from backend or repo root
backend_dir = Path(__file__).resolve().parent.parent
for env_path in [backend_dir / ".env", backend_dir.parent / ".env"]:
    if env_path.exists():
        from dotenv import load_dotenv
        load_dotenv(env_path)
        break

sys.path.insert(0, str(backend_dir / "src"))


def parse_timestamp(value):
    if value.endswith("Z"):
        value = value.replace("Z", "+00:00")
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def main():
    import argparse
    parser = argparse.ArgumentParser(description="Check fill health from parameters and server_statistics")
    parser.add_argument("--max-age-minutes", type=int, default=90,
                        help="Consider the fill healthy if the last statistics row is this recent (default 90)")
    args = parser.parse_args()

    try:
        from postgrest.exceptions import APIError
        from database.supabase_client import SupabaseClient, StorageError
        from config import Config
    except ImportError as e:
        print("Error loading config/database:", e, file=sys.stderr)
        sys.exit(2)

    config = Config()
    db = SupabaseClient(config)

    try:
        markers = db.get_parameters()
        latest = db.get_latest_server_statistics()
    except (APIError, StorageError) as e:
        print("Error querying Supabase:", e, file=sys.stderr)
        sys.exit(2)
    finally:
        db.close()

    print("Server: %s" % config.server_name)
    if not markers:
        print("No progress markers found (pass never ran or is clearing its markers).")
    for identifier in sorted(markers):
        row = markers[identifier]
        print("  %-28s %-10s %s" % (identifier, row.get("value"), row.get("updated_at") or ""))

    healthy = True
    if markers.get("is_currently_updating", {}).get("value") == "1":
        print("\nA pass is currently running.")
    critical = markers.get("critical_errors", {}).get("value")
    if critical not in (None, "0"):
        print("\nLast pass finished with %s critical error(s)." % critical)
        healthy = False

    if not latest:
        print("\nNo server_statistics rows found.")
        sys.exit(1)

    created_at = parse_timestamp(latest["created_at"])
    age_min = (datetime.now(timezone.utc) - created_at).total_seconds() / 60
    print("\nLast statistics row: %s (UTC), %.1f minutes ago" % (
        created_at.strftime("%Y-%m-%d %H:%M:%S"), age_min
    ))
    print("  players_count=%s alliance_count=%s events_count=%s" % (
        latest.get("players_count"), latest.get("alliance_count"), latest.get("events_count")
    ))

    if age_min > args.max_age_minutes:
        print("\nFill appears STALE (no statistics row in the last %d minutes)." % args.max_age_minutes)
        healthy = False

    if not healthy:
        sys.exit(1)
    print("\nFill appears healthy.")
    sys.exit(0)


if __name__ == "__main__":
    main()
