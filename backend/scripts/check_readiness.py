#!/usr/bin/env python3
"""Check that the ledger service can start: settings, packages, database, provider.

Exit 0 when every required check passes, 1 otherwise. The provider check is
informational unless --require-provider is given (production deploys).
Usage: python scripts/check_readiness.py [--skip-database] [--require-provider] [--json]
"""
import argparse
import json
import logging
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent))

from ledger.readiness import (
    REQUIRED_CHECKS,
    check_config,
    check_database,
    check_packages,
    check_provider,
)

logger = logging.getLogger("check_readiness")


def collect(skip_database: bool) -> dict:
    checks = {
        "config": check_config(),
        "packages": check_packages(),
        "provider": check_provider(),
    }
    if not skip_database:
        checks["database"] = check_database()
    return checks


def main() -> int:
    parser = argparse.ArgumentParser(description="Readiness checks for the payment ledger")
    parser.add_argument("--skip-database", action="store_true", help="Do not connect to the database")
    parser.add_argument("--require-provider", action="store_true", help="Fail when provider credentials are missing")
    parser.add_argument("--json", action="store_true", help="Print the results as JSON")
    args = parser.parse_args()

    logging.basicConfig(level=logging.INFO, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s")

    checks = collect(args.skip_database)
    required = set(REQUIRED_CHECKS) | ({"provider"} if args.require_provider else set())
    failed = sorted(name for name in required if name in checks and not checks[name][0])
    ready = not failed

    if args.json:
        print(json.dumps({
            "ready": ready,
            "checks": {name: {"ok": ok, "message": msg, "required": name in required}
                       for name, (ok, msg) in checks.items()},
        }, indent=2))
    else:
        for name, (ok, msg) in checks.items():
            marker = "OK" if ok else ("FAIL" if name in required else "WARN")
            print(f"  {name:<10} {marker:<5} {msg}")
    if args.skip_database:
        logger.warning("Database check skipped")

    if ready:
        logger.info("Ledger is ready")
        return 0
    logger.error("Ledger is not ready; failed: %s", ", ".join(failed))
    return 1


if __name__ == "__main__":
    sys.exit(main())
