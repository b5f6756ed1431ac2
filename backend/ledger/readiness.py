"""Readiness checks: config, packages, database, payment provider configuration."""
import asyncio
import importlib
import logging
from typing import Dict, Optional, Tuple

from sqlalchemy import text

logger = logging.getLogger(__name__)

# Result: (passed: bool, message: str)
CheckResult = Tuple[bool, str]
ChecksDict = Dict[str, CheckResult]

REQUIRED_CHECKS = {"config", "packages", "database"}
REQUIRED_PACKAGES = ("uvicorn", "fastapi", "sqlalchemy", "asyncpg", "httpx", "yaml", "ledger.main")


def check_config() -> CheckResult:
    """Load settings and sanity-check the money settings."""
    try:
        from ledger.settings import get_settings
        s = get_settings()
        if not s.database_url:
            return False, "database_url is empty"
        if not 0 <= s.platform_fee_percentage <= 100:
            return False, f"platform_fee_percentage out of range: {s.platform_fee_percentage}"
        return True, "ok"
    except Exception as e:
        return False, str(e)


def check_packages() -> CheckResult:
    """Import the modules the service cannot run without."""
    missing = []
    for name in REQUIRED_PACKAGES:
        try:
            importlib.import_module(name)
        except ImportError as e:
            missing.append(name if name != "ledger.main" else f"ledger.main ({e})")
    if missing:
        return False, f"missing: {', '.join(missing)}"
    return True, "ok"


async def _check_database_async(database_url: str) -> CheckResult:
    """Run a trivial query against the database."""
    from ledger.infra.db.session import create_engine

    try:
        engine = create_engine(database_url)
        try:
            async with engine.begin() as conn:
                await conn.execute(text("SELECT 1"))
        finally:
            await engine.dispose()
        return True, "ok"
    except Exception as e:
        return False, str(e)


def check_database() -> CheckResult:
    """Check database connectivity using settings.database_url."""
    try:
        from ledger.settings import get_settings
        return asyncio.run(_check_database_async(get_settings().database_url))
    except Exception as e:
        return False, str(e)


def check_provider() -> CheckResult:
    """Payment provider credentials present (key, app id, webhook secret)."""
    try:
        from ledger.infra.vendors.payment_provider import PaymentProviderClient
        client = PaymentProviderClient()
        if client.is_configured():
            return True, "ok"
        status = client.get_status()
        missing = [k for k in ("has_api_key", "has_app_id", "has_webhook_secret") if not status[k]]
        return False, f"not configured ({', '.join(m[4:] for m in missing)})"
    except Exception as e:
        return False, str(e)


def run_all_checks() -> ChecksDict:
    """Run all readiness checks (sync). Returns dict of check_name -> (passed, message)."""
    return {
        "config": check_config(),
        "packages": check_packages(),
        "database": check_database(),
        "provider": check_provider(),
    }


async def run_all_checks_async() -> ChecksDict:
    """Run all readiness checks from async context (GET /ready) without nesting event loops."""
    from ledger.settings import get_settings
    return {
        "config": check_config(),
        "packages": check_packages(),
        "database": await _check_database_async(get_settings().database_url),
        "provider": check_provider(),
    }


def is_ready(checks: Optional[ChecksDict] = None) -> Tuple[bool, Dict[str, str]]:
    """True if every required check passed; the provider check is informational.

    Returns (ready, summary of name -> "ok" or the failure message).
    """
    if checks is None:
        checks = run_all_checks()
    summary = {name: msg for name, (_, msg) in checks.items()}
    ready = all(checks[name][0] for name in REQUIRED_CHECKS if name in checks)
    return ready, summary
