#!/usr/bin/env python3
"""Check that a deployment's configuration and backing services are usable.

Loads the settings the server would load, builds the runtime (which fails
when Redis is required but unreachable), pings the store and the cache, and
runs one throwaway session through issue, refresh, validate and logout so
that revocation is published exactly as the server would publish it.

Usage:
    # Using environment variables:
    REDIS_URL=redis://cache:6379/0 python scripts/check_deployment.py

    # Config and health only:
    python scripts/check_deployment.py --skip-lifecycle

Environment Variables:
    REDIS_URL: Shared cache for revocations, rate limits and lockouts
    JWT_SECRET: Signing key for access tokens (generated under ICS_STATE_DIR if unset)
    ICS_CHECK_APPLICATION: Application id used for the lifecycle check
"""
from __future__ import annotations

import argparse
import asyncio
import json
import os
import secrets
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def _describe_settings(settings) -> dict:
    from icsession.service.runtime import _mask_url_password

    return {
        "redis_url": _mask_url_password(settings.redis_url),
        "trusted_applications": list(settings.trusted_applications),
        "trusted_issuers": list(settings.trusted_issuers),
        "step_up_policy": dict(settings.step_up_policy),
        "access_token_ttl_seconds": settings.access_token_ttl_seconds,
        "session_cache_ttl_ms": settings.session_cache_ttl_ms,
    }


async def _run_lifecycle(runtime, application_id: str | None) -> dict:
    """Issue, refresh, validate and revoke one session for a throwaway principal."""
    from icsession.service.errors import ErrorCode, ServiceError

    identifier = f"deployment-check-{secrets.token_hex(6)}@invalid"
    principal = await runtime.verifier.register(identifier, secrets.token_urlsafe(24))
    try:
        issued = await runtime.tokens.issue_session(principal.id, application_id=application_id)
        rotated = await runtime.tokens.refresh(issued.refresh_token)
        claims = await runtime.tokens.validate_access_token(rotated.access_token)
        if claims.session_id != issued.session.id:
            raise RuntimeError("rotated access token names another session")
        await runtime.sso.logout_everywhere(issued.session.id)
        try:
            await runtime.sso.check_session(issued.session.id, consistent=True)
        except ServiceError as exc:
            if exc.error_code != ErrorCode.SESSION_REVOKED:
                raise
        else:
            raise RuntimeError("session still active after logout")
    finally:
        await runtime.verifier.deactivate(principal.id)
    return {"rotation_counter": rotated.rotation_counter, "revoked": True}


async def check_deployment(*, lifecycle: bool = True, application_id: str | None = None) -> dict:
    """Run the checks and report each one.

    Returns:
        dict with overall status ("ok" or "failed"), the effective settings and per-check results
    """
    # Imported late so the environment defaults set in main() are seen by the settings
    from icsession.config import get_settings
    from icsession.service.errors import ServiceError
    from icsession.service.runtime import get_runtime

    settings = get_settings()
    report = {"status": "ok", "settings": _describe_settings(settings), "checks": {}}
    try:
        runtime = get_runtime()
    except RuntimeError as exc:
        report["status"] = "failed"
        report["checks"]["runtime"] = f"failed: {exc}"
        return report
    report["checks"]["runtime"] = "ok"

    try:
        report["checks"]["health"] = await runtime.health()
    except ServiceError as exc:
        report["status"] = "failed"
        report["checks"]["health"] = f"failed: {exc.error_code.value}"
        return report

    if lifecycle:
        try:
            report["checks"]["lifecycle"] = await _run_lifecycle(runtime, application_id)
        except (ServiceError, RuntimeError) as exc:
            report["status"] = "failed"
            report["checks"]["lifecycle"] = f"failed: {exc}"
    return report


def main():
    parser = argparse.ArgumentParser(
        description="Check the session authority's configuration and backing services",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--application",
        default=os.environ.get("ICS_CHECK_APPLICATION"),
        help="Application id for the lifecycle check (or set ICS_CHECK_APPLICATION env var)",
    )
    parser.add_argument(
        "--skip-lifecycle",
        action="store_true",
        help="Only check configuration and health",
    )
    parser.add_argument(
        "--json",
        action="store_true",
        help="Print the report as JSON",
    )
    args = parser.parse_args()

    async def run() -> dict:
        from icsession.service.runtime import get_runtime

        result = await check_deployment(
            lifecycle=not args.skip_lifecycle, application_id=args.application
        )
        if result["checks"].get("runtime") == "ok":
            await get_runtime().close()
        return result

    result = asyncio.run(run())
    if args.json:
        print(json.dumps(result, indent=2))
    else:
        print(f"Deployment check: {result['status']}")
        print(f"  Redis: {result['settings']['redis_url']}")
        for name, outcome in result["checks"].items():
            print(f"  {name}: {outcome}")
    sys.exit(0 if result["status"] == "ok" else 1)


if __name__ == "__main__":
    main()
