#!/usr/bin/env python3
"""Quick health check for the Maisuchi loyalty API.

Usage:
    python tooling/scripts/check_observability.py \
        --base-url https://staging-api.example.com \
        --api-key "$CHECKOUT_API_KEY"

The script validates:
  * Readiness: the database probe answers and no component reports an error.
  * Loyalty telemetry: balance-cache and profile-mirror write failures and
    failed pending-credit drains stay within thresholds.
"""

from __future__ import annotations

import argparse
import asyncio
import sys
from typing import Any, Dict, Optional

import httpx


def parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Maisuchi loyalty observability checker")
    parser.add_argument(
        "--base-url",
        default="http://localhost:8000",
        help="Base URL of the Maisuchi API service.",
    )
    parser.add_argument(
        "--api-key",
        default=None,
        help="Checkout API key (required when the service is configured with one).",
    )
    parser.add_argument(
        "--max-cache-failures",
        type=int,
        default=0,
        help="Maximum balance-cache write failures before failing (default: 0).",
    )
    parser.add_argument(
        "--max-mirror-failures",
        type=int,
        default=5,
        help="Maximum profile-mirror write failures before failing (default: 5).",
    )
    parser.add_argument(
        "--max-drain-failures",
        type=int,
        default=0,
        help="Maximum pending credits that failed to drain before failing (default: 0).",
    )
    parser.add_argument(
        "--timeout",
        type=float,
        default=10.0,
        help="HTTP request timeout in seconds.",
    )
    return parser.parse_args(argv)


async def _get_json(
    client: httpx.AsyncClient,
    path: str,
    *,
    headers: Optional[Dict[str, str]] = None,
) -> Dict[str, Any]:
    response = await client.get(path, headers=headers)
    response.raise_for_status()
    return response.json()


def _fail(message: str) -> None:
    print(f"[check-observability] FAIL {message}")
    sys.exit(1)


def _log_ok(message: str) -> None:
    print(f"[check-observability] OK {message}")


async def validate_readiness(client: httpx.AsyncClient) -> None:
    payload = await _get_json(client, "/api/v1/readyz")
    if payload.get("status") == "error":
        broken = sorted(
            name
            for name, component in (payload.get("components") or {}).items()
            if component.get("status") == "error"
        )
        _fail(f"Readiness reports errors in: {', '.join(broken) or 'unknown'}")

    _log_ok(f"Readiness {payload.get('status')}")


async def validate_loyalty(
    client: httpx.AsyncClient,
    api_key: Optional[str],
    *,
    max_cache_failures: int,
    max_mirror_failures: int,
    max_drain_failures: int,
) -> None:
    headers = {"X-API-Key": api_key} if api_key else None
    payload = await _get_json(client, "/api/v1/observability/loyalty", headers=headers)

    failures = payload.get("failures", {}) or {}
    drains = payload.get("drains", {}) or {}
    cache_failures = int(failures.get("balance_cache", 0))
    mirror_failures = int(failures.get("profile_mirror", 0))
    drain_failures = int(drains.get("failed", 0))

    if cache_failures > max_cache_failures:
        _fail(
            f"Balance cache failures {cache_failures} exceed threshold {max_cache_failures}; "
            "run tooling/scripts/reconcile_loyalty_balances.py"
        )
    if mirror_failures > max_mirror_failures:
        _fail(f"Profile mirror failures {mirror_failures} exceed threshold {max_mirror_failures}")
    if drain_failures > max_drain_failures:
        _fail(f"Pending credit drain failures {drain_failures} exceed threshold {max_drain_failures}")

    claims = payload.get("claims", {}) or {}
    reconciliations = payload.get("reconciliations", {}) or {}
    _log_ok(
        "Loyalty observability OK "
        f"(claims issued={claims.get('issued', 0)}, cache failures={cache_failures}, "
        f"balances repaired={reconciliations.get('repaired', 0)})"
    )


async def main(argv: Optional[list[str]] = None) -> None:
    args = parse_args(argv)

    async with httpx.AsyncClient(base_url=args.base_url, timeout=args.timeout) as client:
        await validate_readiness(client)
        await validate_loyalty(
            client,
            args.api_key,
            max_cache_failures=args.max_cache_failures,
            max_mirror_failures=args.max_mirror_failures,
            max_drain_failures=args.max_drain_failures,
        )

    _log_ok("Observability checks completed successfully")


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except httpx.HTTPStatusError as exc:
        _fail(f"HTTP {exc.response.status_code} while calling {exc.request.url}")
    except httpx.HTTPError as exc:
        _fail(f"Request failed: {exc}")
