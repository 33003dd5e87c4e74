#!/usr/bin/env python3
"""Deployment smoke test for the delivery sync service.

Usage:
    python scripts/verify_deployment.py --backend-url https://sync.example.com

Checks readiness (database and Redis reachable, sync engine running) and the sync
health snapshot (no dead letters, nothing stuck needing attention).
Exit code 0 if all checks pass, 1 if any fail.
"""

import argparse
import sys
from typing import Tuple

import httpx

TIMEOUT = 15.0


def _get_json(url: str) -> Tuple[dict | None, str]:
    try:
        response = httpx.get(url, timeout=TIMEOUT, follow_redirects=True)
    except httpx.TimeoutException:
        return None, "Request timed out"
    except httpx.ConnectError as exc:
        return None, f"Connection failed: {exc}"
    except httpx.HTTPError as exc:
        return None, f"HTTP error: {exc}"

    if response.status_code != 200:
        return None, f"HTTP {response.status_code}"
    try:
        return response.json(), "ok"
    except ValueError:
        return None, "Response is not valid JSON"


def check_ready(url: str) -> Tuple[bool, str]:
    """Verify /health/ready reports the database and Redis up and sync running."""
    data, detail = _get_json(url.rstrip("/") + "/health/ready")
    if data is None:
        return False, detail

    checks = data.get("checks", {})
    if checks.get("database") != "ok":
        return False, f"Database: {checks.get('database_error', checks.get('database'))}"
    if checks.get("redis") != "ok":
        return False, f"Redis: {checks.get('redis_error', checks.get('redis'))}"
    if checks.get("sync") != "ok":
        return False, f"Sync engine {checks.get('sync')}"
    return True, "Database, Redis and sync engine healthy"


def check_sync(url: str) -> Tuple[bool, str]:
    """Verify the sync snapshot has no dead letters or projects needing attention."""
    data, detail = _get_json(url.rstrip("/") + "/sync/health")
    if data is None:
        return False, detail

    dead = len(data.get("dead_letters", []))
    attention = len(data.get("needs_attention", []))
    pending = data.get("pending_tasks", 0)
    summary = f"{pending} pending, {dead} dead letters, {attention} need attention"
    return dead == 0 and attention == 0, summary


def check_reconciliation(url: str) -> Tuple[bool, str]:
    """Report the latest reconciliation scan, if any."""
    data, detail = _get_json(url.rstrip("/") + "/sync/health")
    if data is None:
        return False, detail

    report = data.get("latest_report")
    if report is None:
        return True, "No scan has run yet"
    drift = len(report.get("discrepancies", []))
    errors = len(report.get("errors", []))
    summary = f"{report.get('total_checked', 0)} checked, {drift} discrepancies, {errors} errors"
    return errors == 0 and not report.get("partial"), summary


def print_results(results: list) -> None:
    """Print a formatted table of check results."""
    header = f"{'CHECK':<25} {'STATUS':<10} {'DETAIL'}"
    separator = "-" * 70
    print()
    print(separator)
    print(header)
    print(separator)
    for name, passed, detail in results:
        status = "PASS" if passed else "FAIL"
        print(f"{name:<25} {status:<10} {detail}")
    print(separator)
    print()


def main() -> None:
    parser = argparse.ArgumentParser(description="Verify a delivery sync deployment")
    parser.add_argument(
        "--backend-url",
        required=True,
        help="Base URL of the sync service",
    )
    args = parser.parse_args()

    results = []

    passed, detail = check_ready(args.backend_url)
    results.append(("Readiness", passed, detail))

    passed, detail = check_sync(args.backend_url)
    results.append(("Sync Health", passed, detail))

    passed, detail = check_reconciliation(args.backend_url)
    results.append(("Latest Reconciliation", passed, detail))

    print_results(results)

    all_passed = all(passed for _, passed, _ in results)
    if all_passed:
        print("All checks passed.")
    else:
        print("Some checks FAILED.")

    sys.exit(0 if all_passed else 1)


if __name__ == "__main__":
    main()
