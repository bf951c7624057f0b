#!/usr/bin/env python3
"""Trigger one signature-reminder sweep (and optional retry/cleanup) against a running backend.

Meant to be run from cron every few minutes.
"""

from __future__ import annotations

import argparse
import json
import logging
import urllib.error
import urllib.request
from typing import Any

BASE_URL_DEFAULT = "http://localhost:8000/api/v1/signatures"

logger = logging.getLogger("run_reminder_sweep")


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run the signature reminder sweep.")
    parser.add_argument("--base-url", default=BASE_URL_DEFAULT, help="Signature backend API base URL")
    parser.add_argument("--retry", action="store_true", help="Requeue recent failures before sweeping")
    parser.add_argument(
        "--cleanup-days",
        type=int,
        default=None,
        help="Also delete finished reminders scheduled more than this many days ago",
    )
    parser.add_argument("--timeout", type=float, default=120.0, help="HTTP timeout in seconds")
    parser.add_argument("--verbose", action="store_true")
    return parser.parse_args()


def _request_json(
    method: str,
    url: str,
    payload: dict[str, Any] | None = None,
    *,
    timeout: float,
) -> dict[str, Any]:
    body = None if payload is None else json.dumps(payload).encode("utf-8")
    request = urllib.request.Request(
        url,
        data=body,
        headers={"Content-Type": "application/json"} if payload is not None else {},
        method=method,
    )
    try:
        with urllib.request.urlopen(request, timeout=timeout) as response:
            return json.loads(response.read().decode("utf-8"))
    except urllib.error.HTTPError as exc:
        err = exc.read().decode("utf-8") if exc.fp else "unknown"
        raise RuntimeError(f"{method} {url} failed with {exc.code}: {err}") from exc


def main() -> int:
    args = parse_args()
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    base_url = args.base_url.rstrip("/")

    if args.retry:
        retry = _request_json("POST", f"{base_url}/reminders/retry", timeout=args.timeout)
        logger.info(
            "retry: expired_claims=%s requeued=%s",
            retry["expired_claim_count"],
            retry["retried_count"],
        )

    sweep = _request_json("POST", f"{base_url}/reminders/sweep", timeout=args.timeout)
    logger.info(
        "sweep: claimed=%s sent=%s failed=%s cancelled=%s",
        sweep["claimed_count"],
        sweep["sent_count"],
        sweep["failed_count"],
        sweep["cancelled_count"],
    )
    for item in sweep["results"]:
        if item["status"] == "failed":
            logger.warning(
                "reminder %s (%s, %s) failed: %s %s",
                item["entry_id"],
                item["request_id"],
                item["channel"],
                item["error_code"],
                item["error_message"],
            )
        else:
            logger.debug("reminder %s %s", item["entry_id"], item["status"])

    if args.cleanup_days is not None:
        cleanup = _request_json(
            "POST",
            f"{base_url}/reminders/cleanup",
            {"max_age_days": args.cleanup_days},
            timeout=args.timeout,
        )
        logger.info("cleanup: deleted=%s cutoff=%s", cleanup["deleted_count"], cleanup["cutoff"])

    return 1 if sweep["failed_count"] else 0


if __name__ == "__main__":
    raise SystemExit(main())
