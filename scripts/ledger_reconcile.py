"""Fetch and print the payment reconciliation report; optionally repair enrollments."""

import argparse
import json
import os
import sys

import httpx


def main() -> None:
    """CLI entrypoint for reconciliation checks."""

    parser = argparse.ArgumentParser(description="Fetch the reconciliation report endpoint.")
    parser.add_argument("--service-url", default="http://localhost:8000")
    parser.add_argument("--api-key", default=os.getenv("API_KEY", ""))
    parser.add_argument("--limit", type=int, default=1000)
    parser.add_argument("--repair", action="store_true", help="heal one-sided and missing enrollments first")
    args = parser.parse_args()

    headers = {"x-api-key": args.api_key}
    with httpx.Client(base_url=args.service_url, headers=headers, timeout=10.0) as client:
        if args.repair:
            resp = client.post("/ops/enrollments/repair", params={"limit": args.limit})
            resp.raise_for_status()
            print(json.dumps({"repair": resp.json()}, indent=2))
        resp = client.get("/reconciliation", params={"limit": args.limit})
        resp.raise_for_status()
        report = resp.json()
    print(json.dumps(report, indent=2))
    if report["inconsistent_count"] or report["one_sided_enrollments"]:
        sys.exit(1)


if __name__ == "__main__":
    main()
