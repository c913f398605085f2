"""Fetch and print the provider counter / order timeline reconciliation report."""

import argparse
import json

import httpx


def main() -> None:
    """CLI entrypoint for counter consistency checks."""

    parser = argparse.ArgumentParser(description="Fetch orders reconciliation report endpoint.")
    parser.add_argument("--orders-url", default="http://localhost:8001")
    parser.add_argument("--api-key", default="dev-secret")
    parser.add_argument("--fix", action="store_true", help="Overwrite drifted counters with live counts")
    args = parser.parse_args()

    resp = httpx.get(
        f"{args.orders_url}/reconciliation",
        params={"fix": str(args.fix).lower()},
        headers={"x-api-key": args.api_key},
        timeout=30.0,
    )
    resp.raise_for_status()
    report = resp.json()
    print(json.dumps(report, indent=2))
    if report["drifted_count"] or report["broken_timeline_count"]:
        raise SystemExit(1)


if __name__ == "__main__":
    main()
