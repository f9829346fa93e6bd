"""Fetch and print the order reconciliation report JSON."""

import argparse
import json

import httpx


def main() -> None:
    """CLI entrypoint for support's reconciliation checks."""

    parser = argparse.ArgumentParser(description="List placements that need manual reconciliation.")
    parser.add_argument("--checkout-url", default="http://localhost:8000")
    parser.add_argument("--api-key", required=True, help="admin API key of the checkout service")
    parser.add_argument("--limit", type=int, default=100)
    parser.add_argument(
        "--stale-after-seconds",
        type=int,
        default=300,
        help="report in-flight placements untouched for this long",
    )
    args = parser.parse_args()

    resp = httpx.get(
        f"{args.checkout_url}/reconciliation",
        params={"limit": args.limit, "stale_after_seconds": args.stale_after_seconds},
        headers={"x-api-key": args.api_key},
        timeout=10.0,
    )
    resp.raise_for_status()
    print(json.dumps(resp.json(), indent=2))


if __name__ == "__main__":
    main()
