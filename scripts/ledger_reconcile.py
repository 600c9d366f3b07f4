"""Fetch and print the summary reconciliation report for one account."""

import argparse
import json

import httpx


def main() -> None:
    """CLI entrypoint for reconciliation checks."""

    parser = argparse.ArgumentParser(description="Compare stored summary with a ledger replay.")
    parser.add_argument("account_id")
    parser.add_argument("--base-url", default="http://localhost:8000")
    parser.add_argument("--rebuild", action="store_true", help="Recompute the summary when inconsistent")
    parser.add_argument("--api-key", default="dev-secret")
    args = parser.parse_args()

    resp = httpx.get(f"{args.base_url}/reconciliation/{args.account_id}", timeout=10.0)
    resp.raise_for_status()
    report = resp.json()
    print(json.dumps(report, indent=2))

    if args.rebuild and not report["consistent"]:
        resp = httpx.post(
            f"{args.base_url}/accounts/{args.account_id}/rebuild",
            headers={"x-api-key": args.api_key},
            timeout=10.0,
        )
        resp.raise_for_status()
        print(json.dumps({"rebuilt": resp.json()}, indent=2))


if __name__ == "__main__":
    main()
