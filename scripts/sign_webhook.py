"""Sign an order webhook body and optionally deliver it.

Useful for manual testing against a local service: prints the signature
header and a ready-to-run curl command.
"""

import argparse
import json
import shlex
from pathlib import Path

import httpx

from loyalty.services.points.webhooks import SIGNATURE_HEADER, TOPIC_HEADER, compute_signature


def main() -> None:
    """Parse CLI args, sign the body, print or POST it."""

    parser = argparse.ArgumentParser(description="Compute the HMAC signature for a webhook body.")
    parser.add_argument("--secret", required=True)
    parser.add_argument("--json", dest="json_inline", default=None, help="Inline JSON payload")
    parser.add_argument("--file", dest="json_file", default=None, help="Path to JSON file")
    parser.add_argument("--topic", default="orders/paid")
    parser.add_argument("--url", default="http://localhost:8000/webhooks/orders")
    parser.add_argument("--send", action="store_true", help="POST the signed body to --url")
    args = parser.parse_args()

    if bool(args.json_inline) == bool(args.json_file):
        raise SystemExit("Provide exactly one of --json or --file")

    body = args.json_inline if args.json_inline else Path(args.json_file).read_text()
    # Fail early on invalid JSON; the signature covers the exact bytes sent.
    json.loads(body)
    raw = body.encode("utf-8")
    signature = compute_signature(raw, args.secret)
    print(f"{SIGNATURE_HEADER}: {signature}")
    print(
        f"curl -X POST {shlex.quote(args.url)} -H 'Content-Type: application/json' "
        f"-H {shlex.quote(f'{SIGNATURE_HEADER}: {signature}')} -H {shlex.quote(f'{TOPIC_HEADER}: {args.topic}')} "
        f"--data-binary {shlex.quote(body)}"
    )

    if args.send:
        resp = httpx.post(
            args.url,
            content=raw,
            headers={"content-type": "application/json", SIGNATURE_HEADER: signature, TOPIC_HEADER: args.topic},
            timeout=10.0,
        )
        print(f"status={resp.status_code}")
        print(json.dumps(resp.json(), indent=2))


if __name__ == "__main__":
    main()
