"""Deliver the same signed order webhook many times concurrently.

Exactly one delivery should report `was_new=true`; every response should
carry the same `points_awarded`.
"""

import argparse
import asyncio
import json
import time
from collections import Counter
from uuid import uuid4

import httpx

from loyalty.services.points.webhooks import SIGNATURE_HEADER, compute_signature


async def send_one(client: httpx.AsyncClient, url: str, raw: bytes, signature: str):
    """Send one delivery and return (status_code, body, latency_ms)."""

    started = time.perf_counter()
    try:
        resp = await client.post(
            url,
            content=raw,
            headers={"content-type": "application/json", SIGNATURE_HEADER: signature},
        )
        latency = (time.perf_counter() - started) * 1000
        return resp.status_code, resp.json(), latency
    except Exception:
        latency = (time.perf_counter() - started) * 1000
        return 599, {}, latency


async def run(total: int, concurrency: int, url: str, secret: str, email: str, amount: float):
    """Fire `total` identical deliveries and print the idempotence summary."""

    raw = json.dumps(
        {"order_id": f"burst-{uuid4()}", "email": email, "amount": amount, "currency": "EUR"}
    ).encode("utf-8")
    signature = compute_signature(raw, secret)
    sem = asyncio.Semaphore(concurrency)
    results = []

    async with httpx.AsyncClient(timeout=10.0) as client:
        async def worker():
            async with sem:
                return await send_one(client, url, raw, signature)

        tasks = [asyncio.create_task(worker()) for _ in range(total)]
        for task in asyncio.as_completed(tasks):
            results.append(await task)

    codes = Counter(code for code, _, _ in results)
    new_count = sum(1 for code, body, _ in results if code == 200 and body.get("was_new"))
    awarded = {body.get("points_awarded") for code, body, _ in results if code == 200}
    lats = sorted(latency for _, _, latency in results)

    print(f"total={total}")
    print(f"status_codes={dict(codes)}")
    print(f"new_entries={new_count}")
    print(f"distinct_points_awarded={sorted(awarded)}")
    print(f"p50_ms={lats[len(lats) // 2]:.2f}")
    print(f"max_ms={lats[-1]:.2f}")
    if new_count != 1 or len(awarded) > 1:
        raise SystemExit("idempotence violated")


if __name__ == "__main__":
    # CLI entrypoint for manual duplicate-delivery checks.
    parser = argparse.ArgumentParser()
    parser.add_argument("--total", type=int, default=50)
    parser.add_argument("--concurrency", type=int, default=25)
    parser.add_argument("--url", default="http://localhost:8000/webhooks/orders")
    parser.add_argument("--secret", required=True)
    parser.add_argument("--email", default="burst@example.com")
    parser.add_argument("--amount", type=float, default=29.99)
    args = parser.parse_args()
    asyncio.run(run(args.total, args.concurrency, args.url, args.secret, args.email, args.amount))
