"""Async load generator for the notification submission endpoint."""

import argparse
import asyncio
import statistics
import time
from collections import Counter
from uuid import uuid4

import httpx


async def send_one(client: httpx.AsyncClient, base_url: str, api_key: str, user_idx: int):
    """Submit one notification and return (status_code, latency_ms)."""

    started = time.perf_counter()
    body = {
        "eventType": "load.test",
        "userId": f"user-{user_idx}",
        "payload": {
            "message": "load test",
            "recipient": {"email": f"user-{user_idx}@example.com", "phone": "+15550000000"},
        },
    }
    try:
        resp = await client.post(
            f"{base_url}/notifications",
            json=body,
            headers={
                "authorization": f"Bearer {api_key}",
                "idempotency-key": str(uuid4()),
                "x-correlation-id": str(uuid4()),
            },
        )
        latency = (time.perf_counter() - started) * 1000
        return resp.status_code, latency
    except httpx.HTTPError:
        latency = (time.perf_counter() - started) * 1000
        return 599, latency


async def run(total: int, concurrency: int, base_url: str, api_key: str):
    """Execute a bounded-concurrency load run and print summary stats."""

    sem = asyncio.Semaphore(concurrency)
    results = []

    async with httpx.AsyncClient(timeout=10.0) as client:
        async def worker(i: int):
            async with sem:
                return await send_one(client, base_url, api_key, i % 500)

        tasks = [asyncio.create_task(worker(i)) for i in range(total)]
        for task in asyncio.as_completed(tasks):
            results.append(await task)

    codes = Counter(code for code, _ in results)
    lats = sorted(latency for _, latency in results)
    accepted = codes.get(202, 0)

    def pct(values, p):
        if not values:
            return 0.0
        idx = min(len(values) - 1, max(0, int((p / 100.0) * len(values)) - 1))
        return values[idx]

    print(f"total={total}")
    print(f"accepted={accepted}")
    print(f"rate_limited={codes.get(429, 0)}")
    print(f"errors={total - accepted - codes.get(429, 0)}")
    print(f"p50_ms={pct(lats, 50):.2f}")
    print(f"p95_ms={pct(lats, 95):.2f}")
    print(f"p99_ms={pct(lats, 99):.2f}")
    print(f"avg_ms={statistics.mean(lats):.2f}")


if __name__ == "__main__":
    parser = argparse.ArgumentParser()
    parser.add_argument("--total", type=int, default=1000)
    parser.add_argument("--concurrency", type=int, default=100)
    parser.add_argument("--base-url", default="http://localhost:8000")
    parser.add_argument("--api-key", default="dev-key")
    args = parser.parse_args()
    asyncio.run(run(args.total, args.concurrency, args.base_url, args.api_key))
