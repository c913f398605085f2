"""Race concurrent status transitions against freshly created orders.

Each round creates one order, then fires ACCEPTED and REJECTED from the
provider at the same time. Exactly one of the pair must win; the summary counts
rounds that broke that rule.
"""

import argparse
import asyncio
import statistics
import time
from collections import Counter

import httpx


async def race_one(client: httpx.AsyncClient, args) -> tuple[list[int], float]:
    """Create an order and race two transitions on it; returns status codes and latency."""

    buyer_headers = {"x-api-key": args.api_key, "x-user-id": str(args.buyer_id)}
    provider_headers = {"x-api-key": args.api_key, "x-user-id": str(args.provider_user_id)}
    created = await client.post(
        f"{args.base_url}/orders",
        json={"gig_id": args.gig_id, "package": args.package},
        headers=buyer_headers,
    )
    created.raise_for_status()
    order_id = created.json()["id"]

    started = time.perf_counter()
    results = await asyncio.gather(
        *[
            client.post(
                f"{args.base_url}/orders/{order_id}/transitions",
                json={"status": status},
                headers=provider_headers,
            )
            for status in ("ACCEPTED", "REJECTED")
        ],
        return_exceptions=True,
    )
    latency = (time.perf_counter() - started) * 1000
    codes = [r.status_code if isinstance(r, httpx.Response) else 599 for r in results]
    return codes, latency


async def run(args) -> None:
    sem = asyncio.Semaphore(args.concurrency)
    outcomes = []

    async with httpx.AsyncClient(timeout=10.0) as client:
        async def worker():
            async with sem:
                return await race_one(client, args)

        tasks = [asyncio.create_task(worker()) for _ in range(args.rounds)]
        for task in asyncio.as_completed(tasks):
            outcomes.append(await task)

    winners = Counter(sum(1 for code in codes if code == 200) for codes, _ in outcomes)
    lats = [latency for _, latency in outcomes]
    print(f"rounds={args.rounds}")
    print(f"single_winner={winners.get(1, 0)}")
    print(f"no_winner={winners.get(0, 0)}")
    print(f"double_winner={winners.get(2, 0)}")
    print(f"avg_ms={statistics.mean(lats):.2f}")
    if winners.get(2, 0):
        raise SystemExit(1)


if __name__ == "__main__":
    parser = argparse.ArgumentParser()
    parser.add_argument("--rounds", type=int, default=200)
    parser.add_argument("--concurrency", type=int, default=20)
    parser.add_argument("--base-url", default="http://localhost:8001")
    parser.add_argument("--api-key", default="dev-secret")
    parser.add_argument("--gig-id", type=int, required=True)
    parser.add_argument("--package", default="basic")
    parser.add_argument("--buyer-id", type=int, required=True)
    parser.add_argument("--provider-user-id", type=int, required=True)
    asyncio.run(run(parser.parse_args()))
