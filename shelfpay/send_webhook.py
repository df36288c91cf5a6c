#!/usr/bin/env python3
"""
Shelfpay webhook replayer (async)

Signs one Paystack ``charge.success`` event and delivers the exact same body
N times concurrently to POST /api/paystack/webhook, the way a provider retry
storm would. Afterwards exactly one delivery should report "Order created"
and the rest "Order already processed".

Usage:
  python -m shelfpay.send_webhook --base http://localhost:8000 \
        --secret sk_test_xxx --book-id book-1 --quantity 2 \
        --address "1 Main St" --deliveries 20

  python -m shelfpay.send_webhook --secret sk_test_xxx --book-id ebook-1 \
        --digital --reference ref123

Notes:
- ``--secret`` defaults to PAYSTACK_WEBHOOK_SECRET / PAYSTACK_SECRET_KEY.
- ``--tamper`` flips one byte after signing; every delivery must be rejected.
"""

import argparse
import asyncio
import json
import os
import time
from collections import Counter
from dataclasses import dataclass, field
from typing import Dict, List, Optional

import httpx

from .helpers import new_payment_reference
from .paystack import EVENT_CHARGE_SUCCESS, sign


@dataclass
class Result:
    status: int
    message: str
    t: float = 0.0
    err: Optional[str] = None


@dataclass
class Stats:
    results: List[Result] = field(default_factory=list)

    def add(self, r: Result):
        self.results.append(r)

    def summary(self) -> Dict[str, int]:
        c = Counter(
            f"{r.status} {r.message}" if r.err is None else f"ERROR {r.err}"
            for r in self.results
        )
        return dict(c)

    def print(self, elapsed_s: float):
        print("\n=== Delivery Summary ===")
        for outcome, n in sorted(self.summary().items()):
            print(f"  {n:5d}  {outcome}")
        lat = sorted(r.t for r in self.results if r.err is None)
        if lat:
            print(
                f"Latency: avg {sum(lat)/len(lat):.3f}s   "
                f"max {lat[-1]:.3f}s"
            )
        print(f"Wall time: {elapsed_s:.3f}s")


def build_event(args) -> dict:
    metadata = {
        "name": args.name,
        "bookId": args.book_id,
        "quantity": args.quantity,
        "purchaseFormat": "digital" if args.digital else "physical",
    }
    if not args.digital:
        metadata["address"] = args.address
        metadata["phone"] = args.phone
    return {
        "event": args.event,
        "data": {
            "reference": args.reference or new_payment_reference(),
            "status": "success",
            "amount": args.amount,
            "currency": args.currency,
            "customer": {"email": args.email},
            "metadata": metadata,
        },
    }


async def deliver(client: httpx.AsyncClient, url: str, body: bytes,
                  signature: str) -> Result:
    t0 = time.perf_counter()
    try:
        resp = await client.post(
            url,
            content=body,
            headers={
                "x-paystack-signature": signature,
                "content-type": "application/json",
            },
            timeout=30.0,
        )
    except Exception as e:
        return Result(status=0, message="", err=str(e))
    try:
        j = resp.json()
        message = j.get("message") or j.get("error") or ""
    except ValueError:
        message = resp.text[:80]
    return Result(status=resp.status_code, message=message,
                  t=time.perf_counter() - t0)


async def run(url: str, body: bytes, signature: str, deliveries: int,
              concurrency: int) -> Stats:
    sem = asyncio.Semaphore(concurrency)
    stats = Stats()
    limits = httpx.Limits(
        max_keepalive_connections=concurrency, max_connections=concurrency
    )
    async with httpx.AsyncClient(
        limits=limits, headers={"User-Agent": "ShelfpayWebhook/1.0"}
    ) as client:

        async def worker():
            async with sem:
                stats.add(await deliver(client, url, body, signature))

        await asyncio.gather(*(worker() for _ in range(deliveries)))
    return stats


def main():
    ap = argparse.ArgumentParser(description="Shelfpay webhook replayer")
    ap.add_argument("--base", default="http://localhost:8000",
                    help="Base URL of the app")
    ap.add_argument("--secret",
                    default=os.environ.get("PAYSTACK_WEBHOOK_SECRET")
                    or os.environ.get("PAYSTACK_SECRET_KEY", ""),
                    help="Webhook signing secret")
    ap.add_argument("--event", default=EVENT_CHARGE_SUCCESS)
    ap.add_argument("--reference", default=None,
                    help="Payment reference (default: fresh BST-... ref)")
    ap.add_argument("--book-id", required=True)
    ap.add_argument("--quantity", default="1",
                    help="Sent as a string, like the storefront does")
    ap.add_argument("--digital", action="store_true")
    ap.add_argument("--address", default="1 Test Street")
    ap.add_argument("--phone", default="+2348000000000")
    ap.add_argument("--name", default="Load Tester")
    ap.add_argument("--email", default="buyer@example.com")
    ap.add_argument("--amount", type=int, default=500000,
                    help="Minor units")
    ap.add_argument("--currency", default="NGN")
    ap.add_argument("--deliveries", type=int, default=10,
                    help="How many times to deliver the same event")
    ap.add_argument("--concurrency", type=int, default=10)
    ap.add_argument("--tamper", action="store_true",
                    help="Alter one byte after signing")
    args = ap.parse_args()

    if not args.secret:
        ap.error("no signing secret (use --secret or PAYSTACK_SECRET_KEY)")

    event = build_event(args)
    body = json.dumps(event).encode()
    signature = sign(body, args.secret)
    if args.tamper:
        body = body.replace(b"success", b"succes5", 1)

    print(f"Delivering {args.deliveries}x reference "
          f"{event['data']['reference']}")
    t_start = time.perf_counter()
    stats = asyncio.run(run(
        f"{args.base.rstrip('/')}/api/paystack/webhook",
        body, signature, args.deliveries, args.concurrency,
    ))
    stats.print(time.perf_counter() - t_start)


if __name__ == "__main__":
    main()
