import argparse
import asyncio
import os
import sys

import httpx

# Add parent dir to path to find services
sys.path.append(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from services.run_poller import AuditRunPoller, AuditStartError


def _print_update(snapshot):
    stages = snapshot.get("stages") or {}
    summary = ", ".join(f"{name}={record.get('status')}" for name, record in stages.items())
    print(f"⏳ {snapshot.get('status')} {snapshot.get('progress', 0)}% [{summary}]")


async def main():
    parser = argparse.ArgumentParser(description="Start an audit run against a live API and follow it to the end.")
    parser.add_argument("product", help="Product id or slug")
    parser.add_argument("--base-url", default="http://localhost:8000")
    parser.add_argument("--force-refresh", action="store_true")
    parser.add_argument("--timeout", type=float, default=300.0)
    args = parser.parse_args()

    print(f"🔍 Auditing {args.product} via {args.base_url}...")
    async with httpx.AsyncClient(base_url=args.base_url, timeout=30.0) as client:
        poller = AuditRunPoller(args.product, client)
        try:
            started = await poller.start(force_refresh=args.force_refresh)
        except AuditStartError as e:
            print(f"❌ Could not start audit: {e}")
            sys.exit(1)

        if started.get("cached"):
            print(f"✅ Served from cache: run {started['runId']}")
        else:
            print(f"🚀 Following run {started['runId']}")

        try:
            final = await poller.watch(on_update=_print_update, timeout=args.timeout)
        except asyncio.TimeoutError:
            print(f"⚠️ Run still {poller.status} after {args.timeout:g}s")
            sys.exit(2)

    if not final:
        print("❌ Run disappeared while polling")
        sys.exit(1)

    status = final.get("status")
    audit = final.get("audit") or {}
    print(f"\n🏁 Final status: {status} (data source: {final.get('data_source')})")
    if audit.get("truth_index") is not None:
        print(f"📊 Truth Index: {audit['truth_index']}")
    if final.get("error"):
        print(f"⚠️ Error: {final['error']}")
    sys.exit(0 if status == "done" else 1)


if __name__ == "__main__":
    asyncio.run(main())
