#!/usr/bin/env python3
"""
Operator CLI.

    python -m vendorflow.cli seed --json '{"businessName": "Acme HVAC", "email": "a@acme.com"}'
    python -m vendorflow.cli approve <vendor_id>
    python -m vendorflow.cli worker --iterations 5
"""

import argparse
import asyncio
import json
import logging

from vendorflow.config import Settings
from vendorflow.errors import VendorflowError
from vendorflow.main import Runtime, build_runtime, configure_logging, serve
from vendorflow.schemas import VendorEvent

logger = logging.getLogger("vendorflow.cli")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="vendorflow", description="Vendor outreach task engine.")
    parser.add_argument("--database-url", help="Override DATABASE_URL")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    sub = parser.add_subparsers(dest="command", required=True)

    seed = sub.add_parser("seed", help="Create a PENDING_REVIEW vendor")
    seed.add_argument("--json", dest="fields", help="Vendor fields as a JSON object (legacy names accepted)")
    seed.add_argument("--company", help="Company name")
    seed.add_argument("--email")
    seed.add_argument("--phone")
    seed.add_argument("--specialty")
    seed.add_argument("--location")

    for name, help_text in (
        ("approve", "Approve a vendor and queue outreach"),
        ("reject", "Reject a vendor and cancel its pending tasks"),
        ("reset", "Reset a vendor to PENDING_REVIEW and clear its activity log"),
        ("cancel", "Cancel a vendor's pending tasks"),
        ("show", "Print a vendor with its recent activity and tasks"),
    ):
        p = sub.add_parser(name, help=help_text)
        p.add_argument("vendor_id")

    event = sub.add_parser("event", help="Apply a lifecycle event")
    event.add_argument("vendor_id")
    event.add_argument("event", choices=[e.value for e in VendorEvent])

    verify = sub.add_parser("verify", help="Queue AI verification of a COI / W9")
    verify.add_argument("vendor_id")
    verify.add_argument("doc_type", type=str.upper, choices=["COI", "W9"])

    message = sub.add_parser("message", help="Queue an onboarding chat message from the vendor")
    message.add_argument("vendor_id")
    message.add_argument("text")

    sub.add_parser("stats", help="Task counts per status")

    worker = sub.add_parser("worker", help="Run dispatcher workers")
    worker.add_argument(
        "--iterations",
        type=int,
        default=0,
        help="Run N cycles in the foreground and exit (0 means run until interrupted).",
    )
    worker.add_argument("--workers", type=int, default=None, help="Concurrent workers (default WORKER_COUNT)")
    return parser


def _seed_fields(args) -> dict:
    fields = json.loads(args.fields) if args.fields else {}
    for key, attr in (
        ("companyName", "company"),
        ("email", "email"),
        ("phone", "phone"),
        ("specialty", "specialty"),
        ("location", "location"),
    ):
        value = getattr(args, attr)
        if value:
            fields[key] = value
    return fields


async def run_command(runtime: Runtime, args) -> dict:
    admin = runtime.admin
    cmd = args.command

    if cmd == "seed":
        return {"vendorId": await admin.seed_vendor(_seed_fields(args))}
    if cmd == "approve":
        t = await admin.approve(args.vendor_id, actor="cli")
        return {"status": t.next_status.value}
    if cmd == "reject":
        t = await admin.reject(args.vendor_id, actor="cli")
        return {"status": t.next_status.value}
    if cmd == "event":
        t = await admin.apply_event(args.vendor_id, args.event, actor="cli")
        return {"status": t.next_status.value}
    if cmd == "reset":
        return await admin.reset_vendor(args.vendor_id)
    if cmd == "cancel":
        return {"cancelled": await admin.cancel_tasks(args.vendor_id)}
    if cmd == "show":
        return await admin.describe(args.vendor_id)
    if cmd == "verify":
        return {"taskId": await admin.request_document_verification(args.vendor_id, args.doc_type)}
    if cmd == "message":
        return {"taskId": await admin.submit_vendor_message(args.vendor_id, args.text)}
    if cmd == "stats":
        return await runtime.queue.stats()
    if cmd == "worker":
        if args.iterations > 0:
            return await runtime.worker().run(args.iterations)
        return await serve(runtime, args.workers)
    raise ValueError(f"Unknown command: {cmd}")


async def _main(args) -> int:
    overrides = {"database_url": args.database_url} if args.database_url else {}
    runtime = await build_runtime(Settings(**overrides))
    try:
        result = await run_command(runtime, args)
    except VendorflowError as e:
        logger.error("%s failed: %s", args.command, e)
        print(json.dumps({"success": False, "error": str(e), "type": type(e).__name__}))
        return 1
    finally:
        await runtime.close()
    print(json.dumps({"success": True, "result": result}, default=str, ensure_ascii=True))
    return 0


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    configure_logging(logging.DEBUG if args.verbose else logging.INFO)
    return asyncio.run(_main(args))


if __name__ == "__main__":
    raise SystemExit(main())
