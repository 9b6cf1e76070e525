import argparse
import asyncio
import json

import uvicorn

from agentloop.config import HOST, PORT


async def _scan_once() -> dict:
    from agentloop.db.database import get_db, close_db
    from agentloop.loop.scanner import run_breach_scan

    db = await get_db()
    try:
        result = await run_breach_scan(db)
    finally:
        await close_db()
    return result.to_dict()


def main() -> None:
    parser = argparse.ArgumentParser(description="AgentLoop message loop tracker")
    sub = parser.add_subparsers(dest="command")

    serve = sub.add_parser("serve", help="Run the HTTP/SSE server (default)")
    serve.add_argument("--host", default=HOST, help="Bind host")
    serve.add_argument("--port", type=int, default=PORT, help="Bind port")
    serve.add_argument(
        "--reload",
        action="store_true",
        help="Enable auto-reload for development",
    )

    sub.add_parser("scan", help="Run one breach scan against the configured database and exit")

    args = parser.parse_args()

    if args.command == "scan":
        print(json.dumps(asyncio.run(_scan_once()), indent=2))
        return

    uvicorn.run(
        "agentloop.main:app",
        host=getattr(args, "host", HOST),
        port=getattr(args, "port", PORT),
        reload=getattr(args, "reload", False),
        log_level="info",
        timeout_graceful_shutdown=3,
    )


if __name__ == "__main__":
    main()
