#  Chorus - Entry Point
#
#  Launches the FastAPI server via uvicorn, or follows a session's text
#  stream from the command line.
#
#  Depends on: chorus/app.py, chorus/config.py, chorus/logging_config.py, chorus/monitor.py
#  Used by:    (run directly)

import argparse
import asyncio
import sys

import uvicorn

from chorus.logging_config import setup_logging


def _serve(cfg):
    uvicorn.run(
        "chorus.app:app",
        host=cfg("server.host", "0.0.0.0"),
        port=cfg("server.port", 5300),
        reload=cfg("server.reload", False),
    )


async def _monitor(base_url: str, token: str, session_id: str) -> int:
    from chorus.monitor import SessionMonitor

    async for msg in SessionMonitor(base_url, token, session_id).messages():
        print(f"[{msg.kind}] {msg.data}", flush=True)
        if msg.terminal:
            return 0 if msg.kind == "result" else 2
    return 1


def main():
    try:
        from chorus.config import cfg
    except FileNotFoundError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)

    parser = argparse.ArgumentParser(prog="chorus")
    sub = parser.add_subparsers(dest="command")
    sub.add_parser("serve", help="Run the API server (default)")
    mon = sub.add_parser("monitor", help="Follow a session's status stream")
    mon.add_argument("session_id")
    mon.add_argument("--token", required=True, help="Bearer access token")
    mon.add_argument("--url", default=f"http://localhost:{cfg('server.port', 5300)}")
    args = parser.parse_args()

    setup_logging(
        level=cfg("server.log_level", "INFO"),
        fmt=cfg("server.log_format", "json"),
    )

    if args.command == "monitor":
        sys.exit(asyncio.run(_monitor(args.url, args.token, args.session_id)))
    _serve(cfg)


if __name__ == "__main__":
    main()
