"""Command line entry point: run the bridge server or administer actors."""

from __future__ import annotations

import argparse
import json
import logging
import sys
from dataclasses import replace
from typing import TextIO

from aiohttp import web

from .config import BridgeConfig, load_config_from_env
from .errors import BridgeError
from .http_api import build_runtime, create_app


logger = logging.getLogger(__name__)


def _configure_logging(config: BridgeConfig) -> None:
    logging.basicConfig(
        level=config.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _config_for(args: argparse.Namespace) -> BridgeConfig:
    config = load_config_from_env()
    if args.db is not None:
        config = replace(config, db_path=args.db)
    return config


def _run_serve(args: argparse.Namespace) -> int:
    config = _config_for(args)
    _configure_logging(config)
    app = create_app(config=config, ping_interval_s=args.ping_interval)
    logger.info("serving anonbridge on %s:%d (db %s)", args.host, args.port, config.db_path)
    web.run_app(app, host=args.host, port=args.port)
    return 0


def _run_register(args: argparse.Namespace, output: TextIO) -> int:
    config = _config_for(args)
    _configure_logging(config)
    runtime = build_runtime(config)
    try:
        actor = runtime.identity.register(args.role, args.department, args.cohort_year)
        session = runtime.sessions.create(actor.actor_id)
    finally:
        runtime.backend.close()
    payload = actor.to_api_dict()
    payload["actor_id"] = actor.actor_id
    output.write(
        json.dumps({"actor": payload, "session_token": session.session_token, "expires_at": session.expires_at_ms})
        + "\n"
    )
    return 0


def _run_grant(args: argparse.Namespace, output: TextIO) -> int:
    config = _config_for(args)
    _configure_logging(config)
    runtime = build_runtime(config)
    try:
        runtime.moderation.grant_moderator(args.actor_id, args.granted_by)
    finally:
        runtime.backend.close()
    output.write(json.dumps({"actor_id": args.actor_id, "moderator": True}) + "\n")
    return 0


def main(argv: list[str] | None = None, output: TextIO | None = None) -> int:
    """Entry point for CLI commands."""

    if argv is None:
        argv = sys.argv[1:]
    output = output or sys.stdout

    parser = argparse.ArgumentParser(description="anonbridge CLI")
    parser.add_argument("--db", type=str, default=None, help="Path to the SQLite database")
    subparsers = parser.add_subparsers(dest="command", required=True)

    serve_parser = subparsers.add_parser("serve", help="Run the aiohttp bridge server")
    serve_parser.add_argument("--host", default="127.0.0.1", help="Host to bind")
    serve_parser.add_argument("--port", type=int, default=8080, help="Port to bind")
    serve_parser.add_argument(
        "--ping-interval",
        type=int,
        default=30,
        help="Seconds between heartbeat pings",
    )

    register_parser = subparsers.add_parser("register", help="Register an actor and print a session token")
    register_parser.add_argument("role", choices=["requester", "responder", "moderator"])
    register_parser.add_argument("department")
    register_parser.add_argument("--cohort-year", type=int, default=None, help="Year of study (requesters only)")

    grant_parser = subparsers.add_parser("grant-moderator", help="Grant the moderator capability to an actor")
    grant_parser.add_argument("actor_id")
    grant_parser.add_argument("--granted-by", default="cli", help="Who is recorded as granting it")

    args = parser.parse_args(argv)

    try:
        if args.command == "serve":
            return _run_serve(args)
        if args.command == "register":
            return _run_register(args, output)
        return _run_grant(args, output)
    except BridgeError as exc:
        output.write(json.dumps({"code": exc.code, "message": exc.message}) + "\n")
        return 1


if __name__ == "__main__":  # pragma: no cover - convenience execution
    raise SystemExit(main())
