"""Command-line interface for AgentC2."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
import time
from pathlib import Path

from dotenv import load_dotenv

from agentc2.config import get_default_config
from agentc2.triggers.security import compute_signature
from agentc2.web.server import build_services, run_server

# Load .env file if present
load_dotenv()

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    datefmt="%H:%M:%S",
)


def _load_json(value: str | None, what: str):
    if value is None:
        return None
    try:
        return json.loads(value)
    except json.JSONDecodeError as e:
        raise SystemExit(f"Invalid {what} JSON: {e}") from None


async def run_definition(args: argparse.Namespace) -> int:
    """Execute a workflow definition file once and print the result."""
    config = get_default_config()
    if args.storage:
        config.storage_dir = args.storage

    path = Path(args.definition)
    if not path.exists():
        print(f"Definition not found: {path}", file=sys.stderr)
        return 1
    definition = json.loads(path.read_text())
    workflow_input = _load_json(args.input, "input")

    services = build_services(config)
    try:
        result = await services.runtime.execute(definition, workflow_input)
    finally:
        await services.http.aclose()

    if result.status == "suspended":
        print(json.dumps({"status": "suspended", **result.suspended.model_dump()}, indent=2, default=str))
        return 0

    print(json.dumps(result.model_dump(mode="json"), indent=2, default=str))
    return 0 if result.status == "success" else 1


def sign_payload(args: argparse.Namespace) -> int:
    """Print the signature headers a webhook sender would attach."""
    payload = Path(args.payload).read_bytes()
    timestamp = args.timestamp
    if timestamp == "now":
        timestamp = str(int(time.time()))
    signature = compute_signature(payload, args.secret, timestamp)
    if timestamp:
        print(f"X-Webhook-Timestamp: {timestamp}")
    print(f"X-Webhook-Signature: sha256={signature}")
    return 0


def main() -> None:
    """Main entry point."""
    parser = argparse.ArgumentParser(
        description="AgentC2 - workflow runtime and execution trigger service",
    )
    subparsers = parser.add_subparsers(dest="command", help="Commands")

    serve_parser = subparsers.add_parser("serve", help="Run the HTTP API")
    serve_parser.add_argument("--host", default="0.0.0.0", help="Host to bind to")
    serve_parser.add_argument("--port", type=int, default=8080, help="Port to listen on")
    serve_parser.add_argument("--storage", help="Storage directory (default: .agentc2)")

    run_parser = subparsers.add_parser("run", help="Execute a workflow definition file")
    run_parser.add_argument("definition", help="Path to a workflow definition JSON file")
    run_parser.add_argument("--input", help="Workflow input as JSON")
    run_parser.add_argument("--storage", help="Storage directory holding agents")

    sign_parser = subparsers.add_parser("sign", help="Sign a webhook payload")
    sign_parser.add_argument("payload", help="File containing the exact request body")
    sign_parser.add_argument("--secret", required=True, help="Trigger webhook secret")
    sign_parser.add_argument(
        "--timestamp",
        help="Unix timestamp to sign with, or 'now'",
    )

    args = parser.parse_args()

    if args.command == "serve":
        config = get_default_config()
        if args.storage:
            config.storage_dir = args.storage
        run_server(args.host, args.port, config)
    elif args.command == "run":
        sys.exit(asyncio.run(run_definition(args)))
    elif args.command == "sign":
        sys.exit(sign_payload(args))
    else:
        parser.print_help()
        sys.exit(1)


if __name__ == "__main__":
    main()
