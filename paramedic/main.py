"""Command line entry point for Paramedic."""

from __future__ import annotations

import argparse
import asyncio
import importlib
import logging
import os
import sys

import uvicorn
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from paramedic.config import settings
from paramedic.health.engine import Status
from paramedic.health.scheduler import Server, StartOptions

console = Console()

_STATUS_STYLE = {
    Status.UNTESTED: "dim",
    Status.STABLE: "green",
    Status.WARN: "yellow",
    Status.ERROR: "bold red",
}


def configure_logging(level: str | None = None) -> None:
    logging.basicConfig(
        level=getattr(logging, (level or settings.log_level).upper(), logging.INFO),
        format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
    )


def load_server(target: str) -> Server:
    """Import ``module:attr`` and return the Server it names.

    ``attr`` may be a Server instance or a zero-argument factory returning one.
    """
    module_name, _, attr = target.partition(":")
    if not module_name or not attr:
        raise SystemExit(f"Expected MODULE:ATTR, got {target!r}")

    if os.getcwd() not in sys.path:
        sys.path.insert(0, os.getcwd())

    module = importlib.import_module(module_name)
    try:
        obj = getattr(module, attr)
    except AttributeError:
        raise SystemExit(f"{module_name} has no attribute {attr!r}") from None

    if callable(obj) and not isinstance(obj, Server):
        obj = obj()
    if not isinstance(obj, Server):
        raise SystemExit(f"{target} is not a paramedic Server (got {type(obj).__name__})")
    return obj


def run_server(server: Server, options: StartOptions, host: str, port: int) -> None:
    """Start the HTTP presenter; the app lifespan arms the server."""
    from paramedic.api import create_app

    title = options.title or server.title
    console.print(Panel(f"Starting {title} on {host}:{port}", style="bold green"))
    uvicorn.run(create_app(server, options), host=host, port=port, log_level=settings.log_level.lower())


def run_check(server: Server, timeout_ms: float) -> int:
    """Trigger every test once and print the results; 1 if any test errored."""
    tests = asyncio.run(server.run_all_now(timeout_ms=timeout_ms))

    table = Table(title=server.title)
    table.add_column("ID", justify="right")
    table.add_column("Collection")
    table.add_column("Test")
    table.add_column("Status")
    table.add_column("Time (ms)", justify="right")
    table.add_column("Detail")

    for test in tests:
        detail = test.errors[0].message if test.errors and test.status is not Status.STABLE else ""
        length = f"{test.last_test_length:.0f}" if test.last_test_length is not None else "-"
        table.add_row(
            str(test.id),
            test.collection.name if test.collection else "",
            test.name,
            f"[{_STATUS_STYLE[test.status]}]{test.status.label}[/]",
            length,
            detail,
        )

    console.print(table)
    return 1 if any(t.status is Status.ERROR for t in tests) else 0


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(description="Paramedic health-check scheduler")
    parser.add_argument("--log-level", default=None, help="Override PARAMEDIC_LOG_LEVEL")
    sub = parser.add_subparsers(dest="command")

    serve_parser = sub.add_parser("serve", help="Run the tests on their intervals and serve the status API")
    serve_parser.add_argument("target", help="MODULE:ATTR naming a paramedic Server")
    serve_parser.add_argument("--title", default=None)
    serve_parser.add_argument("--test-now", action="store_true", help="Trigger every test on startup")
    serve_parser.add_argument("--host", default=settings.api_host)
    serve_parser.add_argument("--port", type=int, default=settings.api_port)

    check_parser = sub.add_parser("check", help="Trigger every test once and print the results")
    check_parser.add_argument("target", help="MODULE:ATTR naming a paramedic Server")
    check_parser.add_argument("--timeout", type=float, default=10_000, help="Per-test deadline in ms")

    args = parser.parse_args(argv)
    configure_logging(args.log_level)

    if args.command == "serve":
        server = load_server(args.target)
        options = StartOptions(test_now=args.test_now, title=args.title)
        run_server(server, options, args.host, args.port)
    elif args.command == "check":
        server = load_server(args.target)
        sys.exit(run_check(server, args.timeout))
    else:
        parser.print_help()
        sys.exit(1)


if __name__ == "__main__":
    main()
