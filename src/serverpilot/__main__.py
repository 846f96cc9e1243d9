"""ServerPilot command line.

    serverpilot serve [--host H] [--port P]
    serverpilot list [--marketplace]
    serverpilot enable|disable <id>
    serverpilot configure <id> KEY=VALUE [KEY=VALUE ...]
    serverpilot install <id> <url>
    serverpilot uninstall <id>
"""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from typing import Any

import httpx

from serverpilot.app import build_engine, create_app
from serverpilot.config import Settings, get_settings, setup_logging
from serverpilot.plugins import MarketplaceInstaller, PluginManager
from serverpilot.plugins.summary import (
    format_plugins_overview,
    format_plugins_summary,
    split_catalog,
)


def _parse_value(raw: str) -> Any:
    try:
        return json.loads(raw)
    except ValueError:
        return raw


def parse_assignments(pairs: list[str]) -> dict[str, Any]:
    """``["port=8080", "name=web"]`` -> ``{"port": 8080, "name": "web"}``."""
    config: dict[str, Any] = {}
    for pair in pairs:
        key, sep, value = pair.partition("=")
        if not sep or not key.strip():
            raise ValueError(f"Expected KEY=VALUE, got {pair!r}")
        config[key.strip()] = _parse_value(value)
    return config


async def _run(args: argparse.Namespace, settings: Settings) -> int:
    manager = PluginManager.from_settings(settings, build_engine(settings))
    # No plugin code runs here; a running server picks changes up on POST /api/plugins/rescan.
    await manager.discover(activate=False)
    try:
        if args.command == "list":
            installed = manager.list_plugins()
            if not args.marketplace:
                print(format_plugins_summary(installed))
                return 0
            marketplace = MarketplaceInstaller.from_settings(settings, manager)
            try:
                catalog = await marketplace.fetch_catalog()
            except (httpx.HTTPError, ValueError) as e:
                print(f"[error] catalog unavailable: {e}", file=sys.stderr)
                return 1
            print(format_plugins_overview(installed, split_catalog(installed, catalog)))
            return 0

        if args.command in ("enable", "disable", "configure") and manager.get(args.id) is None:
            print(f"[error] plugin not found: {args.id}", file=sys.stderr)
            return 1

        if args.command == "enable":
            manager.registry.set_enabled(args.id, True)
            print(f"[ok] enabled {args.id}")
            return 0

        if args.command == "disable":
            manager.registry.set_enabled(args.id, False)
            print(f"[ok] disabled {args.id}")
            return 0

        if args.command == "configure":
            try:
                config = parse_assignments(args.values)
            except ValueError as e:
                print(f"[error] {e}", file=sys.stderr)
                return 2
            manager.configure(args.id, config)
            print(f"[ok] configured {args.id}: {', '.join(sorted(config))}")
            return 0

        if args.command == "install":
            marketplace = MarketplaceInstaller.from_settings(settings, manager)
            result = await marketplace.install(args.id, args.url)
        else:
            result = await manager.uninstall(args.id)

        if not result.ok:
            print(f"[error] {result.error}", file=sys.stderr)
            return 1
        print(f"[ok] {result.message}")
        return 0
    finally:
        await manager.shutdown()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="serverpilot", description="ServerPilot plugin host")
    sub = parser.add_subparsers(dest="command", required=True)

    serve = sub.add_parser("serve", help="Run the HTTP API")
    serve.add_argument("--host", default="127.0.0.1")
    serve.add_argument("--port", type=int, default=8600)

    listing = sub.add_parser("list", help="Show installed plugins")
    listing.add_argument(
        "--marketplace", action="store_true", help="Also show catalog plugins not installed"
    )

    for name in ("enable", "disable", "uninstall"):
        sub.add_parser(name, help=f"{name.capitalize()} a plugin").add_argument("id")

    configure = sub.add_parser("configure", help="Merge KEY=VALUE pairs into a plugin's config")
    configure.add_argument("id")
    configure.add_argument("values", nargs="+", metavar="KEY=VALUE")

    install = sub.add_parser("install", help="Install a plugin archive (left disabled)")
    install.add_argument("id")
    install.add_argument("url")
    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    settings = get_settings()
    setup_logging(settings.log_level)

    if args.command == "serve":
        import uvicorn

        uvicorn.run(create_app(settings), host=args.host, port=args.port, log_level="info")
        return 0

    return asyncio.run(_run(args, settings))


if __name__ == "__main__":
    raise SystemExit(main())
