"""Command-line interface for printops-agent."""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path
from typing import Optional

from . import constants
from .app import PrintOpsAgentApp
from .config import ConfigurationStore, resolve_config_path
from .errors import ConfigurationError

LOGGER = logging.getLogger(__name__)

_SECRET_OPTIONS = {"api_key"}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog=constants.APP_NAME, description="PrintOps device management agent"
    )
    parser.add_argument(
        "-c",
        "--config",
        type=Path,
        default=None,
        help=(
            "Path to configuration file (default: "
            f"${constants.CONFIG_PATH_ENV} or {constants.DEFAULT_CONFIG_PATH})"
        ),
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("start", help="Start the printops-agent service")

    configure_parser = subparsers.add_parser(
        "configure", help="Store dashboard credentials for this agent"
    )
    configure_parser.add_argument("--api-key", required=True, help="Agent API key")
    configure_parser.add_argument(
        "--dashboard-url", required=True, help="Dashboard base URL (http or https)"
    )
    configure_parser.add_argument(
        "--agent-id", default=None, help="Agent id (generated when not set)"
    )

    subparsers.add_parser(
        "show-config", help="Print the resolved configuration and exit"
    )

    return parser


def main(argv: Optional[list[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    store = ConfigurationStore.from_path(resolve_config_path(args.config))

    if args.command == "start":
        PrintOpsAgentApp.start(store)
        return 0

    if args.command == "configure":
        try:
            identity = store.reconfigure(
                api_key=args.api_key,
                dashboard_url=args.dashboard_url,
                agent_id=args.agent_id,
            )
        except ConfigurationError as exc:
            LOGGER.error("Configuration rejected: %s", exc)
            print(f"error: {exc}", file=sys.stderr)
            return 1
        except OSError as exc:
            LOGGER.error("Failed to save configuration: %s", exc)
            print(f"error: cannot write {store.path}: {exc}", file=sys.stderr)
            return 1
        print(f"Agent {identity.agent_id} configured for {identity.dashboard_url}")
        return 0

    if args.command == "show-config":
        config = store.config
        print(f"Configuration loaded from {config.path!s}\n")
        for section in config.raw.sections():
            print(f"[{section}]")
            for key, value in config.raw[section].items():
                if key in _SECRET_OPTIONS and value:
                    value = "********"
                print(f"{key} = {value}")
            print()
        return 0

    LOGGER.error("Unknown command: %s", args.command)
    return 1


if __name__ == "__main__":
    sys.exit(main())
