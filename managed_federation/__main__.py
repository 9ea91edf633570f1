"""CLI entry point for the managed identity federation broker.

Usage:
    python -m managed_federation [--config CONFIG_PATH] [--local LOCAL_PATH] [--host HOST] [--port PORT]

Config files:
    - config.yaml: Server settings (identity, audit)
    - local.yaml: Local settings (host, port, function_key)
"""

import argparse
import logging
import sys
from pathlib import Path


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse command-line arguments."""
    parser = argparse.ArgumentParser(
        prog="managed-federation",
        description="Issue app tokens using a managed identity token as federated client credential.\n\n"
                    "USAGE EXAMPLES:\n"
                    "  python -m managed_federation --config config.yaml --local local.yaml\n"
                    "  python -m managed_federation --host 0.0.0.0 --port 8080\n\n"
                    "Config files:\n"
                    "  config.yaml: Server settings (identity, audit)\n"
                    "  local.yaml: Local settings (host, port, function_key)",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Path to server config.yaml file (default: ./config.yaml or ~/config.yaml)",
    )
    parser.add_argument(
        "--local",
        type=Path,
        default=None,
        help="Path to local.yaml file (default: ./local.yaml or ~/local.yaml)",
    )
    parser.add_argument(
        "--single-file",
        action="store_true",
        help="Read every setting, including the local section, from config.yaml",
    )
    parser.add_argument(
        "--host",
        type=str,
        default=None,
        help="Override host from config",
    )
    parser.add_argument(
        "--port",
        type=int,
        default=None,
        help="Override port from config",
    )
    parser.add_argument(
        "--log-level",
        choices=["debug", "info", "warning", "error"],
        default="info",
        help="Log level (default: info)",
    )
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    """Main entry point."""
    args = parse_args(argv)

    logging.basicConfig(
        level=args.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    # Import here to speed up --help
    from managed_federation.config import load_config, load_config_single_file, ConfigError
    from managed_federation.server import create_app

    try:
        if args.single_file:
            config = load_config_single_file(args.config)
        else:
            config = load_config(args.config, args.local)
    except ConfigError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return 1

    host = args.host or config.local.host
    port = args.port or config.local.port

    app = create_app(config)

    import uvicorn

    print(f"Starting managed identity federation broker on http://{host}:{port}")
    print(f"  Authority: {config.identity.authority_host}")
    print(f"  Managed identity: {config.identity.managed_identity_client_id or 'system-assigned'}")
    print(f"  Audit log: {config.audit.directory if config.audit.enabled else 'disabled'}")
    print()

    uvicorn.run(
        app,
        host=host,
        port=port,
        log_level=args.log_level,
    )
    return 0


if __name__ == "__main__":
    sys.exit(main())
