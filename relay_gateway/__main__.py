from __future__ import annotations

import argparse
import os

import uvicorn

from relay_gateway.app import create_app
from relay_gateway.config import load_config_from_env


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(prog="relay-gateway", description="Relay HTTP messages to notification recipients.")
    parser.add_argument("config", nargs="?", help="path to the TOML config file (default: $GATEWAY_CONFIG)")
    parser.add_argument("--host", default=os.environ.get("HOST", "0.0.0.0"))
    args = parser.parse_args(argv)

    config = load_config_from_env(os.environ, config_path=args.config)
    app = create_app(config)
    uvicorn.run(app, host=args.host, port=config.port, log_config=None)


if __name__ == "__main__":
    main()
