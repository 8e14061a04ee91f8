from __future__ import annotations

import argparse
import logging
import os

import uvicorn


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Launch the target follower web UI server.")
    parser.add_argument("--host", default="0.0.0.0", help="Host interface to bind.")
    parser.add_argument("--port", type=int, default=8000, help="Port to bind.")
    parser.add_argument("--config", default=None, help="YAML follower configuration (sets FOLLOWER_CONFIG).")
    parser.add_argument(
        "--policy",
        choices=("blended", "state_machine"),
        default=None,
        help="Behavior policy (sets FOLLOWER_POLICY).",
    )
    parser.add_argument("--stopped", action="store_true", help="Start with following stopped.")
    parser.add_argument("--log-level", default="info", help="Uvicorn log level.")
    return parser.parse_args()


def main() -> None:
    args = parse_args()
    logging.basicConfig(level=logging.INFO, format="%(asctime)s | %(levelname)s | %(name)s | %(message)s")
    # the app reads its configuration from the environment at startup
    if args.config:
        os.environ["FOLLOWER_CONFIG"] = args.config
    if args.policy:
        os.environ["FOLLOWER_POLICY"] = args.policy
    if args.stopped:
        os.environ["FOLLOWER_ENABLED"] = "0"
    uvicorn.run(
        "src.web.app:app",
        host=args.host,
        port=args.port,
        log_level=args.log_level,
    )


if __name__ == "__main__":
    main()
