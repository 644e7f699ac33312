#!/usr/bin/env python3
# Copyright (c) 2025 The conquest-agent developers
# Distributed under the MIT software license

"""
Conquest Daemon - Automated fleet resolution and exit tracking

This daemon:
  1. Resubmits fleets/exits persisted without a submission handle
  2. Resolves every fleet whose resolve window has opened
  3. Re-checks open exits against the ledger (completion / interruption)
  4. Drops old finished records from the local store

Optionally serves the REST API (--serve) on the same agent session.

Usage:
    python3 conquest-daemon.py --contract 0x... [--config config.json] [--once]
"""

import argparse
import logging
import sys
import threading
import time

from conquest_sdk import AgentConfig, ConquestAgent, ConquestError
from conquest_sdk.config import load_env_file
from conquest_sdk.server import create_app

log = logging.getLogger("conquest-daemon")


class ConquestDaemon:
    """Sweep loop around one ConquestAgent."""

    def __init__(self, agent: ConquestAgent, config: AgentConfig):
        self.agent = agent
        self.config = config

    def sweep_once(self) -> dict:
        result = self.agent.sweep(self.config.cleanup_age)
        if result.get("status") == "error":
            log.warning(f"Sweep failed: {result.get('message')}")
            return result
        if result["resolved"]:
            log.info(f"Resolved {len(result['resolved'])} fleets")
        for failure in result["failed"]:
            log.warning(f"Fleet {failure['fleet_id'][:10]}... not resolved: {failure['reason']}")
        for exit_result in result["exits"]:
            if exit_result.get("exit_status") == "interrupted":
                log.warning(f"Exit {exit_result['planet_id']} interrupted by {exit_result.get('new_owner')}")
        return result

    def run(self):
        """Main daemon loop"""
        log.info("=" * 60)
        log.info("Conquest Daemon starting...")
        log.info(f"  RPC: {self.config.rpc_url}")
        log.info(f"  Contract: {self.config.contract_address}")
        log.info(f"  Player: {self.agent.address}")
        log.info(f"  Data dir: {self.config.data_dir}")
        log.info(f"  Poll interval: {self.config.poll_interval}s")
        log.info("=" * 60)

        log.info("Starting main loop...")

        while True:
            try:
                self.sweep_once()
            except KeyboardInterrupt:
                log.info("Shutting down...")
                break
            except ConquestError as e:
                # StorageError is the only one that escapes the agent
                log.error(f"Error in main loop: {e.message}")
                raise

            time.sleep(self.config.poll_interval)


# =============================================================================
# MAIN
# =============================================================================

def build_config(args) -> AgentConfig:
    if args.env_file:
        load_env_file(args.env_file)
    config = AgentConfig.from_file(args.config) if args.config else AgentConfig.from_env()

    if args.rpc:
        config.rpc_url = args.rpc
    if args.contract:
        config.contract_address = args.contract
    if args.data_dir:
        config.data_dir = args.data_dir
    if args.poll_interval is not None:
        config.poll_interval = args.poll_interval
    if args.cleanup_age is not None:
        config.cleanup_age = args.cleanup_age
    if args.port is not None:
        config.http_port = args.port
    if args.log_level:
        config.log_level = args.log_level
    return config


def main():
    parser = argparse.ArgumentParser(description="Conquest fleet/exit daemon")
    parser.add_argument("--config", help="JSON config file (default: CONQUEST_* environment)")
    parser.add_argument("--env-file", default=".env", help="KEY=VALUE file loaded into the environment")
    parser.add_argument("--rpc", help="Ledger JSON-RPC URL")
    parser.add_argument("--contract", help="Game contract address")
    parser.add_argument("--data-dir", help="Directory holding the reconciliation store")
    parser.add_argument("--poll-interval", type=int, help="Poll interval in seconds")
    parser.add_argument("--cleanup-age", type=int, help="Drop finished records older than this (seconds)")
    parser.add_argument("--port", type=int, help="REST API port (with --serve)")
    parser.add_argument("--serve", action="store_true", help="Also serve the REST API")
    parser.add_argument("--log-level", choices=["DEBUG", "INFO", "WARNING", "ERROR"])
    parser.add_argument("--once", action="store_true", help="Run one sweep and exit")

    args = parser.parse_args()

    try:
        config = build_config(args)
        config.validate()
    except ConquestError as e:
        print(f"Configuration error: {e.message}", file=sys.stderr)
        sys.exit(1)

    logging.basicConfig(
        level=getattr(logging, config.log_level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S"
    )

    if not config.private_key:
        log.warning("No private key configured (set CONQUEST_PRIVATE_KEY in .env); running read-only")
    else:
        log.info(f"Using key {config.masked_key()}")

    agent = ConquestAgent.from_config(config)
    daemon = ConquestDaemon(agent, config)

    if args.once:
        daemon.sweep_once()
        return

    if args.serve:
        app = create_app(agent)
        server = threading.Thread(
            target=app.run,
            kwargs={"host": "0.0.0.0", "port": config.http_port, "use_reloader": False},
            daemon=True,
        )
        server.start()
        log.info(f"REST API listening on port {config.http_port}")

    daemon.run()


if __name__ == "__main__":
    main()
