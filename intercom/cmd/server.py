from __future__ import annotations

import argparse
import asyncio
import logging
import signal
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from intercom.server.runtime import ServerRuntime

log = logging.getLogger("intercom.cmd.server")


def load_config(config_path: Optional[Path]) -> Dict[str, Any]:
    if config_path is None:
        return {}
    return yaml.safe_load(config_path.read_text()) or {}


async def _run(config: Dict[str, Any]) -> None:
    runtime = ServerRuntime(config)
    await runtime.start()

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    try:
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, stop_event.set)
    except NotImplementedError:
        pass

    log.info("Server running. Press Ctrl+C to stop.")
    try:
        await stop_event.wait()
    finally:
        await runtime.stop()


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(description="WebRTC intercom signaling server")
    parser.add_argument("--config", default=None, help="Path to server YAML config")
    parser.add_argument("--listen", default=None, help="host:port to bind (overrides config)")
    parser.add_argument("--debug", action="store_true", help="Enable debug logging")
    args = parser.parse_args(argv)

    config = load_config(Path(args.config) if args.config else None)
    if args.listen:
        config["listen"] = args.listen

    level = "DEBUG" if args.debug else str(config.get("log_level", "INFO")).upper()
    logging.basicConfig(level=level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    asyncio.run(_run(config))


if __name__ == "__main__":
    main()
