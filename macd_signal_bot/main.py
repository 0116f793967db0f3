from __future__ import annotations

import argparse
import asyncio
import logging
import sys

from .config import load_config
from .runner import SignalRunner


def _setup_logging(level: str) -> None:
    lvl = getattr(logging, (level or "INFO").upper(), logging.INFO)
    logging.basicConfig(
        level=lvl,
        format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
        stream=sys.stdout,
    )


def main(argv=None) -> int:
    p = argparse.ArgumentParser(description="MACD Signal Bot - multi-timeframe MACD/volume signal tracker")
    p.add_argument("--config", required=True, help="Path to YAML config")
    p.add_argument("--log-level", default=None, help="Override app.log_level")
    args = p.parse_args(argv)

    cfg = load_config(args.config)
    _setup_logging(args.log_level or cfg.app.log_level)

    runner = SignalRunner(cfg)

    async def _run() -> None:
        try:
            await runner.run_forever()
        finally:
            # Close shared REST session cleanly.
            await runner.provider.close()

    try:
        asyncio.run(_run())
        return 0
    except KeyboardInterrupt:
        return 0
    except Exception as e:
        logging.getLogger("main").exception("fatal err=%s", e)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
