"""Print one telemetry snapshot (or a single section) as JSON."""

from __future__ import annotations

import argparse
import json
import logging
import sys
from dataclasses import replace

from monitrix.core.config import APP_NAME, EngineConfig
from monitrix.core.errors import TelemetryError
from monitrix.engine import SECTIONS, TelemetryEngine, snapshot_to_dict


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="monitrix", description=f"{APP_NAME} host telemetry snapshot")
    parser.add_argument("--section", choices=SECTIONS, help="collect a single section instead of the full snapshot")
    parser.add_argument("--timeout", type=float, help="timeout in seconds for external tools")
    parser.add_argument("--indent", type=int, default=2)
    parser.add_argument("-v", "--verbose", action="store_true", help="log debug output to stderr")
    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )

    config = EngineConfig.from_env()
    if args.timeout is not None:
        config = replace(config, command_timeout=args.timeout)

    with TelemetryEngine(config) as engine:
        try:
            if args.section:
                payload = engine.collect_section(args.section)
            else:
                payload = engine.collect_snapshot()
        except TelemetryError as exc:
            print(f"error: {exc}", file=sys.stderr)
            return 1

    print(json.dumps(snapshot_to_dict(payload), indent=args.indent or None, sort_keys=True))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
