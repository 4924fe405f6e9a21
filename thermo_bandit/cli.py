"""
Command line interface for the recommendation engine.

Usage:
    thermo-bandit serve --config config.yaml --port 8000
    thermo-bandit stats [--entity unit-1]
    thermo-bandit reset [--entity unit-1]
    thermo-bandit recommend unit-1 --outdoor 32 --target 24
"""
from __future__ import annotations

import argparse
import json
import logging
import sys
from typing import List, Optional

from .config import EngineConfig
from .engine import TemperatureRecommendationEngine, build_engine
from .logging_config import configure_logging
from .types import EfficiencyContext

logger = logging.getLogger(__name__)


def _load_engine(args: argparse.Namespace) -> TemperatureRecommendationEngine:
    config = EngineConfig.load(args.config)
    configure_logging(level=args.log_level or config.log_level, log_dir=config.log_dir)
    engine = build_engine(config)
    engine.initialize()
    return engine


def _print_json(data) -> None:
    print(json.dumps(data, indent=2, default=str))


def cmd_serve(args: argparse.Namespace) -> int:
    import uvicorn

    from .api import create_app

    engine = _load_engine(args)
    app = create_app(engine)

    print(f"\nThermo Bandit API starting on http://{args.host}:{args.port}")
    print(f"API docs: http://{args.host}:{args.port}/docs\n")
    try:
        uvicorn.run(app, host=args.host, port=args.port)
    finally:
        engine.shutdown()
    return 0


def cmd_stats(args: argparse.Namespace) -> int:
    engine = _load_engine(args)
    try:
        stats = engine.get_statistics(args.entity)
    finally:
        engine.persistence.close()

    if stats is None:
        print(f"No learning data for {args.entity}", file=sys.stderr)
        return 1
    _print_json(stats)
    return 0


def cmd_reset(args: argparse.Namespace) -> int:
    engine = _load_engine(args)
    try:
        engine.reset_learning_data(args.entity)
    finally:
        engine.shutdown()
    print(f"Learning data reset for {args.entity or 'all entities'}")
    return 0


def cmd_recommend(args: argparse.Namespace) -> int:
    engine = _load_engine(args)
    efficiency = None
    if args.efficiency or args.power is not None:
        efficiency = EfficiencyContext(power_watts=args.power)
    try:
        recommendation = engine.get_recommendation(
            args.entity_id,
            args.outdoor,
            args.target,
            efficiency,
        )
    finally:
        engine.shutdown()
    _print_json(recommendation.to_dict())
    return 0


def build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(
        prog="thermo-bandit",
        description="Thermo Bandit - thermostat recommendations learned from user feedback",
    )
    ap.add_argument("--config", default=None, help="Path to YAML or JSON engine config")
    ap.add_argument("--log-level", default=None, help="Override the configured log level")

    sub = ap.add_subparsers(dest="command", required=True)

    serve = sub.add_parser("serve", help="Run the REST API")
    serve.add_argument("--host", default="127.0.0.1", help="Host to bind to")
    serve.add_argument("--port", type=int, default=8000, help="Port to bind to")
    serve.set_defaults(func=cmd_serve)

    stats = sub.add_parser("stats", help="Print learning statistics")
    stats.add_argument("--entity", default=None, help="Entity id (aggregate when omitted)")
    stats.set_defaults(func=cmd_stats)

    reset = sub.add_parser("reset", help="Reset persisted learning data")
    reset.add_argument("--entity", default=None, help="Entity id (all when omitted)")
    reset.set_defaults(func=cmd_reset)

    recommend = sub.add_parser("recommend", help="Print one recommendation")
    recommend.add_argument("entity_id", help="Entity id")
    recommend.add_argument("--outdoor", type=float, required=True, help="Outdoor temperature")
    recommend.add_argument("--target", type=float, required=True, help="Current setpoint")
    recommend.add_argument("--efficiency", action="store_true", help="Estimate energy savings")
    recommend.add_argument("--power", type=float, default=None, help="Current power draw (watts)")
    recommend.set_defaults(func=cmd_recommend)

    return ap


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
