"""
Climate risk command-line interface

Commands:
  assess    - Assess a location by coordinates or address
  health    - Probe every configured source and print the health report

Examples:
  python -m climate_risk assess --lat 29.95 --lon -90.07
  python -m climate_risk assess --address "1600 Pennsylvania Ave NW, Washington, DC" --hazards flood heat
  python -m climate_risk health
"""
import argparse
import asyncio
import json
import sys
from typing import List, Optional

from dotenv import load_dotenv

from .config import get_settings
from .exceptions import ClimateDataError
from .logging_config import setup_logging
from .models import HazardType
from .service import ClimateRiskService


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="climate_risk", description="Climate risk assessment engine")
    subparsers = parser.add_subparsers(dest="command", required=True)

    assess = subparsers.add_parser("assess", help="Assess a location")
    target = assess.add_mutually_exclusive_group(required=True)
    target.add_argument("--address", help="Street address to geocode")
    target.add_argument("--lat", type=float, help="Latitude (requires --lon)")
    assess.add_argument("--lon", type=float, help="Longitude")
    assess.add_argument("--sources", nargs="+", help="Subset of configured sources")
    assess.add_argument("--hazards", nargs="+", choices=[h.value for h in HazardType], help="Hazard filter")
    assess.add_argument("--projections", action="store_true", help="Include climate projections")

    subparsers.add_parser("health", help="Probe sources and print health")
    return parser


async def cmd_assess(service: ClimateRiskService, args: argparse.Namespace) -> int:
    target = args.address if args.address else (args.lat, args.lon)
    options = {"sources": args.sources, "include_projections": args.projections, "hazard_filter": args.hazards}
    try:
        assessment = await service.assess(target, options)
    except ClimateDataError as e:
        print(json.dumps({"error": e.to_dict()}, indent=2))
        return 1
    print(assessment.model_dump_json(indent=2))
    return 0


async def cmd_health(service: ClimateRiskService, args: argparse.Namespace) -> int:
    report = await service.check_health()
    print(json.dumps(report, indent=2, default=str))
    return 0 if report["overall"] == "healthy" else 2


async def run(args: argparse.Namespace) -> int:
    settings = get_settings(HEALTH_CHECK_ENABLED=False)
    setup_logging(settings.LOG_LEVEL, use_json=settings.LOG_FORMAT == "json", service_name=settings.SERVICE_NAME)
    async with ClimateRiskService(settings) as service:
        if args.command == "assess":
            return await cmd_assess(service, args)
        return await cmd_health(service, args)


def main(argv: Optional[List[str]] = None) -> int:
    load_dotenv()
    parser = build_parser()
    args = parser.parse_args(argv)
    if args.command == "assess" and args.lat is not None and args.lon is None:
        parser.error("--lat requires --lon")
    return asyncio.run(run(args))


if __name__ == "__main__":
    sys.exit(main())
