"""Command-line entry point for discovery, crawling and exports."""

from __future__ import annotations

import asyncio
from argparse import ArgumentParser, Namespace
from pathlib import Path
from typing import Optional

from pydantic import BaseModel

from leadscope.action_log import configure_logging
from leadscope.config import export_settings
from leadscope.models import GridPoint, Plan
from leadscope.permissions import PermissionsResolver, StaticPermissionsResolver
from leadscope.pipeline import LeadScopePipeline


def _permissions(args: Namespace) -> Optional[PermissionsResolver]:
    """An explicit ``--plan`` overrides the stored subscription."""

    if args.plan is None and not args.internal:
        return None
    return StaticPermissionsResolver(Plan(args.plan or "demo"), is_internal_user=args.internal)


def _print(result: BaseModel) -> None:
    print(result.model_dump_json(indent=2))


def build_parser() -> ArgumentParser:
    parser = ArgumentParser(description="Discover local businesses, crawl their websites and export leads")
    parser.add_argument("--user", required=True, help="User UUID the actions run on behalf of")
    parser.add_argument("--plan", choices=[p.value for p in Plan], default=None, help="Override the stored plan")
    parser.add_argument("--internal", action="store_true", help="Treat the user as internal (no limits)")
    sub = parser.add_subparsers(dest="command", required=True)

    discover = sub.add_parser("discover", help="Find businesses for an industry in a city")
    discover.add_argument("industry")
    discover.add_argument("city")
    discover.add_argument("--dataset", default=None, help="Add to an existing dataset")
    discover.add_argument("--lat", type=float, default=None)
    discover.add_argument("--lng", type=float, default=None)
    discover.add_argument("--radius-km", type=float, default=None)

    crawl = sub.add_parser("crawl", help="Crawl one business website")
    crawl.add_argument("dataset")
    crawl.add_argument("business")
    crawl.add_argument("url")

    crawl_all = sub.add_parser("crawl-dataset", help="Crawl every website in a dataset")
    crawl_all.add_argument("dataset")

    refresh = sub.add_parser("refresh", help="Re-crawl a dataset (paid plans)")
    refresh.add_argument("dataset")

    export = sub.add_parser("export", help="Export a dataset as CSV or XLSX")
    export.add_argument("dataset")
    export.add_argument("--format", choices=["csv", "xlsx"], default="csv")
    export.add_argument("--output-dir", default=export_settings.output_dir)
    return parser


async def run(args: Namespace) -> None:
    async with LeadScopePipeline(permissions=_permissions(args)) as pipeline:
        if args.command == "discover":
            coordinates = None
            if args.lat is not None and args.lng is not None:
                coordinates = GridPoint(lat=args.lat, lng=args.lng)
            _print(
                await pipeline.discover_businesses(
                    args.industry,
                    args.city,
                    args.user,
                    args.dataset,
                    coordinates=coordinates,
                    radius_km=args.radius_km,
                )
            )
        elif args.command == "crawl":
            _print(await pipeline.crawl_worker(args.business, args.dataset, args.url, args.user))
        elif args.command == "crawl-dataset":
            _print(await pipeline.crawl_dataset(args.dataset, args.user))
        elif args.command == "refresh":
            _print(await pipeline.refresh_dataset(args.dataset, args.user))
        elif args.command == "export":
            result = await pipeline.export_dataset(args.dataset, args.user, args.format)
            if result.success and result.file is not None:
                output_path = Path(args.output_dir) / result.filename
                output_path.parent.mkdir(parents=True, exist_ok=True)
                output_path.write_bytes(result.file)
                result.metadata["path"] = str(output_path)
            _print(result)


def main() -> None:
    parser = build_parser()
    args: Namespace = parser.parse_args()
    configure_logging()
    asyncio.run(run(args))


if __name__ == "__main__":
    main()
