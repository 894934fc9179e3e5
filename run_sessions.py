from __future__ import annotations

import argparse
import asyncio
import os
import sys
from pathlib import Path
from typing import List, Optional

from dotenv import load_dotenv

from core.utils import write_json
from ingestion.http_source import UrlListSource
from pipelines.session_pipeline import PipelineError, SessionPipeline, SessionPipelineConfig
from storage.catalog import SessionCatalog

load_dotenv()

DEFAULT_DB_PATH = Path(os.getenv("SESSIONS_DB_PATH", "sessions.db"))


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Collect pages into topical sessions and search them.")
    parser.add_argument("--db", default=str(DEFAULT_DB_PATH), help="SQLite catalog path (default: %(default)s).")
    sub = parser.add_subparsers(dest="command", required=True)

    collect = sub.add_parser("collect", help="Fetch URLs, classify them and update the catalog.")
    collect.add_argument("urls_file", help="Text file with one URL per line ('#' starts a comment).")
    collect.add_argument("--exclude", action="append", default=[], help="Add a domain to the exclusion list first.")
    collect.add_argument("--concurrency", type=int, default=8, help="Parallel fetches (default: %(default)s).")
    collect.add_argument("--budget", type=int, default=200_000, help="Classification request budget in tokens (default: %(default)s).")
    collect.add_argument("--classify-model", default="gpt-5.1", help="Model used for classification (default: %(default)s).")
    collect.add_argument("--lite-model", default="gpt-5-mini", help="Model used for pre-summaries (default: %(default)s).")
    collect.add_argument("--raw-response-dir", default=None, help="Directory for unparseable model replies.")
    collect.add_argument("--report", default=None, help="Write the run report as JSON to this path.")

    search = sub.add_parser("search", help="Search stored sessions.")
    search.add_argument("query", help="Free-text query.")
    search.add_argument("--top-k", type=int, default=5, help="Number of results (default: %(default)s).")
    search.add_argument("--search-model", default="gpt-5-mini", help="Model used for ranking (default: %(default)s).")

    exclude = sub.add_parser("exclude", help="Manage the domain exclusion list.")
    exclude.add_argument("action", choices=["add", "remove", "list"])
    exclude.add_argument("domains", nargs="*", help="Domains or URLs.")
    return parser.parse_args(argv)


def read_urls(path: Path) -> List[str]:
    urls: List[str] = []
    for line in path.read_text(encoding="utf-8").splitlines():
        line = line.split("#", 1)[0].strip()
        if line:
            urls.append(line)
    return urls


async def _collect(args: argparse.Namespace, catalog: SessionCatalog) -> int:
    await catalog.initialize()
    for rule in args.exclude:
        print(f"[collect] excluding {await catalog.add_exclusion(rule)}")
    config = SessionPipelineConfig(
        catalog_path=catalog.path,
        collect_concurrency=args.concurrency,
        classify_budget=args.budget,
        classify_model=args.classify_model,
        lite_model=args.lite_model,
        raw_response_dir=Path(args.raw_response_dir).expanduser() if args.raw_response_dir else None,
    )
    source = UrlListSource(read_urls(Path(args.urls_file).expanduser()))
    try:
        report = await SessionPipeline(config, source, catalog).run()
    except PipelineError:
        return 1
    if args.report:
        write_json(Path(args.report).expanduser(), report.to_dict())
    return 0


async def _search(args: argparse.Namespace, catalog: SessionCatalog) -> int:
    config = SessionPipelineConfig(catalog_path=catalog.path, search_model=args.search_model, search_top_k=args.top_k)
    await SessionPipeline(config, UrlListSource([]), catalog).search(args.query)
    return 0


async def _exclude(args: argparse.Namespace, catalog: SessionCatalog) -> int:
    await catalog.initialize()
    if args.action == "list":
        for domain in await catalog.load_exclusions():
            print(domain)
        return 0
    for rule in args.domains:
        try:
            if args.action == "add":
                print(f"added {await catalog.add_exclusion(rule)}")
            elif await catalog.remove_exclusion(rule):
                print(f"removed {rule}")
            else:
                print(f"not excluded: {rule}")
        except ValueError as exc:
            print(str(exc), file=sys.stderr)
            return 2
    return 0


def main(argv: Optional[List[str]] = None) -> None:
    args = parse_args(argv)
    catalog = SessionCatalog(Path(args.db).expanduser())
    handlers = {"collect": _collect, "search": _search, "exclude": _exclude}
    sys.exit(asyncio.run(handlers[args.command](args, catalog)))


if __name__ == "__main__":
    main()
