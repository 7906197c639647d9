from __future__ import annotations

import argparse
import asyncio
import json
import logging
import os
from datetime import date
from pathlib import Path
from typing import List, Optional

from dotenv import load_dotenv

from .billing import CreditProjection
from .cache import LocalCache
from .config import AppConfig, load_config
from .errors import PortalError
from .events import AnalysisProgress, EventBus
from .logging_config import configure_logging
from .models import AnalysisOutcome
from .service import AutomationService


logger = logging.getLogger("medula_rx_check")


def _build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="medula_rx_check")
    p.add_argument(
        "--env-file",
        default=".env",
        help="Path to a dotenv file (default: .env). If missing, env vars must already be set.",
    )
    p.add_argument("--config", default="config.yaml", help="Optional YAML config (default: config.yaml)")

    def _browser_flags(sp: argparse.ArgumentParser) -> None:
        sp.add_argument("--headful", action="store_true", help="Show the browser window with devtools (debug)")
        sp.add_argument("--slowmo-ms", type=int, default=0, help="Playwright slow motion in milliseconds (debug).")

    sub = p.add_subparsers(dest="cmd", required=True)

    login = sub.add_parser("login", help="Log into the Medula portal (solves the CAPTCHA via the solver service)")
    _browser_flags(login)

    fetch = sub.add_parser("fetch", help="Fetch a prescription (cache-first) and print it as JSON")
    fetch.add_argument("recete_no", help="Prescription number (reçete no)")
    fetch.add_argument("--force", action="store_true", help="Ignore the cache and scrape the portal again")
    _browser_flags(fetch)

    analyze = sub.add_parser("analyze", help="Run the report validity analysis for a prescription")
    analyze.add_argument("recete_no", help="Prescription number (reçete no)")
    analyze.add_argument(
        "--barkod",
        action="append",
        default=[],
        help="Only analyze this medicine barcode (repeatable). Default: every report-required medicine.",
    )
    analyze.add_argument("--force", action="store_true", help="Recompute even if a cached result exists")
    analyze.add_argument("--credits", type=int, default=None, help="Known credit balance (for the local projection)")
    _browser_flags(analyze)

    listing = sub.add_parser("list", help="List the records of the invoice periods (months) in a date range")
    listing.add_argument("--from", dest="start", type=date.fromisoformat, required=True, help="First day (YYYY-MM-DD)")
    listing.add_argument("--to", dest="end", type=date.fromisoformat, required=True, help="Last day (YYYY-MM-DD)")
    _browser_flags(listing)

    show = sub.add_parser("show", help="Print the cached prescription and analysis results")
    show.add_argument("recete_no", help="Prescription number (reçete no)")

    sub.add_parser("clear-cache", help="Delete every cached prescription and analysis result")

    return p


def _apply_browser_flags(cfg: AppConfig, args: argparse.Namespace) -> AppConfig:
    headful = bool(getattr(args, "headful", False))
    slowmo = int(getattr(args, "slowmo_ms", 0) or 0)
    if not headful and not slowmo:
        return cfg
    portal = cfg.portal.model_copy(
        update={
            "headless": cfg.portal.headless and not headful,
            "slow_mo_ms": slowmo or cfg.portal.slow_mo_ms,
        }
    )
    return cfg.model_copy(update={"portal": portal})


def _print_json(data: object) -> None:
    print(json.dumps(data, ensure_ascii=False, indent=2, default=str))


def _outcome_summary(outcome: AnalysisOutcome) -> dict:
    return {
        "receteNo": outcome.recete_no,
        "results": {k: v.model_dump(mode="json", by_alias=True) for k, v in outcome.results.items()},
        "fromCache": outcome.from_cache,
        "computed": outcome.computed,
        "failed": outcome.failed,
        "errors": outcome.errors,
        "skipped": outcome.skipped,
        "nothingToAnalyze": outcome.nothing_to_analyze,
    }


def _cmd_login(cfg: AppConfig) -> int:
    with AutomationService(cfg) as svc:
        env = svc.login()
    if not env.success:
        logger.error("Login failed (%s): %s", env.code, env.error)
        return 1
    logger.info("Login OK (%s)", env.data)
    return 0


def _cmd_list(cfg: AppConfig, start: date, end: date) -> int:
    with AutomationService(cfg) as svc:
        env = svc.list_records(start, end)
    if not env.success:
        logger.error("Listing failed (%s): %s", env.code, env.error)
        return 1
    _print_json(env.data)
    return 0


def _cmd_fetch(cfg: AppConfig, recete_no: str, *, force: bool) -> int:
    with AutomationService(cfg) as svc:
        env = svc.search_record(recete_no, force=force)
    if not env.success:
        logger.error("Fetch failed (%s): %s", env.code, env.error)
        return 1
    _print_json(env.data)
    return 0


async def _run_analysis(svc: AutomationService, recete_no: str, codes: list[str], *, force: bool) -> AnalysisOutcome:
    orchestrator = svc.analysis()
    try:
        return await orchestrator.analyze(recete_no, codes, force=force)
    finally:
        aclose = getattr(orchestrator.scorer, "aclose", None)
        if aclose is not None:
            await aclose()


def _cmd_analyze(cfg: AppConfig, args: argparse.Namespace) -> int:
    bus = EventBus()
    credits = CreditProjection(bus, balance=args.credits)
    bus.subscribe(
        AnalysisProgress,
        lambda e: logger.info(
            "Analysis %d/%d barkod=%s %s", e.done, e.total, e.barkod, "ok" if e.ok else f"failed: {e.error}"
        ),
    )

    # The browser is started only if the record has to be fetched from the portal.
    svc = AutomationService(cfg, events=bus)
    try:
        outcome = asyncio.run(_run_analysis(svc, args.recete_no, list(args.barkod), force=bool(args.force)))
    finally:
        svc.close()

    _print_json(_outcome_summary(outcome))
    if credits.balance is not None:
        logger.info("Credits remaining (local projection): %s", credits.balance)

    if outcome.nothing_to_analyze:
        logger.info("No report-required medicines to analyze.")
        return 0
    try:
        outcome.raise_for_total_failure()
    except PortalError as e:
        logger.error("%s", e)
        return 1
    if outcome.failed:
        logger.warning("Partial analysis: failed for %s", ", ".join(outcome.failed))
        return 2
    return 0


def _cmd_show(cfg: AppConfig, recete_no: str) -> int:
    cache = LocalCache(cfg.cache.db_path)
    try:
        cached = cache.get_record(recete_no)
        if cached is None:
            logger.error("Recete %s is not cached.", recete_no)
            return 1
        analyses = cache.get_analyses([recete_no]).get(recete_no, {})
    finally:
        cache.close()

    _print_json(
        {
            "cachedAt": cached.cached_at.isoformat(),
            "recete": cached.record.to_wire(),
            "analyses": {
                code: {"cachedAt": a.cached_at.isoformat(), **a.result.model_dump(mode="json", by_alias=True)}
                for code, a in analyses.items()
            },
        }
    )
    return 0


def _cmd_clear_cache(cfg: AppConfig) -> int:
    cache = LocalCache(cfg.cache.db_path)
    try:
        records, analyses = cache.counts()
        cache.clear()
    finally:
        cache.close()
    logger.info("Cache cleared (%d record(s), %d analysis result(s)).", records, analyses)
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    args = _build_parser().parse_args(argv)

    env_path = Path(args.env_file)
    if env_path.exists():
        load_dotenv(env_path)

    # Default logging: can be overridden once config is loaded.
    configure_logging(level=os.getenv("LOG_LEVEL", "INFO"))

    cfg = _apply_browser_flags(load_config(args.config), args)
    configure_logging(
        level=cfg.logging.level,
        file_path=cfg.logging.file_path,
        secrets=(cfg.portal.password, cfg.scoring.token),
    )

    try:
        if args.cmd == "login":
            return _cmd_login(cfg)
        if args.cmd == "fetch":
            return _cmd_fetch(cfg, args.recete_no, force=bool(args.force))
        if args.cmd == "list":
            return _cmd_list(cfg, args.start, args.end)
        if args.cmd == "analyze":
            return _cmd_analyze(cfg, args)
        if args.cmd == "show":
            return _cmd_show(cfg, args.recete_no)
        if args.cmd == "clear-cache":
            return _cmd_clear_cache(cfg)
    except (PortalError, ValueError) as e:
        logger.error("%s failed: %s", args.cmd, e)
        return 1

    raise SystemExit(f"Unknown command: {args.cmd}")


if __name__ == "__main__":
    raise SystemExit(main())
