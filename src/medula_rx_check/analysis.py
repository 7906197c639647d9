from __future__ import annotations

import asyncio
import logging
import sqlite3
from typing import Callable, Iterable, Optional, Protocol

from .cache import LocalCache
from .errors import PortalError, RecordNotFoundError
from .events import AnalysisCompleted, AnalysisProgress, EventBus, UnitConsumed
from .models import AnalysisOutcome, AnalysisResult, PrescriptionRecord
from .util.text import normalize_text


logger = logging.getLogger(__name__)


class Scorer(Protocol):
    async def score(self, barkod: str, record: PrescriptionRecord) -> AnalysisResult: ...


RecordFetcher = Callable[[str], PrescriptionRecord]


class AnalysisOrchestrator:
    """
    Runs the report validity analysis for the report-required medicines of one prescription.

    - cached results are reused unless `force=True`
    - scoring calls run concurrently, capped by `concurrency`
    - each success is persisted immediately; failures are collected, never raised per item
    """

    def __init__(
        self,
        *,
        cache: LocalCache,
        scorer: Scorer,
        events: Optional[EventBus] = None,
        concurrency: int = 3,
        fetcher: Optional[RecordFetcher] = None,
    ) -> None:
        if concurrency < 1:
            raise ValueError("concurrency must be >= 1")
        self.cache = cache
        self.scorer = scorer
        self.events = events or EventBus()
        self.concurrency = int(concurrency)
        self.fetcher = fetcher

    async def _load_record(self, recete_no: str) -> PrescriptionRecord:
        cached = self.cache.get_record(recete_no)
        if cached is not None:
            return cached.record
        if self.fetcher is None:
            raise RecordNotFoundError(f"Recete {recete_no} is not cached; fetch it first")
        # The fetcher drives the browser worker and blocks; keep the event loop free.
        return await asyncio.to_thread(self.fetcher, recete_no)

    async def analyze(
        self,
        recete_no: str,
        medicine_codes: Iterable[str] = (),
        *,
        force: bool = False,
    ) -> AnalysisOutcome:
        recete_no = normalize_text(recete_no)
        if not recete_no:
            raise ValueError("recete_no is required")

        record = await self._load_record(recete_no)
        outcome = AnalysisOutcome(recete_no=recete_no)

        eligible = [m.barkod for m in record.eligible_lines()]
        requested = [normalize_text(c) for c in medicine_codes if normalize_text(c)]
        if requested:
            eligible_set = set(eligible)
            targets = [c for c in dict.fromkeys(requested) if c in eligible_set]
            outcome.skipped = [c for c in dict.fromkeys(requested) if c not in eligible_set]
            if outcome.skipped:
                logger.info("Recete %s: skipping codes without a report: %s", recete_no, ", ".join(outcome.skipped))
        else:
            targets = eligible

        if not targets:
            outcome.nothing_to_analyze = True
            logger.info("Recete %s: nothing to analyze.", recete_no)
            self._publish_completed(outcome)
            return outcome

        to_compute: list[str] = list(targets)
        if not force:
            cached = self.cache.get_analyses([recete_no]).get(recete_no, {})
            to_compute = []
            for code in targets:
                hit = cached.get(code)
                if hit is not None:
                    outcome.results[code] = hit.result
                    outcome.from_cache.append(code)
                else:
                    to_compute.append(code)

        logger.info(
            "Recete %s: %d target(s), %d cached, %d to compute (force=%s).",
            recete_no,
            len(targets),
            len(outcome.from_cache),
            len(to_compute),
            force,
        )
        if to_compute:
            await self._compute(record, to_compute, outcome)

        self._publish_completed(outcome)
        return outcome

    async def _compute(self, record: PrescriptionRecord, codes: list[str], outcome: AnalysisOutcome) -> None:
        sem = asyncio.Semaphore(self.concurrency)
        total = len(codes)
        done = 0

        async def _one(code: str) -> None:
            nonlocal done
            async with sem:
                try:
                    result = await self.scorer.score(code, record)
                except Exception as e:
                    error: Optional[str] = str(e) or type(e).__name__
                    if isinstance(e, PortalError):
                        logger.warning("Analysis failed for recete %s barkod %s: %s", record.recete_no, code, e)
                    else:
                        logger.warning(
                            "Analysis failed unexpectedly for recete %s barkod %s.", record.recete_no, code, exc_info=True
                        )
                    outcome.failed.append(code)
                    outcome.errors[code] = error
                else:
                    error = None
                    self.events.publish(UnitConsumed(recete_no=record.recete_no, barkod=code))
                    outcome.results[code] = result
                    outcome.computed.append(code)
                    try:
                        self.cache.put_analysis(record.recete_no, code, result)
                    except sqlite3.Error:
                        logger.warning(
                            "Could not cache analysis for recete %s barkod %s.", record.recete_no, code, exc_info=True
                        )
                done += 1
                self.events.publish(
                    AnalysisProgress(
                        recete_no=record.recete_no,
                        barkod=code,
                        done=done,
                        total=total,
                        ok=error is None,
                        error=error,
                    )
                )

        await asyncio.gather(*(_one(code) for code in codes))

    def _publish_completed(self, outcome: AnalysisOutcome) -> None:
        self.events.publish(
            AnalysisCompleted(
                recete_no=outcome.recete_no,
                computed=list(outcome.computed),
                failed=list(outcome.failed),
                from_cache=list(outcome.from_cache),
            )
        )
