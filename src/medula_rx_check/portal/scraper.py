from __future__ import annotations

import logging
import re
import time
from typing import Any, Callable, Optional

from ..errors import DriverTimeoutError, PageActionError, ScrapeIncompleteError
from ..models import (
    ActiveIngredient,
    IcdCode,
    MedicineLine,
    MedicineReport,
    PageKind,
    PrescriptionRecord,
    ReportDiagnosis,
    ReportDoctor,
    ReportNote,
)
from ..util.dates import parse_portal_date_or_none
from ..util.text import normalize_text
from . import page_scripts
from .detector import detect
from .driver import PageDriver
from .selectors import PortalSelectors


logger = logging.getLogger(__name__)

_INT_RE = re.compile(r"\d+")


def _to_int(value: Any) -> int:
    m = _INT_RE.search(str(value or ""))
    return int(m.group(0)) if m else 0


def _join(left: str, right: str, sep: str) -> str:
    left, right = normalize_text(left), normalize_text(right)
    if left and right:
        return f"{left}{sep}{right}"
    return ""


def parse_medicine_row(row: dict) -> MedicineLine:
    """
    Turn one raw detail-table row (as returned by the SCRAPE_DETAIL script) into a `MedicineLine`.

    - doz: "<doz> x <doz2>" when both parts are present
    - periyot: "<count> <unit>" when both parts are present
    - a non-empty report cell marks the line as report-required
    """
    report_ref = normalize_text(row.get("rapor"))
    return MedicineLine(
        barkod=normalize_text(row.get("barkod")),
        name=normalize_text(row.get("ad")),
        quantity=_to_int(row.get("adet")),
        dose=_join(row.get("doz1") or "", row.get("doz2") or "", " x "),
        period=_join(row.get("periyotSayi") or "", row.get("periyotTipi") or "", " "),
        eligible_from=normalize_text(row.get("verilebilecegi")),
        is_report_required=bool(report_ref),
        report_ref=report_ref,
    )


def parse_report(raw: dict) -> MedicineReport:
    diagnoses = []
    for d in raw.get("teshisler") or []:
        diagnoses.append(
            ReportDiagnosis(
                group=normalize_text(d.get("grup")),
                start=parse_portal_date_or_none(d.get("baslangic")),
                end=parse_portal_date_or_none(d.get("bitis")),
                codes=[
                    IcdCode(code=normalize_text(k.get("icd10")), description=normalize_text(k.get("tanim")))
                    for k in d.get("kodlar") or []
                    if normalize_text(k.get("icd10"))
                ],
            )
        )
    return MedicineReport(
        report_no=normalize_text(raw.get("raporNo")),
        report_date=parse_portal_date_or_none(raw.get("raporTarihi")),
        protocol_no=normalize_text(raw.get("protokolNo")),
        issue_type=normalize_text(raw.get("duzenlemeTuru")),
        description=normalize_text(raw.get("aciklama")),
        record_type=normalize_text(raw.get("kayitSekli")),
        facility_code=normalize_text(raw.get("tesisKodu")),
        facility_name=normalize_text(raw.get("tesisUnvan")),
        tracking_no=normalize_text(raw.get("raporTakipNo")),
        diagnoses=diagnoses,
        doctors=[
            ReportDoctor(department=normalize_text(d.get("brans")))
            for d in raw.get("doktorlar") or []
            if normalize_text(d.get("brans"))
        ],
        active_ingredients=[
            ActiveIngredient(
                code=normalize_text(a.get("kod")),
                name=normalize_text(a.get("ad")),
                form=normalize_text(a.get("form")),
                treatment_schema=normalize_text(a.get("tedaviSema")),
                quantity=normalize_text(a.get("adet")),
                content=normalize_text(a.get("icerik")),
                added_on=parse_portal_date_or_none(a.get("eklenmeTarihi")),
            )
            for a in raw.get("etkinMaddeler") or []
        ],
        notes=[
            ReportNote(description=normalize_text(n.get("aciklama")), added_at=normalize_text(n.get("eklenmeZamani")))
            for n in raw.get("aciklamalar") or []
        ],
    )


class PrescriptionScraper:
    """
    Reads a prescription detail page (and the nested report view of each report-required line).
    """

    def __init__(
        self,
        *,
        selectors: Optional[PortalSelectors] = None,
        element_timeout_ms: int = 10_000,
        navigation_timeout_ms: int = 15_000,
        report_retries: int = 2,
        report_retry_delay_s: float = 0.5,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.selectors = selectors or PortalSelectors()
        self.element_timeout_ms = int(element_timeout_ms)
        self.navigation_timeout_ms = int(navigation_timeout_ms)
        self.report_retries = int(report_retries)
        self.report_retry_delay_s = float(report_retry_delay_s)
        self._sleep = sleep

    def scrape_detail(self, driver: PageDriver, *, with_reports: bool = True) -> PrescriptionRecord:
        raw = driver.evaluate(page_scripts.SCRAPE_DETAIL, self.selectors.detail_args())
        if not isinstance(raw, dict) or not normalize_text(raw.get("receteNo")):
            driver.save_debug("detail_scrape_empty")
            raise ScrapeIncompleteError("Prescription detail table not found on the current page")

        recete_no = normalize_text(raw.get("receteNo"))
        rows: list[dict] = [r for r in raw.get("rows") or [] if isinstance(r, dict)]
        medicines: list[MedicineLine] = []
        for row in rows:
            line = parse_medicine_row(row)
            if not line.barkod:
                logger.debug("Skipping detail row without barkod (index=%s).", row.get("index"))
                continue
            if with_reports and line.is_report_required:
                report = self.scrape_report(driver, row_index=int(row.get("index", 0)), recete_no=recete_no)
                line = line.model_copy(update={"report": report})
            medicines.append(line)

        record = PrescriptionRecord(
            recete_no=recete_no,
            recete_date=parse_portal_date_or_none(raw.get("receteTarihi")),
            last_transaction_date=parse_portal_date_or_none(raw.get("sonIslemTarihi")),
            facility_code=normalize_text(raw.get("tesisKodu")),
            doctor_department=normalize_text(raw.get("doktorBrans")),
            medicines=medicines,
        )
        logger.info(
            "Scraped recete %s: %d medicine line(s), %d report-required.",
            record.recete_no,
            len(record.medicines),
            len(record.eligible_lines()),
        )
        return record

    def scrape_report(self, driver: PageDriver, *, row_index: int, recete_no: str) -> MedicineReport:
        """
        Open the report view for one detail row, read it, and go back to the detail page.

        Retried `report_retries` times; before each retry the page is re-detected so we do not
        assume the previous attempt left us on the detail page.
        """
        attempts = self.report_retries + 1
        last_exc: Optional[Exception] = None
        for attempt in range(1, attempts + 1):
            try:
                return self._scrape_report_once(driver, row_index=row_index)
            except (DriverTimeoutError, PageActionError, ScrapeIncompleteError) as e:
                last_exc = e
                logger.warning(
                    "Report view for recete %s row %d failed (attempt %d/%d). (%s)",
                    recete_no,
                    row_index,
                    attempt,
                    attempts,
                    e,
                )
                if attempt >= attempts:
                    break
                self._sleep(self.report_retry_delay_s)
                self._back_to_detail(driver, recete_no=recete_no)

        driver.save_debug(f"report_incomplete_{recete_no}_{row_index}")
        raise ScrapeIncompleteError(
            f"Could not read report for recete {recete_no} row {row_index} after {attempts} attempts"
        ) from last_exc

    def _scrape_report_once(self, driver: PageDriver, *, row_index: int) -> MedicineReport:
        sel = self.selectors
        selected = driver.evaluate(page_scripts.SELECT_ROW, {"prefix": sel.detail_row_id_prefix, "index": row_index})
        if not selected:
            raise ScrapeIncompleteError(f"Could not select detail row {row_index}")

        driver.click_and_settle(sel.report_open_button, timeout_ms=self.navigation_timeout_ms)
        driver.wait_for_selector(sel.report_header, timeout_ms=self.navigation_timeout_ms)

        raw = driver.evaluate(page_scripts.SCRAPE_REPORT, sel.report_args())
        if not isinstance(raw, dict):
            raise ScrapeIncompleteError("Report view did not render")
        report = parse_report(raw)

        driver.click_and_settle(sel.back_button, timeout_ms=self.navigation_timeout_ms)
        driver.wait_for_selector(sel.detail_table, timeout_ms=self.element_timeout_ms)
        return report

    def _back_to_detail(self, driver: PageDriver, *, recete_no: str) -> None:
        state = detect(driver, self.selectors)
        if state.kind == PageKind.PRESCRIPTION_DETAIL and state.recete_no == recete_no:
            return
        try:
            driver.click_and_settle(self.selectors.back_button, timeout_ms=self.navigation_timeout_ms)
        except (DriverTimeoutError, PageActionError):
            logger.debug("No back button while recovering to the detail page.", exc_info=True)
