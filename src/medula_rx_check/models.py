from __future__ import annotations

import enum
from dataclasses import dataclass
from datetime import date, datetime, timezone
from typing import Callable, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field

from .errors import AnalysisFailedError


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class PortalCredentials:
    username: str
    password: str


# Named interface to whatever secure storage holds the pharmacy login.
CredentialsProvider = Callable[[], Optional[PortalCredentials]]


class SessionStatus(str, enum.Enum):
    IDLE = "idle"
    LOGGING_IN = "logging_in"
    LOGGED_IN = "logged_in"
    ERROR = "error"


@dataclass
class Session:
    """
    Portal authentication state. There is exactly one per automation process.
    """

    status: SessionStatus = SessionStatus.IDLE
    attempt_count: int = 0
    last_error: Optional[str] = None

    def reset(self) -> None:
        self.status = SessionStatus.IDLE
        self.attempt_count = 0
        self.last_error = None


class PageKind(str, enum.Enum):
    LOGIN_FORM = "login_form"
    PRESCRIPTION_DETAIL = "prescription_detail"
    OTHER = "other"


@dataclass(frozen=True)
class PageState:
    kind: PageKind
    recete_no: Optional[str] = None

    @property
    def is_detail(self) -> bool:
        return self.kind == PageKind.PRESCRIPTION_DETAIL


class _PortalModel(BaseModel):
    # Accept both python names and the portal's own vocabulary; dump with the latter.
    model_config = ConfigDict(populate_by_name=True, frozen=True)


class IcdCode(_PortalModel):
    code: str = Field(alias="icd10")
    description: str = Field(default="", alias="tanim")


class ReportDiagnosis(_PortalModel):
    group: str = Field(default="", alias="grup")
    start: Optional[date] = Field(default=None, alias="baslangic")
    end: Optional[date] = Field(default=None, alias="bitis")
    codes: list[IcdCode] = Field(default_factory=list, alias="kodlar")


class ReportDoctor(_PortalModel):
    # Only the department is kept; names and identity numbers are never scraped.
    department: str = Field(default="", alias="brans")


class ActiveIngredient(_PortalModel):
    code: str = Field(default="", alias="kod")
    name: str = Field(default="", alias="ad")
    form: str = Field(default="", alias="form")
    treatment_schema: str = Field(default="", alias="tedaviSema")
    quantity: str = Field(default="", alias="adet")
    content: str = Field(default="", alias="icerik")
    added_on: Optional[date] = Field(default=None, alias="eklenmeTarihi")


class ReportNote(_PortalModel):
    description: str = Field(default="", alias="aciklama")
    added_at: str = Field(default="", alias="eklenmeZamani")


class MedicineReport(_PortalModel):
    report_no: str = Field(default="", alias="raporNo")
    report_date: Optional[date] = Field(default=None, alias="raporTarihi")
    protocol_no: str = Field(default="", alias="protokolNo")
    issue_type: str = Field(default="", alias="duzenlemeTuru")
    description: str = Field(default="", alias="aciklama")
    record_type: str = Field(default="", alias="kayitSekli")
    facility_code: str = Field(default="", alias="tesisKodu")
    facility_name: str = Field(default="", alias="tesisUnvan")
    tracking_no: str = Field(default="", alias="raporTakipNo")
    diagnoses: list[ReportDiagnosis] = Field(default_factory=list, alias="teshisler")
    doctors: list[ReportDoctor] = Field(default_factory=list, alias="doktorlar")
    active_ingredients: list[ActiveIngredient] = Field(default_factory=list, alias="etkinMaddeler")
    notes: list[ReportNote] = Field(default_factory=list, alias="aciklamalar")


class MedicineLine(_PortalModel):
    barkod: str
    name: str = Field(default="", alias="ad")
    quantity: int = Field(default=0, ge=0, alias="adet")
    dose: str = Field(default="", alias="doz")
    period: str = Field(default="", alias="periyot")
    eligible_from: str = Field(default="", alias="verilebilecegiTarih")
    is_report_required: bool = Field(default=False, alias="raporluMu")
    report_ref: str = Field(default="", alias="rapor")
    report: Optional[MedicineReport] = Field(default=None, alias="raporDetay")


class PrescriptionRecord(_PortalModel):
    recete_no: str = Field(alias="receteNo", min_length=1)
    recete_date: Optional[date] = Field(default=None, alias="receteTarihi")
    last_transaction_date: Optional[date] = Field(default=None, alias="sonIslemTarihi")
    facility_code: str = Field(default="", alias="tesisKodu")
    doctor_department: str = Field(default="", alias="doktorBrans")
    medicines: list[MedicineLine] = Field(default_factory=list, alias="ilaclar")

    def eligible_lines(self) -> list[MedicineLine]:
        return [m for m in self.medicines if m.is_report_required]

    def to_wire(self) -> dict:
        return self.model_dump(mode="json", by_alias=True)

    @property
    def has_dates(self) -> bool:
        return self.recete_date is not None and self.last_transaction_date is not None

    def with_summary_dates(self, summary: "PrescriptionSummary") -> "PrescriptionRecord":
        """Fill dates the detail page does not show from a record-list row; scraped values win."""
        return self.model_copy(
            update={
                "recete_date": self.recete_date or summary.recete_date,
                "last_transaction_date": self.last_transaction_date or summary.last_transaction_date,
            }
        )


class PrescriptionSummary(_PortalModel):
    """One row of the record list for an invoice period. Patient names are not kept."""

    recete_no: str = Field(alias="receteNo", min_length=1)
    recete_date: Optional[date] = Field(default=None, alias="receteTarihi")
    last_transaction_date: Optional[date] = Field(default=None, alias="sonIslemTarihi")
    coverage: str = Field(default="", alias="kapsam")

    def to_wire(self) -> dict:
        return self.model_dump(mode="json", by_alias=True)


class AnalysisResult(_PortalModel):
    is_valid: bool = Field(validation_alias=AliasChoices("isValid", "is_valid"), serialization_alias="isValid")
    validity_score: float = Field(
        ge=0,
        le=100,
        validation_alias=AliasChoices("validityScore", "validity_score"),
        serialization_alias="validityScore",
    )
    evolution_details: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("reportEvolutionDetails", "evolutionDetails", "evolution_details"),
        serialization_alias="evolutionDetails",
    )
    processed_at: datetime = Field(
        default_factory=_utcnow,
        validation_alias=AliasChoices("processedAt", "processed_at"),
        serialization_alias="processedAt",
    )
    issuer_id: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("pharmacyId", "issuerId", "issuer_id"),
        serialization_alias="issuerId",
    )


class CachedRecord(BaseModel):
    record: PrescriptionRecord
    cached_at: datetime


class CachedAnalysis(BaseModel):
    recete_no: str
    barkod: str
    result: AnalysisResult
    cached_at: datetime


class AnalysisOutcome(BaseModel):
    """
    Result of one analysis batch. Partial failures are data, not exceptions.
    """

    recete_no: str
    results: dict[str, AnalysisResult] = Field(default_factory=dict)
    from_cache: list[str] = Field(default_factory=list)
    computed: list[str] = Field(default_factory=list)
    failed: list[str] = Field(default_factory=list)
    errors: dict[str, str] = Field(default_factory=dict)
    skipped: list[str] = Field(default_factory=list)
    nothing_to_analyze: bool = False

    @property
    def ok(self) -> bool:
        return not self.failed

    @property
    def partial(self) -> bool:
        return bool(self.failed) and bool(self.computed)

    def raise_for_total_failure(self) -> None:
        if self.failed and not self.computed:
            msgs = [f"{code}: {self.errors.get(code, 'unknown error')}" for code in self.failed]
            raise AnalysisFailedError(
                f"Analysis failed for every medicine of recete {self.recete_no}", errors=msgs
            )
