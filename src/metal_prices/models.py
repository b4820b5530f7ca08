import math
from datetime import datetime, timezone
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


class AdapterKind(str, Enum):
    JSON = "json"
    CSV = "csv"
    HTML = "html"
    BROWSER = "browser"


class CanonicalUnit(str, Enum):
    USD_PER_KG = "USD/kg"
    USD_PER_TONNE = "USD/t"
    USD_PER_OUNCE = "USD/oz"

    @property
    def currency(self) -> str:
        return self.value.split("/")[0]

    @property
    def mass_hint(self) -> str:
        return "/" + self.value.split("/")[1]


class Provenance(str, Enum):
    """Non-source provenance tags. Source ids are used verbatim otherwise."""

    OVERRIDE = "override"
    PREVIOUS = "previous_commit"
    NONE = "none"


class AttemptOutcome(str, Enum):
    ACCEPTED = "accepted"
    TRANSPORT_FAILURE = "transport_failure"
    SHAPE_NOT_FOUND = "shape_not_found"
    NORMALIZATION_FAILURE = "normalization_failure"
    PLAUSIBILITY_REJECTED = "plausibility_rejected"
    ERROR = "error"
    CANCELLED = "cancelled"


class UnitAssumption(BaseModel):
    """
    Best-effort guess applied when a source gives no usable unit hint.

    Values above `threshold` are assumed to be quoted in `large_value_unit`,
    everything else in `assumed_unit_if_unknown` (the canonical unit when unset).
    Per-pound values above `cents_above` are taken to be cents per pound.

    Both thresholds compare values already converted into the canonical
    currency, so a TRY quote is judged by its USD equivalent.
    """

    model_config = ConfigDict(frozen=True)

    assumed_unit_if_unknown: str | None = None
    large_value_unit: str = "/t"
    threshold: float | None = None
    cents_above: float | None = Field(None, description="Per-lb values above this are US cents")

    @classmethod
    def for_unit(cls, canonical_unit: "CanonicalUnit") -> "UnitAssumption":
        # Per-kg feeds often omit units and quote per tonne instead.
        threshold = 200.0 if canonical_unit == CanonicalUnit.USD_PER_KG else None
        return cls(threshold=threshold)


class SourceSpec(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str = Field(..., description="Provenance tag recorded when this source wins")
    kind: AdapterKind
    endpoint_candidates: list[str] = Field(..., min_length=1)
    symbols: list[str] = Field(default_factory=list)
    request_headers: dict[str, str] = Field(default_factory=dict)
    unit_hint: str | None = Field(None, description="Unit assumed when the payload has none")
    containers: list[str] | None = None
    ticker_column: str | None = None
    value_column: str = "close"
    priority: int = 0

    @field_validator("id")
    @classmethod
    def validate_id(cls, v: str) -> str:
        if v in {p.value for p in Provenance}:
            raise ValueError(f"Source id '{v}' is reserved")
        return v


class Commodity(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str = Field(..., pattern=r"^[A-Z][A-Z0-9_]*$")
    name_synonyms: list[str] = Field(..., min_length=1)
    canonical_unit: CanonicalUnit = CanonicalUnit.USD_PER_KG
    plausible_range: tuple[float, float]
    unit_assumption: UnitAssumption | None = None
    sources: list[SourceSpec] = Field(default_factory=list)

    @field_validator("plausible_range")
    @classmethod
    def validate_range(cls, v: tuple[float, float]) -> tuple[float, float]:
        low, high = v
        if not (math.isfinite(low) and math.isfinite(high)):
            raise ValueError("Plausible range bounds must be finite")
        if low > high:
            raise ValueError(f"Plausible range min {low} is greater than max {high}")
        return v

    @model_validator(mode="after")
    def validate_source_ids(self) -> "Commodity":
        seen = set()
        for source in self.sources:
            if source.id in seen:
                raise ValueError(f"Duplicate source id '{source.id}' for {self.id}")
            seen.add(source.id)
        return self

    def assumption(self) -> UnitAssumption:
        if self.unit_assumption is not None:
            return self.unit_assumption
        return UnitAssumption.for_unit(self.canonical_unit)

    def ordered_sources(self) -> list[SourceSpec]:
        return sorted(self.sources, key=lambda s: s.priority)


class RawQuote(BaseModel):
    value: float
    unit_hint: str | None = None


class SourceAttempt(BaseModel):
    source_id: str
    outcome: AttemptOutcome
    detail: str | None = None


class ResolvedPrice(BaseModel):
    commodity_id: str
    value: float | None
    unit: CanonicalUnit
    provenance: str
    resolved_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    attempts: list[SourceAttempt] = Field(default_factory=list)

    @property
    def is_fallback(self) -> bool:
        return self.provenance in (Provenance.PREVIOUS.value, Provenance.NONE.value)


class FxRates(BaseModel):
    """Exchange rates as units of `base` per one unit of each currency."""

    base: str = "TRY"
    rates: dict[str, float] = Field(default_factory=dict)
    as_of: str | None = None
    source: str | None = None

    def rate(self, currency: str) -> float | None:
        currency = currency.upper()
        if currency == self.base.upper():
            return 1.0
        value = self.rates.get(currency)
        if value is None or not math.isfinite(value) or value <= 0:
            return None
        return value


class FxSourceSpec(BaseModel):
    url: str = "https://www.tcmb.gov.tr/kurlar/today.xml"
    base: str = "TRY"
    currencies: list[str] = Field(default_factory=lambda: ["USD", "EUR", "GBP"])
    fields: list[str] = Field(
        default_factory=lambda: ["ForexSelling", "BanknoteSelling", "ForexBuying", "BanknoteBuying"]
    )


class Settings(BaseModel):
    timeout: float = Field(20.0, gt=0, description="Per-request timeout in seconds")
    max_workers: int = Field(4, ge=1)
    retries: int = Field(0, ge=0, description="Extra transport-level retries per request")
    user_agent: str | None = None


class PriceConfig(BaseModel):
    settings: Settings = Field(default_factory=Settings)
    fx: FxSourceSpec | None = None
    commodities: list[Commodity]
