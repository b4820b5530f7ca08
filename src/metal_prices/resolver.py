"""
Ordered fallback resolution of commodity prices.

For each commodity an optional operator override is tried first, then every
configured source in priority order. The first value that normalizes into the
canonical unit and passes the plausibility gate wins. When nothing survives,
the previously persisted value is carried forward.
"""

import logging
import threading
from collections.abc import Callable, Iterable
from concurrent.futures import ThreadPoolExecutor, wait
from datetime import datetime, timezone
from enum import Enum

from pydantic import BaseModel, ConfigDict

from .errors import NormalizationFailure, PriceSourceError
from .extractor import ShapeExtractor
from .interfaces import Fetcher, PriceStore, Renderer
from .models import (
    AttemptOutcome,
    Commodity,
    FxRates,
    Provenance,
    RawQuote,
    ResolvedPrice,
    SourceAttempt,
)
from .plausibility import PlausibilityGate
from .sources import SourceAdapter, build_adapter
from .units import convert_currency, hint_currency, to_canonical

logger = logging.getLogger(__name__)

OVERRIDE_INDEX = -1


class ResolutionStatus(str, Enum):
    PENDING = "pending"
    TRYING = "trying"
    ACCEPTED = "accepted"
    EXHAUSTED = "exhausted"


class ResolutionState(BaseModel):
    """Immutable snapshot of one commodity's walk through its fallback chain."""

    model_config = ConfigDict(frozen=True)

    commodity: Commodity
    status: ResolutionStatus = ResolutionStatus.PENDING
    index: int | None = None
    attempts: tuple[SourceAttempt, ...] = ()
    value: float | None = None
    provenance: str | None = None

    def trying(self, index: int) -> "ResolutionState":
        if self.status in (ResolutionStatus.ACCEPTED, ResolutionStatus.EXHAUSTED):
            raise ValueError(f"Resolution of {self.commodity.id} already {self.status.value}")
        return self.model_copy(update={"status": ResolutionStatus.TRYING, "index": index})

    def rejected(self, attempt: SourceAttempt) -> "ResolutionState":
        return self.model_copy(update={"attempts": self.attempts + (attempt,)})

    def accepted(self, value: float, provenance: str) -> "ResolutionState":
        attempt = SourceAttempt(source_id=provenance, outcome=AttemptOutcome.ACCEPTED)
        return self.model_copy(update={
            "status": ResolutionStatus.ACCEPTED,
            "attempts": self.attempts + (attempt,),
            "value": value,
            "provenance": provenance,
        })

    def exhausted(self, previous: float | None) -> "ResolutionState":
        if previous is not None:
            value, provenance = previous, Provenance.PREVIOUS.value
        else:
            value, provenance = None, Provenance.NONE.value
        return self.model_copy(update={
            "status": ResolutionStatus.EXHAUSTED,
            "value": value,
            "provenance": provenance,
        })

    def result(self) -> ResolvedPrice:
        if self.status not in (ResolutionStatus.ACCEPTED, ResolutionStatus.EXHAUSTED):
            raise ValueError(f"Resolution of {self.commodity.id} is still {self.status.value}")
        return ResolvedPrice(
            commodity_id=self.commodity.id,
            value=self.value,
            unit=self.commodity.canonical_unit,
            provenance=self.provenance,
            resolved_at=datetime.now(timezone.utc),
            attempts=list(self.attempts),
        )


class FallbackResolver:
    def __init__(
        self,
        fetcher: Fetcher,
        extractor: ShapeExtractor | None = None,
        renderer: Renderer | None = None,
        fx: FxRates | None = None,
        timeout: float | None = None,
        adapter_factory: Callable[..., SourceAdapter] = build_adapter,
    ):
        self.fetcher = fetcher
        self.extractor = extractor or ShapeExtractor()
        self.renderer = renderer
        self.fx = fx
        self.timeout = timeout
        self.adapter_factory = adapter_factory
        self._abandoned = []

    def adapters_for(self, commodity: Commodity) -> list[SourceAdapter]:
        return [
            self.adapter_factory(
                spec, self.fetcher, self.extractor, renderer=self.renderer, timeout=self.timeout
            )
            for spec in commodity.ordered_sources()
        ]

    def normalize(self, quote: RawQuote, commodity: Commodity, source_id: str | None = None) -> float:
        """Converts a raw quote into the canonical unit, or raises NormalizationFailure."""
        canonical = commodity.canonical_unit
        value = quote.value

        # Currency first, so magnitude heuristics see canonical-currency values
        currency = hint_currency(quote.unit_hint)
        if currency and currency != canonical.currency:
            converted = convert_currency(value, currency, canonical.currency, self.fx)
            if converted is None:
                raise NormalizationFailure(
                    f"No FX rates to convert {currency} to {canonical.currency}", source_id
                )
            value = converted

        value = to_canonical(value, quote.unit_hint, canonical, commodity.assumption())
        if value is None:
            raise NormalizationFailure(f"Value {quote.value!r} is not a finite number", source_id)
        return value

    def resolve(
        self,
        commodity: Commodity,
        previous: float | None = None,
        override: RawQuote | float | None = None,
        adapters: list[SourceAdapter] | None = None,
        cancelled: threading.Event | None = None,
    ) -> ResolvedPrice:
        gate = PlausibilityGate(commodity.plausible_range)
        state = ResolutionState(commodity=commodity)

        if override is not None:
            if not isinstance(override, RawQuote):
                override = RawQuote(value=override)
            if override.unit_hint is None:
                # Operators state overrides in the canonical unit
                override = RawQuote(value=override.value, unit_hint=commodity.canonical_unit.value)
            state = state.trying(OVERRIDE_INDEX)
            try:
                value = gate.check(self.normalize(override, commodity, Provenance.OVERRIDE.value),
                                   Provenance.OVERRIDE.value)
                state = state.accepted(value, Provenance.OVERRIDE.value)
                logger.info(f"{commodity.id}: using override {value} {commodity.canonical_unit.value}")
                return state.result()
            except PriceSourceError as e:
                logger.warning(f"{commodity.id}: ignoring override: {e}")
                state = state.rejected(
                    SourceAttempt(source_id=Provenance.OVERRIDE.value, outcome=e.outcome, detail=str(e))
                )

        if adapters is None:
            adapters = self.adapters_for(commodity)

        for i, adapter in enumerate(adapters):
            if cancelled is not None and cancelled.is_set():
                state = state.rejected(
                    SourceAttempt(source_id=adapter.id, outcome=AttemptOutcome.CANCELLED, detail="deadline")
                )
                break
            state = state.trying(i)
            try:
                quote = adapter.attempt(commodity)
                value = gate.check(self.normalize(quote, commodity, adapter.id), adapter.id)
            except PriceSourceError as e:
                logger.warning(f"{commodity.id}: source {adapter.id} skipped ({e.outcome.value}): {e}")
                state = state.rejected(
                    SourceAttempt(source_id=adapter.id, outcome=e.outcome, detail=str(e))
                )
                continue
            except Exception as e:
                logger.error(f"{commodity.id}: source {adapter.id} raised unexpectedly: {e}")
                state = state.rejected(
                    SourceAttempt(source_id=adapter.id, outcome=AttemptOutcome.ERROR, detail=str(e))
                )
                continue

            state = state.accepted(value, adapter.id)
            logger.info(
                f"{commodity.id}: {value:.4f} {commodity.canonical_unit.value} from {adapter.id} "
                f"(raw {quote.value} {quote.unit_hint or '?'})"
            )
            return state.result()

        return self._exhaust(state, previous)

    def fallback(
        self, commodity: Commodity, previous: float | None, attempts: Iterable[SourceAttempt] = ()
    ) -> ResolvedPrice:
        """Result for a commodity whose chain could not run to completion."""
        state = ResolutionState(commodity=commodity, attempts=tuple(attempts))
        return self._exhaust(state, previous)

    def _exhaust(self, state: ResolutionState, previous: float | None) -> ResolvedPrice:
        state = state.exhausted(previous)
        commodity = state.commodity
        if state.value is not None:
            logger.warning(f"{commodity.id}: all sources failed, keeping previous value {state.value}")
        else:
            logger.warning(f"{commodity.id}: all sources failed and no previous value; unresolved")
        return state.result()

    def _resolve_contained(
        self,
        commodity: Commodity,
        previous: float | None,
        override: RawQuote | float | None,
        cancelled: threading.Event,
    ) -> ResolvedPrice:
        try:
            return self.resolve(commodity, previous=previous, override=override, cancelled=cancelled)
        except Exception as e:
            logger.exception(f"{commodity.id}: resolution crashed")
            attempt = SourceAttempt(source_id="resolver", outcome=AttemptOutcome.ERROR, detail=str(e))
            return self.fallback(commodity, previous, [attempt])

    def wait_for_abandoned(self, timeout: float | None = None) -> bool:
        """Waits for chains abandoned at a deadline. Returns False if some are still running."""
        if not self._abandoned:
            return True
        _, pending = wait(self._abandoned, timeout=timeout)
        self._abandoned = list(pending)
        return not pending

    def resolve_all(
        self,
        commodities: list[Commodity],
        store: PriceStore | None = None,
        overrides: dict[str, RawQuote | float] | None = None,
        max_workers: int = 4,
        deadline: float | None = None,
        save: bool = True,
    ) -> dict[str, ResolvedPrice]:
        """
        Resolves every commodity, in parallel across commodities.

        Previous values are read once up front and results are saved once at
        the end (unless `save` is False). Commodities still running when
        `deadline` (seconds) expires fall back to their previous value; their
        threads finish the request in flight and then stop. Call
        `wait_for_abandoned` before closing the fetcher.
        """
        overrides = overrides or {}
        cancelled = threading.Event()
        previous = {c.id: store.load_previous(c.id) if store else None for c in commodities}

        executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="resolve")
        try:
            futures = {
                executor.submit(
                    self._resolve_contained, c, previous[c.id], overrides.get(c.id), cancelled
                ): c
                for c in commodities
            }
            done, pending = wait(futures, timeout=deadline)
            if pending:
                # Running chains stop before their next source
                cancelled.set()
                self._abandoned.extend(pending)
        finally:
            executor.shutdown(wait=False, cancel_futures=True)

        resolved = {}
        for future, commodity in futures.items():
            if future in done:
                resolved[commodity.id] = future.result()
            else:
                future.cancel()
                logger.warning(f"{commodity.id}: deadline of {deadline}s reached, abandoning sources")
                attempt = SourceAttempt(
                    source_id="deadline", outcome=AttemptOutcome.CANCELLED, detail=f"{deadline}s"
                )
                resolved[commodity.id] = self.fallback(commodity, previous[commodity.id], [attempt])

        results = {c.id: resolved[c.id] for c in commodities}
        if store is not None and save:
            for commodity_id, price in results.items():
                store.save(commodity_id, price)
            store.commit()
        return results
