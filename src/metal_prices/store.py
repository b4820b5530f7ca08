import json
import logging
import math
import os
import tempfile
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import diskcache

from .fx import gram_price
from .models import CanonicalUnit, FxRates, ResolvedPrice
from .units import from_canonical, to_canonical

logger = logging.getLogger(__name__)

# Legacy layouts written by older update scripts: {"metals": {"CU": {"usd_per_tonne": 9803}}}
LEGACY_FIELDS = [("usd_per_kg", "/kg"), ("usd_per_tonne", "/t")]


def _finite(value: Any) -> float | None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return float(value) if math.isfinite(value) else None


def write_json_atomic(path: Path, data: dict):
    """Writes JSON via a temp file in the same directory and os.replace."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2, ensure_ascii=False)
            f.write("\n")
        os.replace(tmp, path)
    except BaseException:
        if os.path.exists(tmp):
            os.unlink(tmp)
        raise


class JsonPriceStore:
    """
    Snapshot document holding the last resolved price per commodity.

    Layout:
        {"as_of": ..., "prices": {"CU": {"value", "unit", "provenance", "resolved_at"}},
         "meta": {"sources_used": {"CU": "yahoo"}}, "benchmarks": {...}, "gold": {...}}

    The document is read once and written once per run (`commit`).
    """

    def __init__(
        self,
        path: Path,
        units: dict[str, CanonicalUnit] | None = None,
        fx: FxRates | None = None,
    ):
        self.path = Path(path)
        self.units = units or {}
        self.fx = fx
        self._data: dict | None = None
        self._pending: dict[str, ResolvedPrice] = {}

    @property
    def data(self) -> dict:
        if self._data is None:
            self._data = self._read()
        return self._data

    def _read(self) -> dict:
        if not self.path.exists():
            return {}
        try:
            with open(self.path, encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, ValueError) as e:
            logger.warning(f"Could not read previous prices from {self.path}: {e}")
            return {}
        return data if isinstance(data, dict) else {}

    def load_previous(self, commodity_id: str) -> float | None:
        """
        Previous value in the commodity's configured unit.

        Without a configured unit the stored value is returned as written
        (legacy records are read as USD/kg).
        """
        target = self.units.get(commodity_id)
        record = (self.data.get("prices") or {}).get(commodity_id)
        if isinstance(record, dict):
            value = _finite(record.get("value"))
            stored_unit = record.get("unit")
            if value is None or target is None or stored_unit in (None, target.value):
                return value
            # Stored under another canonical unit (configuration changed since)
            return to_canonical(value, stored_unit, target)

        legacy = (self.data.get("metals") or {}).get(commodity_id)
        if isinstance(legacy, dict):
            for field, hint in LEGACY_FIELDS:
                value = _finite(legacy.get(field))
                if value is not None:
                    return to_canonical(value, hint, target or CanonicalUnit.USD_PER_KG)
        return None

    def save(self, commodity_id: str, price: ResolvedPrice) -> None:
        self._pending[commodity_id] = price

    def snapshot(self) -> dict:
        data = dict(self.data)
        data.pop("metals", None)
        prices = dict(data.get("prices") or {})
        meta = dict(data.get("meta") or {})
        sources_used = dict(meta.get("sources_used") or {})

        for commodity_id, price in self._pending.items():
            sources_used[commodity_id] = price.provenance
            if price.value is None:
                continue
            prices[commodity_id] = {
                "value": price.value,
                "unit": price.unit.value,
                "provenance": price.provenance,
                "resolved_at": price.resolved_at.isoformat(),
            }

        meta["sources_used"] = sources_used
        data["as_of"] = datetime.now(timezone.utc).isoformat()
        data["prices"] = prices
        data["meta"] = meta
        data.update(self._derived(prices))
        return data

    def _derived(self, prices: dict) -> dict:
        derived = {}
        copper = prices.get("CU")
        if copper:
            per_lb = from_canonical(copper["value"], "/lb", CanonicalUnit(copper["unit"]))
            if per_lb is not None:
                derived["benchmarks"] = {"copper_usd_per_lb": round(per_lb, 4)}

        gold = prices.get("XAUUSD")
        if gold and self.fx is not None:
            usd_per_oz = from_canonical(gold["value"], "/oz", CanonicalUnit(gold["unit"]))
            derived["gold"] = {
                "XAUUSD": usd_per_oz,
                "gram_try": gram_price(usd_per_oz, self.fx, "TRY"),
            }
            derived["fx"] = {"base": self.fx.base, "as_of": self.fx.as_of, **self.fx.rates}
        return derived

    def commit(self) -> None:
        data = self.snapshot()
        write_json_atomic(self.path, data)
        self._data = data
        self._pending = {}
        logger.info(f"Wrote {self.path} ({len(data['prices'])} prices)")


class CachePriceStore:
    """Previous values kept in a diskcache directory, one record per commodity."""

    def __init__(self, directory: Path | str, cache: diskcache.Cache | None = None):
        self.cache = cache or diskcache.Cache(str(directory))

    def load_previous(self, commodity_id: str) -> float | None:
        record = self.cache.get(f"price:{commodity_id}")
        if not isinstance(record, dict):
            return None
        return _finite(record.get("value"))

    def save(self, commodity_id: str, price: ResolvedPrice) -> None:
        if price.value is None:
            return
        self.cache.set(f"price:{commodity_id}", price.model_dump(mode="json"))

    def commit(self) -> None:
        # diskcache writes are durable on set
        pass

    def close(self):
        self.cache.close()
