import argparse
import logging
import os
import sys
from pathlib import Path

from .config import load_config, load_overrides, select_commodities
from .errors import ConfigurationError, PriceSourceError
from .extractor import parse_number
from .fetch import HttpFetcher
from .fx import fetch_fx_rates
from .models import CanonicalUnit, UnitAssumption
from .plausibility import accept
from .render import get_renderer
from .resolver import FallbackResolver
from .store import CachePriceStore, JsonPriceStore
from .units import to_canonical


def get_config_for_args(args):
    """Loads the configuration named by CLI arguments, exiting on errors."""
    try:
        return load_config(Path(args.config) if args.config else None)
    except ConfigurationError as e:
        print(f"Error: {e}")
        sys.exit(1)


def get_fetcher(config) -> HttpFetcher:
    settings = config.settings
    return HttpFetcher(timeout=settings.timeout, retries=settings.retries, user_agent=settings.user_agent)


def format_value(value: float | None) -> str:
    return "n/a" if value is None else f"{value:,.4f}"


def resolve_cmd(args):
    """Resolves every configured commodity and writes the snapshot."""
    config = get_config_for_args(args)
    try:
        commodities = select_commodities(config, args.only)
    except ConfigurationError as e:
        print(f"Error: {e}")
        sys.exit(1)

    fetcher = get_fetcher(config)
    fx = fetch_fx_rates(fetcher, config.fx, timeout=config.settings.timeout) if config.fx else None

    if args.cache_dir:
        store = CachePriceStore(Path(args.cache_dir).expanduser())
    else:
        units = {c.id: c.canonical_unit for c in commodities}
        store = JsonPriceStore(Path(args.store).expanduser(), units=units, fx=fx)

    overrides = load_overrides(commodities, env_file=Path(args.env_file) if args.env_file else None)
    resolver = FallbackResolver(
        fetcher, renderer=get_renderer(), fx=fx, timeout=config.settings.timeout
    )

    try:
        results = resolver.resolve_all(
            commodities,
            store=store,
            overrides=overrides,
            max_workers=args.workers or config.settings.max_workers,
            deadline=args.deadline,
            save=not args.dry_run,
        )
    finally:
        # Chains abandoned at the deadline may still hold the session
        resolver.wait_for_abandoned(timeout=config.settings.timeout * (config.settings.retries + 1))
        fetcher.close()

    unresolved = 0
    for commodity_id, price in results.items():
        flag = "" if not price.is_fallback else "  [!]"
        print(f"{commodity_id:8} {format_value(price.value):>14} {price.unit.value:7} {price.provenance}{flag}")
        if args.verbose and price.attempts:
            for attempt in price.attempts:
                detail = f" ({attempt.detail})" if attempt.detail else ""
                print(f"           - {attempt.source_id}: {attempt.outcome.value}{detail}")
        if price.value is None:
            unresolved += 1

    if args.dry_run:
        print("[DRY RUN] Nothing written.")
    elif args.cache_dir:
        print(f"Saved {len(results) - unresolved} prices to cache {args.cache_dir}")
    else:
        print(f"Wrote {args.store}")

    if unresolved:
        print(f"WARNING: {unresolved} commodit{'y' if unresolved == 1 else 'ies'} unresolved")


def probe_cmd(args):
    """Runs each source for one commodity and shows raw, normalized and gate results."""
    config = get_config_for_args(args)
    try:
        (commodity,) = select_commodities(config, [args.commodity])
    except ConfigurationError as e:
        print(f"Error: {e}")
        sys.exit(1)

    fetcher = get_fetcher(config)
    fx = fetch_fx_rates(fetcher, config.fx, timeout=config.settings.timeout) if config.fx else None
    resolver = FallbackResolver(fetcher, renderer=get_renderer(), fx=fx, timeout=config.settings.timeout)

    adapters = resolver.adapters_for(commodity)
    if args.source:
        adapters = [a for a in adapters if a.id == args.source]
        if not adapters:
            print(f"Error: {commodity.id} has no source '{args.source}'")
            sys.exit(1)

    low, high = commodity.plausible_range
    print(f"{commodity.id}: canonical {commodity.canonical_unit.value}, plausible [{low}, {high}]")
    try:
        for adapter in adapters:
            print(f"\n[{adapter.id}] ({adapter.kind.value})")
            try:
                quote = adapter.attempt(commodity)
            except PriceSourceError as e:
                print(f"  FAILED: {e.outcome.value}: {e}")
                continue
            print(f"  Raw:        {quote.value} {quote.unit_hint or '(no unit)'}")
            try:
                value = resolver.normalize(quote, commodity, adapter.id)
            except PriceSourceError as e:
                print(f"  FAILED: {e.outcome.value}: {e}")
                continue
            verdict = "OK" if accept(value, commodity.plausible_range) else "REJECTED"
            print(f"  Normalized: {format_value(value)} {commodity.canonical_unit.value} [{verdict}]")
    finally:
        fetcher.close()


def lint_cmd(args):
    """Validates configuration beyond what the schema enforces."""
    config = get_config_for_args(args)
    print(f"Linting configuration ({len(config.commodities)} commodities)...")

    errors = []
    warnings = []

    seen_synonyms = {}
    for c in config.commodities:
        if not c.sources:
            warnings.append(f"{c.id}: no sources configured; only previous values can be reused")
        for synonym in c.name_synonyms:
            key = synonym.lower()
            if key in seen_synonyms and seen_synonyms[key] != c.id:
                warnings.append(f"{c.id}: synonym '{synonym}' also used by {seen_synonyms[key]}")
            seen_synonyms[key] = c.id
        for source in c.sources:
            templates = " ".join(source.endpoint_candidates)
            if "{symbol}" in templates and not source.symbols:
                errors.append(f"{c.id}/{source.id}: endpoint uses {{symbol}} but no symbols are listed")

    overrides = load_overrides(config.commodities, env_file=Path(args.env_file) if args.env_file else None)
    for commodity_id, quote in overrides.items():
        c = next(c for c in config.commodities if c.id == commodity_id)
        value = to_canonical(quote.value, quote.unit_hint or c.canonical_unit.value, c.canonical_unit)
        if not accept(value, c.plausible_range):
            errors.append(f"{commodity_id}: override {quote.value} is outside {list(c.plausible_range)}")

    if errors:
        for e in errors:
            print(f"ERROR: {e}")
        sys.exit(1)

    if warnings:
        for w in warnings:
            print(f"WARNING: {w}")

    print("All checks passed.")


def convert_cmd(args):
    """Prints the canonical value for a raw value and unit hint."""
    value = parse_number(args.value)
    if value is None:
        print(f"Error: '{args.value}' is not a number")
        sys.exit(1)
    try:
        unit = CanonicalUnit(args.unit)
    except ValueError:
        print(f"Error: unit must be one of {[u.value for u in CanonicalUnit]}")
        sys.exit(1)
    result = to_canonical(value, args.hint, unit, UnitAssumption.for_unit(unit))
    print(f"{value} {args.hint or '(no unit)'} -> {format_value(result)} {unit.value}")


def main(argv=None):
    default_store = os.getenv("PATH_METAL_PRICES", "lme.json")
    parser = argparse.ArgumentParser(description="Metal price resolver")
    parser.add_argument("--config", help="Path to a metals YAML config (default: bundled)")
    parser.add_argument("--verbose", action="store_true", help="Enable debug logging")

    subparsers = parser.add_subparsers(dest="command", required=True)

    # resolve
    p_resolve = subparsers.add_parser("resolve", help="Resolve prices and write the snapshot")
    p_resolve.add_argument("--store", default=default_store, help="Snapshot JSON file")
    p_resolve.add_argument("--cache-dir", help="Keep previous values in a diskcache directory instead")
    p_resolve.add_argument("--env-file", help="File with PRICE_OVERRIDE_<ID>=value lines")
    p_resolve.add_argument("--only", nargs="+", help="Resolve only these commodity ids")
    p_resolve.add_argument("--workers", type=int, help="Commodities resolved in parallel")
    p_resolve.add_argument("--deadline", type=float, help="Overall run deadline in seconds")
    p_resolve.add_argument("--dry-run", action="store_true", help="Print results without saving")

    # probe
    p_probe = subparsers.add_parser("probe", help="Try every source for one commodity")
    p_probe.add_argument("commodity", help="Commodity id (e.g. CU)")
    p_probe.add_argument("--source", help="Only this source id")

    # lint
    p_lint = subparsers.add_parser("lint", help="Validate configuration")
    p_lint.add_argument("--env-file", help="Also check overrides from this file")

    # convert
    p_convert = subparsers.add_parser("convert", help="Convert a raw value to a canonical unit")
    p_convert.add_argument("value", help="Raw value (e.g. 4.49 or '9.605,50')")
    p_convert.add_argument("hint", nargs="?", help="Unit hint (e.g. USD/lb)")
    p_convert.add_argument("--unit", default=CanonicalUnit.USD_PER_KG.value, help="Canonical unit")

    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    if args.command == "resolve":
        resolve_cmd(args)
    elif args.command == "probe":
        probe_cmd(args)
    elif args.command == "lint":
        lint_cmd(args)
    elif args.command == "convert":
        convert_cmd(args)


if __name__ == "__main__":
    main()
