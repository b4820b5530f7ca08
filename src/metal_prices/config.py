import logging
import os
import re
from collections.abc import Mapping
from pathlib import Path

import yaml
from dotenv import dotenv_values
from pydantic import ValidationError

from .errors import ConfigurationError
from .extractor import parse_number
from .models import Commodity, PriceConfig, RawQuote
from .resources import get_default_config_path

logger = logging.getLogger(__name__)

OVERRIDE_PREFIX = "PRICE_OVERRIDE_"


class StrictSafeLoader(yaml.SafeLoader):
    """YAML Loader that disallows duplicate keys."""

    def construct_mapping(self, node, deep=False):
        mapping = []
        for key_node, _value_node in node.value:
            key = self.construct_object(key_node, deep=deep)
            if key in mapping:
                raise yaml.constructor.ConstructorError(
                    f"Duplicate key found in YAML: {key}", key_node.start_mark
                )
            mapping.append(key)
        return super().construct_mapping(node, deep=deep)


def load_config(path: Path | None = None) -> PriceConfig:
    """Loads and validates a configuration file (the bundled one by default)."""
    path = Path(path).expanduser() if path else get_default_config_path()
    try:
        with open(path, encoding="utf-8") as f:
            data = yaml.load(f, Loader=StrictSafeLoader)
    except OSError as e:
        raise ConfigurationError(f"Cannot read config {path}: {e}") from e
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Invalid YAML in {path}: {e}") from e

    if not data:
        raise ConfigurationError(f"Config {path} is empty")

    try:
        config = PriceConfig(**data)
    except ValidationError as e:
        raise ConfigurationError(f"Invalid config {path}: {e}") from e

    seen = set()
    for commodity in config.commodities:
        if commodity.id in seen:
            raise ConfigurationError(f"Duplicate commodity id {commodity.id} in {path}")
        seen.add(commodity.id)

    logger.debug(f"Loaded {len(config.commodities)} commodities from {path}")
    return config


def parse_override(raw: str) -> RawQuote | None:
    """
    Parses an operator override such as "9.6", "9605 USD/t" or "4,49 USD/lb".

    Without a unit the value is taken to be in the commodity's canonical unit.
    """
    m = re.match(r"^\s*(-?[\d.,]+)\s*(.*?)\s*$", raw or "")
    if not m:
        return None
    value = parse_number(m.group(1))
    if value is None:
        return None
    return RawQuote(value=value, unit_hint=m.group(2) or None)


def load_overrides(
    commodities: list[Commodity],
    env_file: Path | None = None,
    environ: Mapping[str, str] | None = None,
) -> dict[str, RawQuote]:
    """
    Collects PRICE_OVERRIDE_<ID> values from a .env file and the environment.

    The process environment wins over the file. Unparseable or empty values
    are ignored with a warning.
    """
    values: dict[str, str | None] = {}
    if env_file:
        env_file = Path(env_file).expanduser()
        if env_file.exists():
            values.update(dotenv_values(env_file))
        else:
            logger.warning(f"Override file {env_file} not found")
    values.update(os.environ if environ is None else environ)

    overrides = {}
    for commodity in commodities:
        raw = values.get(f"{OVERRIDE_PREFIX}{commodity.id}")
        if raw is None or not raw.strip():
            continue
        quote = parse_override(raw)
        if quote is None:
            logger.warning(f"Ignoring unparseable override for {commodity.id}: {raw!r}")
            continue
        overrides[commodity.id] = quote
    return overrides


def select_commodities(config: PriceConfig, only: list[str] | None = None) -> list[Commodity]:
    if not only:
        return list(config.commodities)
    wanted = [o.upper() for o in only]
    by_id = {c.id: c for c in config.commodities}
    unknown = [o for o in wanted if o not in by_id]
    if unknown:
        raise ConfigurationError(f"Unknown commodity id(s): {', '.join(unknown)}")
    return [by_id[o] for o in wanted]
