import importlib.resources
from pathlib import Path

PACKAGE_DATA_PATH = "metal_prices.data"
DEFAULT_CONFIG = "metals.yaml"


def get_default_config_path() -> Path:
    """Returns the path to the bundled metals configuration."""
    return importlib.resources.files(PACKAGE_DATA_PATH).joinpath(DEFAULT_CONFIG)
