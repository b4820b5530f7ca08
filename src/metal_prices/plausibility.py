import math

from .errors import PlausibilityRejected


def accept(value: float | None, value_range: tuple[float, float]) -> bool:
    """True if value is finite and inside the inclusive [min, max] range."""
    if value is None:
        return False
    try:
        value = float(value)
    except (TypeError, ValueError):
        return False
    low, high = value_range
    return math.isfinite(value) and low <= value <= high


class PlausibilityGate:
    def __init__(self, value_range: tuple[float, float]):
        self.value_range = value_range

    def accept(self, value: float | None) -> bool:
        return accept(value, self.value_range)

    def check(self, value: float | None, source_id: str | None = None) -> float:
        """Returns the value unchanged, or raises PlausibilityRejected."""
        if not self.accept(value):
            low, high = self.value_range
            raise PlausibilityRejected(
                f"{value} outside plausible range [{low}, {high}]", source_id=source_id, value=value
            )
        return value
