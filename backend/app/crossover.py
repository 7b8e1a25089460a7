# Price vs indicator crossover detection
from enum import Enum


class Crossover(str, Enum):
    ABOVE = "ABOVE"
    BELOW = "BELOW"
    NONE = "NONE"


def side(price: float, indicator: float) -> Crossover:
    """Strictly above the indicator counts as ABOVE; touching counts as BELOW."""
    return Crossover.ABOVE if price > indicator else Crossover.BELOW


def detect_crossover(current: float, previous: float, indicator: float) -> Crossover:
    """Signal the side the price moved to, or NONE if it stayed on the same side."""
    now = side(current, indicator)
    if now != side(previous, indicator):
        return now
    return Crossover.NONE
