"""
Numeric utility functions for common mathematical operations.
"""
from typing import Sequence


def clamp(value: float, min_val: float = 0.0, max_val: float = 1.0) -> float:
    """
    Clamp a value to a specified range.

    Examples:
        >>> clamp(1.5)
        1.0
        >>> clamp(-0.5)
        0.0
        >>> clamp(-2.0, -1.0, 1.0)
        -1.0
    """
    return min(max_val, max(min_val, value))


def ema(values: Sequence[float], alpha: float = None) -> float:
    """
    Exponential moving average over ``values`` (oldest first).

    ``alpha`` defaults to the conventional ``2 / (n + 1)`` for the window size.
    An empty sequence averages to 0.0.

    Examples:
        >>> ema([1.0, 1.0, 1.0])
        1.0
        >>> round(ema([0.0, 1.0], alpha=0.5), 2)
        0.5
    """
    if not values:
        return 0.0
    if alpha is None:
        alpha = 2.0 / (len(values) + 1)
    avg = float(values[0])
    for value in values[1:]:
        avg = alpha * float(value) + (1.0 - alpha) * avg
    return avg


def variance(values: Sequence[float]) -> float:
    """Population variance; fewer than two values have no spread."""
    if len(values) < 2:
        return 0.0
    mean = sum(values) / len(values)
    return sum((v - mean) ** 2 for v in values) / len(values)
