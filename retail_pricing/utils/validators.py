# utils/validators.py
from __future__ import annotations


def is_positive_int(x) -> bool:
    """
    True iff x is an integer (bool excluded) and x >= 1.
    """
    return isinstance(x, int) and not isinstance(x, bool) and x >= 1
