"""
Treasury TWAP SDK - Tranche Sizes

Splits a total transfer amount into time-gated tranches.

All amounts are integer base units of the source token (e.g. 20 USDC is
20_000_000). Splitting in base units means the tranches always sum back
to the total; there is no floating point rounding to lose dust in.

Two split policies are supported:
    - Equal count:  total divided into N tranches, remainder spread one
                    unit at a time over the first tranches
    - Fixed size:   tranches of a fixed size, the last one partial

Schedule:
    eligible_at[i] = start_ts + i * interval_seconds
"""

from typing import List, Tuple

from .tokens import format_units

# ═══════════════════════════════════════════════════════════════════════════════
# LIMITS
# ═══════════════════════════════════════════════════════════════════════════════

# Minimum spacing between tranches
MIN_INTERVAL_SECONDS = 60

# Default maximum tranches per plan (each one is a signed order to track)
DEFAULT_MAX_TRANCHES = 100


# ═══════════════════════════════════════════════════════════════════════════════
# SPLIT ALGORITHMS
# ═══════════════════════════════════════════════════════════════════════════════

def split_amount(total: int, count: int) -> List[int]:
    """
    Split total into `count` near-equal tranches.

    The remainder of the integer division is handed out one base unit
    at a time to the first tranches, so earlier tranches are never
    smaller than later ones and the sum is exact.

    Args:
        total: Total amount in base units
        count: Number of tranches

    Returns:
        List of tranche sizes that sum to total

    Raises:
        TypeError: If total or count is not an integer
        ValueError: If total/count is not positive or count > total

    Examples:
        >>> split_amount(20_000_000, 4)
        [5000000, 5000000, 5000000, 5000000]

        >>> split_amount(10, 3)
        [4, 3, 3]
    """
    _check_int("Total", total)
    _check_int("Tranche count", count)
    if total <= 0:
        raise ValueError(f"Total must be positive, got {total}")
    if count <= 0:
        raise ValueError(f"Tranche count must be positive, got {count}")
    if count > total:
        raise ValueError(f"Cannot split {total} into {count} non-empty tranches")

    base, remainder = divmod(total, count)
    return [base + 1 if i < remainder else base for i in range(count)]


def split_by_tranche_size(total: int, tranche_size: int) -> List[int]:
    """
    Split total into fixed-size tranches with a partial final tranche.

    Examples:
        >>> split_by_tranche_size(5000, 1000)
        [1000, 1000, 1000, 1000, 1000]

        >>> split_by_tranche_size(5500, 1000)
        [1000, 1000, 1000, 1000, 1000, 500]

    Raises:
        ValueError: "Invalid tranche size" if tranche_size is not in (0, total]
    """
    _check_int("Total", total)
    _check_int("Tranche size", tranche_size)
    if total <= 0:
        raise ValueError(f"Total must be positive, got {total}")
    if tranche_size <= 0 or tranche_size > total:
        raise ValueError("Invalid tranche size")

    full, remainder = divmod(total, tranche_size)
    tranches = [tranche_size] * full
    if remainder:
        tranches.append(remainder)
    return tranches


def schedule(start_ts: int, count: int, interval_seconds: int) -> List[int]:
    """
    Compute eligible_at timestamps for each tranche.

    Raises:
        ValueError: "Interval too short" below MIN_INTERVAL_SECONDS
    """
    if interval_seconds < MIN_INTERVAL_SECONDS:
        raise ValueError("Interval too short")
    if count <= 0:
        raise ValueError(f"Tranche count must be positive, got {count}")
    return [int(start_ts) + i * int(interval_seconds) for i in range(count)]


def _check_int(name: str, value) -> None:
    # bool is an int subclass
    if not isinstance(value, int) or isinstance(value, bool):
        raise TypeError(f"{name} must be integer, got {type(value).__name__}")


# ═══════════════════════════════════════════════════════════════════════════════
# VALIDATION / FORMATTING
# ═══════════════════════════════════════════════════════════════════════════════

def validate_split(total: int, count: int,
                   max_tranches: int = DEFAULT_MAX_TRANCHES) -> Tuple[bool, str]:
    """
    Validate a split before creating a plan.

    Returns:
        (is_valid, message) tuple
    """
    if not isinstance(total, int) or not isinstance(count, int):
        return False, "Total and tranche count must be integers"
    if total <= 0:
        return False, "Total must be positive"
    if count <= 0:
        return False, "Tranche count must be positive"
    if count > max_tranches:
        return False, f"Requires {count} tranches (max {max_tranches})"
    if count > total:
        return False, f"Cannot split {total} into {count} non-empty tranches"

    return True, f"OK: {format_split(total, count)}"


def format_split(total: int, count: int, decimals: int = 0, symbol: str = "") -> str:
    """
    Format a split as a human-readable string.

    Examples:
        >>> format_split(10, 3)
        "1×4 + 2×3 (3 tranches)"

        >>> format_split(20_000_000, 4, decimals=6, symbol="USDC")
        "4×5 USDC (4 tranches)"
    """
    tranches = split_amount(total, count)

    grouped = []
    for size in tranches:
        if grouped and grouped[-1][0] == size:
            grouped[-1][1] += 1
        else:
            grouped.append([size, 1])

    unit = f" {symbol}" if symbol else ""
    parts = [f"{n}×{format_units(size, decimals)}" for size, n in grouped]
    word = "tranche" if count == 1 else "tranches"
    return f"{' + '.join(parts)}{unit} ({count} {word})"
