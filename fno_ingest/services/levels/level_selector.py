"""
GEX level selection.

Turns one snapshot's per-strike exposure rows into named price levels:

- R1/R2: strongest strikes where OI and volume exposure are both positive
- S1/S2: strongest strikes where both are negative
- Flip:  the quietest strike between R1 and S1

Ranking is by value with strike as the final tie-break, so the result does
not depend on the order rows arrive in.
"""

import math
from collections import OrderedDict
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Tuple

from fno_ingest.schemas.market_data import ExposureRow, Level, LevelName, Side

OI_WEIGHT = 2
VOL_WEIGHT = 1
STRIKE_TOLERANCE = 0.5


def _is_finite_row(row: ExposureRow) -> bool:
    return all(
        math.isfinite(v)
        for v in (row.strike, row.oi_exposure, row.vol_exposure)
    )


def merge_rows(rows: Iterable[ExposureRow]) -> List[ExposureRow]:
    """
    Collapse rows sharing a strike into one row by summing their values.

    Non-finite rows are dropped. ``math.fsum`` keeps the sums independent of
    row order. The result is sorted by strike.
    """
    grouped: Dict[float, List[ExposureRow]] = {}
    for row in rows:
        if not _is_finite_row(row):
            continue
        grouped.setdefault(row.strike, []).append(row)

    merged = []
    for strike in sorted(grouped):
        group = grouped[strike]
        if len(group) == 1:
            merged.append(group[0])
            continue
        merged.append(ExposureRow(
            strike=strike,
            oi_exposure=math.fsum(r.oi_exposure for r in group),
            vol_exposure=math.fsum(r.vol_exposure for r in group),
            call_oi=math.fsum(r.call_oi for r in group),
            put_oi=math.fsum(r.put_oi for r in group),
            call_volume=math.fsum(r.call_volume for r in group),
            put_volume=math.fsum(r.put_volume for r in group),
        ))
    return merged


def _rank(
    rows: Sequence[ExposureRow],
    value: Callable[[ExposureRow], float],
    descending: bool
) -> Dict[float, int]:
    """Map strike -> 1-based rank; ties go to the lower strike."""
    if descending:
        ordered = sorted(rows, key=lambda r: (-value(r), r.strike))
    else:
        ordered = sorted(rows, key=lambda r: (value(r), r.strike))
    return {row.strike: i for i, row in enumerate(ordered, start=1)}


def _score_regime(
    rows: Sequence[ExposureRow],
    descending: bool,
    oi_weight: int,
    vol_weight: int
) -> List[float]:
    """Strikes of one regime, best first."""
    oi_rank = _rank(rows, lambda r: r.oi_exposure, descending)
    vol_rank = _rank(rows, lambda r: r.vol_exposure, descending)

    scored: List[Tuple[int, int, int, float]] = []
    for row in rows:
        oi_r = oi_rank[row.strike]
        vol_r = vol_rank[row.strike]
        scored.append((oi_weight * oi_r + vol_weight * vol_r, oi_r, vol_r, row.strike))
    scored.sort()
    return [strike for _, _, _, strike in scored]


def _pick_flip(rows: Sequence[ExposureRow], r1: float, s1: float) -> Optional[float]:
    lo, hi = min(r1, s1), max(r1, s1)
    between = [r for r in rows if lo <= r.strike <= hi]
    if not between:
        return None

    abs_oi_rank = _rank(between, lambda r: abs(r.oi_exposure), descending=False)
    vol_rank = _rank(between, lambda r: r.vol_exposure, descending=True)
    scored = sorted(
        (abs_oi_rank[r.strike] + vol_rank[r.strike], abs_oi_rank[r.strike], r.strike)
        for r in between
    )
    return scored[0][2]


def find_row(
    rows: Sequence[ExposureRow],
    strike: float,
    tolerance: float = STRIKE_TOLERANCE
) -> Optional[ExposureRow]:
    """
    Row at ``strike``, else the nearest row within ``tolerance``, else None.

    Args:
        rows: Rows sorted by strike with unique strikes
        strike: Strike to look up
        tolerance: Maximum distance for a nearest match

    Returns:
        The matching row or None
    """
    best: Optional[ExposureRow] = None
    best_distance = math.inf
    for row in rows:
        distance = abs(row.strike - strike)
        if distance == 0:
            return row
        if distance < best_distance:
            best, best_distance = row, distance
    if best is not None and best_distance <= tolerance:
        return best
    return None


def _make_level(
    name: LevelName,
    strike: float,
    rows: Sequence[ExposureRow],
    side: Optional[Side]
) -> Level:
    row = find_row(rows, strike)
    return Level(
        name=name,
        strike=strike,
        oi_exposure=row.oi_exposure if row is not None else None,
        vol_exposure=row.vol_exposure if row is not None else None,
        side=side,
    )


def select_levels(
    rows: Iterable[ExposureRow],
    oi_weight: int = OI_WEIGHT,
    vol_weight: int = VOL_WEIGHT
) -> List[Level]:
    """
    Rank exposure rows into R1, R2, S1, S2 and Flip levels.

    Args:
        rows: Exposure rows of one snapshot, in any order
        oi_weight: Weight of the OI rank in the score
        vol_weight: Weight of the volume rank in the score

    Returns:
        The levels that could be determined, in R1, R2, S1, S2, Flip order.
        Every level's strike is a strike present in ``rows``.
    """
    all_rows = merge_rows(rows)
    signal_rows = [
        r for r in all_rows
        if not (r.oi_exposure == 0 and r.vol_exposure == 0)
    ]
    positive = [r for r in signal_rows if r.oi_exposure > 0 and r.vol_exposure > 0]
    negative = [r for r in signal_rows if r.oi_exposure < 0 and r.vol_exposure < 0]

    resistance = _score_regime(positive, True, oi_weight, vol_weight)[:2]
    support = _score_regime(negative, False, oi_weight, vol_weight)[:2]

    levels: List[Level] = []
    for name, strike in zip((LevelName.R1, LevelName.R2), resistance):
        levels.append(_make_level(name, strike, all_rows, Side.CALL))
    for name, strike in zip((LevelName.S1, LevelName.S2), support):
        levels.append(_make_level(name, strike, all_rows, Side.PUT))

    if resistance and support:
        flip = _pick_flip(signal_rows, resistance[0], support[0])
        if flip is not None:
            levels.append(_make_level(LevelName.FLIP, flip, all_rows, None))

    return levels


def levels_by_name(levels: Iterable[Level]) -> "OrderedDict[str, Level]":
    return OrderedDict((level.name.value, level) for level in levels)
