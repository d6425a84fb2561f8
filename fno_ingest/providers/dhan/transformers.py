"""
Transformers from Dhan option chain payloads to validated snapshots.
"""

import logging
import math
import re
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional

from pydantic import ValidationError

from fno_ingest.providers.base.provider import MalformedPayloadError
from fno_ingest.schemas.market_data import OptionChainSnapshot, OptionLeg, StrikeRow

# Set up logging
logger = logging.getLogger(__name__)

EXPIRY_PATTERN = re.compile(r"^\d{4}-\d{2}-\d{2}$")
DEFAULT_STRIKE_STEP = 50.0


def is_valid_expiry(value: Any) -> bool:
    return isinstance(value, str) and bool(EXPIRY_PATTERN.match(value))


def pick_nearest_expiry(expiries: Iterable[str], today: str) -> Optional[str]:
    """
    Pick the first expiry on or after ``today``.

    Args:
        expiries: ``YYYY-MM-DD`` strings in any order
        today: Trading day, ``YYYY-MM-DD``

    Returns:
        The nearest upcoming expiry, the latest one if all are in the past,
        or None when the list is empty
    """
    ordered = sorted(e for e in expiries if is_valid_expiry(e))
    for expiry in ordered:
        if expiry >= today:
            return expiry
    return ordered[-1] if ordered else None


def _parse_leg(raw: Any, strike_key: str, side: str) -> Optional[OptionLeg]:
    if not isinstance(raw, dict):
        return None
    try:
        return OptionLeg.model_validate(raw)
    except ValidationError as e:
        logger.debug(f"Dropping malformed {side} leg at strike {strike_key}: {e.error_count()} error(s)")
        return None


def normalize_option_chain(payload: Dict[str, Any]) -> OptionChainSnapshot:
    """
    Convert a ``/optionchain`` response into strike rows sorted ascending.

    Strikes whose key does not parse to a finite number are dropped; a
    malformed leg becomes ``None`` without dropping the other leg.

    Args:
        payload: Response body, ``{"data": {"last_price": ..., "oc": {...}}}``

    Returns:
        Normalized option chain snapshot

    Raises:
        MalformedPayloadError: If the body has no option chain map at all
    """
    data = payload.get("data") if isinstance(payload, dict) else None
    if not isinstance(data, dict) or not isinstance(data.get("oc"), dict):
        raise MalformedPayloadError("Option chain response has no data.oc map")

    rows: List[StrikeRow] = []
    dropped = 0
    for strike_key, legs in data["oc"].items():
        try:
            strike = float(strike_key)
        except (TypeError, ValueError):
            dropped += 1
            continue
        if not math.isfinite(strike) or not isinstance(legs, dict):
            dropped += 1
            continue
        rows.append(StrikeRow(
            strike=strike,
            ce=_parse_leg(legs.get("ce"), strike_key, "ce"),
            pe=_parse_leg(legs.get("pe"), strike_key, "pe"),
        ))

    if dropped:
        logger.warning(f"Option chain: dropped {dropped} malformed strike(s)")

    rows.sort(key=lambda r: r.strike)

    last_price = data.get("last_price")
    if not isinstance(last_price, (int, float)) or isinstance(last_price, bool) or not math.isfinite(last_price):
        last_price = None

    return OptionChainSnapshot(last_price=last_price, rows=rows)


def detect_strike_step(strikes: Iterable[float], sample: int = 20) -> float:
    """Smallest grid step among the lowest ``sample`` strikes."""
    ordered = sorted(strikes)[:sample]
    for prev, cur in zip(ordered, ordered[1:]):
        if cur - prev > 0:
            return cur - prev
    return DEFAULT_STRIKE_STEP


@dataclass(frozen=True)
class ChainSummary:
    last_price: float
    step: float
    atm: float
    pcr_window: float
    pcr_near: float


def _pcr(rows: Iterable[StrikeRow]) -> float:
    call_oi = 0.0
    put_oi = 0.0
    for row in rows:
        call_oi += (row.ce.oi or 0.0) if row.ce else 0.0
        put_oi += (row.pe.oi or 0.0) if row.pe else 0.0
    return put_oi / call_oi if call_oi > 0 else 0.0


def chain_summary(
    snapshot: OptionChainSnapshot,
    window_steps: int = 15,
    pcr_steps: int = 3
) -> Optional[ChainSummary]:
    """
    ATM strike and put/call OI ratios around it.

    Args:
        snapshot: Normalized chain
        window_steps: Strikes either side of ATM in the wide PCR
        pcr_steps: Strikes either side of ATM in the near PCR

    Returns:
        Summary, or None without a usable last price or strikes
    """
    if snapshot.last_price is None or not snapshot.rows:
        return None

    step = detect_strike_step(r.strike for r in snapshot.rows)
    atm = round(snapshot.last_price / step) * step

    window = [r for r in snapshot.rows if abs(r.strike - atm) <= window_steps * step]
    near = [r for r in snapshot.rows if abs(r.strike - atm) <= pcr_steps * step]

    return ChainSummary(
        last_price=snapshot.last_price,
        step=step,
        atm=atm,
        pcr_window=_pcr(window),
        pcr_near=_pcr(near),
    )
