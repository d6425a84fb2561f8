"""
Validated shapes for upstream payloads and persisted snapshot records.

Upstream rows are validated one by one at the ingestion boundary; a row that
fails validation is dropped (and counted) instead of failing the snapshot.
"""

import logging
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Type, TypeVar

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, FiniteFloat, ValidationError

logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)


def filter_valid(model: Type[ModelT], items: Iterable[Any], context: str = "") -> List[ModelT]:
    """
    Validate ``items`` one at a time, keeping only those that parse.

    Args:
        model: Pydantic model to validate against
        items: Raw upstream items
        context: Label for the log line about dropped items

    Returns:
        The valid items, in input order
    """
    valid: List[ModelT] = []
    dropped = 0
    for item in items:
        try:
            valid.append(model.model_validate(item))
        except ValidationError:
            dropped += 1
    if dropped:
        logger.warning(f"{context or model.__name__}: dropped {dropped} malformed row(s)")
    return valid


#################################################
# Option chain
#################################################

class OptionGreeks(BaseModel):
    model_config = ConfigDict(extra="ignore")

    delta: Optional[FiniteFloat] = None
    theta: Optional[FiniteFloat] = None
    gamma: Optional[FiniteFloat] = None
    vega: Optional[FiniteFloat] = None


class OptionLeg(BaseModel):
    """One side (CE or PE) of a strike."""
    model_config = ConfigDict(extra="ignore")

    greeks: Optional[OptionGreeks] = None
    implied_volatility: Optional[FiniteFloat] = None
    last_price: Optional[FiniteFloat] = None
    oi: Optional[FiniteFloat] = None
    previous_close_price: Optional[FiniteFloat] = None
    previous_oi: Optional[FiniteFloat] = None
    previous_volume: Optional[FiniteFloat] = None
    top_ask_price: Optional[FiniteFloat] = None
    top_ask_quantity: Optional[FiniteFloat] = None
    top_bid_price: Optional[FiniteFloat] = None
    top_bid_quantity: Optional[FiniteFloat] = None
    volume: Optional[FiniteFloat] = None


class StrikeRow(BaseModel):
    strike: FiniteFloat
    ce: Optional[OptionLeg] = None
    pe: Optional[OptionLeg] = None


class OptionChainSnapshot(BaseModel):
    """Normalized option chain: strikes sorted ascending."""
    last_price: Optional[FiniteFloat] = None
    rows: List[StrikeRow] = Field(default_factory=list)


#################################################
# GEX levels
#################################################

class ExposureRow(BaseModel):
    """One strike's aggregated exposure values for one snapshot."""
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    strike: FiniteFloat
    oi_exposure: FiniteFloat = Field(validation_alias=AliasChoices("oi_exposure", "gex_oi_raw"))
    vol_exposure: FiniteFloat = Field(validation_alias=AliasChoices("vol_exposure", "gex_vol_raw"))
    call_oi: FiniteFloat = Field(default=0.0, validation_alias=AliasChoices("call_oi", "ce_oi"))
    put_oi: FiniteFloat = Field(default=0.0, validation_alias=AliasChoices("put_oi", "pe_oi"))
    call_volume: FiniteFloat = Field(default=0.0, validation_alias=AliasChoices("call_volume", "ce_vol"))
    put_volume: FiniteFloat = Field(default=0.0, validation_alias=AliasChoices("put_volume", "pe_vol"))


class LevelName(str, Enum):
    R1 = "R1"
    R2 = "R2"
    S1 = "S1"
    S2 = "S2"
    FLIP = "Flip"


class Side(str, Enum):
    CALL = "call"
    PUT = "put"


class Level(BaseModel):
    name: LevelName
    strike: float
    oi_exposure: Optional[float] = None
    vol_exposure: Optional[float] = None
    side: Optional[Side] = None


class GexCacheResponse(BaseModel):
    """``/gex/nifty/cache`` body; rows are validated separately."""
    model_config = ConfigDict(extra="ignore")

    symbol: Optional[str] = None
    expiry: Optional[str] = None
    spot: Optional[FiniteFloat] = None
    rows: List[Any] = Field(default_factory=list)


class GexTicksResponse(BaseModel):
    model_config = ConfigDict(extra="ignore")

    trading_day_ist: Optional[str] = None


#################################################
# Advance / decline breadth
#################################################

class AdvDecCurrent(BaseModel):
    model_config = ConfigDict(extra="ignore")

    advances: int = 0
    declines: int = 0
    total: int = 0


class AdvDecPoint(BaseModel):
    model_config = ConfigDict(extra="ignore")

    time: str
    advances: int
    declines: int


class AdvDecResponse(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    current: AdvDecCurrent
    chart_data: List[Any] = Field(default_factory=list, validation_alias=AliasChoices("chartData", "chart_data"))


#################################################
# Persistence
#################################################

NO_SESSION_KEY = "NA"


class SnapshotRecord(BaseModel):
    """
    One time-bucketed snapshot, as persisted.

    The dedup key is (feed_id, session_key, trading_day, minute_bucket) plus
    sub_bucket_size for feeds that store several granularities side by side.
    """
    feed_id: str
    session_key: str = NO_SESSION_KEY
    trading_day: str
    minute_bucket: int
    sub_bucket_size: Optional[int] = None
    payload: Dict[str, Any] = Field(default_factory=dict)
    captured_at_utc: datetime
    captured_at_local: str

    def to_document(self) -> Dict[str, Any]:
        # datetimes stay native so they are stored as BSON dates
        return self.model_dump(mode="python")


class SaveResult(BaseModel):
    """Outcome of one SnapshotStore write."""
    saved: bool
    duplicate: bool = False
    collection: str
    key: Dict[str, Any] = Field(default_factory=dict)
