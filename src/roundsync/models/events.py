"""
Inbound Round Event Schemas

Every Socket.IO event the round feed can deliver is decoded here, at the
transport boundary, into one of the pydantic models below. The reconciler
only ever sees these typed variants, never raw dicts.

Socket.IO Format: 42["<eventName>", {...}]
Identifiers: gameNumber (primary, monotonic) and gameId (secondary)
Server timestamp: serverTime (ms since epoch)
"""

from decimal import Decimal
from typing import Any, ClassVar

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator


class MalformedEventError(ValueError):
    """Payload failed schema validation or lacks identifying fields"""

    def __init__(self, event_name: str, detail: str):
        self.event_name = event_name
        self.detail = detail
        super().__init__(f"Malformed '{event_name}' payload: {detail}")


def _coerce_decimal(v):
    """Coerce float to Decimal for money precision."""
    if v is None:
        return v
    if isinstance(v, float):
        return Decimal(str(v))
    return v


# =============================================================================
# BASE MODELS
# =============================================================================


class RoundEvent(BaseModel):
    """Fields shared by every round event."""

    model_config = ConfigDict(extra="ignore", frozen=True)

    EVENT_NAME: ClassVar[str] = ""

    gameId: str | None = Field(None, description="Server round identifier")
    gameNumber: int | None = Field(None, description="Monotonic round number")
    serverTime: int | None = Field(None, description="Server timestamp (ms)")

    def supplied(self, name: str) -> bool:
        """True when the field was present in the wire payload and not null."""
        return name in self.model_fields_set and getattr(self, name) is not None


class FullStateEvent(RoundEvent):
    """Adopted unconditionally; replaces a different round, merges into the same one."""

    gameNumber: int = Field(..., description="Monotonic round number")


class PartialUpdateEvent(RoundEvent):
    """Applied only when its identifiers match the canonical round."""

    @model_validator(mode="after")
    def require_identifier(self):
        if self.gameNumber is None and self.gameId is None:
            raise ValueError("gameNumber or gameId is required")
        return self


# =============================================================================
# FULL-STATE EVENTS
# =============================================================================


class FullRoundState(FullStateEvent):
    """gameState - complete round state, sent on connect and on round changes"""

    EVENT_NAME: ClassVar[str] = "gameState"

    multiplier: float = Field(1.0, ge=0)
    status: str = Field("waiting")
    totalBets: Decimal = Field(Decimal(0), ge=0)
    totalPlayers: int = Field(0, ge=0)
    boostedTotalBets: Decimal = Field(Decimal(0), ge=0)
    boostedPlayerCount: int = Field(0, ge=0)
    startTime: int | None = None
    countdown: int | None = Field(None, description="Pre-round countdown (ms)")

    @field_validator("totalBets", "boostedTotalBets", mode="before")
    @classmethod
    def coerce_decimal(cls, v):
        return _coerce_decimal(v)


class RoundWaiting(FullStateEvent):
    """gameWaiting - a new round opened its pre-round betting window"""

    EVENT_NAME: ClassVar[str] = "gameWaiting"

    countdown: int = Field(0, ge=0, description="Pre-round countdown (ms)")
    message: str | None = None


class RoundStarted(FullStateEvent):
    """gameStarted - the round went live; multiplier and liquidity reset"""

    EVENT_NAME: ClassVar[str] = "gameStarted"

    startTime: int | None = None
    totalPlayers: int = Field(0, ge=0)


class ResyncResponse(FullRoundState):
    """gameSync - answer to requestGameSync"""

    EVENT_NAME: ClassVar[str] = "gameSync"


class HistoryRecord(BaseModel):
    """One completed round inside a gameHistory batch"""

    model_config = ConfigDict(extra="ignore", frozen=True)

    id: str = Field("", description="Round identifier")
    gameNumber: int = Field(..., description="Round number")
    crashMultiplier: float | None = Field(None, ge=0)
    multiplier: float | None = Field(None, ge=0)
    currentMultiplier: float | None = Field(None, ge=0)
    totalBets: Decimal = Field(Decimal(0), ge=0)
    totalPlayers: int = Field(0, ge=0)
    startTime: int | None = None
    endTime: int | None = None

    @field_validator("totalBets", mode="before")
    @classmethod
    def coerce_decimal(cls, v):
        return _coerce_decimal(v) if v is not None else Decimal(0)

    @property
    def final_multiplier(self) -> float:
        for value in (self.crashMultiplier, self.currentMultiplier, self.multiplier):
            if value is not None:
                return value
        return 1.0


class RoundHistoryBatch(BaseModel):
    """gameHistory - recent completed rounds, oldest first"""

    model_config = ConfigDict(extra="ignore", frozen=True)

    EVENT_NAME: ClassVar[str] = "gameHistory"

    games: list[HistoryRecord] = Field(default_factory=list)
    serverTime: int | None = None


# =============================================================================
# ROUND-TERMINAL EVENT
# =============================================================================


class RoundCrashed(PartialUpdateEvent):
    """gameCrashed - the round ended at crashMultiplier"""

    EVENT_NAME: ClassVar[str] = "gameCrashed"

    crashMultiplier: float | None = Field(None, ge=0)
    finalMultiplier: float | None = Field(None, ge=0)
    totalBets: Decimal | None = Field(None, ge=0)
    totalPlayers: int | None = Field(None, ge=0)

    @field_validator("totalBets", mode="before")
    @classmethod
    def coerce_decimal(cls, v):
        return _coerce_decimal(v)


# =============================================================================
# PARTIAL-UPDATE EVENTS
# =============================================================================


class MultiplierTick(PartialUpdateEvent):
    """multiplierUpdate - live multiplier tick (~10/s)"""

    EVENT_NAME: ClassVar[str] = "multiplierUpdate"

    multiplier: float = Field(..., ge=0)


class CountdownTick(PartialUpdateEvent):
    """countdownUpdate - pre-round countdown tick (1/s)"""

    EVENT_NAME: ClassVar[str] = "countdownUpdate"

    countdown: int = Field(..., ge=0, description="Remaining countdown (ms)")


class WaitingRoundUpdate(PartialUpdateEvent):
    """waitingGameUpdate - pre-round totals"""

    EVENT_NAME: ClassVar[str] = "waitingGameUpdate"

    totalBets: Decimal | None = Field(None, ge=0)
    totalPlayers: int | None = Field(None, ge=0)
    countdown: int | None = Field(None, ge=0)

    @field_validator("totalBets", mode="before")
    @classmethod
    def coerce_decimal(cls, v):
        return _coerce_decimal(v)


class ServerSync(PartialUpdateEvent):
    """serverSync - periodic broadcast of multiplier and totals"""

    EVENT_NAME: ClassVar[str] = "serverSync"

    multiplier: float | None = Field(None, ge=0)
    totalBets: Decimal | None = Field(None, ge=0)
    totalPlayers: int | None = Field(None, ge=0)

    @field_validator("totalBets", mode="before")
    @classmethod
    def coerce_decimal(cls, v):
        return _coerce_decimal(v)


class WagerAccepted(PartialUpdateEvent):
    """betPlaced - a wager was accepted (any player)"""

    EVENT_NAME: ClassVar[str] = "betPlaced"

    walletAddress: str | None = None
    betAmount: Decimal | None = Field(None, ge=0)
    totalBets: Decimal | None = Field(None, ge=0)
    totalPlayers: int | None = Field(None, ge=0)
    countdown: int | None = Field(None, ge=0)

    @field_validator("betAmount", "totalBets", mode="before")
    @classmethod
    def coerce_decimal(cls, v):
        return _coerce_decimal(v)


class LiquidityUpdate(PartialUpdateEvent):
    """boostedLiquidityUpdate - real and/or synthetic liquidity totals"""

    EVENT_NAME: ClassVar[str] = "boostedLiquidityUpdate"

    realLiquidity: Decimal | None = Field(None, ge=0)
    boostedLiquidity: Decimal | None = Field(None, ge=0)
    boostedPlayerCount: int | None = Field(None, ge=0)

    @field_validator("realLiquidity", "boostedLiquidity", mode="before")
    @classmethod
    def coerce_decimal(cls, v):
        return _coerce_decimal(v)


class PlayerCashedOut(PartialUpdateEvent):
    """playerCashedOut - a player left the round with a payout"""

    EVENT_NAME: ClassVar[str] = "playerCashedOut"

    walletAddress: str | None = None
    amount: Decimal | None = Field(None, ge=0)
    cashoutMultiplier: float | None = Field(None, ge=0)
    totalBets: Decimal | None = Field(None, ge=0)
    totalPlayers: int | None = Field(None, ge=0)

    @field_validator("amount", "totalBets", mode="before")
    @classmethod
    def coerce_decimal(cls, v):
        return _coerce_decimal(v)


# =============================================================================
# DECODER
# =============================================================================

INBOUND_EVENTS: dict[str, type[BaseModel]] = {
    model.EVENT_NAME: model
    for model in (
        FullRoundState,
        RoundWaiting,
        RoundStarted,
        ResyncResponse,
        RoundHistoryBatch,
        RoundCrashed,
        MultiplierTick,
        CountdownTick,
        WaitingRoundUpdate,
        ServerSync,
        WagerAccepted,
        LiquidityUpdate,
        PlayerCashedOut,
    )
}


def is_round_event(event_name: str) -> bool:
    """True for event names the reconciler consumes."""
    return event_name in INBOUND_EVENTS


def decode_event(event_name: str, payload: Any) -> BaseModel | None:
    """
    Decode a raw Socket.IO event into its typed variant.

    Args:
        event_name: Socket.IO event name
        payload: Raw event payload (dict, or list for gameHistory)

    Returns:
        Typed event model, or None for event names this layer does not handle

    Raises:
        MalformedEventError: Payload fails validation
    """
    model = INBOUND_EVENTS.get(event_name)
    if model is None:
        return None

    if model is RoundHistoryBatch and isinstance(payload, list):
        payload = {"games": payload}

    if not isinstance(payload, dict):
        raise MalformedEventError(event_name, f"expected object, got {type(payload).__name__}")

    try:
        return model.model_validate(payload)
    except ValidationError as e:
        raise MalformedEventError(event_name, str(e)) from e
