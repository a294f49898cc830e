"""Models for the collectible claim engine."""

from enum import Enum, IntEnum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

from src.core.exceptions.handler import ServiceError


ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"


class RarityTier(IntEnum):
    """Ordered rarity buckets as stored on-chain."""
    COMMON = 0
    UNCOMMON = 1
    RARE = 2
    EPIC = 3
    LEGENDARY = 4


class EligibilityType(IntEnum):
    """Who may claim a template."""
    OPEN = 0
    WHITELIST = 1
    TOKEN_HOLDER = 2
    PROFILE_REQUIRED = 3


class Template(BaseModel):
    """Point-in-time projection of an on-chain collectible template."""
    model_config = ConfigDict(frozen=True)

    template_id: int = Field(..., ge=0, description="Monotonically assigned template id")
    title: str = ""
    issuer: str = Field(..., description="Issuer address; zero address means the id does not exist")
    category: str = ""
    description: str = ""
    rarity_tier: RarityTier = RarityTier.COMMON
    max_supply: int = Field(0, ge=0, description="0 = unbounded")
    current_supply: int = Field(0, ge=0)
    tier: int = Field(0, ge=0, description="Reputation value bucket")
    start_time: int = Field(0, ge=0, description="Unix seconds, 0 = unbounded")
    end_time: int = Field(0, ge=0, description="Unix seconds, 0 = unbounded")
    is_paused: bool = False
    is_active: bool = True
    eligibility_type: EligibilityType = EligibilityType.OPEN
    eligibility_data: str = "0x"
    metadata_uri: str = ""

    @property
    def remaining_supply(self) -> Optional[int]:
        if self.max_supply == 0:
            return None
        return max(self.max_supply - self.current_supply, 0)

    @property
    def is_sold_out(self) -> bool:
        return self.max_supply != 0 and self.current_supply >= self.max_supply


class ClaimStatus(BaseModel):
    """Derived claim verdict for one (template, user) pair. Never persisted."""
    model_config = ConfigDict(frozen=True)

    template_id: int
    has_claimed: bool
    is_eligible: bool
    can_claim_now: bool
    reason: Optional[str] = None
    remaining_supply: Optional[int] = None
    start_time: Optional[int] = None
    end_time: Optional[int] = None

    @model_validator(mode="after")
    def _reason_iff_blocked(self) -> "ClaimStatus":
        if self.can_claim_now and self.reason is not None:
            raise ValueError("reason must be empty when the claim is allowed")
        if not self.can_claim_now and not self.reason:
            raise ValueError("reason is required when the claim is blocked")
        return self


class GasEstimate(BaseModel):
    """Gas cost estimate for a claim transaction."""
    gas_limit: int
    gas_price_wei: int
    cost_wei: int
    cost_eth: str
    cost_usd: Optional[float] = None


class RawEvent(BaseModel):
    """Undecoded log entry as returned by eth_getLogs."""
    address: str
    topics: List[str]
    data: str
    block_number: int
    transaction_hash: str
    log_index: int = 0


class ClaimEvent(BaseModel):
    """Decoded CollectibleClaimed event."""
    model_config = ConfigDict(frozen=True)

    template_id: int
    card_id: int
    claimer: str
    timestamp: int
    tx_hash: str
    block_number: int


class ClaimReceipt(BaseModel):
    """Confirmed claim transaction."""
    tx_hash: str
    block_number: int
    status: int
    gas_used: int = 0
    event: Optional[ClaimEvent] = None

    @property
    def card_id(self) -> Optional[int]:
        return self.event.card_id if self.event else None


class ClaimHistoryEntry(BaseModel):
    """A confirmed claim, one per (template, user, transaction)."""
    model_config = ConfigDict(frozen=True)

    id: str = Field(..., description="Idempotency key derived from template id, user and tx hash")
    template_id: int
    card_id: Optional[int] = None
    user_address: str
    tx_hash: str
    block_number: int
    timestamp: int
    chain_id: int
    collectible_data: Dict[str, Any] = Field(default_factory=dict)

    @property
    def category(self) -> Optional[str]:
        return self.collectible_data.get("category")

    @property
    def rarity_tier(self) -> Optional[int]:
        return self.collectible_data.get("rarity_tier")


class ClaimHistoryFilters(BaseModel):
    """Read-path filters for stored claims."""
    category: Optional[str] = None
    rarity_tier: Optional[RarityTier] = None
    template_id: Optional[int] = None
    start_time: Optional[int] = None
    end_time: Optional[int] = None


class ClaimLogQuery(BaseModel):
    """Query handed to the claim log store."""
    user_address: Optional[str] = None
    filters: ClaimHistoryFilters = Field(default_factory=ClaimHistoryFilters)
    since_timestamp: Optional[int] = None
    limit: Optional[int] = None
    offset: int = 0
    reverse: bool = False


class ClaimHistoryStats(BaseModel):
    """Aggregates folded over a user's stored claims."""
    user_address: str
    total_claims: int = 0
    claims_by_category: Dict[str, int] = Field(default_factory=dict)
    claims_by_rarity: Dict[str, int] = Field(default_factory=dict)
    first_claim: Optional[ClaimHistoryEntry] = None
    latest_claim: Optional[ClaimHistoryEntry] = None


class TrendingScore(BaseModel):
    """Ephemeral ranking signals for one template."""
    template_id: int
    claim_velocity: float = Field(..., ge=0.0, le=1.0)
    scarcity: float = Field(..., ge=0.0, le=1.0)
    urgency: float = Field(..., ge=0.0, le=1.0)
    score: float
    is_trending: bool
    is_expiring_soon: bool
    is_low_supply: bool


class ClaimState(str, Enum):
    IDLE = "idle"
    ESTIMATING = "estimating"
    CLAIMING = "claiming"
    SUCCESS = "success"
    ERROR = "error"


class ClaimSnapshot(BaseModel):
    """Observable state of one (user, template) claim flow."""
    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    user_address: str
    template_id: int
    state: ClaimState = ClaimState.IDLE
    tx_hash: Optional[str] = None
    claimed_id: Optional[int] = None
    gas_estimate: Optional[GasEstimate] = None
    error_code: Optional[str] = None
    error_message: Optional[str] = None
    error: Optional[ServiceError] = Field(default=None, exclude=True)


class SyncResult(BaseModel):
    """Outcome of one history sync pass."""
    user_address: str
    from_block: int
    to_block: int
    events_found: int
    new_entries: int
