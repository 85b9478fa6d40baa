from pydantic import BaseModel, EmailStr, Field, field_validator
from typing import Any, Optional, List, Literal
from datetime import datetime


# ============================================
# Store Schemas
# ============================================

class StoreHours(BaseModel):
    day_of_week: int = Field(..., ge=0, le=6)  # 0 = Sunday
    open_time: Optional[str] = None  # "HH:MM"
    close_time: Optional[str] = None


class Location(BaseModel):
    id: str
    store_id: str
    name: str
    address: Optional[str] = None
    card_bg_color: Optional[str] = None
    card_text_color: Optional[str] = None
    card_stamp_color: Optional[str] = None
    logo_url: Optional[str] = None
    store_hours: List[StoreHours] = []


class Reward(BaseModel):
    id: str
    store_id: str
    stamps_required: int = Field(..., gt=0)
    description: str
    is_active: bool = True


class Store(BaseModel):
    id: str
    store_name: str
    owner_id: Optional[str] = None
    subscription_status: Literal["trialing", "active", "past_due", "cancelled"] = "trialing"
    trial_ends_at: Optional[datetime] = None
    referral_enabled: bool = False
    locations: List[Location] = []
    rewards: List[Reward] = []

    @field_validator("rewards")
    @classmethod
    def sort_rewards(cls, rewards: List[Reward]) -> List[Reward]:
        return sorted(rewards, key=lambda r: r.stamps_required)


# ============================================
# Customer & Card Schemas
# ============================================

class Customer(BaseModel):
    id: str
    user_id: Optional[str] = None
    full_name: Optional[str] = None
    referral_code: Optional[str] = None
    email: Optional[str] = None


class LoyaltyCard(BaseModel):
    id: str
    customer_id: Optional[str] = None
    location_id: Optional[str] = None
    stamps: int = Field(0, ge=0)
    max_stamps: int = 10
    customer: Optional[Customer] = None
    location: Optional[Location] = None
    store: Optional[Store] = None


class PresenceEntry(BaseModel):
    user_id: str
    loyalty_card_id: str
    name: Optional[str] = None
    stamps: int = 0
    max_stamps: Optional[int] = None


# ============================================
# Analytics Schemas
# ============================================

class AnalyticsMetric(BaseModel):
    value: float = 0
    change: Optional[float] = None


class AnalyticsSnapshot(BaseModel):
    total_customers: AnalyticsMetric = AnalyticsMetric()
    repeat_customers: AnalyticsMetric = AnalyticsMetric()
    stamps_issued: AnalyticsMetric = AnalyticsMetric()
    prizes_redeemed: AnalyticsMetric = AnalyticsMetric()
    avg_visit_frequency: AnalyticsMetric = AnalyticsMetric()
    top_customer: Optional[dict] = None
    referral_signups: AnalyticsMetric = AnalyticsMetric()
    top_referrer: Optional[dict] = None
    is_live: bool = False

    @field_validator(
        "total_customers",
        "repeat_customers",
        "stamps_issued",
        "prizes_redeemed",
        "avg_visit_frequency",
        "referral_signups",
        mode="before",
    )
    @classmethod
    def wrap_plain_numbers(cls, value: Any) -> Any:
        # get-analytics sends either 42 or {"value": 42, "change": 3}
        if value is None:
            return {}
        if isinstance(value, (int, float)):
            return {"value": value}
        return value


class SegmentCounts(BaseModel):
    new: int = 0
    loyal: int = 0
    vips: int = 0
    at_risk: int = 0


class CustomerSegments(BaseModel):
    segments: SegmentCounts = SegmentCounts()
    visit_stats: dict = {}


# ============================================
# Workflow Schemas
# ============================================

class Notice(BaseModel):
    title: str
    description: Optional[str] = None
    variant: Literal["default", "destructive"] = "default"


class ActionStateResponse(BaseModel):
    loyalty_card_id: str
    kind: str
    reward_id: Optional[str] = None
    status: str


class ActionResponse(BaseModel):
    accepted: bool
    status: str
    card: Optional[LoyaltyCard] = None
    notice: Optional[Notice] = None


ControlStateValue = Literal["ready", "loading", "undo"]


class RewardControl(BaseModel):
    reward: Reward
    state: ControlStateValue
    redeemable: bool


class DashboardCardResponse(BaseModel):
    """A card as the dashboard shows it, with the state of its controls."""
    card: LoyaltyCard
    add_stamp_state: ControlStateValue
    rewards: List[RewardControl]


class LocationCustomer(BaseModel):
    loyalty_card_id: str
    customer_id: str
    full_name: Optional[str] = None
    stamps: int = 0
    max_stamps: int = 10


class LocationCustomersResponse(BaseModel):
    location_id: Optional[str] = None
    auto_refresh: bool = False
    customers: List[LocationCustomer]


class TrialStatus(BaseModel):
    trial_ends_at: datetime
    time_left: str
    countdown: bool = False  # last day: "HH:MM:SS"
    expired: bool = False


class LiveSessionsResponse(BaseModel):
    channel_status: str
    customers: List[PresenceEntry]
    actions: List[ActionStateResponse]
    trial: Optional[TrialStatus] = None


class ManualLookupRequest(BaseModel):
    email: Optional[str] = None


class ManualLookupResponse(BaseModel):
    customer_id: str
    full_name: Optional[str] = None
    email: Optional[EmailStr] = None
    loyalty_card_id: str


class ManualStampRequest(BaseModel):
    loyalty_card_id: str
    stamps: int = Field(1, ge=1, le=50)
    full_name: Optional[str] = None


class ManualStampResponse(BaseModel):
    applied: int
    notice: Notice


class SessionResponse(BaseModel):
    role: str
    redirect_to: str
    store_id: Optional[str] = None
    loyalty_card_id: Optional[str] = None
    is_super_admin: bool = False


class RenderedStamp(BaseModel):
    index: int
    filled: bool


class RenderedReward(BaseModel):
    id: str
    description: str
    stamps_required: int
    available: bool


class RenderedCard(BaseModel):
    loyalty_card_id: str
    store_name: Optional[str] = None
    location_name: Optional[str] = None
    customer_name: Optional[str] = None
    stamps: int
    max_stamps: int
    progress_percent: int
    stamp_grid: List[RenderedStamp]
    background_color: str
    text_color: str
    stamp_color: Optional[str] = None
    logo_url: Optional[str] = None
    rewards: List[RenderedReward]
    next_reward: Optional[RenderedReward] = None
    stamps_to_next_reward: Optional[int] = None
    show_referral: bool = False
    referral_link: Optional[str] = None


class UndoRequest(BaseModel):
    kind: Literal["add_stamp", "redeem_reward"] = "add_stamp"
    reward_id: Optional[str] = None
