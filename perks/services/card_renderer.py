"""
Card presentation helpers.

Pure functions: they turn a server-confirmed card and the store's rewards into
what the customer card and the dashboard show. Nothing here talks to Supabase.
"""

import math
from datetime import datetime, timezone
from typing import List, Optional, Sequence, Tuple

from perks.core.config import settings
from perks.domain.schemas import (
    LoyaltyCard,
    RenderedCard,
    RenderedReward,
    RenderedStamp,
    Reward,
)

DEFAULT_BG_COLOR = "#1c1c22"
DEFAULT_STAMP_COLOR = "#8b5cf6"
DEFAULT_STAMP_SLOTS = 10


def get_text_color(hex_color: Optional[str]) -> str:
    """Black or white text, whichever reads better on `hex_color`.

    Uses the HSP perceived-brightness model. Missing or malformed colors get
    white text.
    """
    if not hex_color:
        return "#FFFFFF"
    value = hex_color[1:] if hex_color.startswith("#") else hex_color
    if len(value) == 3:
        value = "".join(c * 2 for c in value)
    if len(value) != 6:
        return "#FFFFFF"
    try:
        r, g, b = (int(value[i:i + 2], 16) for i in (0, 2, 4))
    except ValueError:
        return "#FFFFFF"

    luminance = math.sqrt(0.299 * r * r + 0.587 * g * g + 0.114 * b * b)
    return "#000000" if luminance > 127.5 else "#FFFFFF"


def active_rewards(rewards: Sequence[Reward]) -> List[Reward]:
    return sorted((r for r in rewards if r.is_active), key=lambda r: r.stamps_required)


def is_reward_available(stamps: int, reward: Reward) -> bool:
    return reward.is_active and stamps >= reward.stamps_required


def next_reward(stamps: int, rewards: Sequence[Reward]) -> Optional[Reward]:
    """The cheapest active reward the card has not reached yet."""
    return next((r for r in active_rewards(rewards) if r.stamps_required > stamps), None)


def stamp_slots(rewards: Sequence[Reward], fallback: int = DEFAULT_STAMP_SLOTS) -> int:
    """Number of stamp slots on the card: the most expensive active reward."""
    sorted_rewards = active_rewards(rewards)
    if not sorted_rewards:
        return fallback
    return sorted_rewards[-1].stamps_required


def progress_percent(stamps: int, rewards: Sequence[Reward], fallback: int = DEFAULT_STAMP_SLOTS) -> int:
    """Progress towards the next reward (or the last one once all are reached)."""
    upcoming = next_reward(stamps, rewards)
    if upcoming:
        goal = upcoming.stamps_required
    else:
        goal = stamp_slots(rewards, fallback)
    if goal <= 0:
        return 100
    return min(100, int(stamps / goal * 100))


def stamp_grid(stamps: int, slots: int) -> List[RenderedStamp]:
    return [RenderedStamp(index=i, filled=i < stamps) for i in range(slots)]


def referral_link(location_id: str, referral_code: str, base_url: Optional[str] = None) -> str:
    base = (base_url or settings.web_app_url).rstrip("/")
    return f"{base}/customer/signup/{location_id}/{referral_code}"


def _render_reward(stamps: int, reward: Reward) -> RenderedReward:
    return RenderedReward(
        id=reward.id,
        description=reward.description,
        stamps_required=reward.stamps_required,
        available=is_reward_available(stamps, reward),
    )


def render_card(
    card: LoyaltyCard,
    rewards: Sequence[Reward],
    base_url: Optional[str] = None,
) -> RenderedCard:
    """Build the customer-facing view of a card."""
    location = card.location
    customer = card.customer
    store = card.store
    stamps = card.stamps

    background = (location.card_bg_color if location else None) or DEFAULT_BG_COLOR
    text_color = (location.card_text_color if location else None) or get_text_color(background)
    stamp_color = (location.card_stamp_color if location else None) or DEFAULT_STAMP_COLOR

    shown = active_rewards(rewards)
    upcoming = next_reward(stamps, shown)
    slots = stamp_slots(shown, card.max_stamps or DEFAULT_STAMP_SLOTS)

    show_referral = bool(
        store and store.referral_enabled and customer and customer.referral_code and card.location_id
    )
    link = None
    if show_referral:
        link = referral_link(card.location_id, customer.referral_code, base_url)

    return RenderedCard(
        loyalty_card_id=card.id,
        store_name=store.store_name if store else None,
        location_name=location.name if location else None,
        customer_name=customer.full_name if customer else None,
        stamps=stamps,
        max_stamps=slots,
        progress_percent=progress_percent(stamps, shown, slots),
        stamp_grid=stamp_grid(stamps, slots),
        background_color=background,
        text_color=text_color,
        stamp_color=stamp_color,
        logo_url=location.logo_url if location else None,
        rewards=[_render_reward(stamps, r) for r in shown],
        next_reward=_render_reward(stamps, upcoming) if upcoming else None,
        stamps_to_next_reward=upcoming.stamps_required - stamps if upcoming else None,
        show_referral=show_referral,
        referral_link=link,
    )


# ============================================
# Trial countdown
# ============================================

def is_trial_expired(trial_ends_at: Optional[datetime], now: Optional[datetime] = None) -> bool:
    if trial_ends_at is None:
        return False
    now = now or datetime.now(timezone.utc)
    return trial_ends_at <= now


def trial_time_left(
    trial_ends_at: Optional[datetime], now: Optional[datetime] = None
) -> Tuple[Optional[str], bool]:
    """Text for the trial card and whether it is a live HH:MM:SS countdown.

    More than a day left shows "N days remaining" (rounded up); the last day
    counts down; an ended trial shows "0 days".
    """
    if trial_ends_at is None:
        return None, False
    now = now or datetime.now(timezone.utc)
    remaining = (trial_ends_at - now).total_seconds()
    if remaining <= 0:
        return "0 days", False

    one_day = 24 * 60 * 60
    if remaining < one_day:
        total = int(remaining)
        hours, rest = divmod(total, 3600)
        minutes, seconds = divmod(rest, 60)
        return f"{hours:02d}:{minutes:02d}:{seconds:02d}", True

    days = math.ceil(remaining / one_day)
    return f"{days} day{'s' if days != 1 else ''} remaining", False
