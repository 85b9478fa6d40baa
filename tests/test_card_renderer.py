from datetime import datetime, timedelta, timezone

import pytest

from perks.domain.schemas import Reward
from perks.repositories.loyalty_card import to_card
from perks.services.card_renderer import (
    get_text_color,
    is_trial_expired,
    next_reward,
    progress_percent,
    render_card,
    trial_time_left,
)

from tests.conftest import make_card_row


def _reward(reward_id: str, stamps_required: int, is_active: bool = True) -> Reward:
    return Reward(
        id=reward_id,
        store_id="store-1",
        stamps_required=stamps_required,
        description=f"{reward_id} reward",
        is_active=is_active,
    )


REWARDS = [_reward("big", 10), _reward("small", 5), _reward("off", 3, is_active=False)]


@pytest.mark.parametrize(
    "color,expected",
    [
        ("#FFFFFF", "#000000"),
        ("#fff", "#000000"),
        ("000000", "#FFFFFF"),
        ("#1c1c22", "#FFFFFF"),
        ("#f5d90a", "#000000"),
        (None, "#FFFFFF"),
        ("", "#FFFFFF"),
        ("#12345", "#FFFFFF"),
        ("#zzzzzz", "#FFFFFF"),
    ],
)
def test_text_color_follows_background_brightness(color, expected) -> None:
    assert get_text_color(color) == expected


def test_next_reward_is_cheapest_active_one_not_reached() -> None:
    assert next_reward(0, REWARDS).id == "small"
    assert next_reward(5, REWARDS).id == "big"
    assert next_reward(10, REWARDS) is None


def test_progress_towards_next_reward() -> None:
    assert progress_percent(2, REWARDS) == 40
    assert progress_percent(7, REWARDS) == 70
    assert progress_percent(12, REWARDS) == 100
    assert progress_percent(5, []) == 50


def test_rendered_card_availability_and_referral_link() -> None:
    card = to_card(make_card_row(stamps=6))

    rendered = render_card(card, REWARDS, base_url="https://puffperks.com/")

    assert rendered.store_name == "Puff Perks"
    assert rendered.max_stamps == 10
    assert [r.id for r in rendered.rewards] == ["small", "big"]
    assert [r.available for r in rendered.rewards] == [True, False]
    assert rendered.next_reward.id == "big"
    assert rendered.stamps_to_next_reward == 4
    assert sum(s.filled for s in rendered.stamp_grid) == 6
    assert len(rendered.stamp_grid) == 10
    assert rendered.text_color == "#FFFFFF"
    assert rendered.show_referral
    assert rendered.referral_link == "https://puffperks.com/customer/signup/loc-1/ADA123"


def test_referral_hidden_when_store_disables_it() -> None:
    card = to_card(make_card_row(referral_enabled=False))

    rendered = render_card(card, REWARDS)

    assert not rendered.show_referral
    assert rendered.referral_link is None


def test_trial_countdown_formats() -> None:
    now = datetime(2025, 6, 1, 12, 0, tzinfo=timezone.utc)

    assert trial_time_left(None, now) == (None, False)
    assert trial_time_left(now - timedelta(seconds=1), now) == ("0 days", False)
    assert trial_time_left(now + timedelta(hours=5, minutes=3, seconds=9), now) == ("05:03:09", True)
    assert trial_time_left(now + timedelta(days=1, hours=1), now) == ("2 days remaining", False)
    assert trial_time_left(now + timedelta(days=1), now) == ("1 day remaining", False)


def test_trial_expiry() -> None:
    now = datetime(2025, 6, 1, 12, 0, tzinfo=timezone.utc)
    assert is_trial_expired(now, now)
    assert not is_trial_expired(now + timedelta(minutes=1), now)
    assert not is_trial_expired(None, now)
