"""
Action state machine for stamp and redeem controls.

Each control on the dashboard (add stamp on a card, redeem a given reward on a
card) is an action target with its own state:

    IDLE -> PENDING -> UNDO_WINDOW -> IDLE          (success, window expires)
    IDLE -> PENDING -> UNDO_WINDOW -> UNDOING -> IDLE   (success, then undo)
    IDLE -> PENDING -> FAILED -> IDLE               (remote error)

Only one mutating call may be in flight per loyalty card, whichever target it
belongs to. A manual multi-stamp batch holds the card the same way.
"""

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, List, Optional, Set, Tuple

from perks.core.config import settings

logger = logging.getLogger(__name__)


class ActionKind(str, Enum):
    ADD_STAMP = "add_stamp"
    REDEEM_REWARD = "redeem_reward"


class ActionStatus(str, Enum):
    IDLE = "idle"
    PENDING = "pending"
    UNDO_WINDOW = "undo_window"
    UNDOING = "undoing"
    FAILED = "failed"


@dataclass(frozen=True)
class ActionTarget:
    loyalty_card_id: str
    kind: ActionKind
    reward_id: Optional[str] = None

    @classmethod
    def add_stamp(cls, loyalty_card_id: str) -> "ActionTarget":
        return cls(loyalty_card_id, ActionKind.ADD_STAMP)

    @classmethod
    def redeem(cls, loyalty_card_id: str, reward_id: str) -> "ActionTarget":
        return cls(loyalty_card_id, ActionKind.REDEEM_REWARD, reward_id)


Listener = Callable[[ActionTarget, ActionStatus], None]


class ActionStateMachine:
    """Tracks every action target of one dashboard session.

    Transitions are synchronous; the caller awaits the remote call between
    `begin` and `succeed`/`fail`. After `close()` late transitions from calls
    that were still in flight are dropped silently.
    """

    def __init__(self, undo_window_seconds: Optional[float] = None):
        if undo_window_seconds is None:
            undo_window_seconds = settings.undo_window_ms / 1000
        self.undo_window_seconds = undo_window_seconds
        self._states: Dict[ActionTarget, ActionStatus] = {}
        self._timers: Dict[ActionTarget, asyncio.TimerHandle] = {}
        self._busy_cards: Set[str] = set()
        self._listeners: List[Listener] = []
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def add_listener(self, listener: Listener) -> None:
        self._listeners.append(listener)

    def status(self, target: ActionTarget) -> ActionStatus:
        return self._states.get(target, ActionStatus.IDLE)

    def is_card_busy(self, loyalty_card_id: str) -> bool:
        """True while a stamp, redeem or undo call for the card is in flight."""
        return loyalty_card_id in self._busy_cards

    def can_begin(self, target: ActionTarget) -> bool:
        return (
            not self._closed
            and self.status(target) == ActionStatus.IDLE
            and not self.is_card_busy(target.loyalty_card_id)
        )

    def begin(self, target: ActionTarget) -> bool:
        """IDLE -> PENDING. Returns False (and changes nothing) when refused."""
        if not self.can_begin(target):
            logger.info(f"Ignoring {target.kind.value} on card {target.loyalty_card_id}: {self.status(target).value}")
            return False
        self._busy_cards.add(target.loyalty_card_id)
        self._set(target, ActionStatus.PENDING)
        return True

    def succeed(self, target: ActionTarget) -> None:
        """PENDING -> UNDO_WINDOW, arming the expiry timer."""
        if self._closed:
            return
        self._require(target, ActionStatus.PENDING)
        self._busy_cards.discard(target.loyalty_card_id)
        loop = asyncio.get_running_loop()
        self._timers[target] = loop.call_later(self.undo_window_seconds, self._expire, target)
        self._set(target, ActionStatus.UNDO_WINDOW)

    def fail(self, target: ActionTarget) -> None:
        """PENDING -> FAILED -> IDLE."""
        if self._closed:
            return
        self._require(target, ActionStatus.PENDING)
        self._busy_cards.discard(target.loyalty_card_id)
        self._notify(target, ActionStatus.FAILED)
        self._set(target, ActionStatus.IDLE)

    def begin_undo(self, target: ActionTarget) -> bool:
        """UNDO_WINDOW -> UNDOING. Returns False when there is nothing to undo."""
        if self._closed or self.status(target) != ActionStatus.UNDO_WINDOW:
            return False
        if self.is_card_busy(target.loyalty_card_id):
            return False
        timer = self._timers.pop(target, None)
        if timer:
            timer.cancel()
        self._busy_cards.add(target.loyalty_card_id)
        self._set(target, ActionStatus.UNDOING)
        return True

    def finish_undo(self, target: ActionTarget) -> None:
        """UNDOING -> IDLE, whatever the compensating call returned."""
        if self._closed:
            return
        self._require(target, ActionStatus.UNDOING)
        self._busy_cards.discard(target.loyalty_card_id)
        self._set(target, ActionStatus.IDLE)

    def begin_batch(self, loyalty_card_id: str) -> bool:
        """Hold a card for a multi-stamp batch. Returns False when it is busy."""
        if self._closed or self.is_card_busy(loyalty_card_id):
            return False
        self._busy_cards.add(loyalty_card_id)
        return True

    def end_batch(self, loyalty_card_id: str) -> None:
        self._busy_cards.discard(loyalty_card_id)

    def snapshot(self) -> List[Tuple[ActionTarget, ActionStatus]]:
        """Every target that is not idle."""
        return list(self._states.items())

    def close(self) -> None:
        for timer in self._timers.values():
            timer.cancel()
        self._timers.clear()
        self._states.clear()
        self._busy_cards.clear()
        self._closed = True

    def _expire(self, target: ActionTarget) -> None:
        self._timers.pop(target, None)
        if self.status(target) == ActionStatus.UNDO_WINDOW:
            self._set(target, ActionStatus.IDLE)

    def _require(self, target: ActionTarget, expected: ActionStatus) -> None:
        current = self.status(target)
        if current != expected:
            raise RuntimeError(
                f"{target.kind.value} on card {target.loyalty_card_id} is {current.value}, expected {expected.value}"
            )

    def _set(self, target: ActionTarget, status: ActionStatus) -> None:
        if status == ActionStatus.IDLE:
            self._states.pop(target, None)
        else:
            self._states[target] = status
        self._notify(target, status)

    def _notify(self, target: ActionTarget, status: ActionStatus) -> None:
        for listener in self._listeners:
            try:
                listener(target, status)
            except Exception as e:
                logger.error(f"Action listener failed: {e}")
