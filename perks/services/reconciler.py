"""
Optimistic UI reconciler.

Sits between the action controls and the remote ledger. Stamps are never
incremented locally: the control goes to a loading state, the ledger call is
awaited, and the card shown afterwards is whatever the server returns on a
fresh read (or pushes over realtime).
"""

import itertools
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, Dict, List, Optional

from perks.core.errors import NotFoundError, RemoteCallError
from perks.domain.schemas import LoyaltyCard, Notice, Reward
from perks.services.actions import ActionKind, ActionStateMachine, ActionStatus, ActionTarget
from perks.services.ledger import RemoteLedgerClient

logger = logging.getLogger(__name__)

FetchCard = Callable[[str], Awaitable[Optional[LoyaltyCard]]]
Notify = Callable[[Notice], None]
CardConfirmed = Callable[[LoyaltyCard], Awaitable[None]]


class ControlState(str, Enum):
    READY = "ready"
    LOADING = "loading"
    UNDO = "undo"


@dataclass
class ActionOutcome:
    accepted: bool
    succeeded: bool
    status: ActionStatus
    card: Optional[LoyaltyCard] = None
    notice: Optional[Notice] = None


def error_notice(message: str) -> Notice:
    return Notice(title="Error", description=message, variant="destructive")


def _customer_name(card: Optional[LoyaltyCard]) -> str:
    if card and card.customer and card.customer.full_name:
        return card.customer.full_name
    return "Customer"


class OptimisticReconciler:
    """Runs stamp, redeem and undo actions for one store and keeps card views.

    Every card read is numbered when it is issued. A read only replaces the
    displayed card if nothing newer (another read or a realtime push) has been
    applied since it was issued.
    """

    def __init__(
        self,
        ledger: RemoteLedgerClient,
        machine: ActionStateMachine,
        store_id: str,
        fetch_card: FetchCard,
        notify: Optional[Notify] = None,
        on_card_confirmed: Optional[CardConfirmed] = None,
        location_id: Optional[str] = None,
    ):
        self._ledger = ledger
        self._machine = machine
        self._store_id = store_id
        self._fetch_card = fetch_card
        self._notify = notify or (lambda notice: None)
        self._on_card_confirmed = on_card_confirmed
        self.location_id = location_id
        self._cards: Dict[str, LoyaltyCard] = {}
        self._applied: Dict[str, int] = {}
        self._sequence = itertools.count(1)
        self._rewards: List[Reward] = []

    @property
    def machine(self) -> ActionStateMachine:
        return self._machine

    # ============================================
    # Card views
    # ============================================

    def card(self, loyalty_card_id: str) -> Optional[LoyaltyCard]:
        return self._cards.get(loyalty_card_id)

    @property
    def rewards(self) -> List[Reward]:
        return list(self._rewards)

    def set_rewards(self, rewards: List[Reward]) -> None:
        self._rewards = sorted(rewards, key=lambda r: r.stamps_required)

    def forget(self, loyalty_card_id: str) -> None:
        self._cards.pop(loyalty_card_id, None)
        self._applied.pop(loyalty_card_id, None)

    async def refresh(self, loyalty_card_id: str) -> Optional[LoyaltyCard]:
        """Re-read a card from the server and show it unless a newer value won."""
        issued = next(self._sequence)
        card = await self._fetch_card(loyalty_card_id)
        if card is None:
            return self._cards.get(loyalty_card_id)
        if not self._apply(card, issued):
            logger.debug(f"Discarding stale read of card {loyalty_card_id} (seq {issued})")
        return self._cards.get(loyalty_card_id)

    def apply_remote_row(
        self, loyalty_card_id: str, stamps: int, max_stamps: Optional[int] = None
    ) -> bool:
        """Apply a stamps value pushed over realtime. Unknown cards are ignored."""
        current = self._cards.get(loyalty_card_id)
        if current is None:
            return False
        update = {"stamps": stamps}
        if max_stamps is not None:
            update["max_stamps"] = max_stamps
        return self._apply(current.model_copy(update=update), next(self._sequence))

    def _apply(self, card: LoyaltyCard, sequence: int) -> bool:
        if sequence <= self._applied.get(card.id, 0):
            return False
        self._cards[card.id] = card
        self._applied[card.id] = sequence
        return True

    # ============================================
    # Controls
    # ============================================

    def control_state(self, target: ActionTarget) -> ControlState:
        status = self._machine.status(target)
        if status in (ActionStatus.PENDING, ActionStatus.UNDOING):
            return ControlState.LOADING
        if status == ActionStatus.UNDO_WINDOW:
            return ControlState.UNDO
        return ControlState.READY

    def can_redeem(self, loyalty_card_id: str, reward: Reward) -> bool:
        card = self._cards.get(loyalty_card_id)
        if card is None or not reward.is_active:
            return False
        if card.stamps < reward.stamps_required:
            return False
        return self._machine.can_begin(ActionTarget.redeem(loyalty_card_id, reward.id))

    def redeemable_rewards(self, loyalty_card_id: str) -> List[Reward]:
        return [r for r in self._rewards if self.can_redeem(loyalty_card_id, r)]

    # ============================================
    # Actions
    # ============================================

    async def add_stamp(self, loyalty_card_id: str) -> ActionOutcome:
        """Add exactly one stamp to a card."""
        target = ActionTarget.add_stamp(loyalty_card_id)

        async def call(undo: bool):
            return await self._ledger.add_stamp(
                loyalty_card_id, self._store_id, undo=undo, location_id=self.location_id
            )

        return await self._run(target, call, "Stamp Added! ⭐")

    async def redeem(
        self,
        loyalty_card_id: str,
        reward_id: str,
        success_title: str = "Success!",
        success_description: Optional[str] = None,
    ) -> ActionOutcome:
        """Redeem a reward, provided the card has enough stamps for it."""
        target = ActionTarget.redeem(loyalty_card_id, reward_id)
        reward = next((r for r in self._rewards if r.id == reward_id), None)
        if reward is None:
            raise NotFoundError("Reward not found.")
        if not self._machine.can_begin(target):
            return self._refused(target)
        if not self.can_redeem(loyalty_card_id, reward):
            if reward.is_active:
                notice = error_notice("Not enough stamps to redeem this reward.")
            else:
                notice = error_notice("This reward is no longer available.")
            self._notify(notice)
            return ActionOutcome(
                accepted=False,
                succeeded=False,
                status=self._machine.status(target),
                card=self._cards.get(loyalty_card_id),
                notice=notice,
            )

        async def call(undo: bool):
            return await self._ledger.redeem_reward(loyalty_card_id, reward_id, undo=undo)

        return await self._run(target, call, success_title, success_description)

    async def undo(self, target: ActionTarget) -> ActionOutcome:
        """Reverse the last action on a target while its undo window is open."""
        if not self._machine.begin_undo(target):
            return self._refused(target)

        card_id = target.loyalty_card_id
        notice = None
        succeeded = False
        try:
            if target.kind == ActionKind.ADD_STAMP:
                await self._ledger.add_stamp(
                    card_id, self._store_id, undo=True, location_id=self.location_id
                )
            else:
                await self._ledger.redeem_reward(card_id, target.reward_id, undo=True)
            succeeded = True
        except RemoteCallError as e:
            notice = error_notice(e.message)
        finally:
            self._machine.finish_undo(target)

        if succeeded:
            await self._confirm(card_id)
            notice = Notice(
                title="Action Undone!",
                description=f"Action for {_customer_name(self._cards.get(card_id))} was successful.",
            )
        self._notify(notice)
        return ActionOutcome(
            accepted=True,
            succeeded=succeeded,
            status=self._machine.status(target),
            card=self._cards.get(card_id),
            notice=notice,
        )

    async def _run(
        self,
        target: ActionTarget,
        call,
        success_title: str,
        success_description: Optional[str] = None,
    ) -> ActionOutcome:
        card_id = target.loyalty_card_id
        if not self._machine.begin(target):
            return self._refused(target)

        try:
            await call(False)
        except RemoteCallError as e:
            self._machine.fail(target)
            notice = error_notice(e.message)
            self._notify(notice)
            return ActionOutcome(
                accepted=True,
                succeeded=False,
                status=ActionStatus.FAILED,
                card=self._cards.get(card_id),
                notice=notice,
            )
        except BaseException:
            # Cancellation or an unexpected error must not leave the card locked
            self._machine.fail(target)
            raise

        self._machine.succeed(target)
        await self._confirm(card_id)
        notice = Notice(
            title=success_title,
            description=success_description
            or f"Action for {_customer_name(self._cards.get(card_id))} was successful.",
        )
        self._notify(notice)
        return ActionOutcome(
            accepted=True,
            succeeded=True,
            status=self._machine.status(target),
            card=self._cards.get(card_id),
            notice=notice,
        )

    async def _confirm(self, loyalty_card_id: str) -> None:
        """Re-read a card after a successful call and hand it on."""
        try:
            card = await self.refresh(loyalty_card_id)
        except Exception as e:
            # The call itself went through; the next push or refresh catches up
            logger.warning(f"Re-fetch of card {loyalty_card_id} failed: {e}")
            return
        if card and self._on_card_confirmed:
            try:
                await self._on_card_confirmed(card)
            except Exception as e:
                logger.warning(f"Card confirmation hook failed for {loyalty_card_id}: {e}")

    def _refused(self, target: ActionTarget) -> ActionOutcome:
        return ActionOutcome(
            accepted=False,
            succeeded=False,
            status=self._machine.status(target),
            card=self._cards.get(target.loyalty_card_id),
        )
