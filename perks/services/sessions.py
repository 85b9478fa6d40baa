"""
Live sessions.

A DashboardSession is one mounted store page: it owns the store's realtime
channel, the action state machine, the reconciler and the live refresh. A
CustomerCardSession is one open card view. The SessionRegistry
reference-counts both so that mounting the same page twice shares a single
realtime subscription, and tears everything down on shutdown.

Events for the browser (notices, presence changes, card updates, action
states) are pushed onto per-listener asyncio queues and streamed as SSE.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Tuple

from postgrest.exceptions import APIError
from supabase import AsyncClient

from database.connection import get_db
from perks.core.config import settings
from perks.core.errors import NotFoundError, RemoteCallError
from perks.core.security import AuthSession
from perks.domain.schemas import (
    ActionStateResponse,
    AnalyticsSnapshot,
    CustomerSegments,
    DashboardCardResponse,
    LiveSessionsResponse,
    Location,
    LocationCustomer,
    LocationCustomersResponse,
    LoyaltyCard,
    Notice,
    RenderedCard,
    Reward,
    RewardControl,
    Store,
    StoreHours,
    TrialStatus,
)
from perks.repositories.loyalty_card import LoyaltyCardRepository, to_card
from perks.repositories.reward import RewardRepository
from perks.repositories.store import StoreRepository
from perks.services.actions import ActionStateMachine, ActionStatus, ActionTarget
from perks.services.card_renderer import is_trial_expired, render_card, trial_time_left
from perks.services.ledger import RemoteLedgerClient
from perks.services.manual_stamps import ManualStampService
from perks.services.presence import (
    CardRowSubscription,
    PresenceSynchronizer,
    apply_stamp_update,
)
from perks.services.reconciler import ActionOutcome, OptimisticReconciler, error_notice
from perks.services.scheduler import PeriodicTask, has_store_hours, is_store_open

logger = logging.getLogger(__name__)


class EventStream:
    """In-memory fan-out of session events to connected SSE listeners."""

    def __init__(self):
        self._queues: Set[asyncio.Queue] = set()

    @property
    def listeners(self) -> int:
        return len(self._queues)

    def register(self) -> asyncio.Queue:
        """Register an SSE connection. Returns the queue to wait on."""
        queue: asyncio.Queue = asyncio.Queue()
        self._queues.add(queue)
        return queue

    def unregister(self, queue: asyncio.Queue) -> None:
        """Unregister when the SSE connection closes."""
        self._queues.discard(queue)

    def publish(self, event: str, data: Any) -> None:
        for queue in self._queues:
            queue.put_nowait({"event": event, "data": data})

    def close(self) -> None:
        # None tells every open stream to finish
        for queue in self._queues:
            queue.put_nowait(None)
        self._queues.clear()


async def fetch_card(db: AsyncClient, loyalty_card_id: str) -> Optional[LoyaltyCard]:
    row = await LoyaltyCardRepository.get_by_id(db, loyalty_card_id)
    return to_card(row) if row else None


def _action_state(target: ActionTarget, status: ActionStatus) -> ActionStateResponse:
    return ActionStateResponse(
        loyalty_card_id=target.loyalty_card_id,
        kind=target.kind.value,
        reward_id=target.reward_id,
        status=status.value,
    )


class _BaseSession:
    """Shared plumbing: event stream, action machine and reconciler."""

    def __init__(
        self,
        db: AsyncClient,
        user_id: str,
        store_id: Optional[str],
        ledger: Optional[RemoteLedgerClient] = None,
        undo_window_seconds: Optional[float] = None,
    ):
        self.db = db
        self.user_id = user_id
        self.store_id = store_id
        self.events = EventStream()
        self.ledger = ledger or RemoteLedgerClient(db)
        self.machine = ActionStateMachine(undo_window_seconds)
        self.machine.add_listener(self._on_action)
        self.reconciler = OptimisticReconciler(
            self.ledger,
            self.machine,
            store_id or "",
            fetch_card=self._fetch_card,
            notify=self.push_notice,
            on_card_confirmed=self._on_card_confirmed,
        )
        self.closed = False

    def push_notice(self, notice: Notice) -> None:
        self.events.publish("notice", notice.model_dump())

    async def _fetch_card(self, loyalty_card_id: str) -> Optional[LoyaltyCard]:
        return await fetch_card(self.db, loyalty_card_id)

    async def _on_card_confirmed(self, card: LoyaltyCard) -> None:
        pass

    def _on_action(self, target: ActionTarget, status: ActionStatus) -> None:
        self.events.publish("action", _action_state(target, status).model_dump())

    async def _guarded(self, what: str, coro: Awaitable[Any]) -> None:
        """Run background work; failures become a notice instead of an exception."""
        try:
            await coro
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"{what} failed: {e}")
            self.push_notice(error_notice(getattr(e, "message", None) or settings.generic_error_message))


class DashboardSession(_BaseSession):
    """One mounted store dashboard."""

    def __init__(
        self,
        db: AsyncClient,
        store_id: str,
        user_id: str,
        ledger: Optional[RemoteLedgerClient] = None,
        undo_window_seconds: Optional[float] = None,
        refresh_interval: Optional[float] = None,
        clock: Callable[[], datetime] = datetime.now,
        location_id: Optional[str] = None,
    ):
        super().__init__(db, user_id, store_id, ledger, undo_window_seconds)
        self.store: Optional[Store] = None
        self.location_id = location_id
        self.customers: List[LocationCustomer] = []
        self._clock = clock
        self.presence = PresenceSynchronizer(
            db,
            store_id,
            user_id,
            on_stamp_update=self._on_stamp_update,
            on_change=self._on_presence_change,
        )
        self.manual = ManualStampService(db, self.ledger, store_id, machine=self.machine)
        self._live_refresh = PeriodicTask(
            f"live-refresh-{store_id}",
            refresh_interval if refresh_interval is not None else settings.live_refresh_interval_seconds,
            self.refresh_live,
            should_run=self.is_open,
        )

    async def open(self) -> "DashboardSession":
        await self.load_store()
        await self.presence.start()
        await self._guarded("Customer list load", self.refresh_customers())
        self._live_refresh.start()
        logger.info(f"Dashboard session opened for store {self.store_id} by {self.user_id}")
        return self

    async def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        await self._live_refresh.stop()
        await self.presence.stop()
        self.machine.close()
        self.events.close()
        logger.info(f"Dashboard session closed for store {self.store_id}")

    async def load_store(self) -> Store:
        row = await StoreRepository.get_by_id(self.db, self.store_id)
        if not row:
            raise NotFoundError("Store not found.")
        self.store = Store(**row)
        self.reconciler.set_rewards(self.store.rewards)
        if self.selected_location() is None:
            self.location_id = self.store.locations[0].id if self.store.locations else None
        self._use_location()
        return self.store

    # ============================================
    # Locations & customers
    # ============================================

    def selected_location(self) -> Optional[Location]:
        if not self.store:
            return None
        return next((loc for loc in self.store.locations if loc.id == self.location_id), None)

    async def select_location(self, location_id: str) -> None:
        """Switch the dashboard to another location of the store."""
        if not self.store or not any(loc.id == location_id for loc in self.store.locations):
            raise NotFoundError("Location not found.")
        if location_id == self.location_id:
            return
        self.location_id = location_id
        self._use_location()
        self.customers = []
        await self.refresh_customers()

    def _use_location(self) -> None:
        self.reconciler.location_id = self.location_id
        self.manual.location_id = self.location_id

    def store_hours(self) -> List[StoreHours]:
        location = self.selected_location()
        return list(location.store_hours) if location else []

    def is_open(self) -> bool:
        """Whether the live refresh should run now.

        Only locations with opening hours are refreshed automatically, and
        only while they are open.
        """
        hours = self.store_hours()
        if not has_store_hours(hours):
            return False
        return is_store_open(hours, self._clock())

    async def refresh_customers(self, silent: bool = False) -> List[LocationCustomer]:
        """Re-read every card signed up at the selected location.

        A failed read empties the list; unless `silent` the error is raised.
        """
        if not self.location_id:
            self.customers = []
            return self.customers
        try:
            rows = await LoyaltyCardRepository.list_for_location(self.db, self.location_id)
        except APIError as e:
            logger.error(f"Customer list read failed for location {self.location_id}: {e.message}")
            self.customers = []
            self._publish_customers()
            if silent:
                return self.customers
            raise RemoteCallError(e.message or "Error fetching customers") from e
        self.customers = [
            LocationCustomer(
                loyalty_card_id=row["id"],
                customer_id=row["customers"]["id"],
                full_name=row["customers"].get("full_name"),
                stamps=row.get("stamps") or 0,
                max_stamps=row.get("max_stamps") or 10,
            )
            for row in rows
            if row.get("customers")
        ]
        self._publish_customers()
        return self.customers

    def customers_state(self) -> LocationCustomersResponse:
        return LocationCustomersResponse(
            location_id=self.location_id,
            auto_refresh=has_store_hours(self.store_hours()),
            customers=self.customers,
        )

    def _publish_customers(self) -> None:
        self.events.publish("customers", self.customers_state().model_dump())

    def _patch_customer(self, loyalty_card_id: str, stamps: int) -> bool:
        for i, customer in enumerate(self.customers):
            if customer.loyalty_card_id == loyalty_card_id:
                self.customers[i] = customer.model_copy(update={"stamps": stamps})
                return True
        return False

    # ============================================
    # Live customers
    # ============================================

    async def refresh_live(self) -> None:
        """Re-read every card currently shown as live, and the customer list."""
        for entry in self.presence.live_customers():
            card = await self.reconciler.refresh(entry.loyalty_card_id)
            if card:
                apply_stamp_update(self.presence.entries, {"id": card.id, "stamps": card.stamps})
        self._publish_live()
        await self.refresh_customers(silent=True)

    def live_state(self) -> LiveSessionsResponse:
        return LiveSessionsResponse(
            channel_status=self.presence.status.value,
            customers=self.presence.live_customers(),
            actions=[_action_state(t, s) for t, s in self.machine.snapshot()],
            trial=self.trial_status(),
        )

    def trial_status(self) -> Optional[TrialStatus]:
        """Free-trial countdown, for stores still on their trial."""
        if not self.store or self.store.subscription_status != "trialing" or not self.store.trial_ends_at:
            return None
        ends_at = self.store.trial_ends_at
        if ends_at.tzinfo is None:
            ends_at = ends_at.replace(tzinfo=timezone.utc)
        time_left, countdown = trial_time_left(ends_at)
        return TrialStatus(
            trial_ends_at=ends_at,
            time_left=time_left,
            countdown=countdown,
            expired=is_trial_expired(ends_at),
        )

    def _publish_live(self) -> None:
        self.events.publish("presence", self.live_state().model_dump())

    def _on_presence_change(self) -> None:
        self._publish_live()

    async def _on_stamp_update(self, loyalty_card_id: str, stamps: int) -> None:
        if self.reconciler.apply_remote_row(loyalty_card_id, stamps):
            self.events.publish("card", {"id": loyalty_card_id, "stamps": stamps})
        if self.reconciler.card(loyalty_card_id):
            await self._guarded(
                f"Refresh of card {loyalty_card_id}",
                self.reconciler.refresh(loyalty_card_id),
            )
        await self._guarded("Customer list refresh", self.refresh_customers(silent=True))

    async def _on_card_confirmed(self, card: LoyaltyCard) -> None:
        if apply_stamp_update(self.presence.entries, {"id": card.id, "stamps": card.stamps}):
            self._publish_live()
        if self._patch_customer(card.id, card.stamps):
            self._publish_customers()
        self.events.publish("card", {"id": card.id, "stamps": card.stamps})
        if settings.broadcast_stamp_updates:
            await self.presence.broadcast_stamp_update(card.id, card.stamps)

    # ============================================
    # Cards & actions
    # ============================================

    async def get_card(self, loyalty_card_id: str) -> LoyaltyCard:
        """The reconciled view of a card of this store, reading it on first use."""
        card = self.reconciler.card(loyalty_card_id)
        if card is None:
            card = await self.reconciler.refresh(loyalty_card_id)
        if card is None or (card.location and card.location.store_id != self.store_id):
            self.reconciler.forget(loyalty_card_id)
            raise NotFoundError("Loyalty card not found.")
        return card

    async def card_view(self, loyalty_card_id: str) -> DashboardCardResponse:
        """A card with the state of its stamp and redeem controls."""
        card = await self.get_card(loyalty_card_id)
        redeemable = {r.id for r in self.reconciler.redeemable_rewards(loyalty_card_id)}
        return DashboardCardResponse(
            card=card,
            add_stamp_state=self.reconciler.control_state(ActionTarget.add_stamp(loyalty_card_id)).value,
            rewards=[
                RewardControl(
                    reward=reward,
                    state=self.reconciler.control_state(ActionTarget.redeem(loyalty_card_id, reward.id)).value,
                    redeemable=reward.id in redeemable,
                )
                for reward in self.reconciler.rewards
            ],
        )

    async def refresh_card(self, loyalty_card_id: str) -> None:
        """Re-read a card changed outside the action controls (manual batch)."""

        async def refresh():
            card = await self.reconciler.refresh(loyalty_card_id)
            if card:
                await self._on_card_confirmed(card)

        await self._guarded(f"Refresh of card {loyalty_card_id}", refresh())

    async def add_stamp(self, loyalty_card_id: str) -> ActionOutcome:
        await self.get_card(loyalty_card_id)
        return await self.reconciler.add_stamp(loyalty_card_id)

    async def redeem(self, loyalty_card_id: str, reward_id: str) -> ActionOutcome:
        await self.get_card(loyalty_card_id)
        return await self.reconciler.redeem(loyalty_card_id, reward_id)

    async def undo(self, target: ActionTarget) -> ActionOutcome:
        return await self.reconciler.undo(target)

    async def analytics(self) -> AnalyticsSnapshot:
        return await self.ledger.fetch_analytics(self.store_id)

    async def segments(self) -> CustomerSegments:
        return await self.ledger.fetch_customer_segments(self.store_id)


class CustomerCardSession(_BaseSession):
    """One customer looking at their card.

    Follows the card row over realtime and advertises itself on the store
    channel so the store dashboard lists it as a live customer.
    """

    def __init__(
        self,
        db: AsyncClient,
        loyalty_card_id: str,
        user_id: str,
        ledger: Optional[RemoteLedgerClient] = None,
        undo_window_seconds: Optional[float] = None,
    ):
        super().__init__(db, user_id, None, ledger, undo_window_seconds)
        self.loyalty_card_id = loyalty_card_id
        self.row_subscription: Optional[CardRowSubscription] = None
        self.presence: Optional[PresenceSynchronizer] = None

    @property
    def card(self) -> Optional[LoyaltyCard]:
        return self.reconciler.card(self.loyalty_card_id)

    async def open(self) -> "CustomerCardSession":
        card = await self.reconciler.refresh(self.loyalty_card_id)
        if card is None or (card.customer and card.customer.user_id not in (None, self.user_id)):
            raise NotFoundError("Loyalty card not found.")

        self.store_id = card.location.store_id if card.location else None
        if self.store_id:
            rewards = await RewardRepository.list_active(self.db, self.store_id)
            self.reconciler.set_rewards([Reward(**r) for r in rewards])

        if card.customer_id:
            self.row_subscription = CardRowSubscription(
                self.db, card.customer_id, card.id, on_row=self._on_row
            )
            await self.row_subscription.start()
        if self.store_id:
            self.presence = PresenceSynchronizer(
                self.db,
                self.store_id,
                self.user_id,
                track_payload=self.presence_payload(),
                listen=False,
            )
            await self.presence.start()
        logger.info(f"Card session opened for card {self.loyalty_card_id}")
        return self

    async def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        if self.row_subscription:
            await self.row_subscription.stop()
        if self.presence:
            await self.presence.stop()
        self.machine.close()
        self.events.close()
        logger.info(f"Card session closed for card {self.loyalty_card_id}")

    def presence_payload(self) -> dict:
        card = self.card
        return {
            "user_id": self.user_id,
            "loyalty_card_id": self.loyalty_card_id,
            "name": card.customer.full_name if card and card.customer else None,
            "stamps": card.stamps if card else 0,
            "max_stamps": card.max_stamps if card else None,
        }

    def rendered(self) -> RenderedCard:
        card = self.card
        if card is None:
            raise NotFoundError("Loyalty card not found.")
        return render_card(card, self.reconciler.rewards)

    async def redeem(self, reward_id: str) -> ActionOutcome:
        reward = next((r for r in self.reconciler.rewards if r.id == reward_id), None)
        return await self.reconciler.redeem(
            self.loyalty_card_id,
            reward_id,
            success_title="Reward Redeemed!",
            success_description=f"You've successfully redeemed: {reward.description}" if reward else None,
        )

    async def _on_row(self, row: dict) -> None:
        stamps = row.get("stamps")
        if stamps is not None:
            self.reconciler.apply_remote_row(self.loyalty_card_id, int(stamps), row.get("max_stamps"))
        await self._guarded(f"Refresh of card {self.loyalty_card_id}", self._refresh_and_publish())

    async def _refresh_and_publish(self) -> None:
        await self.reconciler.refresh(self.loyalty_card_id)
        await self._on_card_confirmed(self.card)

    async def _on_card_confirmed(self, card: Optional[LoyaltyCard]) -> None:
        if card is None:
            return
        self.events.publish("card", self.rendered().model_dump())
        if self.presence:
            await self.presence.retrack(self.presence_payload())


# ============================================
# Registry
# ============================================

ClientFactory = Callable[[str], Awaitable[AsyncClient]]


@dataclass
class _Entry:
    session: Any
    refs: int = 1


class SessionRegistry:
    """Reference-counted live sessions, keyed by (user_id, store_id or card_id)."""

    def __init__(
        self,
        client_factory: ClientFactory = get_db,
        dashboard_factory: Callable[..., DashboardSession] = DashboardSession,
        card_factory: Callable[..., CustomerCardSession] = CustomerCardSession,
    ):
        self._client_factory = client_factory
        self._dashboard_factory = dashboard_factory
        self._card_factory = card_factory
        self._dashboards: Dict[Tuple[str, str], _Entry] = {}
        self._cards: Dict[Tuple[str, str], _Entry] = {}
        self._lock = asyncio.Lock()

    @property
    def open_sessions(self) -> int:
        return len(self._dashboards) + len(self._cards)

    async def acquire_dashboard(self, auth: AuthSession, store_id: str) -> DashboardSession:
        """Mount a store page. Re-mounts reuse the open session."""
        key = (auth.user_id, store_id)
        async with self._lock:
            entry = self._dashboards.get(key)
            if entry:
                entry.refs += 1
                return entry.session
            db = await self._client_factory(auth.access_token)
            session = self._dashboard_factory(db, store_id, auth.user_id)
            await self._open(session)
            self._dashboards[key] = _Entry(session)
            return session

    async def release_dashboard(self, user_id: str, store_id: str) -> bool:
        """Unmount a store page. Returns True when the session was closed."""
        return await self._release(self._dashboards, (user_id, store_id))

    def get_dashboard(self, user_id: str, store_id: str) -> DashboardSession:
        entry = self._dashboards.get((user_id, store_id))
        if not entry:
            raise NotFoundError("No open dashboard session for this store.")
        return entry.session

    async def acquire_card(self, auth: AuthSession, loyalty_card_id: str) -> CustomerCardSession:
        key = (auth.user_id, loyalty_card_id)
        async with self._lock:
            entry = self._cards.get(key)
            if entry:
                entry.refs += 1
                return entry.session
            db = await self._client_factory(auth.access_token)
            session = self._card_factory(db, loyalty_card_id, auth.user_id)
            await self._open(session)
            self._cards[key] = _Entry(session)
            return session

    async def release_card(self, user_id: str, loyalty_card_id: str) -> bool:
        return await self._release(self._cards, (user_id, loyalty_card_id))

    def get_card(self, user_id: str, loyalty_card_id: str) -> CustomerCardSession:
        entry = self._cards.get((user_id, loyalty_card_id))
        if not entry:
            raise NotFoundError("No open session for this card.")
        return entry.session

    async def close(self) -> None:
        """Close every session (application shutdown)."""
        async with self._lock:
            entries = list(self._dashboards.values()) + list(self._cards.values())
            self._dashboards.clear()
            self._cards.clear()
        for entry in entries:
            try:
                await entry.session.close()
            except Exception as e:
                logger.error(f"Failed to close session: {e}")
        logger.info(f"Closed {len(entries)} live session(s)")

    async def _open(self, session) -> None:
        try:
            await session.open()
        except BaseException:
            await session.close()
            raise

    async def _release(self, sessions: Dict[Tuple[str, str], _Entry], key: Tuple[str, str]) -> bool:
        async with self._lock:
            entry = sessions.get(key)
            if not entry:
                return False
            entry.refs -= 1
            if entry.refs > 0:
                return False
            sessions.pop(key)
        await entry.session.close()
        logger.info(f"{self.open_sessions} live session(s) still open")
        return True
