"""
Realtime presence and card-row synchronization.

A store page subscribes to `store-dashboard-{store_id}`: customers viewing
their card track themselves there, the dashboard tracks itself as the owner,
and `stamp_update` broadcasts tell every dashboard that a card changed.
A customer card view also subscribes to `customer-card-{customer_id}` for
Postgres UPDATEs on its own loyalty_cards row.

Realtime callbacks are plain functions called from the client's receive
loop; anything that has to await is spawned as a task owned by the channel
wrapper and cancelled when it stops.
"""

import asyncio
import logging
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Iterable, Optional, Set

from supabase import AsyncClient

from perks.core.config import settings
from perks.domain.schemas import PresenceEntry
from perks.services.scheduler import backoff_delay

logger = logging.getLogger(__name__)

STAMP_UPDATE_EVENT = "stamp_update"

StampUpdateHandler = Callable[[str, int], Awaitable[None]]
RowHandler = Callable[[dict], Awaitable[None]]


class ChannelStatus(str, Enum):
    DISCONNECTED = "disconnected"
    SUBSCRIBING = "subscribing"
    SUBSCRIBED = "subscribed"


def store_topic(store_id: str) -> str:
    return f"store-dashboard-{store_id}"


def card_topic(customer_id: str) -> str:
    return f"customer-card-{customer_id}"


def _state_name(status: Any) -> str:
    return str(getattr(status, "value", status))


def _flatten(presences: Iterable[Any]) -> Iterable[dict]:
    for presence in presences or []:
        if not isinstance(presence, dict):
            continue
        # Some server versions still nest payloads under "metas"
        if "metas" in presence:
            yield from (m for m in presence["metas"] if isinstance(m, dict))
        else:
            yield presence


def build_presence_entries(state: Dict[str, Any], own_user_id: str) -> Dict[str, PresenceEntry]:
    """Rebuild the live-customer set from a full presence state.

    For every presence key the first presence that is not the operator and
    carries a loyalty_card_id wins. Entries are keyed by viewer, and a card
    shown by two viewers is only listed once.
    """
    entries: Dict[str, PresenceEntry] = {}
    seen_cards: Set[str] = set()
    for presences in state.values():
        for presence in _flatten(presences):
            user_id = presence.get("user_id")
            card_id = presence.get("loyalty_card_id")
            if not user_id or user_id == own_user_id or not card_id:
                continue
            if user_id not in entries and card_id not in seen_cards:
                entries[user_id] = PresenceEntry(
                    user_id=user_id,
                    loyalty_card_id=card_id,
                    name=presence.get("name"),
                    stamps=presence.get("stamps") or 0,
                    max_stamps=presence.get("max_stamps"),
                )
                seen_cards.add(card_id)
            break
    return entries


def unwrap_stamp_update(message: Any) -> Optional[dict]:
    """Get `{id, stamps}` out of a broadcast message.

    Accepts the bare row, `{"new": row}`, and either of those inside the
    broadcast envelope's "payload".
    """
    if not isinstance(message, dict):
        return None
    if "payload" in message and isinstance(message["payload"], dict):
        message = message["payload"]
    row = message.get("new", message)
    if not isinstance(row, dict) or not row.get("id") or row.get("stamps") is None:
        return None
    return row


def apply_stamp_update(entries: Dict[str, PresenceEntry], row: dict) -> Optional[PresenceEntry]:
    """Set the stamps of the entry showing `row["id"]`. Unknown cards change nothing."""
    for user_id, entry in entries.items():
        if entry.loyalty_card_id == row["id"]:
            updated = entry.model_copy(update={"stamps": int(row["stamps"])})
            entries[user_id] = updated
            return updated
    return None


def row_from_change(payload: Any) -> Optional[dict]:
    """Extract the new row from a postgres_changes callback payload."""
    if not isinstance(payload, dict):
        return None
    data = payload.get("data")
    if isinstance(data, dict) and isinstance(data.get("record"), dict):
        return data["record"]
    for key in ("new", "record"):
        if isinstance(payload.get(key), dict):
            return payload[key]
    return None


class RealtimeChannel:
    """One realtime subscription with teardown and reconnect.

    Subclasses register their handlers in `_configure` and may do work once
    subscribed in `_on_subscribed`. On CHANNEL_ERROR, TIMED_OUT or an
    unexpected CLOSED the channel is dropped and subscribed again after an
    exponential backoff. The attempt count only resets once a join succeeds;
    after `max_attempts` failed joins in a row the channel stays down and
    `exhausted` is set.
    """

    def __init__(
        self,
        client: AsyncClient,
        topic: str,
        presence_key: str = "",
        on_change: Optional[Callable[[], None]] = None,
        base_delay: Optional[float] = None,
        max_delay: Optional[float] = None,
        max_attempts: Optional[int] = None,
    ):
        self._client = client
        self.topic = topic
        self._presence_key = presence_key
        self._on_change = on_change
        self._base_delay = settings.realtime_reconnect_base_delay if base_delay is None else base_delay
        self._max_delay = settings.realtime_reconnect_max_delay if max_delay is None else max_delay
        self._max_attempts = settings.realtime_reconnect_max_attempts if max_attempts is None else max_attempts
        self.status = ChannelStatus.DISCONNECTED
        self._channel = None
        self._stopping = False
        self._reconnecting = False
        self._retry = False
        self._attempts = 0
        self.exhausted = False
        self._tasks: Set[asyncio.Task] = set()

    async def start(self) -> None:
        if self._channel is not None:
            return
        self._stopping = False
        self._attempts = 0
        self.exhausted = False
        await self._subscribe()

    async def stop(self) -> None:
        self._stopping = True
        for task in list(self._tasks):
            task.cancel()
        for task in list(self._tasks):
            try:
                await task
            except asyncio.CancelledError:
                pass
            except Exception as e:
                logger.warning(f"[{self.topic}] task ended with error during stop: {e}")
        self._tasks.clear()
        await self._remove_channel()
        self._set_status(ChannelStatus.DISCONNECTED)
        logger.info(f"[{self.topic}] unsubscribed")

    def _configure(self, channel) -> None:
        raise NotImplementedError

    async def _on_subscribed(self, channel) -> None:
        pass

    async def _subscribe(self) -> None:
        self._set_status(ChannelStatus.SUBSCRIBING)
        channel = self._client.channel(
            self.topic,
            {
                "config": {
                    "broadcast": {"ack": False, "self": False},
                    "presence": {"key": self._presence_key},
                    "private": False,
                }
            },
        )
        self._configure(channel)
        self._channel = channel
        await channel.subscribe(lambda status, error=None: self._handle_status(status, error, channel))

    async def _remove_channel(self) -> None:
        channel, self._channel = self._channel, None
        if channel is None:
            return
        try:
            await self._client.remove_channel(channel)
        except Exception as e:
            logger.warning(f"[{self.topic}] remove_channel failed: {e}")

    def _handle_status(self, status: Any, error: Optional[Exception] = None, channel=None) -> None:
        if channel is not None and channel is not self._channel:
            # Late callback from a channel that was already dropped
            return
        state = _state_name(status)
        if state == "SUBSCRIBED":
            logger.info(f"[{self.topic}] subscribed")
            self._attempts = 0
            self._set_status(ChannelStatus.SUBSCRIBED)
            channel = self._channel
            if channel is not None:
                self._spawn(self._on_subscribed(channel))
        elif state in ("CHANNEL_ERROR", "TIMED_OUT", "CLOSED"):
            self._set_status(ChannelStatus.DISCONNECTED)
            if self._stopping:
                return
            logger.warning(f"[{self.topic}] {state}: {error}")
            if self._reconnecting:
                self._retry = True
            else:
                self._spawn(self._reconnect())

    async def _reconnect(self) -> None:
        self._reconnecting = True
        try:
            while not self._stopping:
                self._retry = False
                await self._remove_channel()
                if self._attempts >= self._max_attempts:
                    self.exhausted = True
                    logger.error(f"[{self.topic}] giving up after {self._max_attempts} reconnect attempts")
                    return
                self._attempts += 1
                await asyncio.sleep(backoff_delay(self._base_delay, self._max_delay, self._attempts))
                if self._stopping:
                    return
                logger.info(f"[{self.topic}] reconnecting (attempt {self._attempts}/{self._max_attempts})")
                try:
                    await self._subscribe()
                except Exception as e:
                    logger.warning(f"[{self.topic}] reconnect attempt {self._attempts} failed: {e}")
                    self._set_status(ChannelStatus.DISCONNECTED)
                    continue
                # The join result arrives later; an error reported while
                # subscribing goes round the loop again
                if not self._retry:
                    return
        finally:
            self._reconnecting = False

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error(f"[{self.topic}] background task failed: {task.exception()}")

    def _set_status(self, status: ChannelStatus) -> None:
        if status == self.status:
            return
        self.status = status
        self._changed()

    def _changed(self) -> None:
        if self._on_change:
            self._on_change()


class PresenceSynchronizer(RealtimeChannel):
    """The store channel: tracks this session and keeps the live-customer set.

    The operator (dashboard) tracks `{user_id, is_owner: true}`; a customer
    card view tracks its card summary and does not listen to presence.
    """

    def __init__(
        self,
        client: AsyncClient,
        store_id: str,
        user_id: str,
        track_payload: Optional[dict] = None,
        on_stamp_update: Optional[StampUpdateHandler] = None,
        on_change: Optional[Callable[[], None]] = None,
        listen: bool = True,
        **backoff,
    ):
        super().__init__(client, store_topic(store_id), presence_key=user_id, on_change=on_change, **backoff)
        self.store_id = store_id
        self.user_id = user_id
        self._track_payload = track_payload or {"user_id": user_id, "is_owner": True}
        self._on_stamp_update = on_stamp_update
        self._listen = listen
        self.entries: Dict[str, PresenceEntry] = {}

    def live_customers(self) -> list[PresenceEntry]:
        return list(self.entries.values())

    async def stop(self) -> None:
        await super().stop()
        self.entries = {}

    async def broadcast_stamp_update(self, loyalty_card_id: str, stamps: int) -> bool:
        """Tell the other sessions on this store that a card changed."""
        if self._channel is None or self.status != ChannelStatus.SUBSCRIBED:
            return False
        await self._channel.send_broadcast(STAMP_UPDATE_EVENT, {"id": loyalty_card_id, "stamps": stamps})
        return True

    async def retrack(self, payload: dict) -> None:
        """Replace what this session advertises on the channel."""
        self._track_payload = payload
        if self._channel is not None and self.status == ChannelStatus.SUBSCRIBED:
            await self._channel.track(payload)

    def _configure(self, channel) -> None:
        if not self._listen:
            return
        channel.on_presence_sync(self._rebuild)
        channel.on_presence_join(lambda *args: self._rebuild())
        channel.on_presence_leave(lambda *args: self._rebuild())
        channel.on_broadcast(STAMP_UPDATE_EVENT, self._handle_broadcast)

    async def _on_subscribed(self, channel) -> None:
        await channel.track(self._track_payload)

    def _rebuild(self, *args) -> None:
        if self._channel is None:
            return
        self.entries = build_presence_entries(self._channel.presence_state(), self.user_id)
        self._changed()

    def _handle_broadcast(self, message: Any) -> None:
        row = unwrap_stamp_update(message)
        if row is None:
            logger.warning(f"[{self.topic}] malformed stamp_update: {message}")
            return
        if apply_stamp_update(self.entries, row):
            self._changed()
        if self._on_stamp_update:
            self._spawn(self._on_stamp_update(row["id"], int(row["stamps"])))


class CardRowSubscription(RealtimeChannel):
    """Postgres UPDATEs on one loyalty_cards row, for the customer card view."""

    def __init__(
        self,
        client: AsyncClient,
        customer_id: str,
        loyalty_card_id: str,
        on_row: RowHandler,
        on_change: Optional[Callable[[], None]] = None,
        **backoff,
    ):
        super().__init__(client, card_topic(customer_id), on_change=on_change, **backoff)
        self.loyalty_card_id = loyalty_card_id
        self._on_row = on_row

    def _configure(self, channel) -> None:
        channel.on_postgres_changes(
            "UPDATE",
            self._handle_change,
            table="loyalty_cards",
            schema="public",
            filter=f"id=eq.{self.loyalty_card_id}",
        )

    def _handle_change(self, payload: Any) -> None:
        row = row_from_change(payload)
        if row is None or row.get("id") != self.loyalty_card_id:
            return
        self._spawn(self._on_row(row))
