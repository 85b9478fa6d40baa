import asyncio
import copy
import json
from types import SimpleNamespace
from typing import Any, Dict, List, Optional

import pytest
import pytest_asyncio

from perks.core.security import AuthSession

STORE_ID = "store-1"
LOCATION_ID = "loc-1"
OWNER_ID = "owner-1"
CUSTOMER_ID = "cust-1"
CUSTOMER_USER_ID = "user-7"
CARD_ID = "card-1"
REWARD_ID = "reward-coffee"


def make_card_row(
    card_id: str = CARD_ID,
    stamps: int = 4,
    customer_id: str = CUSTOMER_ID,
    user_id: str = CUSTOMER_USER_ID,
    full_name: str = "Ada Lovelace",
    store_id: str = STORE_ID,
    referral_enabled: bool = True,
) -> dict:
    """A loyalty_cards row shaped like the joined select the repository issues."""
    return {
        "id": card_id,
        "created_at": "2025-01-01T10:00:00+00:00",
        "stamps": stamps,
        "max_stamps": 10,
        "customer_id": customer_id,
        "location_id": LOCATION_ID,
        "customer": {
            "id": customer_id,
            "full_name": full_name,
            "user_id": user_id,
            "referral_code": "ADA123",
        },
        # The per-location customer list joins the same row as "customers"
        "customers": {"id": customer_id, "full_name": full_name},
        "location": {
            "id": LOCATION_ID,
            "store_id": store_id,
            "name": "Main Street",
            "card_bg_color": "#1c1c22",
            "card_text_color": None,
            "card_stamp_color": "#8b5cf6",
            "logo_url": None,
            "store": {"id": store_id, "store_name": "Puff Perks", "referral_enabled": referral_enabled},
        },
    }


def make_reward(reward_id: str = REWARD_ID, stamps_required: int = 10, is_active: bool = True) -> dict:
    return {
        "id": reward_id,
        "store_id": STORE_ID,
        "stamps_required": stamps_required,
        "description": f"Reward for {stamps_required}",
        "is_active": is_active,
    }


def make_store_row(rewards: Optional[List[dict]] = None, store_hours: Optional[List[dict]] = None) -> dict:
    return {
        "id": STORE_ID,
        "store_name": "Puff Perks",
        "owner_id": OWNER_ID,
        "subscription_status": "trialing",
        "trial_ends_at": None,
        "referral_enabled": True,
        "locations": [
            {
                "id": LOCATION_ID,
                "store_id": STORE_ID,
                "name": "Main Street",
                "store_hours": store_hours or [],
            }
        ],
        "rewards": rewards if rewards is not None else [make_reward()],
    }


def _lookup(row: dict, column: str) -> Any:
    value: Any = row
    for part in column.split("."):
        if not isinstance(value, dict):
            return None
        value = value.get(part)
    return value


class FakeQuery:
    """Just enough of the PostgREST builder: select/eq/order/limit/execute."""

    def __init__(self, rows: List[dict], error: Optional[Exception] = None):
        self._rows = rows
        self._limit: Optional[int] = None
        self._error = error

    def select(self, *args, **kwargs):
        return self

    def eq(self, column: str, value: Any):
        self._rows = [r for r in self._rows if _lookup(r, column) == value]
        return self

    def order(self, *args, **kwargs):
        return self

    def limit(self, n: int):
        self._limit = n
        return self

    async def execute(self):
        if self._error:
            raise self._error
        rows = self._rows[: self._limit] if self._limit is not None else self._rows
        return SimpleNamespace(data=copy.deepcopy(rows))


class FakeBackend:
    """Server-side state plus the edge functions that mutate it."""

    def __init__(self):
        self.cards: Dict[str, dict] = {}
        self.rewards: Dict[str, dict] = {}
        self.calls: List[tuple] = []
        self.errors: List[str] = []
        self.gate: Optional[asyncio.Event] = None
        self.analytics: dict = {}
        self.segments: dict = {}
        self.raise_on_call: Optional[Exception] = None

    def add_card(self, row: dict) -> dict:
        self.cards[row["id"]] = row
        return row

    def add_reward(self, reward: dict) -> dict:
        self.rewards[reward["id"]] = reward
        return reward

    def calls_to(self, name: str) -> List[dict]:
        return [body for fn, body in self.calls if fn == name]

    async def invoke(self, function_name: str, invoke_options: Optional[dict] = None):
        body = (invoke_options or {}).get("body", {})
        self.calls.append((function_name, body))
        if self.gate is not None:
            await self.gate.wait()
        if self.raise_on_call is not None:
            raise self.raise_on_call
        if self.errors:
            return json.dumps({"error": self.errors.pop(0)}).encode()

        if function_name == "add-stamp-manually":
            card = self.cards[body["loyalty_card_id"]]
            card["stamps"] += -1 if body.get("undo") else 1
            return json.dumps({"id": card["id"], "stamps": card["stamps"]}).encode()
        if function_name == "redeem-reward":
            card = self.cards[body["loyalty_card_id"]]
            cost = self.rewards[body["reward_id"]]["stamps_required"]
            card["stamps"] += cost if body.get("undo") else -cost
            return json.dumps({"success": True}).encode()
        if function_name == "get-analytics":
            return json.dumps(self.analytics).encode()
        if function_name == "get-customer-segments":
            return json.dumps(self.segments).encode()
        raise AssertionError(f"unexpected function {function_name}")


class FakeChannel:
    """Records handlers and lets tests drive realtime events."""

    def __init__(
        self,
        topic: str,
        params: Optional[dict] = None,
        auto_subscribe: bool = True,
        join_status: str = "SUBSCRIBED",
        async_status: bool = False,
    ):
        self.topic = topic
        self.params = params or {}
        self.auto_subscribe = auto_subscribe
        self.join_status = join_status
        self.async_status = async_status
        self.presence_handlers: Dict[str, Any] = {}
        self.broadcast_handlers: Dict[str, Any] = {}
        self.postgres_handlers: List[tuple] = []
        self.status_callback = None
        self.tracked: List[dict] = []
        self.sent: List[tuple] = []
        self.state: Dict[str, List[dict]] = {}
        self.removed = False

    def on_presence_sync(self, callback):
        self.presence_handlers["sync"] = callback
        return self

    def on_presence_join(self, callback):
        self.presence_handlers["join"] = callback
        return self

    def on_presence_leave(self, callback):
        self.presence_handlers["leave"] = callback
        return self

    def on_broadcast(self, event: str, callback):
        self.broadcast_handlers[event] = callback
        return self

    def on_postgres_changes(self, event: str, callback, table: str = "*", schema: str = "public", filter: Optional[str] = None):
        self.postgres_handlers.append((event, callback, table, schema, filter))
        return self

    async def subscribe(self, callback=None):
        self.status_callback = callback
        if self.auto_subscribe and callback:
            if self.async_status:
                # Like the real client: the join reply comes after subscribe returns
                asyncio.get_running_loop().call_soon(callback, self.join_status, None)
            else:
                callback(self.join_status, None)
        return self

    async def track(self, payload: dict):
        self.tracked.append(payload)

    def presence_state(self):
        return self.state

    async def send_broadcast(self, event: str, data: dict):
        self.sent.append((event, data))

    # Test drivers

    def emit_status(self, status: str, error: Optional[Exception] = None):
        self.status_callback(status, error)

    def set_presence(self, state: Dict[str, List[dict]], event: str = "sync"):
        self.state = state
        handler = self.presence_handlers[event]
        if event == "sync":
            handler()
        else:
            handler("key", [], [])

    def emit_broadcast(self, event: str, payload: dict):
        self.broadcast_handlers[event]({"event": event, "payload": payload, "type": "broadcast"})

    def emit_postgres(self, row: dict):
        for _, callback, *_ in self.postgres_handlers:
            callback({"data": {"record": row, "type": "UPDATE", "table": "loyalty_cards"}, "ids": [1]})


class FakeSupabase:
    """Stands in for supabase.AsyncClient in tests."""

    def __init__(
        self,
        backend: Optional[FakeBackend] = None,
        auto_subscribe: bool = True,
        async_status: bool = False,
    ):
        self.backend = backend or FakeBackend()
        self.functions = SimpleNamespace(invoke=self.backend.invoke)
        self.tables: Dict[str, List[dict]] = {"stores": [], "rewards": []}
        self.rpcs: Dict[str, List[dict]] = {}
        self.rpc_error: Optional[Exception] = None
        self.channels: List[FakeChannel] = []
        self.removed: List[FakeChannel] = []
        self.auto_subscribe = auto_subscribe
        self.async_status = async_status
        # Join replies handed to the next channels, then SUBSCRIBED
        self.join_statuses: List[str] = []

    def table(self, name: str) -> FakeQuery:
        if name == "loyalty_cards":
            return FakeQuery(list(self.backend.cards.values()))
        if name == "rewards" and not self.tables.get("rewards"):
            return FakeQuery(list(self.backend.rewards.values()))
        return FakeQuery(list(self.tables.get(name, [])))

    def rpc(self, name: str, params: Optional[dict] = None) -> FakeQuery:
        return FakeQuery(list(self.rpcs.get(name, [])), error=self.rpc_error)

    def channel(self, topic: str, params: Optional[dict] = None) -> FakeChannel:
        status = self.join_statuses.pop(0) if self.join_statuses else "SUBSCRIBED"
        channel = FakeChannel(
            topic,
            params,
            auto_subscribe=self.auto_subscribe,
            join_status=status,
            async_status=self.async_status,
        )
        self.channels.append(channel)
        return channel

    async def remove_channel(self, channel: FakeChannel):
        channel.removed = True
        self.removed.append(channel)

    def channel_for(self, topic: str) -> FakeChannel:
        matching = [c for c in self.channels if c.topic == topic and not c.removed]
        assert matching, f"no open channel {topic}"
        return matching[-1]


async def settle(rounds: int = 5) -> None:
    """Let spawned tasks run."""
    for _ in range(rounds):
        await asyncio.sleep(0)


@pytest.fixture
def backend() -> FakeBackend:
    backend = FakeBackend()
    backend.add_card(make_card_row())
    backend.add_reward(make_reward())
    return backend


@pytest.fixture
def supabase(backend) -> FakeSupabase:
    client = FakeSupabase(backend)
    client.tables["stores"] = [make_store_row()]
    return client


@pytest.fixture
def owner_auth() -> AuthSession:
    return AuthSession(user_id=OWNER_ID, access_token="owner-token", claims={"sub": OWNER_ID})


@pytest.fixture
def customer_auth() -> AuthSession:
    return AuthSession(user_id=CUSTOMER_USER_ID, access_token="customer-token", claims={"sub": CUSTOMER_USER_ID})


@pytest_asyncio.fixture
async def registry(supabase):
    from perks.services.sessions import SessionRegistry

    async def client_factory(token: str):
        return supabase

    registry = SessionRegistry(client_factory=client_factory)
    try:
        yield registry
    finally:
        await registry.close()
