import asyncio
import sys
from decimal import Decimal
from pathlib import Path
from types import SimpleNamespace

import pytest

# Ensure src/ is importable
sys.path.append(str(Path(__file__).resolve().parents[1] / "src"))

import backoff_utils  # noqa: E402
from config import BotConfig  # noqa: E402
from engine import EngineState, NodeMode, NodeState  # noqa: E402
from errors import ExchangeError  # noqa: E402
from filters import SymbolFilters  # noqa: E402
from grid import GridLevel  # noqa: E402
from grid_main import GridBot  # noqa: E402
from ports import Order, OrderSide  # noqa: E402
from state_store import StateStore  # noqa: E402

FILTERS = SymbolFilters(
    price_tick=Decimal("0.01"),
    qty_step=Decimal("0.0001"),
    min_qty=Decimal("0.0001"),
    min_price=Decimal("0.01"),
    max_price=Decimal("1000000"),
    min_notional=Decimal("10"),
)


class FakeClient:
    def __init__(self, price="1900", quote="1000", base="0"):
        self.price = Decimal(price)
        self.balances = {"USDT": Decimal(quote), "PAXG": Decimal(base)}
        self.open_orders = []
        self.placed = []
        self.next_id = 500
        self.fail_open_orders = False

    async def get_filters(self, symbol):
        return FILTERS

    async def get_price(self, symbol):
        return self.price

    async def get_balances(self, assets):
        return {a: self.balances.get(a, Decimal(0)) for a in assets}

    async def get_open_orders(self, symbol):
        if self.fail_open_orders:
            raise ExchangeError("Service unavailable", status_code=503)
        return list(self.open_orders)

    async def get_order(self, symbol, order_id):
        return next(o for o in self.open_orders + self.placed if o.order_id == order_id)

    async def place_limit_order(self, symbol, side, price, qty, *, filters, client_order_id=None):
        self.next_id += 1
        order = Order(self.next_id, side, price, qty, client_order_id=client_order_id)
        self.placed.append(order)
        self.open_orders.append(order)
        return order


class RecordingNotifier:
    def __init__(self):
        self.messages = []

    async def notify(self, message):
        self.messages.append(message)


async def passthrough(fn, limiter=None):
    return await fn()


@pytest.fixture(autouse=True)
def no_retries(monkeypatch):
    for target in ("grid_main", "engine", "cost_basis"):
        monkeypatch.setattr(f"{target}.call_with_retries", passthrough)
    # GridBot applies its retry policy to these module globals.
    for name in ("REQUEST_TIMEOUT", "MAX_ATTEMPTS", "BASE_DELAY"):
        monkeypatch.setattr(backoff_utils, name, getattr(backoff_utils, name))


def make_bot(client, tmp_path=None, **overrides):
    values = dict(api_key="k", api_secret="s", trade_size=Decimal("80"), dynamic_nodes=2, interval_sec=60.0)
    values.update(overrides)
    store = StateStore(tmp_path / "grid.json", "PAXGUSDT") if tmp_path is not None else None
    return GridBot(
        BotConfig(**values),
        client=client,
        notifier=RecordingNotifier(),
        limiter=SimpleNamespace(),
        store=store,
    )


@pytest.mark.asyncio
async def test_first_cycle_builds_grid_and_places_buys(tmp_path):
    client = FakeClient()
    bot = make_bot(client, tmp_path)

    messages = await bot.run_cycle()

    assert bot.builder.grid.levels == (Decimal("1889.00"), Decimal("1900.00"), Decimal("1911.00"))
    assert [o.price for o in client.placed] == [Decimal("1889.00"), Decimal("1900.00")]
    assert messages[0].startswith("Grid ready (dynamic)")
    (sent,) = bot.notifier.messages
    assert sent.startswith("PAXGUSDT @ 1900\n")
    saved = bot.store.load()
    assert [n.mode for n in saved.nodes] == [NodeMode.BUY_PLACED, NodeMode.BUY_PLACED]


@pytest.mark.asyncio
async def test_quiet_cycle_sends_nothing():
    client = FakeClient()
    bot = make_bot(client)
    await bot.run_cycle()
    bot.notifier.messages.clear()

    messages = await bot.run_cycle()

    assert messages == []
    assert bot.notifier.messages == []
    assert len(client.placed) == 2


@pytest.mark.asyncio
async def test_failed_cycle_keeps_state_and_reports(caplog):
    client = FakeClient()
    bot = make_bot(client)
    await bot.run_cycle()
    before = bot.state

    client.fail_open_orders = True
    with caplog.at_level("ERROR", logger="spot_grid_bot"):
        messages = await bot.run_cycle()

    assert bot.state is before
    assert bot.failed_cycles == 1
    assert "cycle failed" in messages[0]
    assert "cycle failed" in bot.notifier.messages[-1]
    assert "cycle failed" in caplog.text


@pytest.mark.asyncio
async def test_invalid_price_fails_the_cycle():
    bot = make_bot(FakeClient(price="0"))
    messages = await bot.run_cycle()
    assert bot.builder.grid is None
    assert "invalid market price" in messages[0]


@pytest.mark.asyncio
async def test_start_and_stop_lifecycle():
    client = FakeClient()
    bot = make_bot(client)

    await bot.start()
    await asyncio.sleep(0.05)
    assert bot.cycles == 1
    status = bot.status()
    assert status["price"] == "1900"
    assert [n["mode"] for n in status["nodes"]] == ["BUY_PLACED", "BUY_PLACED"]

    await bot.stop()
    await bot.stop()
    assert bot.notifier.messages[0].startswith("Spot grid bot started on PAXGUSDT")
    assert bot.notifier.messages[-1] == "Spot grid bot stopped on PAXGUSDT"
    assert sum("stopped" in m for m in bot.notifier.messages) == 1
    assert bot._refresh_task.done()


@pytest.mark.asyncio
async def test_resumes_saved_grid_and_nodes(tmp_path):
    grid = GridLevel((Decimal("1889.00"), Decimal("1900.00"), Decimal("1911.00")))
    saved = EngineState.fresh(grid)
    resting = Order(77, OrderSide.BUY, Decimal("1900.00"), Decimal("0.0418"))
    saved.nodes[1] = NodeState(mode=NodeMode.BUY_PLACED, buy_order_ref=77)
    StateStore(tmp_path / "grid.json", "PAXGUSDT").save(saved)

    client = FakeClient(price="2500", quote="0")
    client.open_orders.append(resting)
    bot = make_bot(client, tmp_path)

    await bot.start()
    await asyncio.sleep(0.05)
    await bot.stop()

    assert bot.builder.grid.levels == grid.levels
    assert bot.state.nodes[1].mode == NodeMode.BUY_PLACED
    assert bot.state.nodes[1].buy_order_ref == 77
    assert client.placed == []
    assert any("Resuming 2 nodes" in m for m in bot.notifier.messages)


@pytest.mark.asyncio
async def test_configuration_error_stops_the_loop():
    bot = make_bot(
        FakeClient(),
        grid_min=Decimal("100"),
        grid_max=Decimal("100.02"),
        grid_nodes=5,
    )
    await bot.start()
    await asyncio.wait_for(bot._closing.wait(), timeout=1)
    await bot.stop()
    assert any("configuration error" in m for m in bot.notifier.messages)


def test_retry_policy_comes_from_config():
    make_bot(FakeClient(), request_timeout=3.0, retry_attempts=7, retry_base_delay=0.05)
    assert backoff_utils.REQUEST_TIMEOUT == 3.0
    assert backoff_utils.MAX_ATTEMPTS == 7
    assert backoff_utils.BASE_DELAY == 0.05


@pytest.mark.asyncio
async def test_repeat_notices_flag_reaches_the_engine():
    bot = make_bot(FakeClient(quote="5"), repeat_notices=True)
    first = await bot.run_cycle()
    second = await bot.run_cycle()
    assert second == first[1:]
    assert len(bot.notifier.messages) == 2
