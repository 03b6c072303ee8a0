# grid_main.py
"""Long-only spot grid bot for Binance.

The price range is cut into nodes; each node buys at its lower level and,
once filled, sells the acquired quantity at its upper level (or at the cost
basis plus a margin).  Every ``INTERVAL_MS`` the bot takes one snapshot of
price, balances and open orders and lets :class:`ReconciliationEngine`
advance every node by one step.  Cycles never overlap.
"""

from __future__ import annotations

import asyncio
import signal
import time
from decimal import Decimal
from typing import Dict, List, Optional

from account import TradingAccount
import backoff_utils
from backoff_utils import call_with_retries
from config import BotConfig, load_config
from cost_basis import CostBasisResolver
from engine import EngineState, MarketSnapshot, NodeMode, ReconciliationEngine, node_orders
from errors import ConfigError, ExchangeError
from filters import SymbolFilters
from grid import GridBuilder, GridLevel
from keepalive import keepalive_loop, start_health_server
from notifier import TelegramNotifier
from ports import ExchangePort, NotificationPort
from rate_limit import build_rate_limiter
from state_store import StateStore
from utils import fmt_decimal, logger, setup_logging


class GridBot:
    """Own the grid, the engine state and the polling loop."""

    def __init__(
        self,
        config: BotConfig,
        *,
        account: Optional[TradingAccount] = None,
        client: Optional[ExchangePort] = None,
        notifier: Optional[NotificationPort] = None,
        limiter=None,
        store: Optional[StateStore] = None,
    ):
        self.config = config
        self.symbol = config.symbol
        backoff_utils.configure(
            request_timeout=config.request_timeout,
            max_attempts=config.retry_attempts,
            base_delay=config.retry_base_delay,
        )
        self.account = account
        if client is None:
            if self.account is None:
                self.account = TradingAccount(config)
            client = self.account.get_client()
        self.client = client
        self.notifier = notifier or TelegramNotifier(
            config.telegram_token, config.telegram_chat_id, timeout=config.request_timeout
        )
        self._limiter = limiter or build_rate_limiter()
        if store is None and config.state_path:
            store = StateStore(config.state_path, config.symbol)
        self.store = store

        self.builder = GridBuilder(
            fixed_min=config.grid_min,
            fixed_max=config.grid_max,
            fixed_nodes=config.grid_nodes,
            node_width=config.node_width,
            node_gap=config.node_gap,
            dynamic_nodes=config.dynamic_nodes,
        )
        self.resolver = CostBasisResolver(
            self.client,
            config.symbol,
            config.base_asset,
            config.quote_asset,
            limiter=self._limiter,
            max_pages=config.trade_history_max_pages,
        )
        self.engine = ReconciliationEngine(
            self.client,
            config.symbol,
            base_asset=config.base_asset,
            quote_asset=config.quote_asset,
            trade_size=config.trade_size,
            limiter=self._limiter,
            resolver=self.resolver,
            sell_strategy=config.sell_strategy,
            sell_offset=config.sell_offset,
            sell_margin=config.sell_margin,
            notify_pending=config.notify_pending,
            repeat_notices=config.repeat_notices,
        )

        self.filters: SymbolFilters = SymbolFilters()
        self.state: Optional[EngineState] = None
        self._stored: Optional[EngineState] = None
        self.last_price: Optional[Decimal] = None
        self.cycles = 0
        self.failed_cycles = 0
        self._closing = asyncio.Event()
        self._stopped = False
        self._refresh_task: Optional[asyncio.Task] = None
        self._keepalive_task: Optional[asyncio.Task] = None
        self._health_runner = None

    # ------------------------------------------------------------------
    async def _load_filters(self) -> SymbolFilters:
        filters = await call_with_retries(
            lambda: self.client.get_filters(self.symbol), limiter=self._limiter
        )
        self.filters = filters
        logger.info("filters loaded | symbol=%s %s", self.symbol, " ".join(filters.describe()))
        return filters

    async def start(self) -> None:
        try:
            await self._load_filters()
        except Exception as exc:
            logger.error("filter load failed | symbol=%s error=%s", self.symbol, exc)
            await self.notifier.notify(f"{self.symbol}: could not load exchange filters ({exc}); retrying next cycle")

        if self.store is not None:
            self._stored = self.store.load()

        lines = [
            f"Spot grid bot started on {self.symbol}",
            f"Grid: {self.builder.mode}, trade size {fmt_decimal(self.config.trade_size)} {self.config.quote_asset}",
            f"Sell strategy: {self.config.sell_strategy}",
        ]
        if self.filters.is_loaded:
            lines.extend(self.filters.describe())
        if self._stored is not None:
            lines.append(f"Resuming {len(self._stored.nodes)} nodes from saved state")
        await self.notifier.notify("\n".join(lines))

        if self.config.health_port:
            self._health_runner = await start_health_server(self.config.health_port, self.status)
        if self.config.keepalive_url:
            self._keepalive_task = asyncio.create_task(
                keepalive_loop(self.config.keepalive_url, self.config.keepalive_interval_sec, self._closing)
            )
        self._refresh_task = asyncio.create_task(self._refresh_loop())

    async def stop(self) -> None:
        if self._stopped:
            return
        self._stopped = True
        self._closing.set()
        current = asyncio.current_task()
        for task in (self._refresh_task, self._keepalive_task):
            if task and task is not current:
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
        if self._health_runner is not None:
            await self._health_runner.cleanup()
            self._health_runner = None
        await self.notifier.notify(f"Spot grid bot stopped on {self.symbol}")
        close = getattr(self.notifier, "close", None)
        if close is not None:
            await close()
        if self.account is not None:
            await self.account.close()

    # ------------------------------------------------------------------
    async def _snapshot(self) -> MarketSnapshot:
        assets = (self.config.base_asset, self.config.quote_asset)
        price, balances, open_orders = await asyncio.gather(
            call_with_retries(lambda: self.client.get_price(self.symbol), limiter=self._limiter),
            call_with_retries(lambda: self.client.get_balances(assets), limiter=self._limiter),
            call_with_retries(lambda: self.client.get_open_orders(self.symbol), limiter=self._limiter),
        )
        if price is None or price <= 0:
            raise ExchangeError(f"invalid market price {price!r} for {self.symbol}")
        return MarketSnapshot(
            price=price,
            quote_free=balances.get(self.config.quote_asset, Decimal(0)),
            base_free=balances.get(self.config.base_asset, Decimal(0)),
            open_orders=tuple(open_orders),
        )

    def _resolve_grid(self, price: Decimal) -> GridLevel:
        if self.builder.grid is None and self._stored is not None:
            if self.builder.adopt(self._stored.levels, self.filters):
                self.state = self._stored
            else:
                logger.warning("saved grid does not match configuration; starting fresh")
            self._stored = None
        grid = self.builder.ensure_grid(price, self.filters)
        if self.state is None:
            self.state = EngineState.fresh(grid)
        return grid

    async def run_cycle(self) -> List[str]:
        """Run one reconciliation cycle; returns the messages it produced."""
        self.cycles += 1
        try:
            if not self.filters.is_loaded:
                await self._load_filters()
            snapshot = await self._snapshot()
            self.last_price = snapshot.price
            new_grid = self.builder.grid is None
            grid = self._resolve_grid(snapshot.price)
            new_state, report = await self.engine.reconcile(self.state, snapshot, grid, self.filters)
        except asyncio.CancelledError:
            raise
        except ConfigError:
            raise
        except Exception as exc:
            self.failed_cycles += 1
            logger.exception("cycle failed | symbol=%s cycle=%d", self.symbol, self.cycles)
            message = f"{self.symbol}: cycle failed, state unchanged ({exc})"
            await self.notifier.notify(message)
            return [message]

        self.state = new_state
        if self.store is not None:
            self.store.save(new_state)

        messages = list(report.messages)
        if new_grid:
            messages.insert(0, f"Grid ready ({self.builder.mode}): {grid.describe()}")
        if messages:
            header = f"{self.symbol} @ {fmt_decimal(snapshot.price)}"
            await self.notifier.notify("\n".join([header, *messages]))
        return messages

    async def _refresh_loop(self) -> None:
        interval = self.config.interval_sec
        while not self._closing.is_set():
            started = time.monotonic()
            try:
                await self.run_cycle()
            except ConfigError as exc:
                logger.error("configuration error, stopping | error=%s", exc)
                await self.notifier.notify(f"{self.symbol}: configuration error, bot stopping ({exc})")
                self._closing.set()
                return
            elapsed = time.monotonic() - started
            try:
                await asyncio.wait_for(self._closing.wait(), timeout=max(interval - elapsed, 0.0))
            except asyncio.TimeoutError:
                pass

    # ------------------------------------------------------------------
    def status(self) -> Dict:
        nodes = []
        if self.state is not None:
            nodes = [
                {"node": idx, "mode": mode.value, "order_id": ref}
                for idx, mode, ref in node_orders(self.state)
            ]
        holding = self.state.count(NodeMode.HOLDING) if self.state is not None else 0
        return {
            "symbol": self.symbol,
            "price": fmt_decimal(self.last_price) if self.last_price is not None else None,
            "cycles": self.cycles,
            "failed_cycles": self.failed_cycles,
            "grid": self.builder.grid.describe() if self.builder.grid is not None else None,
            "holding": holding,
            "nodes": nodes,
        }


# ----------------------------------------------------------------------
async def main():
    config = load_config()
    setup_logging(config.log_level)
    bot = GridBot(config)

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, bot._closing.set)
        except NotImplementedError:
            # Fallback for platforms without loop signal handlers (e.g. Windows)
            signal.signal(sig, lambda s, f, lp=loop: lp.call_soon_threadsafe(bot._closing.set))

    await bot.start()
    logger.info("[grid] started on %s", config.symbol)

    try:
        await bot._closing.wait()
    finally:
        await bot.stop()
        logger.info("[grid] stopped.")


def run() -> None:
    try:
        asyncio.run(main())
    except ConfigError as exc:
        setup_logging()
        logger.error("invalid configuration | %s", exc)
        raise SystemExit(2) from exc


if __name__ == "__main__":
    run()
