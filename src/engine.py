# engine.py
"""Per-node order lifecycle reconciliation.

Every grid node cycles through ``IDLE -> BUY_PLACED -> HOLDING -> SELL_PLACED
-> IDLE``.  The exchange offers no fill callbacks, so transitions are driven
by diffing the node's remembered order against the open-order snapshot taken
at the start of each cycle: an order that is still listed is simply waited
on, an order that vanished is queried once to learn how it ended.

The query is keyed on the node's own reference being absent from the
snapshot, not on ``EngineState.last_seen_open_ids``: an order that filled
before it was ever listed open still has to be queried.  The last-seen set
is diagnostics only; its diff against the snapshot is logged each cycle.

``ReconciliationEngine.reconcile`` never mutates the state it is given.  It
works on a copy and returns it, so a cycle that aborts half-way (retries
exhausted) leaves the caller's state untouched.  Orders placed before such an
abort carry a client order id tagged with their node and are re-adopted on the
next pass.
"""

from __future__ import annotations

import copy
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Dict, List, Optional, Sequence, Set, Tuple

from backoff_utils import call_with_retries
from errors import ExchangeError, OrderRejectedError
from filters import SymbolFilters
from grid import GridLevel
from id_generator import DEFAULT_PREFIX, parse_node_tag, uuid_external_id
from ports import ExchangePort, Order, OrderSide
from utils import fmt_decimal, logger, to_decimal

SELL_AT_NODE_UPPER = "node_upper"
SELL_AT_MARGIN = "margin"
SELL_STRATEGIES = (SELL_AT_NODE_UPPER, SELL_AT_MARGIN)

# Binance "Order does not exist."
ORDER_NOT_FOUND = -2013


class NodeMode(str, Enum):
    IDLE = "IDLE"
    BUY_PLACED = "BUY_PLACED"
    HOLDING = "HOLDING"
    SELL_PLACED = "SELL_PLACED"


@dataclass
class NodeState:
    mode: NodeMode = NodeMode.IDLE
    buy_order_ref: Optional[int] = None
    sell_order_ref: Optional[int] = None
    acquired_qty: Decimal = Decimal(0)
    acquired_avg_price: Optional[Decimal] = None
    # Last waiting/skip notice sent for this node, used to avoid repeating it.
    last_notice: Optional[str] = None

    def reset(self) -> None:
        self.mode = NodeMode.IDLE
        self.buy_order_ref = None
        self.sell_order_ref = None
        self.acquired_qty = Decimal(0)
        self.acquired_avg_price = None

    def to_dict(self) -> Dict:
        return {
            "mode": self.mode.value,
            "buy_order_ref": self.buy_order_ref,
            "sell_order_ref": self.sell_order_ref,
            "acquired_qty": str(self.acquired_qty),
            "acquired_avg_price": (
                str(self.acquired_avg_price) if self.acquired_avg_price is not None else None
            ),
        }

    @classmethod
    def from_dict(cls, raw: Dict) -> "NodeState":
        avg = raw.get("acquired_avg_price")
        return cls(
            mode=NodeMode(raw.get("mode", NodeMode.IDLE.value)),
            buy_order_ref=raw.get("buy_order_ref"),
            sell_order_ref=raw.get("sell_order_ref"),
            acquired_qty=to_decimal(raw.get("acquired_qty")),
            acquired_avg_price=to_decimal(avg) if avg is not None else None,
        )


@dataclass
class EngineState:
    """Everything the engine remembers between cycles."""

    levels: Tuple[Decimal, ...] = ()
    nodes: List[NodeState] = field(default_factory=list)
    last_seen_open_ids: Set[int] = field(default_factory=set)
    unrecognized_ids: Set[int] = field(default_factory=set)

    @classmethod
    def fresh(cls, grid: GridLevel) -> "EngineState":
        return cls(levels=grid.levels, nodes=[NodeState() for _ in range(grid.node_count)])

    def owned_order_ids(self) -> Set[int]:
        ids: Set[int] = set()
        for node in self.nodes:
            if node.mode == NodeMode.BUY_PLACED and node.buy_order_ref is not None:
                ids.add(node.buy_order_ref)
            elif node.mode == NodeMode.SELL_PLACED and node.sell_order_ref is not None:
                ids.add(node.sell_order_ref)
        return ids

    def count(self, mode: NodeMode) -> int:
        return sum(1 for n in self.nodes if n.mode == mode)

    def to_dict(self) -> Dict:
        return {
            "levels": [str(p) for p in self.levels],
            "nodes": {str(i): node.to_dict() for i, node in enumerate(self.nodes)},
            "last_seen_open_ids": sorted(self.last_seen_open_ids),
            "unrecognized_ids": sorted(self.unrecognized_ids),
        }

    @classmethod
    def from_dict(cls, raw: Dict) -> "EngineState":
        levels = tuple(to_decimal(p) for p in raw.get("levels", []))
        stored = raw.get("nodes", {})
        nodes = [
            NodeState.from_dict(stored[str(i)]) if str(i) in stored else NodeState()
            for i in range(max(len(levels) - 1, 0))
        ]
        return cls(
            levels=levels,
            nodes=nodes,
            last_seen_open_ids={int(i) for i in raw.get("last_seen_open_ids", [])},
            unrecognized_ids={int(i) for i in raw.get("unrecognized_ids", [])},
        )


@dataclass(frozen=True)
class MarketSnapshot:
    price: Decimal
    quote_free: Decimal
    base_free: Decimal
    open_orders: Tuple[Order, ...] = ()


@dataclass
class CycleReport:
    messages: List[str] = field(default_factory=list)
    placed: List[Order] = field(default_factory=list)
    transitions: List[Tuple[int, NodeMode, NodeMode]] = field(default_factory=list)

    def add(self, message: str) -> None:
        self.messages.append(message)


@dataclass
class _Pass:
    """Mutable scratch data for a single reconciliation pass."""

    grid: GridLevel
    filters: SymbolFilters
    snapshot: MarketSnapshot
    open_by_id: Dict[int, Order]
    quote_free: Decimal
    base_free: Decimal
    report: CycleReport


class ReconciliationEngine:
    """Advance every node of the grid by one polling cycle."""

    def __init__(
        self,
        client: ExchangePort,
        symbol: str,
        *,
        base_asset: str,
        quote_asset: str,
        trade_size: Decimal,
        limiter,
        resolver=None,
        sell_strategy: str = SELL_AT_NODE_UPPER,
        sell_offset: Decimal = Decimal(0),
        sell_margin: Decimal = Decimal(0),
        id_prefix: str = DEFAULT_PREFIX,
        notify_pending: bool = False,
        repeat_notices: bool = False,
    ):
        if sell_strategy not in SELL_STRATEGIES:
            raise ValueError(f"unknown sell strategy {sell_strategy!r}")
        self.client = client
        self.symbol = symbol
        self.base_asset = base_asset
        self.quote_asset = quote_asset
        self.trade_size = trade_size
        self.resolver = resolver
        self.sell_strategy = sell_strategy
        self.sell_offset = sell_offset
        self.sell_margin = sell_margin
        self.id_prefix = id_prefix
        self.notify_pending = notify_pending
        self.repeat_notices = repeat_notices
        self._limiter = limiter

    # ------------------------------------------------------------------
    async def reconcile(
        self,
        state: EngineState,
        snapshot: MarketSnapshot,
        grid: GridLevel,
        filters: SymbolFilters,
    ) -> Tuple[EngineState, CycleReport]:
        if tuple(state.levels) != grid.levels or len(state.nodes) != grid.node_count:
            raise ValueError("engine state does not belong to this grid")

        work = copy.deepcopy(state)
        ctx = _Pass(
            grid=grid,
            filters=filters,
            snapshot=snapshot,
            open_by_id={o.order_id: o for o in snapshot.open_orders},
            quote_free=snapshot.quote_free,
            base_free=snapshot.base_free,
            report=CycleReport(),
        )

        current_ids = set(ctx.open_by_id)
        # Logged only; the per-node handlers decide which orders to query.
        disappeared = work.last_seen_open_ids - current_ids
        if disappeared:
            logger.info(
                "orders left the open book | symbol=%s ids=%s",
                self.symbol,
                ",".join(str(i) for i in sorted(disappeared)),
            )

        self._adopt_tagged_orders(work, ctx)

        for idx, node in enumerate(work.nodes):
            await self._advance(idx, node, ctx)

        work.last_seen_open_ids = current_ids
        logger.info(
            "reconcile done | symbol=%s price=%s idle=%d buy_placed=%d holding=%d sell_placed=%d placed=%d",
            self.symbol,
            fmt_decimal(snapshot.price),
            work.count(NodeMode.IDLE),
            work.count(NodeMode.BUY_PLACED),
            work.count(NodeMode.HOLDING),
            work.count(NodeMode.SELL_PLACED),
            len(ctx.report.placed),
        )
        return work, ctx.report

    # ------------------------------------------------------------------
    def _adopt_tagged_orders(self, work: EngineState, ctx: _Pass) -> None:
        """Attach untracked open orders that this bot placed to their node.

        Open orders without a recognisable node tag, priced away from their
        node, or whose node already tracks another order, are kept aside as
        unrecognised: reported, never
        adopted, never cancelled.
        """
        owned = work.owned_order_ids()
        unrecognized: Set[int] = set()
        for order in ctx.snapshot.open_orders:
            if order.order_id in owned:
                continue
            tag = parse_node_tag(order.client_order_id, self.id_prefix)
            node = None
            if tag is not None and 0 <= tag[1] < len(work.nodes):
                node = work.nodes[tag[1]]
            if node is not None and self._adopt(tag[1], node, order, ctx):
                owned.add(order.order_id)
                continue
            unrecognized.add(order.order_id)

        new_ids = unrecognized - work.unrecognized_ids
        for order_id in sorted(new_ids):
            order = ctx.open_by_id[order_id]
            idx = ctx.grid.find_node(order.price)
            logger.warning(
                "unrecognized open order | symbol=%s id=%s side=%s price=%s qty=%s client_id=%s node=%s",
                self.symbol,
                order_id,
                order.side.value,
                fmt_decimal(order.price),
                fmt_decimal(order.orig_qty),
                order.client_order_id,
                idx,
            )
            ctx.report.add(
                f"Unrecognized open order {order_id}: {order.side.value} "
                f"{fmt_decimal(order.orig_qty)} @ {fmt_decimal(order.price)} "
                f"(node {idx if idx is not None else '-'}); left untouched"
            )
        work.unrecognized_ids = unrecognized

    def _priced_for_node(self, idx: int, order: Order, ctx: _Pass) -> bool:
        """Whether ``order`` sits where node ``idx`` itself would have placed it."""
        lower, upper = ctx.grid.bounds(idx)
        if order.side == OrderSide.BUY:
            return order.price == ctx.filters.round_price_down(lower)
        if self.sell_strategy == SELL_AT_MARGIN:
            # Price depends on the cost basis; a sell at or below the buy level is not ours.
            return order.price > lower
        return order.price == ctx.filters.round_price_down(upper - self.sell_offset)

    def _adopt(self, idx: int, node: NodeState, order: Order, ctx: _Pass) -> bool:
        if not self._priced_for_node(idx, order, ctx):
            logger.debug(
                "tagged order off its node price | node=%d id=%s side=%s price=%s",
                idx,
                order.order_id,
                order.side.value,
                fmt_decimal(order.price),
            )
            return False
        before = node.mode
        if order.side == OrderSide.BUY and node.mode == NodeMode.IDLE:
            node.mode = NodeMode.BUY_PLACED
            node.buy_order_ref = order.order_id
        elif order.side == OrderSide.SELL and node.mode in (NodeMode.IDLE, NodeMode.HOLDING):
            if node.mode == NodeMode.IDLE:
                node.acquired_qty = order.orig_qty - order.executed_qty
                node.acquired_avg_price = None
            node.mode = NodeMode.SELL_PLACED
            node.sell_order_ref = order.order_id
        else:
            return False
        self._transition(idx, node, before, ctx)
        logger.info(
            "adopted open order | node=%d id=%s side=%s price=%s",
            idx,
            order.order_id,
            order.side.value,
            fmt_decimal(order.price),
        )
        ctx.report.add(
            f"Node {idx}: adopted open {order.side.value} {order.order_id} "
            f"@ {fmt_decimal(order.price)} -> {node.mode.value}"
        )
        return True

    # ------------------------------------------------------------------
    async def _advance(self, idx: int, node: NodeState, ctx: _Pass) -> None:
        # At most one placement per node per pass; a fill may chain straight
        # into the next placement because its outcome is already known.
        placed_before = len(ctx.report.placed)
        for _ in range(len(NodeMode)):
            if len(ctx.report.placed) > placed_before:
                return
            if node.mode == NodeMode.IDLE:
                changed = await self._on_idle(idx, node, ctx)
            elif node.mode == NodeMode.BUY_PLACED:
                changed = await self._on_buy_placed(idx, node, ctx)
            elif node.mode == NodeMode.HOLDING:
                changed = await self._on_holding(idx, node, ctx)
            else:
                changed = await self._on_sell_placed(idx, node, ctx)
            if not changed:
                return

    def _transition(self, idx: int, node: NodeState, before: NodeMode, ctx: _Pass) -> None:
        node.last_notice = None
        ctx.report.transitions.append((idx, before, node.mode))
        logger.info("node transition | node=%d from=%s to=%s", idx, before.value, node.mode.value)

    def _notice(self, idx: int, node: NodeState, text: str, ctx: _Pass) -> None:
        """Report why a node is waiting; unchanged reasons are sent once unless ``repeat_notices``."""
        logger.debug("node waiting | node=%d %s", idx, text)
        if self.repeat_notices or node.last_notice != text:
            node.last_notice = text
            ctx.report.add(f"Node {idx}: {text}")

    def _node_label(self, idx: int, ctx: _Pass) -> str:
        lo, hi = ctx.grid.bounds(idx)
        fmt = ctx.filters.format_price
        return f"node {idx} [{fmt(lo)}, {fmt(hi)}]"

    def sell_price(self, idx: int, node: NodeState, grid: GridLevel, filters: SymbolFilters) -> Optional[Decimal]:
        if self.sell_strategy == SELL_AT_MARGIN:
            if node.acquired_avg_price is None:
                return None
            return filters.round_price_up(node.acquired_avg_price + self.sell_margin)
        _, upper = grid.bounds(idx)
        return filters.round_price_down(upper - self.sell_offset)

    async def _place(self, side: OrderSide, idx: int, price: Decimal, qty: Decimal, ctx: _Pass) -> Optional[Order]:
        client_id = uuid_external_id(self.id_prefix, side.value, idx)
        try:
            order = await call_with_retries(
                lambda: self.client.place_limit_order(
                    self.symbol,
                    side,
                    price,
                    qty,
                    filters=ctx.filters,
                    client_order_id=client_id,
                ),
                limiter=self._limiter,
            )
        except OrderRejectedError as exc:
            logger.error(
                "order rejected | symbol=%s node=%d side=%s price=%s qty=%s error=%s",
                self.symbol,
                idx,
                side.value,
                fmt_decimal(price),
                fmt_decimal(qty),
                exc,
            )
            ctx.report.add(
                f"{side.value} rejected at {self._node_label(idx, ctx)}: "
                f"{fmt_decimal(qty)} @ {fmt_decimal(price)} ({exc})"
            )
            return None
        ctx.report.placed.append(order)
        ctx.open_by_id.setdefault(order.order_id, order)
        return order

    # ------------------------------------------------------------------
    async def _on_idle(self, idx: int, node: NodeState, ctx: _Pass) -> bool:
        filters = ctx.filters
        buy_price = filters.round_price_down(ctx.grid.levels[idx])
        resting = next((o for o in ctx.open_by_id.values() if o.price == buy_price), None)
        if resting is not None:
            self._notice(
                idx,
                node,
                f"order {resting.order_id} ({resting.side.value}) already rests at buy price "
                f"{filters.format_price(buy_price)}",
                ctx,
            )
            return False
        if ctx.quote_free < self.trade_size:
            self._notice(
                idx,
                node,
                f"waiting for {self.quote_asset}: free {fmt_decimal(ctx.quote_free)} "
                f"< trade size {fmt_decimal(self.trade_size)}",
                ctx,
            )
            return False

        qty = filters.round_qty_down(self.trade_size / buy_price)
        if qty < filters.min_qty:
            qty = filters.min_qty
        check = filters.validate(buy_price, qty)
        if not check:
            self._notice(idx, node, f"BUY skipped ({check.reason.value}: {check.detail})", ctx)
            return False
        cost = buy_price * qty
        if cost > ctx.quote_free:
            self._notice(
                idx,
                node,
                f"waiting for {self.quote_asset}: BUY needs {fmt_decimal(cost)}, "
                f"free {fmt_decimal(ctx.quote_free)}",
                ctx,
            )
            return False

        order = await self._place(OrderSide.BUY, idx, buy_price, qty, ctx)
        if order is None:
            return False
        ctx.quote_free -= cost
        node.mode = NodeMode.BUY_PLACED
        node.buy_order_ref = order.order_id
        self._transition(idx, node, NodeMode.IDLE, ctx)
        ctx.report.add(
            f"BUY placed at {self._node_label(idx, ctx)}: "
            f"{filters.format_qty(qty)} @ {filters.format_price(buy_price)} (id {order.order_id})"
        )
        return True

    async def _query(self, order_id: int) -> Optional[Order]:
        """Fetch one order; ``None`` when the exchange no longer knows the id."""
        try:
            return await call_with_retries(
                lambda: self.client.get_order(self.symbol, order_id), limiter=self._limiter
            )
        except ExchangeError as exc:
            if exc.code != ORDER_NOT_FOUND:
                raise
            logger.warning("order unknown to exchange | symbol=%s id=%s", self.symbol, order_id)
            return None

    def _pending_line(self, idx: int, order: Order, ctx: _Pass) -> None:
        if self.notify_pending:
            ctx.report.add(
                f"{order.side.value} pending at {self._node_label(idx, ctx)}: id {order.order_id}, "
                f"{fmt_decimal(order.orig_qty)} @ {fmt_decimal(order.price)}, "
                f"market {fmt_decimal(ctx.snapshot.price)}"
            )

    async def _on_buy_placed(self, idx: int, node: NodeState, ctx: _Pass) -> bool:
        listed = ctx.open_by_id.get(node.buy_order_ref)
        if listed is not None:
            self._pending_line(idx, listed, ctx)
            return False

        order = await self._query(node.buy_order_ref)
        if order is None:
            lost = node.buy_order_ref
            node.reset()
            self._transition(idx, node, NodeMode.BUY_PLACED, ctx)
            ctx.report.add(
                f"BUY {lost} at {self._node_label(idx, ctx)} is unknown to the exchange; node idle"
            )
            return True
        if order.is_filled or (order.is_terminal_non_fill and order.executed_qty > 0):
            node.mode = NodeMode.HOLDING
            node.buy_order_ref = None
            node.acquired_qty = order.executed_qty
            node.acquired_avg_price = order.avg_fill_price
            self._transition(idx, node, NodeMode.BUY_PLACED, ctx)
            ctx.report.add(
                f"BUY {'filled' if order.is_filled else 'partly filled then ' + order.status} "
                f"at {self._node_label(idx, ctx)}: {fmt_decimal(order.executed_qty)} "
                f"avg {fmt_decimal(node.acquired_avg_price)} (id {order.order_id})"
            )
            return True
        if order.is_terminal_non_fill:
            node.reset()
            self._transition(idx, node, NodeMode.BUY_PLACED, ctx)
            ctx.report.add(
                f"BUY {order.status} at {self._node_label(idx, ctx)} (id {order.order_id}); node idle"
            )
            return True
        logger.debug(
            "order missing from snapshot but still pending | node=%d id=%s status=%s",
            idx,
            order.order_id,
            order.status,
        )
        return False

    async def _on_holding(self, idx: int, node: NodeState, ctx: _Pass) -> bool:
        filters = ctx.filters
        if node.acquired_avg_price is None:
            avg = None
            if self.resolver is not None:
                avg = await self.resolver.resolve_average_price(self.base_asset)
            if avg is None:
                self._notice(idx, node, "cost basis unknown, SELL skipped this cycle", ctx)
                return False
            node.acquired_avg_price = avg

        price = self.sell_price(idx, node, ctx.grid, filters)
        qty = filters.round_qty_down(node.acquired_qty)
        if qty > ctx.base_free:
            self._notice(
                idx,
                node,
                f"{self.base_asset} shortfall: SELL needs {fmt_decimal(qty)}, "
                f"free {fmt_decimal(ctx.base_free)}",
                ctx,
            )
            return False
        check = filters.validate(price, qty)
        if not check:
            self._notice(idx, node, f"SELL skipped ({check.reason.value}: {check.detail})", ctx)
            return False

        order = await self._place(OrderSide.SELL, idx, price, qty, ctx)
        if order is None:
            return False
        ctx.base_free -= qty
        node.mode = NodeMode.SELL_PLACED
        node.sell_order_ref = order.order_id
        self._transition(idx, node, NodeMode.HOLDING, ctx)
        ctx.report.add(
            f"SELL placed at {self._node_label(idx, ctx)}: {filters.format_qty(qty)} "
            f"@ {filters.format_price(price)}, bought avg {fmt_decimal(node.acquired_avg_price)} "
            f"(id {order.order_id})"
        )
        return True

    async def _on_sell_placed(self, idx: int, node: NodeState, ctx: _Pass) -> bool:
        listed = ctx.open_by_id.get(node.sell_order_ref)
        if listed is not None:
            self._pending_line(idx, listed, ctx)
            return False

        order = await self._query(node.sell_order_ref)
        if order is None:
            lost = node.sell_order_ref
            node.sell_order_ref = None
            node.mode = NodeMode.HOLDING
            self._transition(idx, node, NodeMode.SELL_PLACED, ctx)
            ctx.report.add(
                f"SELL {lost} at {self._node_label(idx, ctx)} is unknown to the exchange; "
                f"node holding {fmt_decimal(node.acquired_qty)} {self.base_asset}"
            )
            return True
        if order.is_filled:
            profit = self._profit(node, order)
            node.reset()
            self._transition(idx, node, NodeMode.SELL_PLACED, ctx)
            ctx.report.add(
                f"SELL filled at {self._node_label(idx, ctx)}: {fmt_decimal(order.executed_qty)} "
                f"avg {fmt_decimal(order.avg_fill_price or order.price)}, "
                f"profit {fmt_decimal(profit)} {self.quote_asset} (id {order.order_id})"
            )
            return True
        if order.is_terminal_non_fill:
            remaining = ctx.filters.round_qty_down(node.acquired_qty - order.executed_qty)
            node.sell_order_ref = None
            if remaining <= 0:
                node.reset()
            else:
                node.mode = NodeMode.HOLDING
                node.acquired_qty = remaining
            self._transition(idx, node, NodeMode.SELL_PLACED, ctx)
            ctx.report.add(
                f"SELL {order.status} at {self._node_label(idx, ctx)} (id {order.order_id}); "
                f"node {node.mode.value.lower()} with {fmt_decimal(node.acquired_qty)} {self.base_asset}"
            )
            return True
        logger.debug(
            "order missing from snapshot but still pending | node=%d id=%s status=%s",
            idx,
            order.order_id,
            order.status,
        )
        return False

    @staticmethod
    def _profit(node: NodeState, order: Order) -> Optional[Decimal]:
        if node.acquired_avg_price is None:
            return None
        sell_avg = order.avg_fill_price or order.price
        return order.executed_qty * (sell_avg - node.acquired_avg_price)


def node_orders(state: EngineState) -> Sequence[Tuple[int, NodeMode, Optional[int]]]:
    """``(index, mode, active order id)`` for each node, for status displays."""
    out = []
    for idx, node in enumerate(state.nodes):
        ref = node.buy_order_ref if node.mode == NodeMode.BUY_PLACED else node.sell_order_ref
        out.append((idx, node.mode, ref if node.mode in (NodeMode.BUY_PLACED, NodeMode.SELL_PLACED) else None))
    return out
