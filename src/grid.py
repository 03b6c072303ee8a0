"""Grid level construction.

A grid is an ordered tuple of tick-aligned prices ``p0 < p1 < ... < pn``.
Node ``i`` spans ``[p_i, p_{i+1}]``; a price sitting exactly on an interior
level belongs to the node that starts there, the top level belongs to the
last node.
"""

from __future__ import annotations

from bisect import bisect_right
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional, Sequence, Tuple

from errors import ConfigError
from filters import SymbolFilters
from utils import fmt_decimal, logger


@dataclass(frozen=True)
class GridLevel:
    levels: Tuple[Decimal, ...]

    def __post_init__(self):
        if len(self.levels) < 2:
            raise ConfigError("a grid needs at least two levels")
        for lo, hi in zip(self.levels, self.levels[1:]):
            if hi <= lo:
                raise ConfigError(
                    f"grid levels must be strictly increasing ({fmt_decimal(lo)} >= {fmt_decimal(hi)})"
                )

    @property
    def node_count(self) -> int:
        return len(self.levels) - 1

    @property
    def lower(self) -> Decimal:
        return self.levels[0]

    @property
    def upper(self) -> Decimal:
        return self.levels[-1]

    def bounds(self, idx: int) -> Tuple[Decimal, Decimal]:
        return self.levels[idx], self.levels[idx + 1]

    def find_node(self, price: Decimal) -> Optional[int]:
        """Return the node containing ``price`` or ``None`` outside the grid."""
        if price < self.levels[0] or price > self.levels[-1]:
            return None
        idx = bisect_right(self.levels, price) - 1
        return min(idx, self.node_count - 1)

    def describe(self) -> str:
        return ", ".join(fmt_decimal(p) for p in self.levels)


class GridBuilder:
    """Build the grid once, on the first valid reference price.

    Fixed mode is selected when ``fixed_min``, ``fixed_max`` and
    ``fixed_nodes`` are all given; otherwise the grid is laid out dynamically
    around the reference price with ``dynamic_nodes`` nodes spaced
    ``node_width + node_gap`` apart.
    """

    def __init__(
        self,
        *,
        fixed_min: Optional[Decimal] = None,
        fixed_max: Optional[Decimal] = None,
        fixed_nodes: Optional[int] = None,
        node_width: Decimal = Decimal("10"),
        node_gap: Decimal = Decimal("1"),
        dynamic_nodes: int = 20,
    ):
        given = [v is not None for v in (fixed_min, fixed_max, fixed_nodes)]
        if any(given) and not all(given):
            raise ConfigError("GRID_MIN, GRID_MAX and GRID_NODES must be set together")
        self.fixed = all(given)
        if self.fixed:
            if fixed_nodes <= 0:
                raise ConfigError(f"GRID_NODES must be positive, got {fixed_nodes}")
            if fixed_max <= fixed_min:
                raise ConfigError(
                    f"GRID_MAX ({fmt_decimal(fixed_max)}) must exceed GRID_MIN ({fmt_decimal(fixed_min)})"
                )
        else:
            if dynamic_nodes <= 0:
                raise ConfigError(f"GRID_DYNAMIC_NODES must be positive, got {dynamic_nodes}")
            if node_width <= 0 or node_gap < 0:
                raise ConfigError("GRID_STEP_USD must be positive and GRID_GAP_USD non-negative")
        self.fixed_min = fixed_min
        self.fixed_max = fixed_max
        self.fixed_nodes = fixed_nodes
        self.node_width = node_width
        self.node_gap = node_gap
        self.dynamic_nodes = dynamic_nodes
        self._grid: Optional[GridLevel] = None

    @property
    def grid(self) -> Optional[GridLevel]:
        return self._grid

    @property
    def mode(self) -> str:
        return "fixed" if self.fixed else "dynamic"

    # ------------------------------------------------------------------
    def ensure_grid(self, reference_price: Decimal, filters: SymbolFilters) -> GridLevel:
        if self._grid is not None:
            return self._grid
        if self.fixed:
            grid = self._build_fixed(filters)
        else:
            grid = self._build_dynamic(reference_price, filters)
        for price in (grid.lower, grid.upper):
            if not filters.price_in_bounds(price):
                logger.warning(
                    "grid level outside exchange price bounds | level=%s min=%s max=%s",
                    fmt_decimal(price),
                    fmt_decimal(filters.min_price),
                    fmt_decimal(filters.max_price),
                )
        self._grid = grid
        logger.info(
            "grid built | mode=%s nodes=%d levels=%s",
            self.mode,
            grid.node_count,
            grid.describe(),
        )
        return grid

    def adopt(self, levels: Sequence[Decimal], filters: SymbolFilters) -> bool:
        """Reuse levels from a previous session.

        Dynamic grids are adopted as-is so the nodes keep their meaning across
        restarts.  Fixed grids are only adopted when identical to the one the
        current configuration produces.
        """
        if self._grid is not None:
            return tuple(levels) == self._grid.levels
        try:
            stored = GridLevel(tuple(levels))
        except ConfigError:
            return False
        if self.fixed and stored.levels != self._build_fixed(filters).levels:
            return False
        self._grid = stored
        return True

    def _build_fixed(self, filters: SymbolFilters) -> GridLevel:
        span = self.fixed_max - self.fixed_min
        # span * i / n keeps the top level exact; step * i can drift below it.
        levels = tuple(
            filters.round_price_down(self.fixed_min + span * i / self.fixed_nodes)
            for i in range(self.fixed_nodes + 1)
        )
        try:
            return GridLevel(levels)
        except ConfigError as exc:
            raise ConfigError(
                f"grid of {self.fixed_nodes} nodes is too fine for tick "
                f"{fmt_decimal(filters.price_tick)}: {exc}"
            ) from exc

    def _build_dynamic(self, reference_price: Decimal, filters: SymbolFilters) -> GridLevel:
        if reference_price <= 0:
            raise ValueError("reference price must be positive")
        spacing = self.node_width + self.node_gap
        if filters.price_tick > 0 and spacing < filters.price_tick:
            raise ConfigError(
                f"node spacing {fmt_decimal(spacing)} below tick {fmt_decimal(filters.price_tick)}"
            )
        half = self.dynamic_nodes // 2
        low = filters.clip_price(reference_price - spacing * half)
        if low <= 0:
            low = filters.price_tick if filters.price_tick > 0 else spacing
        levels = []
        for i in range(self.dynamic_nodes + 1):
            level = filters.round_price_down(low + spacing * i)
            if filters.max_price > 0 and level > filters.max_price:
                break
            levels.append(level)
        return GridLevel(tuple(levels))
