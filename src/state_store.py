"""Durable JSON record of the engine state.

Written atomically (temp file, fsync, rename) after each successful cycle so
a restart resumes every node where it was instead of guessing from the open
order book.  Persistence problems are logged and never stop trading.
"""

from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Optional, Union

from engine import EngineState
from utils import logger

STATE_VERSION = 1


class StateStore:
    def __init__(self, path: Union[str, Path], symbol: str):
        self.path = Path(path)
        self.symbol = symbol

    def save(self, state: EngineState) -> bool:
        tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
        payload = {"version": STATE_VERSION, "symbol": self.symbol, **state.to_dict()}
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with open(tmp_path, "w") as f:
                json.dump(payload, f, indent=2)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, self.path)
            return True
        except OSError as exc:
            logger.error("state save failed | path=%s error=%s", self.path, exc)
            try:
                if tmp_path.exists():
                    tmp_path.unlink()
            except OSError:
                logger.warning("state temp cleanup failed | path=%s", tmp_path)
            return False

    def load(self) -> Optional[EngineState]:
        if not self.path.exists():
            return None
        try:
            with open(self.path) as f:
                raw = json.load(f)
        except (OSError, ValueError) as exc:
            logger.warning("state file unreadable, ignoring | path=%s error=%s", self.path, exc)
            return None
        if raw.get("version") != STATE_VERSION or raw.get("symbol") != self.symbol:
            logger.warning(
                "state file ignored | path=%s version=%s symbol=%s",
                self.path,
                raw.get("version"),
                raw.get("symbol"),
            )
            return None
        try:
            state = EngineState.from_dict(raw)
        except (KeyError, TypeError, ValueError) as exc:
            logger.warning("state file malformed, ignoring | path=%s error=%s", self.path, exc)
            return None
        logger.info("state loaded | path=%s nodes=%d", self.path, len(state.nodes))
        return state
