"""
Open positions watched for liquidation and TP/SL, plus per-position TP/SL config.
"""

from __future__ import annotations

import time
from typing import Callable, Dict, List, Optional

from keeper.core.errors import ValidationError
from keeper.store.models import Position, PositionStatus, Side, TpSlConfig
from keeper.store.repository import EntityStore
from keeper.store.state_machine import POSITION_GRAPH


class PositionIndex(EntityStore[Position]):
    def __init__(self, clock: Callable[[], float] = time.time, **kwargs) -> None:
        super().__init__(
            POSITION_GRAPH,
            id_prefix="pos",
            indexes={
                "owner": lambda p: p.owner,
                "symbol": lambda p: p.symbol,
                "venue": lambda p: p.venue,
            },
            clock=clock,
            **kwargs,
        )
        self._tpsl: Dict[str, TpSlConfig] = {}

    def open_positions(self) -> List[Position]:
        return self.query(status=PositionStatus.OPEN)

    def set_tpsl(
        self,
        position_id: str,
        owner: str,
        take_profit: Optional[float] = None,
        stop_loss: Optional[float] = None,
    ) -> TpSlConfig:
        """
        Create or replace the TP/SL config of an open position.

        Take-profit must sit on the profitable side of entry. Stop-loss is not
        direction-checked so a trailing stop above entry (long) is allowed.
        """
        position = self.require(position_id)
        if position.status is not PositionStatus.OPEN:
            raise ValidationError(f"Position is not open (status: {position.status.name})")
        if position.owner.lower() != owner.lower():
            raise ValidationError("Not your position")
        self.check_levels(position.side, position.entry_price, take_profit, stop_loss)

        now = self._clock()
        existing = self._tpsl.get(position_id)
        config = TpSlConfig(
            position_id=position_id,
            owner=position.owner,
            symbol=position.symbol,
            side=position.side,
            entry_price=position.entry_price,
            take_profit=take_profit,
            stop_loss=stop_loss,
            created_at=existing.created_at if existing else now,
            updated_at=now,
        )
        self._tpsl[position_id] = config
        self._log_event(
            "tpsl_set",
            position_id=position_id,
            take_profit=take_profit,
            stop_loss=stop_loss,
            updated=existing is not None,
        )
        return config

    @staticmethod
    def check_levels(
        side: Side, entry_price: float, take_profit: Optional[float], stop_loss: Optional[float]
    ) -> None:
        if take_profit is None and stop_loss is None:
            raise ValidationError("At least one of take_profit or stop_loss is required")
        if take_profit is not None:
            if take_profit <= 0:
                raise ValidationError("Take Profit must be positive")
            if side.is_long and take_profit <= entry_price:
                raise ValidationError("Take Profit must be above entry price for Long positions")
            if not side.is_long and take_profit >= entry_price:
                raise ValidationError("Take Profit must be below entry price for Short positions")
        if stop_loss is not None and stop_loss <= 0:
            raise ValidationError("Stop Loss must be positive")

    def get_tpsl(self, position_id: str) -> Optional[TpSlConfig]:
        return self._tpsl.get(position_id)

    def delete_tpsl(self, position_id: str, owner: str) -> bool:
        config = self._tpsl.get(position_id)
        if config is None:
            return False
        if config.owner.lower() != owner.lower():
            raise ValidationError("Not your position")
        del self._tpsl[position_id]
        return True

    def tpsl_configs(self) -> List[TpSlConfig]:
        return list(self._tpsl.values())

    def drop_tpsl(self, position_id: str) -> None:
        """Forget the config once the position left OPEN for good."""
        self._tpsl.pop(position_id, None)
