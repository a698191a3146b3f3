"""
Price-target bets, keyed by (venue, bet id).
"""

from __future__ import annotations

import time
from dataclasses import replace
from typing import Any, Callable, Dict, List

from keeper.store.models import Bet, BetStatus, bet_key
from keeper.store.repository import EntityStore
from keeper.store.state_machine import BET_GRAPH


class BetStore(EntityStore[Bet]):
    def __init__(self, clock: Callable[[], float] = time.time, **kwargs) -> None:
        super().__init__(
            BET_GRAPH,
            id_prefix="bet",
            indexes={
                "owner": lambda b: b.owner,
                "symbol": lambda b: b.symbol,
                "venue": lambda b: b.venue,
            },
            clock=clock,
            **kwargs,
        )

    def create(self, entity: Bet) -> Bet:
        return super().create(replace(entity, id=bet_key(entity.venue, entity.bet_id)))

    def get_bet(self, venue: str, bet_id: str):
        return self.get(bet_key(venue, bet_id))

    def active(self) -> List[Bet]:
        return self.query(status=BetStatus.ACTIVE)

    def stats(self) -> Dict[str, Any]:
        bets = self.all()
        won = [b for b in bets if b.status is BetStatus.WON]
        return {
            "total": len(bets),
            "active": sum(1 for b in bets if b.status is BetStatus.ACTIVE),
            "settling": sum(1 for b in bets if b.status is BetStatus.SETTLING),
            "won": len(won),
            "lost": sum(1 for b in bets if b.status is BetStatus.LOST),
            "cancelled": sum(1 for b in bets if b.status is BetStatus.CANCELLED),
            "partial_failure": sum(1 for b in bets if b.status is BetStatus.PARTIAL_FAILURE),
            "total_volume": sum(b.bet_amount for b in bets),
            "total_payout": sum(b.payout for b in won),
        }
