import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict

from portfolio.ledger import ClosedTrade, Position


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PaperFill:
    """Acknowledgement for an open or close instruction on a ledger position."""

    position_id: str
    symbol: str
    side: str
    quantity: float
    price: float
    purpose: str
    order_id: str = field(default_factory=lambda: f"paper-{uuid.uuid4().hex[:8]}")
    filled_at: float = field(default_factory=time.time)
    details: Dict[str, Any] = field(default_factory=dict)

    @property
    def id(self) -> str:
        return self.order_id


class PaperBroker:
    """Broker adapter that acknowledges every instruction as filled at the requested price.

    Invoked only after the ledger has booked an admitted position or a close.
    Only the opening fill of a live position is retained; it is dropped once
    the close is acknowledged.
    """

    def __init__(self) -> None:
        self._working: Dict[str, PaperFill] = {}

    def __len__(self) -> int:
        return len(self._working)

    def submit_open(self, position: Position) -> PaperFill:
        side = "BUY" if position.side == "long" else "SELL"
        fill = self._fill(position.position_id, position.symbol, side, position.size,
                          position.entry_price, "open",
                          stop_loss=position.stop_loss, take_profit=position.take_profit)
        self._working[position.position_id] = fill
        return fill

    def submit_close(self, trade: ClosedTrade) -> PaperFill:
        side = "SELL" if trade.side == "long" else "BUY"
        fill = self._fill(trade.position_id, trade.symbol, side, trade.size,
                          trade.close_price, "close", reason=trade.close_reason)
        self._working.pop(trade.position_id, None)
        return fill

    @staticmethod
    def _fill(position_id: str, symbol: str, side: str, quantity: float,
              price: float, purpose: str, **details: Any) -> PaperFill:
        fill = PaperFill(
            position_id=position_id,
            symbol=symbol,
            side=side,
            quantity=quantity,
            price=price,
            purpose=purpose,
            details=details,
        )
        logger.debug("Paper %s %s %s qty=%.6f @ %.5f", purpose, side, symbol, quantity, price)
        return fill
