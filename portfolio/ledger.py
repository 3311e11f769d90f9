import logging
import time
import uuid
from collections import deque
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Callable, Deque, Dict, List, Optional

from strategy.signal_types import TradeIntent


logger = logging.getLogger(__name__)

CLOSE_REASONS = ('stop_loss', 'take_profit', 'manual', 'rebalance', 'shutdown')


class PositionStatus(Enum):
    OPEN = "open"
    CLOSED = "closed"


@dataclass
class PortfolioEvent:
    kind: str
    payload: Dict
    timestamp: float = field(default_factory=time.time)


EventListener = Callable[[PortfolioEvent], None]


@dataclass
class Position:
    symbol: str
    side: str
    entry_price: float
    size: float
    stop_loss: float
    take_profit: Optional[float]
    strategy_tag: str
    position_id: str = field(default_factory=lambda: f"pos-{uuid.uuid4().hex[:10]}")
    opened_at: float = field(default_factory=time.time)
    status: PositionStatus = PositionStatus.OPEN
    unrealized_pnl: float = 0.0
    max_favorable_excursion: float = 0.0
    max_adverse_excursion: float = 0.0
    last_price: Optional[float] = None
    signal_id: Optional[str] = None
    order_id: Optional[str] = None

    @property
    def committed(self) -> float:
        return self.size * self.entry_price

    @property
    def risk_fraction(self) -> float:
        return abs(self.entry_price - self.stop_loss) / self.entry_price

    @property
    def pnl_fraction(self) -> float:
        if self.committed <= 0:
            return 0.0
        return self.unrealized_pnl / self.committed

    def pnl_at(self, price: float) -> float:
        if self.side == 'long':
            return self.size * (price - self.entry_price)
        return self.size * (self.entry_price - price)

    def to_dict(self) -> Dict:
        return {
            'position_id': self.position_id,
            'symbol': self.symbol,
            'side': self.side,
            'entry_price': self.entry_price,
            'size': self.size,
            'stop_loss': self.stop_loss,
            'take_profit': self.take_profit,
            'opened_at': int(self.opened_at * 1000),
            'strategy': self.strategy_tag,
            'status': self.status.value,
            'unrealized_pnl': self.unrealized_pnl,
            'max_favorable_excursion': self.max_favorable_excursion,
            'max_adverse_excursion': self.max_adverse_excursion,
            'last_price': self.last_price,
            'committed': self.committed,
            'signal_id': self.signal_id,
            'order_id': self.order_id,
        }


@dataclass(frozen=True)
class ClosedTrade:
    position_id: str
    symbol: str
    side: str
    entry_price: float
    size: float
    stop_loss: float
    take_profit: Optional[float]
    strategy_tag: str
    opened_at: float
    max_favorable_excursion: float
    max_adverse_excursion: float
    close_price: float
    closed_at: float
    realized_pnl: float
    close_reason: str
    duration_hours: float
    signal_id: Optional[str] = None
    order_id: Optional[str] = None

    @classmethod
    def from_position(cls, position: Position, close_price: float, reason: str,
                      closed_at: Optional[float] = None) -> 'ClosedTrade':
        closed_at = time.time() if closed_at is None else closed_at
        return cls(
            position_id=position.position_id,
            symbol=position.symbol,
            side=position.side,
            entry_price=position.entry_price,
            size=position.size,
            stop_loss=position.stop_loss,
            take_profit=position.take_profit,
            strategy_tag=position.strategy_tag,
            opened_at=position.opened_at,
            max_favorable_excursion=position.max_favorable_excursion,
            max_adverse_excursion=position.max_adverse_excursion,
            close_price=close_price,
            closed_at=closed_at,
            realized_pnl=position.pnl_at(close_price),
            close_reason=reason,
            duration_hours=max(0.0, closed_at - position.opened_at) / 3600.0,
            signal_id=position.signal_id,
            order_id=position.order_id,
        )

    def to_dict(self) -> Dict:
        data = asdict(self)
        # Event timestamps are epoch milliseconds, as in Position.to_dict.
        data['opened_at'] = int(self.opened_at * 1000)
        data['closed_at'] = int(self.closed_at * 1000)
        data['strategy'] = data.pop('strategy_tag')
        data['status'] = PositionStatus.CLOSED.value
        return data


@dataclass
class PortfolioState:
    initial_capital: float
    available_capital: float = None
    open_positions: Dict[str, Position] = field(default_factory=dict)
    closed_trades: List[ClosedTrade] = field(default_factory=list)
    daily_pnl: Deque[float] = field(default_factory=lambda: deque(maxlen=252))

    def __post_init__(self):
        if self.available_capital is None:
            self.available_capital = self.initial_capital

    @property
    def committed_capital(self) -> float:
        return sum(pos.committed for pos in self.open_positions.values())

    @property
    def realized_pnl(self) -> float:
        return sum(trade.realized_pnl for trade in self.closed_trades)

    @property
    def unrealized_pnl(self) -> float:
        return sum(pos.unrealized_pnl for pos in self.open_positions.values())

    @property
    def portfolio_risk(self) -> float:
        return sum(pos.risk_fraction for pos in self.open_positions.values())

    @property
    def total_value(self) -> float:
        return self.available_capital + self.committed_capital

    def reconciles(self, tolerance: float = 1e-6) -> bool:
        lhs = self.available_capital + self.committed_capital
        rhs = self.initial_capital + self.realized_pnl
        return abs(lhs - rhs) <= tolerance * max(1.0, abs(rhs))


class PositionLedger:
    """Owns open positions and trade history.

    Not thread-safe: callers serialise access behind the portfolio lock.
    """

    def __init__(self, state: PortfolioState, listener: Optional[EventListener] = None,
                 rebalance_loss_pct: float = 0.15, partial_profit_pct: float = 0.25):
        self.state = state
        self.listener = listener
        self.rebalance_loss_pct = rebalance_loss_pct
        self.partial_profit_pct = partial_profit_pct
        self._last_daily_value: Optional[float] = None

    def _emit(self, kind: str, payload: Dict) -> None:
        if self.listener is not None:
            self.listener(PortfolioEvent(kind, payload))

    def get(self, position_id: str) -> Optional[Position]:
        return self.state.open_positions.get(position_id)

    def positions_for(self, symbol: str) -> List[Position]:
        return [pos for pos in self.state.open_positions.values() if pos.symbol == symbol]

    def open(self, intent: TradeIntent, size: float) -> Position:
        # Admission is the caller's job; the ledger only books the trade.
        if size <= 0:
            raise ValueError(f"position size must be positive, got {size}")
        position = Position(
            symbol=intent.symbol,
            side=intent.side,
            entry_price=intent.price,
            size=size,
            stop_loss=intent.stop_loss,
            take_profit=intent.take_profit,
            strategy_tag=intent.strategy_tag,
            last_price=intent.price,
            signal_id=intent.signal_id,
        )
        self.state.open_positions[position.position_id] = position
        self.state.available_capital -= position.committed
        logger.info(
            "Opened %s %s size=%.6f @ %.5f (sl=%s tp=%s)",
            position.side, position.symbol, position.size, position.entry_price,
            position.stop_loss, position.take_profit,
        )
        self._emit('opened', position.to_dict())
        return position

    def revalue(self, symbol: str, price: float) -> List[Position]:
        updated = []
        for position in self.positions_for(symbol):
            position.unrealized_pnl = position.pnl_at(price)
            position.last_price = price
            fraction = position.pnl_fraction
            position.max_favorable_excursion = max(position.max_favorable_excursion, fraction)
            position.max_adverse_excursion = min(position.max_adverse_excursion, fraction)
            updated.append(position)
        return updated

    @staticmethod
    def check_exit(position: Position, price: float) -> Optional[str]:
        # Stop-loss is evaluated first so it wins when both levels are crossed.
        if position.side == 'long':
            if price <= position.stop_loss:
                return 'stop_loss'
            if position.take_profit is not None and price >= position.take_profit:
                return 'take_profit'
        else:
            if price >= position.stop_loss:
                return 'stop_loss'
            if position.take_profit is not None and price <= position.take_profit:
                return 'take_profit'
        return None

    def apply_price(self, symbol: str, price: float) -> List[ClosedTrade]:
        closed = []
        for position in self.revalue(symbol, price):
            reason = self.check_exit(position, price)
            if reason:
                trade = self.close(position.position_id, price, reason)
                if trade:
                    closed.append(trade)
        return closed

    def close(self, position_id: str, price: float, reason: str = 'manual') -> Optional[ClosedTrade]:
        position = self.state.open_positions.get(position_id)
        if position is None:
            logger.warning("Close requested for unknown or closed position %s", position_id)
            return None
        if reason not in CLOSE_REASONS:
            raise ValueError(f"unknown close reason {reason!r}")

        trade = ClosedTrade.from_position(position, price, reason)
        position.status = PositionStatus.CLOSED
        position.unrealized_pnl = 0.0
        del self.state.open_positions[position_id]
        self.state.available_capital += position.committed + trade.realized_pnl
        self.state.closed_trades.append(trade)
        logger.info(
            "Closed %s %s @ %.5f reason=%s pnl=%.2f",
            trade.side, trade.symbol, price, reason, trade.realized_pnl,
        )
        self._emit('closed', trade.to_dict())
        return trade

    def close_symbol(self, symbol: str, price: Optional[float] = None,
                     reason: str = 'manual') -> List[ClosedTrade]:
        """Close every open position on ``symbol``, at each one's last mark when no price is given."""
        trades = []
        for position in self.positions_for(symbol):
            close_price = price or position.last_price or position.entry_price
            trade = self.close(position.position_id, close_price, reason)
            if trade:
                trades.append(trade)
        return trades

    def close_all(self, reason: str, prices: Optional[Dict[str, float]] = None) -> List[ClosedTrade]:
        prices = prices or {}
        trades = []
        for position in list(self.state.open_positions.values()):
            price = prices.get(position.symbol) or position.last_price or position.entry_price
            trade = self.close(position.position_id, price, reason)
            if trade:
                trades.append(trade)
        return trades

    def rebalance(self) -> List[ClosedTrade]:
        closed = []
        for position in list(self.state.open_positions.values()):
            fraction = position.pnl_fraction
            if fraction < -self.rebalance_loss_pct:
                price = position.last_price or position.entry_price
                trade = self.close(position.position_id, price, 'rebalance')
                if trade:
                    closed.append(trade)
            elif fraction >= self.partial_profit_pct:
                self._emit('partial_exit_advisory', {
                    'position': position.to_dict(),
                    'pnl_fraction': fraction,
                })
        self._emit('rebalanced', self.summary())
        return closed

    def record_daily_pnl(self) -> float:
        value = self.state.total_value + self.state.unrealized_pnl
        previous = self._last_daily_value
        if previous is None:
            previous = self.state.initial_capital + sum(self.state.daily_pnl)
        change = value - previous
        self.state.daily_pnl.append(change)
        self._last_daily_value = value
        return change

    def summary(self) -> Dict:
        state = self.state
        total_value = state.total_value
        return {
            'initial_capital': state.initial_capital,
            'available_capital': state.available_capital,
            'committed_capital': state.committed_capital,
            'total_value': total_value,
            'unrealized_pnl': state.unrealized_pnl,
            'realized_pnl': state.realized_pnl,
            'total_return': (total_value - state.initial_capital) / state.initial_capital,
            'portfolio_risk': state.portfolio_risk,
            'open_positions': len(state.open_positions),
            'total_trades': len(state.closed_trades),
        }
