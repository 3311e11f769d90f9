import logging
from typing import Dict, List, Optional, TYPE_CHECKING

from api.metrics import metrics
from portfolio.ledger import ClosedTrade, PortfolioEvent, Position
from strategy.signal_types import Signal, TradeIntent
from strategy.signal_validator import intent_rejection

if TYPE_CHECKING:
    from main import TradingSystem


logger = logging.getLogger(__name__)


class SignalExecutionService:
    """Turns dequeued signals and strategy intents into ledger operations.

    Every method here runs inside the portfolio lock held by the caller.
    """

    def __init__(self, system: 'TradingSystem'):
        self.system = system

    def handle(self, signal: Signal):
        logger.info("Processing %s signal %s for %s", signal.action, signal.signal_id, signal.symbol)
        if signal.action == 'close':
            return self.close_signal(signal)
        intent = self.build_intent(signal)
        if intent is None:
            return None
        return self.open_intent(intent)

    def build_intent(self, signal: Signal) -> Optional[TradeIntent]:
        system = self.system
        side = signal.side
        price = signal.price or system.prices.get(signal.symbol)
        if price is None:
            self._reject(signal.symbol, signal.strategy_tag, None, 'no_price',
                         'signal carries no price and no market price is known')
            return None

        risk = system.risk_manager
        stop_loss = signal.stop_loss or risk.default_stop(price, side)
        take_profit = signal.take_profit or risk.default_target(price, stop_loss, side)

        return TradeIntent(
            symbol=signal.symbol,
            side=side,
            price=price,
            stop_loss=stop_loss,
            take_profit=take_profit,
            strategy_tag=signal.strategy_tag,
            confidence=signal.metadata.get('confidence'),
            source=signal.source,
            signal_id=signal.signal_id,
        )

    def open_intent(self, intent: TradeIntent) -> Optional[Position]:
        system = self.system
        rejection = intent_rejection(intent)
        if rejection:
            self._reject(intent.symbol, intent.strategy_tag, intent.price, rejection.reason, rejection.detail)
            return None

        risk = system.risk_manager
        if not risk.can_open(intent.symbol, intent.strategy_tag, intent.price, intent.stop_loss):
            return None

        try:
            size = risk.size(intent)
        except ValueError as exc:
            self._reject(intent.symbol, intent.strategy_tag, intent.price, 'unsizable', str(exc))
            return None
        if size <= 0:
            self._reject(intent.symbol, intent.strategy_tag, intent.price, 'zero_size',
                         'no capital available for this trade')
            return None

        position = system.ledger.open(intent, size)
        fill = system.broker.submit_open(position)
        position.order_id = fill.id
        metrics.record_admission(True)
        return position

    def close_signal(self, signal: Signal) -> List[ClosedTrade]:
        system = self.system
        market = signal.price or system.prices.get(signal.symbol)
        trades = system.ledger.close_symbol(signal.symbol, market, 'manual')
        if not trades:
            logger.info("Close signal for %s with no open positions", signal.symbol)
        system.settle(trades)
        return trades

    def _reject(self, symbol: str, strategy_tag: str, price: Optional[float],
                reason: str, detail: str) -> None:
        logger.info("Signal for %s not admitted: %s (%s)", symbol, reason, detail)
        self.system.collect_event(PortfolioEvent('rejected', {
            'symbol': symbol,
            'strategy': strategy_tag,
            'price': price,
            'allowed': False,
            'checks': {},
            'failed': [reason],
            'detail': detail,
        }))


class PortfolioMaintenanceService:
    """Price application, rebalance sweeps and daily PnL bookkeeping."""

    def __init__(self, system: 'TradingSystem'):
        self.system = system
        self._dirty: Dict[str, float] = {}

    def update_price(self, symbol: str, price: float) -> None:
        self.system.prices[symbol] = price
        self._dirty[symbol] = price

    def pending_symbols(self) -> Dict[str, float]:
        pending, self._dirty = self._dirty, {}
        return pending

    def apply_price(self, symbol: str, price: float) -> List[ClosedTrade]:
        # Revaluation and exit detection run back to back for the same tick.
        trades = self.system.ledger.apply_price(symbol, price)
        self.system.settle(trades)
        return trades

    def apply_pending(self) -> List[ClosedTrade]:
        trades = []
        for symbol, price in self.pending_symbols().items():
            trades.extend(self.apply_price(symbol, price))
        return trades

    def rebalance(self) -> List[ClosedTrade]:
        trades = self.system.ledger.rebalance()
        self.system.settle(trades)
        if trades:
            logger.info("Rebalance closed %d positions", len(trades))
        return trades

    def record_daily_pnl(self) -> float:
        change = self.system.ledger.record_daily_pnl()
        logger.info("Daily PnL recorded: %.2f", change)
        return change

    def close_position(self, position_id: str, price: Optional[float] = None,
                       reason: str = 'manual') -> Optional[ClosedTrade]:
        ledger = self.system.ledger
        position = ledger.get(position_id)
        if position is None:
            logger.warning("Position %s not found", position_id)
            return None
        price = price or self.system.prices.get(position.symbol) or position.last_price or position.entry_price
        trade = ledger.close(position_id, price, reason)
        if trade:
            self.system.settle([trade])
        return trade

    def close_all(self, reason: str) -> List[ClosedTrade]:
        trades = self.system.ledger.close_all(reason, self.system.prices)
        self.system.settle(trades)
        if trades:
            logger.info("Closed %d positions (%s)", len(trades), reason)
        return trades
