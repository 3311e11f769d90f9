from dataclasses import dataclass, field
from typing import Dict, Optional
import time
import uuid


ACTIONS = ('buy', 'sell', 'close')


def new_signal_id() -> str:
    return f"tv-{uuid.uuid4().hex[:12]}"


@dataclass(frozen=True)
class Signal:
    """Validated inbound trade alert. Never mutated after intake."""

    symbol: str
    action: str
    price: Optional[float] = None
    stop_loss: Optional[float] = None
    take_profit: Optional[float] = None
    strategy_tag: str = 'TradingView Alert'
    source: str = 'tradingview_webhook'
    timeframe: Optional[str] = None
    raw_indicators: Dict[str, Optional[float]] = field(default_factory=dict)
    metadata: Dict = field(default_factory=dict)
    signal_id: str = field(default_factory=new_signal_id)
    received_at: float = field(default_factory=time.time)

    @property
    def side(self) -> Optional[str]:
        if self.action == 'buy':
            return 'long'
        if self.action == 'sell':
            return 'short'
        return None

    def to_dict(self) -> Dict:
        return {
            'signal_id': self.signal_id,
            'timestamp': int(self.received_at * 1000),
            'symbol': self.symbol,
            'action': self.action,
            'price': self.price,
            'stop_loss': self.stop_loss,
            'take_profit': self.take_profit,
            'strategy': self.strategy_tag,
            'source': self.source,
            'timeframe': self.timeframe,
            'indicators': dict(self.raw_indicators),
            'metadata': dict(self.metadata),
        }


@dataclass(frozen=True)
class TradeIntent:
    """Candidate trade handed to the admission engine."""

    symbol: str
    side: str
    price: float
    stop_loss: float
    take_profit: Optional[float] = None
    strategy_tag: str = 'TradingView Alert'
    confidence: Optional[float] = None
    source: str = 'strategy'
    signal_id: Optional[str] = None

    @property
    def stop_fraction(self) -> float:
        if not self.price:
            return 0.0
        return abs(self.price - self.stop_loss) / self.price


@dataclass(frozen=True)
class Rejection:
    reason: str
    detail: str = ''
