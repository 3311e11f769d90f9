from dataclasses import dataclass, field
from typing import Dict, List, Mapping, Optional, Tuple
import logging

from config.utils import require_float
from portfolio.ledger import EventListener, PortfolioEvent, PortfolioState
from strategy.signal_types import TradeIntent


logger = logging.getLogger(__name__)

DEFAULT_QUOTE_ASSETS = ('USDT', 'USD', 'BTC', 'ETH')


@dataclass
class AdmissionDecision:
    symbol: str
    strategy_tag: str
    price: Optional[float]
    checks: Dict[str, bool] = field(default_factory=dict)

    @property
    def allowed(self) -> bool:
        return bool(self.checks) and all(self.checks.values())

    @property
    def failed(self) -> List[str]:
        return [name for name, passed in self.checks.items() if not passed]

    def __bool__(self) -> bool:
        return self.allowed

    def to_dict(self) -> Dict:
        return {
            'symbol': self.symbol,
            'strategy': self.strategy_tag,
            'price': self.price,
            'allowed': self.allowed,
            'checks': dict(self.checks),
            'failed': self.failed,
        }


class RiskManager:
    """Admission control and position sizing against the shared portfolio state."""

    def __init__(self, state: PortfolioState, risk_cfg: Optional[Mapping] = None,
                 listener: Optional[EventListener] = None):
        risk_cfg = dict(risk_cfg or {})
        self.state = state
        self.listener = listener
        self.max_risk_per_trade = require_float(
            risk_cfg, 'max_risk_per_trade', 0.02, minimum=0.0, maximum=1.0)
        self.max_portfolio_risk = require_float(
            risk_cfg, 'max_portfolio_risk', 0.10, minimum=0.0)
        self.max_open_positions = int(require_float(
            risk_cfg, 'max_open_positions', 5, minimum=0))
        self.max_correlated_positions = int(require_float(
            risk_cfg, 'max_correlated_positions', 2, minimum=0))
        self.max_capital_fraction = require_float(
            risk_cfg, 'max_capital_fraction', 0.8, minimum=0.0, maximum=1.0)
        self.default_stop_pct = require_float(
            risk_cfg, 'default_stop_pct', 0.02, minimum=0.0, maximum=1.0)
        self.default_reward_ratio = require_float(
            risk_cfg, 'default_reward_ratio', 2.5, minimum=0.0)
        quotes = risk_cfg.get('quote_assets') or DEFAULT_QUOTE_ASSETS
        # Longest first so USDT is stripped before USD.
        self.quote_assets: Tuple[str, ...] = tuple(sorted((str(q).upper() for q in quotes), key=len, reverse=True))
        groups = risk_cfg.get('correlation_groups') or {}
        self.correlation_groups: Dict[str, List[str]] = {
            str(base).upper(): [str(peer).upper() for peer in peers or []]
            for base, peers in dict(groups).items()
        }

    def base_asset(self, symbol: str) -> str:
        symbol = symbol.upper().replace('/', '')
        for quote in self.quote_assets:
            if symbol.endswith(quote) and len(symbol) > len(quote):
                return symbol[:-len(quote)]
        return symbol

    def correlated_assets(self, symbol: str) -> List[str]:
        base = self.base_asset(symbol)
        return [base] + self.correlation_groups.get(base, [])

    def correlated_position_count(self, symbol: str) -> int:
        assets = set(self.correlated_assets(symbol))
        return sum(
            1 for pos in self.state.open_positions.values()
            if self.base_asset(pos.symbol) in assets
        )

    def candidate_risk(self, price: Optional[float], stop_loss: Optional[float]) -> float:
        if price and stop_loss:
            return max(self.max_risk_per_trade, abs(price - stop_loss) / price)
        return self.max_risk_per_trade

    def evaluate(self, symbol: str, strategy_tag: str, price: Optional[float],
                 stop_loss: Optional[float] = None) -> AdmissionDecision:
        current_risk = self.state.portfolio_risk
        new_risk = self.candidate_risk(price, stop_loss)
        checks = {
            'max_positions': len(self.state.open_positions) < self.max_open_positions,
            'correlation': self.correlated_position_count(symbol) < self.max_correlated_positions,
            'risk_budget': current_risk + new_risk <= self.max_portfolio_risk + 1e-12,
            'capital': self.state.available_capital > 0,
        }
        return AdmissionDecision(symbol=symbol, strategy_tag=strategy_tag, price=price, checks=checks)

    def can_open(self, symbol: str, strategy_tag: str, price: Optional[float],
                 stop_loss: Optional[float] = None) -> bool:
        decision = self.evaluate(symbol, strategy_tag, price, stop_loss)
        if not decision.allowed:
            logger.info("Position rejected for %s: failed %s", symbol, ','.join(decision.failed))
            if self.listener is not None:
                self.listener(PortfolioEvent('rejected', decision.to_dict()))
        return decision.allowed

    def size(self, intent: TradeIntent) -> float:
        price = intent.price
        if not price or price <= 0:
            raise ValueError(f"cannot size {intent.symbol}: invalid price {price!r}")
        if not intent.stop_loss:
            raise ValueError(f"cannot size {intent.symbol}: signal carries no stop loss")
        stop_fraction = intent.stop_fraction
        if stop_fraction <= 0:
            raise ValueError(f"cannot size {intent.symbol}: stop loss equals entry price")

        available = self.state.available_capital
        risk_amount = available * self.max_risk_per_trade
        raw_size = (risk_amount / stop_fraction) / price
        max_size = (self.max_capital_fraction * available) / price
        return max(0.0, min(raw_size, max_size))

    def default_stop(self, price: float, side: str) -> float:
        if side == 'long':
            return price * (1 - self.default_stop_pct)
        return price * (1 + self.default_stop_pct)

    def default_target(self, price: float, stop_loss: float, side: str) -> float:
        reward = abs(price - stop_loss) * self.default_reward_ratio
        if side == 'long':
            return price + reward
        return price - reward
