"""Performance statistics over closed trades and the daily PnL series.

All functions are pure; they take plain sequences so they can be reused on
snapshots without holding the portfolio lock.
"""
from typing import Dict, Iterable, Sequence

import numpy as np

from portfolio.ledger import ClosedTrade

TRADING_DAYS = 252


def _pnls(trades: Iterable[ClosedTrade]) -> np.ndarray:
    return np.asarray([trade.realized_pnl for trade in trades], dtype=float)


def win_rate(trades: Sequence[ClosedTrade]) -> float:
    pnls = _pnls(trades)
    if pnls.size == 0:
        return 0.0
    return float(np.count_nonzero(pnls > 0) / pnls.size)


def profit_factor(trades: Sequence[ClosedTrade]) -> float:
    """Gross profit over gross loss; gross profit itself when nothing was lost."""
    pnls = _pnls(trades)
    gross_profit = float(pnls[pnls > 0].sum())
    gross_loss = abs(float(pnls[pnls < 0].sum()))
    if gross_loss == 0:
        return gross_profit
    return gross_profit / gross_loss


def max_drawdown(trades: Sequence[ClosedTrade], initial_capital: float) -> float:
    pnls = _pnls(trades)
    if pnls.size == 0 or initial_capital <= 0:
        return 0.0
    equity = initial_capital + np.cumsum(pnls)
    peaks = np.maximum.accumulate(np.concatenate(([initial_capital], equity)))[1:]
    drawdowns = (peaks - equity) / peaks
    return float(max(0.0, drawdowns.max()))


def sharpe_ratio(daily_pnl: Sequence[float], initial_capital: float) -> float:
    if len(daily_pnl) < 2 or initial_capital <= 0:
        return 0.0
    returns = np.asarray(daily_pnl, dtype=float) / initial_capital
    # Constant series leave rounding noise in std rather than an exact zero.
    if np.ptp(returns) == 0:
        return 0.0
    std = returns.std()
    if not np.isfinite(std) or std <= 1e-12 * max(1.0, abs(float(returns.mean()))):
        return 0.0
    return float(returns.mean() / std * np.sqrt(TRADING_DAYS))


def summarize(trades: Sequence[ClosedTrade], daily_pnl: Sequence[float],
              initial_capital: float) -> Dict:
    pnls = _pnls(trades)
    return {
        'total_trades': int(pnls.size),
        'wins': int(np.count_nonzero(pnls > 0)),
        'losses': int(np.count_nonzero(pnls < 0)),
        'win_rate': win_rate(trades),
        'profit_factor': profit_factor(trades),
        'max_drawdown': max_drawdown(trades, initial_capital),
        'sharpe_ratio': sharpe_ratio(daily_pnl, initial_capital),
        'realized_pnl': float(pnls.sum()) if pnls.size else 0.0,
    }
