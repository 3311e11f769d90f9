import sys

sys.path.insert(0, '.')

import numpy as np
import pytest

from analytics.performance import max_drawdown, profit_factor, sharpe_ratio, summarize, win_rate
from portfolio.ledger import ClosedTrade


def _trade(pnl, idx=0):
    return ClosedTrade(
        position_id=f'pos-{idx}', symbol='BTCUSDT', side='long', entry_price=100.0, size=1.0,
        stop_loss=95.0, take_profit=110.0, strategy_tag='test', opened_at=0.0,
        max_favorable_excursion=0.0, max_adverse_excursion=0.0, close_price=100.0 + pnl,
        closed_at=3600.0, realized_pnl=pnl, close_reason='manual', duration_hours=1.0,
    )


def test_empty_history():
    assert win_rate([]) == 0.0
    assert profit_factor([]) == 0.0
    assert max_drawdown([], 10000.0) == 0.0
    stats = summarize([], [], 10000.0)
    assert stats['total_trades'] == 0
    assert stats['sharpe_ratio'] == 0.0


def test_profit_factor_without_losses_is_gross_profit():
    trades = [_trade(100.0, 1), _trade(50.0, 2)]
    assert profit_factor(trades) == pytest.approx(150.0)
    assert win_rate(trades) == 1.0


def test_profit_factor_and_win_rate():
    trades = [_trade(300.0, 1), _trade(-100.0, 2), _trade(-50.0, 3), _trade(0.0, 4)]
    assert profit_factor(trades) == pytest.approx(2.0)
    assert win_rate(trades) == pytest.approx(0.25)


def test_max_drawdown_from_equity_peak():
    trades = [_trade(1000.0, 1), _trade(-2200.0, 2), _trade(500.0, 3)]
    assert max_drawdown(trades, 10000.0) == pytest.approx(0.2)


def test_sharpe_ratio_edge_cases():
    assert sharpe_ratio([], 10000.0) == 0.0
    assert sharpe_ratio([25.0], 10000.0) == 0.0
    assert sharpe_ratio([10.0, 10.0, 10.0], 10000.0) == 0.0
    assert sharpe_ratio([33.0] * 3, 10000.0) == 0.0
    assert sharpe_ratio([0.1] * 7, 10000.0) == 0.0


def test_sharpe_ratio_annualised():
    daily = [10.0, -10.0, 20.0, 0.0]
    returns = np.asarray(daily) / 10000.0
    expected = returns.mean() / returns.std() * np.sqrt(252)
    assert sharpe_ratio(daily, 10000.0) == pytest.approx(expected)
