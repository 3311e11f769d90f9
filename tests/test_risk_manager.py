import sys

sys.path.insert(0, '.')

import pytest

from portfolio.ledger import PortfolioState, PositionLedger
from risk.position_sizer import RiskManager
from strategy.signal_types import TradeIntent

RISK_CFG = {
    'max_risk_per_trade': 0.02,
    'max_portfolio_risk': 0.10,
    'max_open_positions': 5,
    'max_correlated_positions': 2,
    'max_capital_fraction': 0.8,
    'correlation_groups': {'BTC': ['ETH'], 'ETH': ['BTC'], 'XAU': ['XAG']},
}


def _setup(capital=10000.0, **overrides):
    cfg = dict(RISK_CFG, **overrides)
    state = PortfolioState(initial_capital=capital)
    events = []
    risk = RiskManager(state, cfg, listener=events.append)
    ledger = PositionLedger(state, listener=events.append)
    return state, risk, ledger, events


def _intent(symbol, price, stop, side='long', tp=None):
    return TradeIntent(symbol=symbol, side=side, price=price, stop_loss=stop, take_profit=tp)


def test_sizing_scenario_xauusd():
    state, risk, _, _ = _setup()
    intent = _intent('XAUUSD', 2000.0, 1950.0, tp=2100.0)
    assert risk.can_open(intent.symbol, intent.strategy_tag, intent.price, intent.stop_loss)
    # risk amount 200 over a 2.5% stop gives 8000 notional, i.e. 4 units
    assert risk.size(intent) == pytest.approx(4.0)


def test_size_is_clamped_by_capital_fraction():
    _, risk, _, _ = _setup()
    tight = _intent('BTCUSDT', 100.0, 99.9)
    # uncapped size would be 2000 units; the 80% cap allows 80
    assert risk.size(tight) == pytest.approx(80.0)


def test_size_requires_stop_distance():
    _, risk, _, _ = _setup()
    with pytest.raises(ValueError):
        risk.size(_intent('BTCUSDT', 100.0, None))
    with pytest.raises(ValueError):
        risk.size(_intent('BTCUSDT', 100.0, 100.0))


def test_base_asset_strips_longest_quote():
    _, risk, _, _ = _setup()
    assert risk.base_asset('BTCUSDT') == 'BTC'
    assert risk.base_asset('XAUUSD') == 'XAU'
    assert risk.base_asset('ETH/BTC') == 'ETH'
    assert risk.correlated_assets('ETHUSDT') == ['ETH', 'BTC']


def test_correlation_guard_counts_group_members():
    _, risk, ledger, events = _setup()
    ledger.open(_intent('BTCUSDT', 100.0, 98.0), 1.0)
    assert risk.evaluate('ETHUSDT', 'test', 50.0, 49.0).checks['correlation']

    ledger.open(_intent('ETHUSDT', 50.0, 49.0), 1.0)
    decision = risk.evaluate('BTCUSDT', 'test', 100.0, 98.0)
    assert decision.checks == {
        'max_positions': True,
        'correlation': False,
        'risk_budget': True,
        'capital': True,
    }
    assert decision.failed == ['correlation']
    assert risk.evaluate('XAUUSD', 'test', 2000.0, 1960.0).allowed

    assert not risk.can_open('BTCUSDT', 'test', 100.0, 98.0)
    rejected = [e for e in events if e.kind == 'rejected']
    assert rejected[-1].payload['failed'] == ['correlation']


def test_max_open_positions():
    _, risk, ledger, _ = _setup(max_open_positions=1, max_portfolio_risk=1.0)
    ledger.open(_intent('XAUUSD', 2000.0, 1960.0), 0.1)
    decision = risk.evaluate('SOLUSDT', 'test', 20.0, 19.6)
    assert not decision.checks['max_positions']
    assert not decision


def test_portfolio_risk_never_exceeds_budget():
    state, risk, ledger, _ = _setup(max_open_positions=50, max_correlated_positions=50)
    symbols = ['SOLUSDT', 'ADAUSDT', 'DOTUSDT', 'LINKUSDT', 'AVAXUSDT', 'ATOMUSDT', 'NEARUSDT', 'XRPUSDT']
    opened = 0
    for symbol in symbols:
        intent = _intent(symbol, 10.0, 9.7)
        if not risk.can_open(symbol, 'test', intent.price, intent.stop_loss):
            continue
        size = risk.size(intent)
        if size > 0:
            ledger.open(intent, size)
            opened += 1
        assert state.portfolio_risk <= risk.max_portfolio_risk + 1e-9
    # each trade carries 3% stop risk against a 10% budget
    assert opened == 3


def test_default_levels():
    _, risk, _, _ = _setup(default_stop_pct=0.02, default_reward_ratio=2.5)
    stop = risk.default_stop(100.0, 'long')
    assert stop == pytest.approx(98.0)
    assert risk.default_target(100.0, stop, 'long') == pytest.approx(105.0)
    short_stop = risk.default_stop(100.0, 'short')
    assert short_stop == pytest.approx(102.0)
    assert risk.default_target(100.0, short_stop, 'short') == pytest.approx(95.0)


def test_invalid_risk_config_raises():
    state = PortfolioState(initial_capital=1000.0)
    with pytest.raises(RuntimeError):
        RiskManager(state, {'max_risk_per_trade': 'lots'})
    with pytest.raises(RuntimeError):
        RiskManager(state, {'max_capital_fraction': 1.5})


def test_tight_stop_sizing_hits_capital_cap():
    _, risk, _, _ = _setup()
    # 0.5% stop would allow 20 units; the 80% capital cap leaves 4
    assert risk.size(_intent('XAUUSD', 2000.0, 1990.0)) == pytest.approx(4.0)
