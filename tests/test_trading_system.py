import asyncio
import json
import sys

sys.path.insert(0, '.')

import pytest

from api.alerts import AlertWebhook
from main import TradingSystem
from monitoring.signal_auditor import SignalAuditor
from strategy.signal_queue import SignalDispatcher, SignalQueue
from strategy.signal_types import Signal, TradeIntent


def make_config(**overrides):
    cfg = {
        'intake': {'signal_ttl_s': 60, 'webhook_secret': '', 'allowed_ips': []},
        'dispatcher': {'drain_interval_s': 0.01, 'start_active': True},
        'portfolio': {'initial_capital': 10000, 'close_on_shutdown': True,
                      'revalue_interval_s': 0.01, 'rebalance_interval_s': 3600,
                      'daily_pnl_interval_s': 3600},
        'risk': {'max_risk_per_trade': 0.02, 'max_portfolio_risk': 0.10, 'max_open_positions': 5,
                 'max_correlated_positions': 2, 'correlation_groups': {'BTC': ['ETH'], 'ETH': ['BTC']}},
        'monitoring': {'prometheus_port': 0},
    }
    for section, values in overrides.items():
        cfg[section] = dict(cfg.get(section, {}), **values)
    return cfg


def make_system(tmp_path, **overrides):
    return TradingSystem(
        make_config(**overrides),
        alert_webhook=AlertWebhook(url=''),
        auditor=SignalAuditor(tmp_path / 'audit.jsonl'),
    )


def test_queue_drops_while_inactive():
    queue = SignalQueue(active=False)
    assert not queue.enqueue(Signal('BTCUSDT', 'buy'))
    assert len(queue) == 0
    queue.active = True
    assert queue.enqueue(Signal('BTCUSDT', 'buy'))
    assert queue.enqueue(Signal('ETHUSDT', 'sell'))
    assert [s.symbol for s in queue.pop_all()] == ['BTCUSDT', 'ETHUSDT']
    assert len(queue) == 0


def test_dispatcher_preserves_order_and_survives_handler_errors():
    queue = SignalQueue()
    handled = []

    async def handler(signal):
        if signal.symbol == 'BADUSDT':
            raise RuntimeError('boom')
        handled.append(signal.symbol)

    for symbol in ('BTCUSDT', 'BADUSDT', 'ETHUSDT'):
        queue.enqueue(Signal(symbol, 'buy'))
    dispatcher = SignalDispatcher(queue, handler)
    assert asyncio.run(dispatcher.drain()) == 3
    assert handled == ['BTCUSDT', 'ETHUSDT']


def test_dispatcher_skips_overlapping_drains():
    queue = SignalQueue()
    handled = []

    async def slow_handler(signal):
        await asyncio.sleep(0.02)
        handled.append(signal.symbol)

    async def scenario():
        dispatcher = SignalDispatcher(queue, slow_handler)
        queue.enqueue(Signal('BTCUSDT', 'buy'))
        first = asyncio.create_task(dispatcher.drain())
        await asyncio.sleep(0)
        queue.enqueue(Signal('ETHUSDT', 'buy'))
        skipped = await dispatcher.drain()
        return await first, skipped

    first, skipped = asyncio.run(scenario())
    assert first == 1
    assert skipped == 0
    assert handled == ['BTCUSDT']
    assert len(queue) == 1


def test_signal_flows_from_intake_to_ledger(tmp_path):
    system = make_system(tmp_path)
    status, signal = system.ingest({
        'symbol': 'XAUUSD', 'action': 'buy', 'price': 2000, 'stop_loss': 1950, 'take_profit': 2100,
    })
    assert status == 'received'
    assert len(system.queue) == 1

    assert asyncio.run(system.dispatcher.drain()) == 1
    positions = system.open_positions()
    assert len(positions) == 1
    assert positions[0]['size'] == pytest.approx(4.0)
    assert positions[0]['signal_id'] == signal.signal_id
    assert positions[0]['order_id']
    assert system.state.available_capital == pytest.approx(2000.0)

    trades = asyncio.run(system.apply_price('XAUUSD', 1940.0))
    assert trades[0].close_reason == 'stop_loss'
    assert trades[0].realized_pnl == pytest.approx(-240.0)
    assert system.state.available_capital == pytest.approx(9760.0)
    assert system.state.reconciles()

    summary = system.portfolio_summary()
    assert summary['total_trades'] == 1
    assert summary['win_rate'] == 0.0
    assert summary['open_positions'] == 0

    lines = (tmp_path / 'audit.jsonl').read_text().splitlines()
    assert [json.loads(line)['event'] for line in lines] == ['opened', 'closed']


def test_duplicate_signal_is_ignored(tmp_path):
    system = make_system(tmp_path)
    payload = {'symbol': 'BTCUSDT', 'action': 'buy', 'price': 50000}
    assert system.ingest(payload, received_at=1000.0)[0] == 'received'
    assert system.ingest(payload, received_at=1010.0)[0] == 'duplicate_ignored'
    assert len(system.queue) == 1
    assert len(system.recent_signals()) == 1


def test_signal_without_levels_gets_defaults(tmp_path):
    system = make_system(tmp_path)
    system.ingest({'symbol': 'BTCUSDT', 'action': 'sell', 'price': 100})
    asyncio.run(system.dispatcher.drain())
    position = system.open_positions()[0]
    assert position['side'] == 'short'
    assert position['stop_loss'] == pytest.approx(102.0)
    assert position['take_profit'] == pytest.approx(95.0)


def test_signal_without_price_uses_last_mark(tmp_path):
    system = make_system(tmp_path)
    system.ingest({'symbol': 'ETHUSDT', 'action': 'buy'})
    asyncio.run(system.dispatcher.drain())
    assert system.open_positions() == []
    assert system.last_rejection['failed'] == ['no_price']

    system.update_price('ETHUSDT', 3000.0)
    system.ingest({'symbol': 'ETHUSDT', 'action': 'buy'}, received_at=10 ** 10)
    asyncio.run(system.dispatcher.drain())
    assert system.open_positions()[0]['entry_price'] == 3000.0


def test_close_signal_closes_symbol(tmp_path):
    system = make_system(tmp_path)
    system.ingest({'symbol': 'BTCUSDT', 'action': 'buy', 'price': 100, 'sl': 95, 'tp': 120})
    asyncio.run(system.dispatcher.drain())
    system.ingest({'symbol': 'BTCUSDT', 'action': 'close', 'price': 110})
    asyncio.run(system.dispatcher.drain())
    trades = system.closed_trades()
    assert len(trades) == 1
    assert trades[0]['close_reason'] == 'manual'
    assert trades[0]['close_price'] == 110.0
    assert trades[0]['realized_pnl'] > 0


def test_paused_system_drops_signals_and_intents(tmp_path):
    system = make_system(tmp_path)
    system.pause()
    status, _ = system.ingest({'symbol': 'BTCUSDT', 'action': 'buy', 'price': 100})
    assert status == 'received'
    assert len(system.queue) == 0
    intent = TradeIntent('BTCUSDT', 'long', 100.0, 95.0)
    assert asyncio.run(system.submit_intent(intent)) is None
    system.resume()
    assert asyncio.run(system.submit_intent(intent)) is not None


def test_rejected_intent_records_failed_checks(tmp_path):
    system = make_system(tmp_path, risk={'max_open_positions': 1})
    first = asyncio.run(system.submit_intent(TradeIntent('SOLUSDT', 'long', 20.0, 19.6)))
    assert first is not None
    second = asyncio.run(system.submit_intent(TradeIntent('ADAUSDT', 'long', 0.5, 0.49)))
    assert second is None
    assert system.last_rejection['failed'] == ['max_positions']
    assert system.auditor.counts['rejected'] == 1


def test_submitted_intent_gets_level_checks(tmp_path):
    system = make_system(tmp_path)
    wrong_stop = asyncio.run(system.submit_intent(TradeIntent('BTCUSDT', 'long', 100.0, 105.0, 90.0)))
    assert wrong_stop is None
    assert system.last_rejection['failed'] == ['invalid_stop']

    no_stop = asyncio.run(system.submit_intent(TradeIntent('BTCUSDT', 'long', 100.0, None)))
    assert no_stop is None
    assert system.last_rejection['failed'] == ['missing_stop']
    assert system.open_positions() == []
    assert system.auditor.counts['rejected'] == 2


def test_broker_retains_only_working_fills(tmp_path):
    system = make_system(tmp_path)
    position = asyncio.run(system.submit_intent(TradeIntent('BTCUSDT', 'long', 100.0, 95.0)))
    assert position.order_id.startswith('paper-')
    assert len(system.broker) == 1
    assert system.status()['working_orders'] == 1
    asyncio.run(system.close_position(position.position_id, 101.0))
    assert len(system.broker) == 0


def test_signal_dropped_while_paused_is_not_remembered(tmp_path):
    system = make_system(tmp_path)
    payload = {'symbol': 'BTCUSDT', 'action': 'buy', 'price': 100}
    system.pause()
    assert system.ingest(payload, received_at=1000.0)[0] == 'received'
    assert system.recent_signals() == []
    system.resume()
    assert system.ingest(payload, received_at=1010.0)[0] == 'received'
    assert len(system.queue) == 1
    assert system.ingest(payload, received_at=1020.0)[0] == 'duplicate_ignored'


def test_closed_trades_limit_must_be_positive(tmp_path):
    system = make_system(tmp_path)
    with pytest.raises(ValueError):
        system.closed_trades(0)
    assert system.closed_trades(1) == []


def test_pending_prices_apply_on_revalue_tick(tmp_path):
    system = make_system(tmp_path)
    asyncio.run(system.submit_intent(TradeIntent('BTCUSDT', 'long', 100.0, 97.0, 107.0)))
    system.update_price('BTCUSDT', 108.0)
    assert system.open_positions()
    trades = asyncio.run(system.revalue_tick())
    assert trades[0].close_reason == 'take_profit'
    assert asyncio.run(system.revalue_tick()) == []


def test_close_position_unknown_id(tmp_path):
    system = make_system(tmp_path)
    assert asyncio.run(system.close_position('pos-missing')) is None


def test_start_and_stop_close_positions(tmp_path):
    system = make_system(tmp_path)

    async def scenario():
        await system.start()
        system.ingest({'symbol': 'BTCUSDT', 'action': 'buy', 'price': 100, 'sl': 95, 'tp': 120})
        for _ in range(50):
            if system.open_positions():
                break
            await asyncio.sleep(0.01)
        await system.stop()

    asyncio.run(scenario())
    assert not system.running
    assert system.open_positions() == []
    assert system.closed_trades()[0]['close_reason'] == 'shutdown'
    assert system.state.reconciles()


def test_bad_capital_config_raises(tmp_path):
    with pytest.raises(RuntimeError):
        make_system(tmp_path, portfolio={'initial_capital': 'plenty'})
    with pytest.raises(RuntimeError):
        make_system(tmp_path, portfolio={'initial_capital': -5})
