import asyncio
import logging
import time
from collections import deque
from typing import Dict, List, Mapping, Optional, Tuple, Union

from analytics.performance import summarize
from api.alerts import AlertWebhook
from api.metrics import metrics, start_metrics_server
from config import config
from config.utils import as_bool, as_list, get_config_section, require_float
from monitoring.async_utils import cancel_tasks, run_periodic
from monitoring.logging_utils import setup_logging
from monitoring.signal_auditor import SignalAuditor
from orchestration.services import PortfolioMaintenanceService, SignalExecutionService
from portfolio.ledger import ClosedTrade, PortfolioEvent, PortfolioState, Position, PositionLedger
from risk.position_sizer import RiskManager
from strategy.deduplicator import SignalDeduplicator
from strategy.signal_queue import SignalDispatcher, SignalQueue
from strategy.signal_types import Rejection, Signal, TradeIntent
from strategy.signal_validator import DEFAULT_SYMBOL_PATTERN, SignalValidator
from strategy.simulators.paper import PaperBroker


logger = logging.getLogger(__name__)


class TradingSystem:
    """Wire intake, queue, admission, ledger and analytics around one portfolio lock."""

    def __init__(self, config_obj=None, alert_webhook: Optional[AlertWebhook] = None,
                 auditor: Optional[SignalAuditor] = None):
        self.config = config_obj if config_obj is not None else config
        self.api_cfg = get_config_section(self.config, 'api')
        self.intake_cfg = get_config_section(self.config, 'intake')
        self.dispatcher_cfg = get_config_section(self.config, 'dispatcher')
        self.portfolio_cfg = get_config_section(self.config, 'portfolio')
        self.risk_cfg = get_config_section(self.config, 'risk')
        self.monitoring_cfg = get_config_section(self.config, 'monitoring')

        initial_capital = require_float(self.portfolio_cfg, 'initial_capital', 10000,
                                        name='portfolio.initial_capital')
        if initial_capital <= 0:
            raise RuntimeError(f"portfolio.initial_capital must be positive, got {initial_capital}")
        window = int(require_float(self.portfolio_cfg, 'daily_pnl_window', 252, minimum=1))
        self.state = PortfolioState(initial_capital=initial_capital, daily_pnl=deque(maxlen=window))

        self._lock = asyncio.Lock()
        self._pending_events: List[PortfolioEvent] = []
        self.ledger = PositionLedger(
            self.state,
            listener=self.collect_event,
            rebalance_loss_pct=require_float(self.portfolio_cfg, 'rebalance_loss_pct', 0.15, minimum=0.0),
            partial_profit_pct=require_float(self.portfolio_cfg, 'partial_profit_pct', 0.25, minimum=0.0),
        )
        self.risk_manager = RiskManager(self.state, self.risk_cfg, listener=self.collect_event)

        self.validator = SignalValidator(
            self.intake_cfg.get('symbol_pattern') or DEFAULT_SYMBOL_PATTERN,
            source=self.intake_cfg.get('source') or 'tradingview_webhook',
        )
        self.deduplicator = SignalDeduplicator(
            ttl_s=require_float(self.intake_cfg, 'signal_ttl_s', 60, minimum=0.0)
        )
        self.webhook_secret = self.intake_cfg.get('webhook_secret') or None
        self.allowed_ips = as_list(self.intake_cfg.get('allowed_ips'))
        self.max_body_bytes = int(require_float(self.intake_cfg, 'max_body_bytes', 1024 * 1024, minimum=1))
        self.recent_limit = int(self.intake_cfg.get('recent_signals_limit', 50))
        self.webhook_rate_limit = str(self.api_cfg.get('webhook_rate_limit') or '120/minute')

        self.queue = SignalQueue(active=as_bool(self.dispatcher_cfg.get('start_active'), True))
        self.dispatcher = SignalDispatcher(
            self.queue,
            self.process_signal,
            interval_s=require_float(self.dispatcher_cfg, 'drain_interval_s', 1.0, minimum=0.01),
        )
        self.broker = PaperBroker()
        self.auditor = auditor or SignalAuditor(self.monitoring_cfg.get('signal_audit_log'))
        self.alerts = alert_webhook or AlertWebhook(self.monitoring_cfg.get('alert_webhook') or '')

        self.prices: Dict[str, float] = {}
        self.last_rejection: Optional[Dict] = None
        self.execution = SignalExecutionService(self)
        self.maintenance = PortfolioMaintenanceService(self)

        self.running = False
        self.started_at: Optional[float] = None
        self._tasks: List[asyncio.Task] = []
        metrics.set_active(self.queue.active)
        metrics.update_portfolio(self.ledger.summary())

    # -- events ---------------------------------------------------------

    def collect_event(self, event: PortfolioEvent) -> None:
        if event.kind == 'rejected':
            self.last_rejection = event.payload
        self._pending_events.append(event)

    def settle(self, trades: List[ClosedTrade]) -> None:
        for trade in trades:
            self.broker.submit_close(trade)

    async def _flush_events(self) -> None:
        events, self._pending_events = self._pending_events, []
        for event in events:
            if event.kind == 'opened':
                metrics.record_position_opened(event.payload['side'])
            elif event.kind == 'closed':
                metrics.record_position_closed(event.payload['close_reason'], event.payload['realized_pnl'])
            elif event.kind == 'rejected':
                metrics.record_admission(False, event.payload.get('failed', []))
            if event.kind != 'rebalanced':
                self.auditor.record_event(event)
                await self.alerts.deliver(event)
        metrics.update_portfolio(self.ledger.summary())

    # -- intake (never touches the portfolio lock) -----------------------

    def ingest(self, payload: Union[Mapping, str],
               received_at: Optional[float] = None) -> Tuple[str, Union[Signal, Rejection]]:
        result = self.validator.validate(payload, received_at=received_at)
        if isinstance(result, Rejection):
            metrics.record_webhook('rejected')
            self.auditor.record_intake_rejection(result.reason, result.detail)
            return 'rejected', result
        if self.deduplicator.seen(result):
            logger.info("Duplicate %s signal ignored for %s", result.action, result.symbol)
            metrics.record_webhook('duplicate_ignored')
            return 'duplicate_ignored', result
        # Only enqueued signals enter the duplicate window.
        if self.queue.enqueue(result):
            self.deduplicator.remember(result)
            metrics.record_enqueued()
        metrics.record_webhook('received')
        return 'received', result

    def recent_signals(self) -> List[Dict]:
        return self.deduplicator.recent(self.recent_limit)

    def update_price(self, symbol: str, price: float) -> None:
        self.maintenance.update_price(symbol, price)

    def pause(self) -> None:
        self.queue.active = False
        metrics.set_active(False)
        logger.info("Signal intake paused")

    def resume(self) -> None:
        self.queue.active = True
        metrics.set_active(True)
        logger.info("Signal intake resumed")

    @property
    def active(self) -> bool:
        return self.queue.active

    # -- portfolio mutations (serialised) --------------------------------

    async def process_signal(self, signal: Signal):
        async with self._lock:
            result = self.execution.handle(signal)
        await self._flush_events()
        return result

    async def submit_intent(self, intent: TradeIntent) -> Optional[Position]:
        if not self.active:
            logger.info("Trading inactive, intent for %s ignored", intent.symbol)
            metrics.record_drop('inactive')
            return None
        async with self._lock:
            position = self.execution.open_intent(intent)
        await self._flush_events()
        return position

    async def apply_price(self, symbol: str, price: float) -> List[ClosedTrade]:
        self.prices[symbol] = price
        async with self._lock:
            trades = self.maintenance.apply_price(symbol, price)
        await self._flush_events()
        return trades

    async def revalue_tick(self) -> List[ClosedTrade]:
        async with self._lock:
            trades = self.maintenance.apply_pending()
        await self._flush_events()
        return trades

    async def rebalance(self) -> List[ClosedTrade]:
        async with self._lock:
            trades = self.maintenance.rebalance()
        await self._flush_events()
        return trades

    async def record_daily_pnl(self) -> float:
        async with self._lock:
            change = self.maintenance.record_daily_pnl()
        await self._flush_events()
        return change

    async def close_position(self, position_id: str, price: Optional[float] = None,
                             reason: str = 'manual') -> Optional[ClosedTrade]:
        async with self._lock:
            trade = self.maintenance.close_position(position_id, price, reason)
        await self._flush_events()
        return trade

    async def close_all_positions(self, reason: str = 'manual') -> List[ClosedTrade]:
        async with self._lock:
            trades = self.maintenance.close_all(reason)
        await self._flush_events()
        return trades

    # -- reporting --------------------------------------------------------

    def open_positions(self) -> List[Dict]:
        return [pos.to_dict() for pos in self.state.open_positions.values()]

    def closed_trades(self, limit: Optional[int] = None) -> List[Dict]:
        trades = self.state.closed_trades
        if limit is not None:
            if limit < 1:
                raise ValueError(f"limit must be at least 1, got {limit}")
            trades = trades[-limit:]
        return [trade.to_dict() for trade in trades]

    def portfolio_summary(self) -> Dict:
        summary = self.ledger.summary()
        summary.update(summarize(self.state.closed_trades, list(self.state.daily_pnl),
                                 self.state.initial_capital))
        summary['active'] = self.active
        summary['queued_signals'] = len(self.queue)
        return summary

    def status(self) -> Dict:
        return {
            'running': self.running,
            'active': self.active,
            'uptime_s': time.time() - self.started_at if self.started_at else 0.0,
            'queued_signals': len(self.queue),
            'recent_signals': len(self.deduplicator),
            'working_orders': len(self.broker),
            'allowed_ips': len(self.allowed_ips),
            'has_secret': bool(self.webhook_secret),
            'portfolio': self.portfolio_summary(),
        }

    # -- lifecycle --------------------------------------------------------

    async def start(self):
        if self.running:
            return
        self.running = True
        self.started_at = time.time()
        start_metrics_server(
            int(self.monitoring_cfg.get('prometheus_port') or 0),
            port_scan=int(self.monitoring_cfg.get('prometheus_port_scan') or 0),
            port_file=self.monitoring_cfg.get('metrics_port_file') or None,
        )

        def is_running() -> bool:
            return self.running

        portfolio_cfg = self.portfolio_cfg
        self._tasks = [
            asyncio.create_task(self.dispatcher.run()),
            asyncio.create_task(run_periodic(
                require_float(portfolio_cfg, 'revalue_interval_s', 1.0, minimum=0.01),
                self.revalue_tick, 'revalue', is_running)),
            asyncio.create_task(run_periodic(
                require_float(portfolio_cfg, 'rebalance_interval_s', 86400, minimum=1.0),
                self.rebalance, 'rebalance', is_running)),
            asyncio.create_task(run_periodic(
                require_float(portfolio_cfg, 'daily_pnl_interval_s', 86400, minimum=1.0),
                self.record_daily_pnl, 'daily_pnl', is_running)),
        ]
        logger.info(
            "Trading system started (capital=%.2f, secret=%s, allowed_ips=%d)",
            self.state.initial_capital, 'set' if self.webhook_secret else 'unset', len(self.allowed_ips),
        )

    async def stop(self):
        if not self.running:
            return
        self.running = False
        self.dispatcher.stop()
        await cancel_tasks(self._tasks)
        self._tasks = []
        if as_bool(self.portfolio_cfg.get('close_on_shutdown'), True):
            await self.close_all_positions('shutdown')
        logger.info("Trading system stopped")


def main():
    import uvicorn

    api_cfg = get_config_section(config, 'api')
    monitoring_cfg = get_config_section(config, 'monitoring')
    setup_logging(monitoring_cfg.get('log_level', 'INFO'), log_file=monitoring_cfg.get('log_file') or None)
    uvicorn.run(
        "api.fastapi_server:app",
        host=api_cfg.get('host', '0.0.0.0'),
        port=int(api_cfg.get('port', 3000)),
        log_level="info",
    )


if __name__ == "__main__":
    main()
