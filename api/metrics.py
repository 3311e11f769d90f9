import errno
import logging
from pathlib import Path
from prometheus_client import Counter, Gauge, Histogram, start_http_server
from typing import Dict, Optional


logger = logging.getLogger(__name__)

_METRICS_PORT: Optional[int] = None


def _persist_port(port: int, port_file: Optional[str]) -> None:
    if not port_file:
        return
    path = Path(port_file)
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(str(port))
    except OSError as exc:
        logger.warning("Failed to persist metrics port file %s: %s", path, exc)


class MetricsCollector:
    def __init__(self):
        self.webhooks_received = Counter('webhooks_received_total', 'Webhook requests by outcome', ['status'])
        self.signals_enqueued = Counter('signals_enqueued_total', 'Signals accepted into the queue')
        self.dropped_events = Counter('dropped_events_total', 'Total dropped inbound events', ['reason'])
        self.queue_depth = Gauge('queue_depth', 'Internal buffer depth', ['buffer'])
        self.drain_batch = Histogram('drain_batch_size', 'Signals forwarded per drain pass', buckets=(1, 2, 5, 10, 25, 50, 100))
        self.drain_latency = Histogram('drain_latency_seconds', 'Time spent processing one drain pass')

        self.admissions = Counter('admission_decisions_total', 'Admission decisions', ['result'])
        self.rejected_checks = Counter('admission_failed_checks_total', 'Failed admission checks', ['check'])
        self.positions_opened = Counter('positions_opened_total', 'Total positions opened', ['side'])
        self.positions_closed = Counter('positions_closed_total', 'Total positions closed', ['reason'])

        self.open_positions = Gauge('open_positions', 'Open positions')
        self.available_capital = Gauge('available_capital', 'Capital not committed to open positions')
        self.equity = Gauge('account_equity', 'Available plus committed capital plus unrealized PnL')
        self.unrealized_pnl = Gauge('pnl_unrealized', 'Unrealized PnL across open positions')
        self.pnl_realized = Gauge('pnl_realized', 'Total realized PnL')
        self.portfolio_risk = Gauge('portfolio_risk_fraction', 'Sum of open position stop distances')
        self.trading_active = Gauge('trading_active', 'Queue accepting signals (1) or paused (0)')

    def record_webhook(self, status: str):
        self.webhooks_received.labels(status=status).inc()

    def record_enqueued(self):
        self.signals_enqueued.inc()

    def record_drop(self, reason: str):
        self.dropped_events.labels(reason=reason).inc()

    def update_queue_depth(self, name: str, depth: int):
        self.queue_depth.labels(buffer=name).set(depth)

    def record_drain(self, batch_size: int, latency_seconds: float):
        self.drain_batch.observe(batch_size)
        self.drain_latency.observe(latency_seconds)

    def record_admission(self, allowed: bool, failed_checks=()):
        self.admissions.labels(result='admitted' if allowed else 'rejected').inc()
        for check in failed_checks:
            self.rejected_checks.labels(check=check).inc()

    def record_position_opened(self, side: str):
        self.positions_opened.labels(side=side).inc()

    def record_position_closed(self, reason: str, pnl: Optional[float] = None):
        self.positions_closed.labels(reason=reason).inc()
        if pnl is None:
            return
        if pnl >= 0:
            self.pnl_realized.inc(pnl)
        else:
            self.pnl_realized.dec(abs(float(pnl)))

    def update_portfolio(self, summary: Dict):
        self.open_positions.set(summary.get('open_positions', 0))
        self.available_capital.set(summary.get('available_capital', 0.0))
        self.unrealized_pnl.set(summary.get('unrealized_pnl', 0.0))
        self.portfolio_risk.set(summary.get('portfolio_risk', 0.0))
        self.equity.set(summary.get('total_value', 0.0) + summary.get('unrealized_pnl', 0.0))

    def set_active(self, active: bool):
        self.trading_active.set(1 if active else 0)


def start_metrics_server(port: int = 9090, port_scan: int = 0,
                         port_file: Optional[str] = None) -> Optional[int]:
    """Serve the default registry on ``port``, trying up to ``port_scan`` higher ports when busy.

    Returns the bound port, or None when disabled. Repeated calls reuse the first server.
    """
    global _METRICS_PORT
    if _METRICS_PORT is not None or not port:
        return _METRICS_PORT
    candidates = range(port, port + max(0, int(port_scan)) + 1)
    for candidate in candidates:
        try:
            start_http_server(candidate)
        except OSError as exc:
            if exc.errno != errno.EADDRINUSE:
                raise
            logger.warning("Metrics port %s in use, trying next", candidate)
            continue
        _METRICS_PORT = candidate
        _persist_port(candidate, port_file)
        logger.info("Prometheus metrics server started on port %s", candidate)
        return candidate
    raise RuntimeError(f"Unable to bind Prometheus metrics server on ports {port}-{candidates[-1]}")


metrics = MetricsCollector()
