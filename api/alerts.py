import logging
import time
import aiohttp
from typing import Dict, Optional

from config import config
from portfolio.ledger import PortfolioEvent


logger = logging.getLogger(__name__)


class AlertWebhook:
    """Pushes portfolio events to a downstream consumer (chat bot relay, broker bridge)."""

    def __init__(self, url: Optional[str] = None, timeout_s: float = 5.0):
        if url is None:
            monitoring = config.get('monitoring') or {}
            url = monitoring.get('alert_webhook')
        # Treat empty or placeholder URLs as disabled
        if url and 'your-webhook-url' not in str(url):
            self.webhook_url = url
            self.enabled = True
        else:
            self.webhook_url = None
            self.enabled = False
        self.timeout_s = timeout_s

    async def send_alert(self, alert_type: str, message: str, severity: str = 'info',
                         metadata: Dict = None):
        if not self.enabled:
            logger.info("[Alert] %s: %s - %s", severity.upper(), alert_type, message)
            return

        payload = {
            'type': alert_type,
            'message': message,
            'severity': severity,
            'timestamp': time.time(),
            'metadata': metadata or {}
        }

        try:
            async with aiohttp.ClientSession() as session:
                async with session.post(
                    self.webhook_url,
                    json=payload,
                    headers={'Content-Type': 'application/json'},
                    timeout=aiohttp.ClientTimeout(total=self.timeout_s)
                ) as response:
                    if response.status >= 300:
                        logger.error("[Alert] Webhook failed with status %s", response.status)
        except (aiohttp.ClientError, TimeoutError) as e:
            logger.error("[Alert] Webhook error: %s", e)

    async def deliver(self, event: PortfolioEvent):
        payload = event.payload
        if event.kind == 'opened':
            await self.send_alert(
                'position_opened',
                f"Opened {payload['side']} {payload['symbol']} @ {payload['entry_price']}",
                'info',
                payload,
            )
        elif event.kind == 'closed':
            pnl = payload.get('realized_pnl', 0.0)
            await self.send_alert(
                'position_closed',
                f"Closed {payload['side']} {payload['symbol']} ({payload['close_reason']}) PnL {pnl:.2f}",
                'info' if pnl >= 0 else 'warning',
                payload,
            )
        elif event.kind == 'rejected':
            await self.send_alert(
                'position_rejected',
                f"Rejected {payload['symbol']}: {', '.join(payload.get('failed', []))}",
                'warning',
                payload,
            )
        elif event.kind == 'partial_exit_advisory':
            position = payload.get('position', {})
            await self.send_alert(
                'partial_exit_advisory',
                f"{position.get('symbol')} up {payload.get('pnl_fraction', 0.0):.2%}, consider a partial exit",
                'info',
                payload,
            )
        else:
            logger.debug("No alert mapping for event %s", event.kind)
