import json
import logging
import time
from pathlib import Path
from typing import Dict, Optional

from portfolio.ledger import PortfolioEvent


logger = logging.getLogger(__name__)


class SignalAuditor:
    """Appends admission decisions and position lifecycle events to a JSONL journal."""

    def __init__(self, log_path: Optional[str] = None, enabled: bool = True):
        self.log_path = Path(log_path or 'logs/signal_audit.jsonl')
        self.enabled = enabled
        self.counts: Dict[str, int] = {}

    def record_event(self, event: PortfolioEvent) -> None:
        self.counts[event.kind] = self.counts.get(event.kind, 0) + 1
        entry = {
            'timestamp': event.timestamp,
            'event': event.kind,
            'details': event.payload,
        }
        self._write_entry(entry)

    def record_intake_rejection(self, reason: str, detail: str, client: Optional[str] = None) -> None:
        self.counts['intake_rejected'] = self.counts.get('intake_rejected', 0) + 1
        self._write_entry({
            'timestamp': time.time(),
            'event': 'intake_rejected',
            'details': {'reason': reason, 'detail': detail, 'client': client},
        })

    def _write_entry(self, payload: Dict):
        if not self.enabled:
            return
        try:
            self.log_path.parent.mkdir(parents=True, exist_ok=True)
            with self.log_path.open('a', encoding='utf-8') as handle:
                handle.write(json.dumps(payload, default=str) + '\n')
        except OSError as exc:
            logger.error("Failed to persist audit log: %s", exc)
