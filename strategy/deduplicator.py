import logging
import time
from collections import OrderedDict
from typing import Dict, List, Optional

from strategy.signal_types import Signal


logger = logging.getLogger(__name__)


class SignalDeduplicator:
    """Time-windowed suppression of repeated alerts for the same symbol and action.

    Signals stay in the window for ``retention_mult * ttl`` seconds so the
    recent-signal endpoint has something to show; only the last ``ttl``
    seconds matter for duplicate detection.
    """

    def __init__(self, ttl_s: float = 60.0, retention_mult: int = 10):
        self.ttl_s = float(ttl_s)
        self.retention_s = self.ttl_s * retention_mult
        self._recent: 'OrderedDict[str, Signal]' = OrderedDict()

    def __len__(self) -> int:
        return len(self._recent)

    def is_duplicate(self, signal: Signal) -> bool:
        for existing in self._recent.values():
            if existing.symbol != signal.symbol or existing.action != signal.action:
                continue
            if abs(signal.received_at - existing.received_at) < self.ttl_s:
                return True
        return False

    def remember(self, signal: Signal) -> None:
        self._recent[signal.signal_id] = signal

    def sweep(self, now: Optional[float] = None) -> int:
        now = time.time() if now is None else now
        expired = [
            signal_id for signal_id, signal in self._recent.items()
            if now - signal.received_at > self.retention_s
        ]
        for signal_id in expired:
            self._recent.pop(signal_id, None)
        if expired:
            logger.debug("Purged %d signals from the recent window", len(expired))
        return len(expired)

    def seen(self, signal: Signal) -> bool:
        """Sweep expired entries, then report whether the signal repeats one in the window.

        The caller decides whether to ``remember`` it afterwards.
        """
        self.sweep(signal.received_at)
        return self.is_duplicate(signal)

    def recent(self, limit: int = 50) -> List[Dict]:
        ordered = sorted(self._recent.values(), key=lambda s: s.received_at, reverse=True)
        return [signal.to_dict() for signal in ordered[:limit]]
