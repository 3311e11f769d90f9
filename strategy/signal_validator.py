import math
import re
import time
from typing import Any, Dict, Mapping, Optional, Union

from strategy.signal_types import ACTIONS, Rejection, Signal, TradeIntent


DEFAULT_SYMBOL_PATTERN = r'^[A-Z]{2,10}(USDT?|BTC|ETH)$'
DEFAULT_STRATEGY_TAG = 'TradingView Alert'

ACTION_ALIASES = {
    'buy': 'buy',
    'long': 'buy',
    'sell': 'sell',
    'short': 'sell',
    'close': 'close',
    'exit': 'close',
}
SIDE_ALIASES = {
    'long': 'long',
    'buy': 'long',
    'short': 'short',
    'sell': 'short',
}
INDICATOR_FIELDS = ('rsi', 'macd', 'ema20', 'ema50', 'volume', 'atr')

_TEXT_SYMBOL = re.compile(r'\b([A-Z]{2,10}(?:USDT?|BTC|ETH))\b', re.IGNORECASE)
_TEXT_PRICE = re.compile(r'price[:=\s]*(\d+\.?\d*)', re.IGNORECASE)
_TEXT_STOP = re.compile(r'\b(?:sl|stop(?:[ _]?loss)?)[:=\s]*(\d+\.?\d*)', re.IGNORECASE)
_TEXT_TARGET = re.compile(r'\b(?:tp|take(?:[ _]?profit)?|target)[:=\s]*(\d+\.?\d*)', re.IGNORECASE)
_TEXT_STRATEGY = (
    re.compile(r'strategy[:=\s]*([A-Za-z_\d ]+)', re.IGNORECASE),
    re.compile(r'indicator[:=\s]*([A-Za-z_\d ]+)', re.IGNORECASE),
)
_TEXT_ACTIONS = (
    ('buy', re.compile(r'\b(buy|long)\b', re.IGNORECASE)),
    ('sell', re.compile(r'\b(sell|short)\b', re.IGNORECASE)),
    ('close', re.compile(r'\b(close|exit)\b', re.IGNORECASE)),
)


def coerce_float(value: Any) -> Optional[float]:
    """parseFloat-style coercion: anything non-numeric or non-finite is unknown."""
    if value is None or isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(number):
        return None
    return number


def _positive(value: Any) -> Optional[float]:
    number = coerce_float(value)
    if number is None or number <= 0:
        return None
    return number


def _first(data: Mapping, *keys: str) -> Any:
    for key in keys:
        value = data.get(key)
        if value is not None and value != '':
            return value
    return None


def normalize_symbol(symbol: Any) -> Optional[str]:
    if symbol is None:
        return None
    text = str(symbol).strip().upper()
    if ':' in text:
        text = text.rsplit(':', 1)[1]
    text = text.replace('/', '').replace('-', '')
    return text or None


def levels_rejection(side: str, price: float, stop_loss: Optional[float],
                     take_profit: Optional[float]) -> Optional[Rejection]:
    """Stop must sit on the losing side of entry, target on the winning side."""
    if stop_loss is not None:
        if side == 'long' and stop_loss >= price:
            return Rejection('invalid_stop', f'long stop {stop_loss} must be below entry {price}')
        if side == 'short' and stop_loss <= price:
            return Rejection('invalid_stop', f'short stop {stop_loss} must be above entry {price}')
    if take_profit is not None:
        if side == 'long' and take_profit <= price:
            return Rejection('invalid_target', f'long target {take_profit} must be above entry {price}')
        if side == 'short' and take_profit >= price:
            return Rejection('invalid_target', f'short target {take_profit} must be below entry {price}')
    return None


def intent_rejection(intent: TradeIntent) -> Optional[Rejection]:
    """Numeric sanity checks for a candidate trade, whichever path it arrived on."""
    if intent.side not in SIDE_ALIASES.values():
        return Rejection('missing_fields', f'unrecognised side {intent.side!r}')
    price = coerce_float(intent.price)
    if price is None or price <= 0:
        return Rejection('invalid_price', f'price must be a positive number, got {intent.price!r}')
    stop_loss = _positive(intent.stop_loss)
    if stop_loss is None:
        return Rejection('missing_stop', 'a positive stop loss is required')
    take_profit = intent.take_profit
    if take_profit is not None and _positive(take_profit) is None:
        return Rejection('invalid_target', f'take profit must be a positive number, got {take_profit!r}')
    return levels_rejection(intent.side, price, stop_loss, take_profit)


class SignalValidator:
    """Turns a raw webhook payload (JSON mapping or alert text) into a Signal."""

    def __init__(self, symbol_pattern: str = DEFAULT_SYMBOL_PATTERN,
                 source: str = 'tradingview_webhook'):
        self.symbol_pattern = re.compile(symbol_pattern or DEFAULT_SYMBOL_PATTERN, re.IGNORECASE)
        self.source = source

    def validate(self, payload: Union[Mapping, str],
                 received_at: Optional[float] = None) -> Union[Signal, Rejection]:
        if isinstance(payload, str):
            fields = self.extract_from_text(payload)
        elif isinstance(payload, Mapping):
            fields = self.extract_from_json(payload)
        else:
            return Rejection('malformed_payload', f'unsupported payload type {type(payload).__name__}')

        symbol = fields.get('symbol')
        raw_action = fields.get('action')
        if not symbol or not raw_action:
            return Rejection('missing_fields', 'symbol and action are required')
        if not self.symbol_pattern.match(symbol):
            return Rejection('invalid_symbol', f'symbol {symbol} is not allow-listed')
        action = ACTION_ALIASES.get(str(raw_action).strip().lower())
        if action not in ACTIONS:
            return Rejection('invalid_action', f'unrecognised action {raw_action}')

        price = fields.get('price')
        if price is not None and price <= 0:
            return Rejection('invalid_price', f'price must be positive, got {price}')

        return Signal(
            symbol=symbol,
            action=action,
            price=price,
            stop_loss=fields.get('stop_loss'),
            take_profit=fields.get('take_profit'),
            strategy_tag=fields.get('strategy') or DEFAULT_STRATEGY_TAG,
            source=self.source,
            timeframe=fields.get('timeframe'),
            raw_indicators=fields.get('indicators') or {},
            metadata=fields.get('metadata') or {},
            received_at=received_at if received_at is not None else time.time(),
        )

    def extract_from_json(self, data: Mapping) -> Dict:
        indicators: Dict[str, Optional[float]] = {}
        for name in INDICATOR_FIELDS:
            if name in data:
                indicators[name] = coerce_float(data.get(name))
        nested = data.get('indicators')
        if isinstance(nested, Mapping):
            for name, value in nested.items():
                indicators[str(name)] = coerce_float(value)

        metadata = {
            'confidence': coerce_float(data.get('confidence')),
            'risk_reward': coerce_float(data.get('risk_reward')),
            'trend': data.get('trend'),
            'support': coerce_float(data.get('support')),
            'resistance': coerce_float(data.get('resistance')),
            'exchange': data.get('exchange') or 'BINANCE',
        }
        strategy = _first(data, 'strategy', 'indicator')
        timeframe = _first(data, 'timeframe', 'interval')
        action = _first(data, 'action', 'signal', 'side')
        price = coerce_float(_first(data, 'price', 'close'))
        return {
            'symbol': normalize_symbol(_first(data, 'symbol', 'ticker')),
            'action': str(action) if action is not None else None,
            'price': price,
            'strategy': str(strategy) if strategy is not None else None,
            'timeframe': str(timeframe) if timeframe is not None else None,
            'stop_loss': _positive(_first(data, 'stop_loss', 'sl')),
            'take_profit': _positive(_first(data, 'take_profit', 'tp')),
            'indicators': indicators,
            'metadata': metadata,
        }

    def extract_from_text(self, text: str) -> Dict:
        symbol_match = _TEXT_SYMBOL.search(text)
        action = None
        for name, pattern in _TEXT_ACTIONS:
            if pattern.search(text):
                action = name
                break
        strategy = DEFAULT_STRATEGY_TAG
        for pattern in _TEXT_STRATEGY:
            match = pattern.search(text)
            if match and match.group(1).strip():
                strategy = match.group(1).strip()
                break
        return {
            'symbol': normalize_symbol(symbol_match.group(1)) if symbol_match else None,
            'action': action,
            'price': self._match_float(_TEXT_PRICE, text),
            'strategy': strategy,
            'stop_loss': _positive(self._match_float(_TEXT_STOP, text)),
            'take_profit': _positive(self._match_float(_TEXT_TARGET, text)),
            'indicators': {},
            'metadata': {'raw_text': text[:500]},
        }

    def validate_intent(self, data: Mapping) -> Union[TradeIntent, Rejection]:
        """Apply the webhook sanity checks to a candidate trade from a strategy producer."""
        if not isinstance(data, Mapping):
            return Rejection('malformed_payload', 'intent must be a mapping')
        symbol = normalize_symbol(data.get('symbol'))
        side = SIDE_ALIASES.get(str(data.get('side') or '').strip().lower())
        if not symbol or not side:
            return Rejection('missing_fields', 'symbol and side are required')
        if not self.symbol_pattern.match(symbol):
            return Rejection('invalid_symbol', f'symbol {symbol} is not allow-listed')
        strategy = _first(data, 'strategy_tag', 'strategyTag', 'strategy')
        intent = TradeIntent(
            symbol=symbol,
            side=side,
            price=coerce_float(data.get('price')),
            stop_loss=coerce_float(_first(data, 'stop_loss', 'stopLoss', 'sl')),
            take_profit=coerce_float(_first(data, 'take_profit', 'takeProfit', 'tp')),
            strategy_tag=str(strategy) if strategy is not None else 'strategy',
            confidence=coerce_float(data.get('confidence')),
            source=str(data.get('source') or 'strategy'),
        )
        return intent_rejection(intent) or intent

    @staticmethod
    def _match_float(pattern, text: str) -> Optional[float]:
        match = pattern.search(text)
        if not match:
            return None
        return coerce_float(match.group(1))
