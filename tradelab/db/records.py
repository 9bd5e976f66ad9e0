"""Market and account records and their SQLite row conversions.

Rows are read through any mapping from column name to value, such as a
``dict`` or a :class:`sqlite3.Row`. Rows are written as dictionaries whose
decimal fields are plain decimal text and whose structured fields are JSON
text.
"""

from __future__ import annotations

import json
import uuid
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Dict, List, Mapping

Row = Mapping[str, Any]


class Side(Enum):
    """Side of an order or trade."""

    BID = "Bid"
    ASK = "Ask"

    @classmethod
    def parse(cls, text: str) -> "Side":
        """``"Bid"`` is a bid; any other text is an ask."""
        return cls.BID if text == "Bid" else cls.ASK

    def __str__(self) -> str:
        return self.value


@dataclass(frozen=True)
class Symbol:
    """A traded instrument."""

    symbol: str = ""
    exchange: str = ""
    base_asset_precision: int = 0
    quote_asset_precision: int = 0


@dataclass
class Kline:
    """One candlestick of the exchange's kline data."""

    symbol: Symbol
    open_time: int
    open: Decimal
    high: Decimal
    low: Decimal
    close: Decimal
    volume: Decimal
    close_time: int
    quote_volume: Decimal
    count: int
    taker_buy_volume: Decimal
    taker_buy_quote_volume: Decimal
    ignore: int


@dataclass
class Candle(Kline):
    """A kline stored together with the timeframe it belongs to."""

    tf: str = ""


@dataclass
class TradeEntry:
    """A single aggregated trade with its price change from the previous one."""

    id: int
    price: Decimal
    qty: Decimal
    timestamp: int
    delta: Decimal
    symbol: str


@dataclass
class TfTrade:
    """The trade entries falling into one timeframe window."""

    symbol: Symbol
    tf: int
    id: int
    timestamp: int
    min_trade_time: int
    max_trade_time: int
    trades: List[TradeEntry] = field(default_factory=list)


@dataclass(frozen=True)
class TfTradeLink:
    """Association between a timeframe window and one of its trade entries."""

    tf: int
    symbol: str
    tf_trade_id: int
    trade_entry_id: int


@dataclass
class Trade:
    """An executed trade on the account."""

    id: int
    order_id: uuid.UUID
    symbol: Symbol
    maker: bool
    price: Decimal
    commission: Decimal
    position_side: Side
    side: Side
    realized_pnl: Decimal
    exit_order_type: Any
    qty: Decimal
    quote_qty: Decimal
    time: int


@dataclass
class Order:
    """An order placed on the account."""

    id: uuid.UUID
    symbol: Symbol
    side: Side
    price: Decimal
    quantity: Decimal
    time: int
    order_type: Any
    lifetime: int
    close_policy: Any


def _to_decimal(value: Any) -> Decimal:
    if isinstance(value, Decimal):
        result = value
    elif isinstance(value, float):
        result = Decimal(repr(value))
    elif isinstance(value, (int, str)):
        try:
            result = Decimal(value)
        except InvalidOperation as exc:
            raise ValueError(f"not a decimal number: {value!r}") from exc
    else:
        raise ValueError(f"not a decimal number: {value!r}")
    if not result.is_finite():
        raise ValueError(f"not a finite number: {value!r}")
    return result


def _decimal_text(value: Decimal) -> str:
    return format(value, "f")


def _json_value(raw: Any) -> Any:
    if isinstance(raw, (bytes, bytearray)):
        raw = raw.decode()
    if isinstance(raw, str):
        return json.loads(raw)
    return raw


def _to_uuid(raw: Any) -> uuid.UUID:
    if isinstance(raw, uuid.UUID):
        return raw
    if isinstance(raw, (bytes, bytearray)) and len(raw) == 16:
        return uuid.UUID(bytes=bytes(raw))
    if isinstance(raw, (bytes, bytearray)):
        raw = raw.decode()
    return uuid.UUID(str(raw))


def _symbol(row: Row) -> Symbol:
    return Symbol(symbol=row["symbol"])


def kline_to_row(kline: Kline) -> Dict[str, Any]:
    """Return the ``klines`` row for ``kline``."""
    return {
        "symbol": kline.symbol.symbol,
        "open_time": str(kline.open_time),
        "open": _decimal_text(kline.open),
        "high": _decimal_text(kline.high),
        "low": _decimal_text(kline.low),
        "close": _decimal_text(kline.close),
        "volume": _decimal_text(kline.volume),
        "close_time": str(kline.close_time),
        "quote_volume": _decimal_text(kline.quote_volume),
        "count": int(kline.count),
        "taker_buy_volume": _decimal_text(kline.taker_buy_volume),
        "taker_buy_quote_volume": _decimal_text(kline.taker_buy_quote_volume),
        "ignore": int(kline.ignore),
    }


def _kline_fields(row: Row) -> Dict[str, Any]:
    return {
        "symbol": _symbol(row),
        "open_time": int(row["open_time"]),
        "open": _to_decimal(row["open"]),
        "high": _to_decimal(row["high"]),
        "low": _to_decimal(row["low"]),
        "close": _to_decimal(row["close"]),
        "volume": _to_decimal(row["volume"]),
        "close_time": int(row["close_time"]),
        "quote_volume": _to_decimal(row["quote_volume"]),
        "count": int(row["count"]),
        "taker_buy_volume": _to_decimal(row["taker_buy_volume"]),
        "taker_buy_quote_volume": _to_decimal(row["taker_buy_quote_volume"]),
        "ignore": int(row["ignore"]),
    }


def kline_from_row(row: Row) -> Kline:
    """Build a :class:`Kline` from a ``klines`` row."""
    return Kline(**_kline_fields(row))


def candle_to_row(candle: Candle) -> Dict[str, Any]:
    """Return the timeframe-tagged candle row for ``candle``."""
    row = kline_to_row(candle)
    row["tf"] = str(candle.tf)
    return row


def candle_from_row(row: Row) -> Candle:
    """Build a :class:`Candle` from a timeframe-tagged candle row."""
    return Candle(**_kline_fields(row), tf=str(row["tf"]))


def trade_entry_from_row(row: Row) -> TradeEntry:
    """Build a :class:`TradeEntry` from a ``trade_entries`` row or JSON object."""
    return TradeEntry(
        id=int(row["id"]),
        price=_to_decimal(row["price"]),
        qty=_to_decimal(row["qty"]),
        timestamp=int(row["timestamp"]),
        delta=_to_decimal(row["delta"]),
        symbol=row["symbol"],
    )


def tf_trade_from_row(row: Row) -> TfTrade:
    """Build a :class:`TfTrade` from a ``tf_trades`` row.

    The ``trades`` column holds a JSON array of trade entry objects; a
    missing value gives an empty list.
    """
    raw_trades = row["trades"]
    entries = [] if raw_trades is None else _json_value(raw_trades)
    return TfTrade(
        symbol=_symbol(row),
        tf=int(row["tf"]),
        id=int(row["id"]),
        timestamp=int(row["timestamp"]),
        min_trade_time=int(row["min_trade_time"]),
        max_trade_time=int(row["max_trade_time"]),
        trades=[trade_entry_from_row(entry) for entry in entries],
    )


def trade_to_row(trade: Trade) -> Dict[str, Any]:
    """Return the ``trades`` row for ``trade``."""
    return {
        "id": trade.id,
        "order_id": str(trade.order_id),
        "symbol": trade.symbol.symbol,
        "maker": bool(trade.maker),
        "price": _decimal_text(trade.price),
        "commission": _decimal_text(trade.commission),
        "position_side": str(trade.position_side),
        "side": str(trade.side),
        "realized_pnl": _decimal_text(trade.realized_pnl),
        "exit_order_type": json.dumps(trade.exit_order_type),
        "qty": _decimal_text(trade.qty),
        "quote_qty": _decimal_text(trade.quote_qty),
        "time": int(trade.time),
    }


def trade_from_row(row: Row) -> Trade:
    """Build a :class:`Trade` from a ``trades`` row."""
    return Trade(
        id=int(row["id"]),
        order_id=_to_uuid(row["order_id"]),
        symbol=_symbol(row),
        maker=bool(row["maker"]),
        price=_to_decimal(row["price"]),
        commission=_to_decimal(row["commission"]),
        position_side=Side.parse(row["position_side"]),
        side=Side.parse(row["side"]),
        realized_pnl=_to_decimal(row["realized_pnl"]),
        exit_order_type=_json_value(row["exit_order_type"]),
        qty=_to_decimal(row["qty"]),
        quote_qty=_to_decimal(row["quote_qty"]),
        time=int(row["time"]),
    )


def order_to_row(order: Order) -> Dict[str, Any]:
    """Return the ``orders`` row for ``order``."""
    return {
        "order_id": json.dumps(str(order.id)),
        "symbol": order.symbol.symbol,
        "side": str(order.side),
        "price": _decimal_text(order.price),
        "quantity": _decimal_text(order.quantity),
        "time": int(order.time),
        "order_type": json.dumps(order.order_type),
        "lifetime": int(order.lifetime),
        "close_policy": json.dumps(order.close_policy),
    }


def order_from_row(row: Row) -> Order:
    """Build an :class:`Order` from an ``orders`` row."""
    return Order(
        id=_to_uuid(_json_value(row["order_id"])),
        symbol=_symbol(row),
        side=Side.parse(row["side"]),
        price=_to_decimal(row["price"]),
        quantity=_to_decimal(row["quantity"]),
        time=int(row["time"]),
        order_type=_json_value(row["order_type"]),
        lifetime=int(row["lifetime"]),
        close_policy=_json_value(row["close_policy"]),
    )