"""Calendar helpers and parsers for the monthly market data archives.

The archives are zip files holding one headerless CSV file each: klines
(candlesticks) for a symbol and timeframe, or the aggregated trades of a
symbol. Rows that cannot be parsed, such as a header row, are skipped.
"""

from __future__ import annotations

import csv
import io
import math
import zipfile
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from decimal import Decimal, InvalidOperation
from typing import Iterable, Iterator, List, Optional, Sequence, Tuple, Union

from tradelab.db.records import Candle, Kline, Symbol, TradeEntry

SymbolLike = Union[Symbol, str]
DateLike = Union[date, datetime]

ARCHIVE_BASE_URL = "https://data.binance.vision/data/spot/monthly"
ARCHIVE_STEP = timedelta(weeks=4)
ARCHIVE_STEP_SECONDS = 4 * 7 * 24 * 3600
FULL_HISTORY_STEPS = 12 * 20

_DAYS_PER_MONTH = (31, 28, 31, 30, 31, 30, 31, 31, 30, 31, 30, 31)
_KLINE_FIELDS = 12
_AGG_TRADE_FIELDS = 6


@dataclass(frozen=True)
class AggTrade:
    """One row of an aggregated trades archive."""

    agg_trade_id: int
    price: float
    quantity: float
    first_trade_id: int
    last_trade_id: int
    transact_time: int


def is_leap_year(year: int) -> bool:
    """True for a leap year of the Gregorian calendar."""
    return year % 4 == 0 and (year % 100 != 0 or year % 400 == 0)


def days_per_month(year: int, month0: int) -> int:
    """Days in month ``month0`` (0 is January) of ``year``."""
    if not 0 <= month0 < 12:
        raise ValueError(f"month index out of range: {month0}")
    return _DAYS_PER_MONTH[month0] + (1 if month0 == 1 and is_leap_year(year) else 0)


def datediff(date0: DateLike, date1: DateLike) -> Tuple[int, int, int, bool]:
    """Return ``(years, months, days, negative)`` from ``date0`` to ``date1``.

    ``negative`` is true when ``date1`` lies before ``date0``; the other
    values are then the distance the other way round.
    """
    if date1 < date0:
        years, months, days, _ = datediff(date1, date0)
        return years, months, days, True

    y0, m0, d0 = date0.year, date0.month - 1, date0.day - 1
    y1, m1, d1 = date1.year, date1.month - 1, date1.day - 1

    if d0 > d1:
        py1, pm1 = (y1 - 1, 11) if m1 == 0 else (y1, m1 - 1)
        pnd = days_per_month(py1, pm1)
        d0 = min(d0, pnd - 1)
        if d0 > d1:
            y1, m1 = py1, pm1
            d1 += pnd
    if m0 > m1:
        y1 -= 1
        m1 += 12
    return y1 - y0, m1 - m0, d1 - d0, False


def history_months(today: DateLike, fetch_history_span: int) -> List[DateLike]:
    """Return the dates whose months are fetched, newest first.

    The dates step back four weeks at a time from ``today``. A span of -1
    means the full history of twenty years; otherwise the span is in
    seconds and is rounded up to whole four-week steps.
    """
    if fetch_history_span == -1:
        steps = FULL_HISTORY_STEPS
    else:
        steps = max(0, math.ceil(fetch_history_span / ARCHIVE_STEP_SECONDS))
    return [today - ARCHIVE_STEP * i for i in range(steps)]


def _symbol_name(symbol: SymbolLike) -> str:
    return symbol.symbol if isinstance(symbol, Symbol) else str(symbol)


def _as_symbol(symbol: SymbolLike) -> Symbol:
    return symbol if isinstance(symbol, Symbol) else Symbol(symbol=str(symbol))


def kline_archive_url(symbol: SymbolLike, tf: str, month: DateLike) -> str:
    """URL of the kline archive of ``symbol`` and ``tf`` for ``month``."""
    name = _symbol_name(symbol)
    return f"{ARCHIVE_BASE_URL}/klines/{name}/{tf}/{name}-{tf}-{month.strftime('%Y-%m')}.zip"


def agg_trades_archive_url(symbol: SymbolLike, month: DateLike) -> str:
    """URL of the aggregated trades archive of ``symbol`` for ``month``."""
    name = _symbol_name(symbol)
    return f"{ARCHIVE_BASE_URL}/aggTrades/{name}/{name}-aggTrades-{month.strftime('%Y-%m')}.zip"


def _rows(text: str, width: int) -> Iterator[Sequence[str]]:
    for row in csv.reader(io.StringIO(text)):
        if len(row) >= width:
            yield row


def _unsigned(value: str) -> int:
    number = int(value.strip())
    if number < 0:
        raise ValueError(f"negative value: {value!r}")
    return number


def _decimal(value: str) -> Decimal:
    try:
        number = Decimal(value.strip())
    except InvalidOperation as exc:
        raise ValueError(f"not a decimal number: {value!r}") from exc
    if not number.is_finite():
        raise ValueError(f"not a finite number: {value!r}")
    return number


def _kline(row: Sequence[str], symbol: Symbol) -> Optional[Kline]:
    try:
        return Kline(
            symbol=symbol,
            open_time=_unsigned(row[0]),
            open=_decimal(row[1]),
            high=_decimal(row[2]),
            low=_decimal(row[3]),
            close=_decimal(row[4]),
            volume=_decimal(row[5]),
            close_time=_unsigned(row[6]),
            quote_volume=_decimal(row[7]),
            count=_unsigned(row[8]),
            taker_buy_volume=_decimal(row[9]),
            taker_buy_quote_volume=_decimal(row[10]),
            ignore=_unsigned(row[11]),
        )
    except ValueError:
        return None


def parse_kline_csv(text: str, symbol: SymbolLike) -> List[Kline]:
    """Parse the rows of a kline archive, skipping rows that do not parse."""
    sym = _as_symbol(symbol)
    klines = (_kline(row, sym) for row in _rows(text, _KLINE_FIELDS))
    return [kline for kline in klines if kline is not None]


def parse_candle_csv(text: str, symbol: SymbolLike, tf: str) -> List[Candle]:
    """Parse a kline archive into candles tagged with timeframe ``tf``."""
    return [
        Candle(**{name: getattr(k, name) for name in Kline.__dataclass_fields__}, tf=str(tf))
        for k in parse_kline_csv(text, symbol)
    ]


def _agg_trade(row: Sequence[str]) -> Optional[AggTrade]:
    try:
        price = float(row[1])
        quantity = float(row[2])
        return AggTrade(
            agg_trade_id=_unsigned(row[0]),
            price=price,
            quantity=quantity,
            first_trade_id=_unsigned(row[3]),
            last_trade_id=_unsigned(row[4]),
            transact_time=_unsigned(row[5]),
        )
    except ValueError:
        return None


def parse_agg_trades_csv(text: str) -> List[AggTrade]:
    """Parse the rows of an aggregated trades archive, skipping bad rows."""
    trades = (_agg_trade(row) for row in _rows(text, _AGG_TRADE_FIELDS))
    return [trade for trade in trades if trade is not None]


def trade_entries_from_agg_trades(
    trades: Iterable[AggTrade], symbol: SymbolLike
) -> List[TradeEntry]:
    """Turn consecutive trades into entries carrying their percent price change.

    The first trade only serves as the reference for the second, so there
    is one entry fewer than trades. Entry ids are left at 0.
    """
    name = _symbol_name(symbol)
    items = list(trades)
    return [
        TradeEntry(
            id=0,
            price=Decimal(repr(current.price)),
            qty=Decimal(repr(current.quantity)),
            timestamp=current.transact_time,
            delta=Decimal(repr(((current.price - previous.price) * 100.0) / previous.price)),
            symbol=name,
        )
        for previous, current in zip(items, items[1:])
    ]


def read_zip_csv(data: bytes) -> str:
    """Return the text of the first file in the zip archive ``data``."""
    with zipfile.ZipFile(io.BytesIO(data)) as archive:
        names = archive.namelist()
        if not names:
            raise ValueError("archive is empty")
        return archive.read(names[0]).decode("utf-8")