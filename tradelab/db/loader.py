"""Download archived market data and compile it into timeframe windows."""

from __future__ import annotations

import logging
import os
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from contextlib import contextmanager
from datetime import date, datetime, timezone
from itertools import islice
from typing import Any, Iterable, Iterator, List, Optional, Union

import requests

from tradelab.db.archive import (
    agg_trades_archive_url,
    history_months,
    kline_archive_url,
    parse_agg_trades_csv,
    parse_candle_csv,
    parse_kline_csv,
    read_zip_csv,
    trade_entries_from_agg_trades,
)
from tradelab.db.client import DataMode, SQLiteClient
from tradelab.db.records import Symbol, TfTrade, TfTradeLink

logger = logging.getLogger(__name__)

SymbolLike = Union[Symbol, str]
DateLike = Union[date, datetime]

RETRY_DELAYS = (0.1, 0.2, 0.4)
REQUEST_TIMEOUT = 60.0
_DOWNLOAD_WORKERS = os.cpu_count() or 1
_HISTORY_WORKERS = 13
_WINDOWS_PER_BATCH = 10


class _Progress:
    """Thread-safe progress counter used when the caller supplies none."""

    def __init__(self) -> None:
        self.length = 0
        self.position = 0
        self._lock = threading.Lock()

    def inc_length(self, n: int) -> None:
        with self._lock:
            self.length += n

    def inc(self, n: int = 1) -> None:
        with self._lock:
            self.position += n


def _as_symbol(symbol: SymbolLike) -> Symbol:
    return symbol if isinstance(symbol, Symbol) else Symbol(symbol=str(symbol))


def _today(today: Optional[DateLike]) -> DateLike:
    return today if today is not None else datetime.now(timezone.utc)


@contextmanager
def _session_scope(session: Optional[requests.Session]) -> Iterator[requests.Session]:
    if session is not None:
        yield session
        return
    owned = requests.Session()
    try:
        yield owned
    finally:
        owned.close()


def _batches(items: Iterable[int], size: int) -> Iterator[List[int]]:
    iterator = iter(items)
    while True:
        batch = list(islice(iterator, size))
        if not batch:
            return
        yield batch


def fetch_archive_csv(url: str, session: Optional[requests.Session] = None) -> Optional[str]:
    """Download the zip archive at ``url`` and return the CSV text inside it.

    Connection failures and timeouts are retried three times with growing
    delays; the last failure is raised. A response with a non-success
    status is logged and gives ``None``.
    """
    http: Any = session if session is not None else requests
    delays = list(RETRY_DELAYS)
    while True:
        try:
            response = http.get(url, timeout=REQUEST_TIMEOUT)
            break
        except (requests.ConnectionError, requests.Timeout):
            if not delays:
                raise
            time.sleep(delays.pop(0))
    if not 200 <= response.status_code < 300:
        logger.warning("[-] Failed to fetch %s. Reason: %s", url, response.status_code)
        return None
    return read_zip_csv(response.content)


def compile_agg_trades(
    client: SQLiteClient, symbol: SymbolLike, tf: int, progress: Any = None
) -> int:
    """Group the trade entries of ``symbol`` into windows of ``tf`` seconds.

    Earlier windows and links of the same timeframe are removed first.
    Each window covers ``[start, start + tf * 1000]`` in milliseconds,
    stepping from the oldest entry up to, not including, the latest one;
    empty windows are not stored. Returns the number of windows stored.
    Raises LookupError when the symbol has no trade entries.
    """
    tf = int(tf)
    if tf <= 0:
        raise ValueError("timeframe must be a positive number of seconds")
    sym = _as_symbol(symbol)
    progress = progress if progress is not None else _Progress()

    client.reset_tf_trades_by_tf(sym, tf)
    client.reset_tf_trade_links_by_tf(sym, tf)
    logger.info("Preparing data...")

    count = client.get_trades_count_by_symbol(sym)
    progress.inc_length(count)
    start = client.get_oldest_trade(sym).timestamp
    end = client.get_latest_trade(sym).timestamp
    logger.info("Processing %d trade entries", count)

    span = tf * 1000
    windows = 0
    for batch in _batches(range(start, end, span), _WINDOWS_PER_BATCH):
        links: List[TfTradeLink] = []
        for window_start in batch:
            entries = client.select_ids_between(sym, window_start, window_start + span)
            if not entries:
                continue
            tf_trade_id = client.insert_tf_trade(
                TfTrade(
                    symbol=sym,
                    tf=tf,
                    id=0,
                    timestamp=entries[0][1],
                    min_trade_time=entries[0][1],
                    max_trade_time=entries[-1][1],
                    trades=[],
                )
            )
            windows += 1
            links.extend(
                TfTradeLink(
                    tf=tf, symbol=sym.symbol, tf_trade_id=tf_trade_id, trade_entry_id=entry_id
                )
                for entry_id, _ in entries
            )
        client.insert_tf_trade_links(links)
        progress.inc(len(links))
    return windows


def load_klines_from_archive(
    client: SQLiteClient,
    symbol: SymbolLike,
    tf: str,
    fetch_history_span: int = -1,
    progress: Any = None,
    verbose: bool = False,
    session: Optional[requests.Session] = None,
    today: Optional[DateLike] = None,
) -> int:
    """Replace the stored klines of ``symbol`` and ``tf`` with archived ones.

    In trades mode the klines go to the kline table; in candles mode they
    are stored as candles tagged with ``tf``. ``fetch_history_span`` is in
    seconds, or -1 for the full history. Returns the number of rows stored.
    """
    sym = _as_symbol(symbol)
    candles = client.mode is DataMode.CANDLES
    if candles:
        client.reset_tf_trades_by_tf(sym, tf)
    else:
        client.reset_klines(sym)
    progress = progress if progress is not None else _Progress()
    months = history_months(_today(today), fetch_history_span)
    if not verbose:
        progress.inc_length(len(months))

    with _session_scope(session) as http:

        def load_month(month: DateLike) -> int:
            url = kline_archive_url(sym, tf, month)
            if verbose:
                logger.debug("[+] fetching %s", url)
            stored = 0
            try:
                text = fetch_archive_csv(url, http)
            except requests.RequestException:
                if verbose:
                    logger.warning("[-] failed to fetch %s", url)
            else:
                if text is None:
                    return 0
                if candles:
                    rows = parse_candle_csv(text, sym, tf)
                else:
                    rows = parse_kline_csv(text, sym)
                if not rows:
                    logger.info("[-] No Kline found")
                elif candles:
                    client.insert_candles(rows)
                else:
                    client.insert_klines(rows)
                stored = len(rows)
            if not verbose:
                progress.inc(1)
            return stored

        with ThreadPoolExecutor(max_workers=_DOWNLOAD_WORKERS) as pool:
            return sum(pool.map(load_month, months))


def load_history_from_archive(
    client: SQLiteClient,
    symbol: SymbolLike,
    fetch_history_span: int = -1,
    progress: Any = None,
    verbose: bool = False,
    session: Optional[requests.Session] = None,
    today: Optional[DateLike] = None,
) -> int:
    """Replace the stored trade entries of ``symbol`` with archived trades.

    Months whose archive cannot be fetched are skipped without counting
    towards progress. Returns the number of trade entries stored.
    """
    sym = _as_symbol(symbol)
    client.reset_trade_entries(sym)
    progress = progress if progress is not None else _Progress()
    months = history_months(_today(today), fetch_history_span)
    if not verbose:
        progress.inc_length(len(months))

    with _session_scope(session) as http:

        def load_month(month: DateLike) -> int:
            url = agg_trades_archive_url(sym, month)
            if verbose:
                logger.debug("[+] fetching %s", url)
            try:
                text = fetch_archive_csv(url, http)
            except requests.RequestException as exc:
                logger.warning("[-] Failed to fetch %s. Reason: %s", url, exc)
                return 0
            if text is None:
                return 0
            started = time.perf_counter()
            trades = parse_agg_trades_csv(text)
            stored = 0
            if not trades:
                logger.warning("[-] No agg trades found")
            else:
                stored = client.insert_trade_entries(trade_entries_from_agg_trades(trades, sym))
            if not verbose:
                progress.inc(1)
            logger.info(
                "done %s %s in %.3fs",
                sym.symbol,
                month.strftime("%Y-%m"),
                time.perf_counter() - started,
            )
            return stored

        with ThreadPoolExecutor(max_workers=_HISTORY_WORKERS) as pool:
            return sum(pool.map(load_month, months))