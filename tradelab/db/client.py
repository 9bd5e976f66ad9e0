"""SQLite storage for market data, compiled timeframes, orders and trades."""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
import time
from contextlib import contextmanager
from enum import Enum
from typing import Any, Callable, Dict, Iterable, Iterator, List, Sequence, Tuple, TypeVar, Union

from tradelab.db.records import (
    Candle,
    Kline,
    Order,
    Symbol,
    TfTrade,
    TfTradeLink,
    Trade,
    TradeEntry,
    candle_from_row,
    candle_to_row,
    kline_from_row,
    kline_to_row,
    order_from_row,
    order_to_row,
    tf_trade_from_row,
    trade_entry_from_row,
    trade_from_row,
    trade_to_row,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")
SymbolLike = Union[Symbol, str]

DEFAULT_PATH = "binance_studies.db"
_FETCH_SIZE = 10000


class DataMode(Enum):
    """Which kind of market data the database is laid out for.

    ``TRADES`` keeps individual aggregated trades grouped into timeframe
    windows; ``CANDLES`` keeps candles tagged with their timeframe.
    """

    TRADES = "trades"
    CANDLES = "candles"


_TRADE_ENTRIES_TABLE = """
CREATE TABLE IF NOT EXISTS trade_entries (
    id INTEGER PRIMARY KEY,
    price REAL,
    qty REAL,
    timestamp INTEGER,
    delta REAL,
    symbol TEXT
);
"""

_TF_TRADES_WINDOWS_TABLE = """
CREATE TABLE IF NOT EXISTS tf_trades (
    id INTEGER PRIMARY KEY,
    symbol TEXT,
    tf INTEGER,
    timestamp INTEGER,
    min_trade_time INTEGER,
    max_trade_time INTEGER,
    trades JSON
);
"""

_ORDERS_TABLE = """
CREATE TABLE IF NOT EXISTS orders (
    id TEXT PRIMARY KEY,
    order_id JSON,
    symbol TEXT,
    side TEXT,
    price REAL,
    quantity REAL,
    time INTEGER,
    order_type JSON,
    lifetime INTEGER,
    close_policy JSON
);
"""

_KLINES_TABLE = """
CREATE TABLE IF NOT EXISTS klines (
    symbol TEXT,
    open_time INTEGER,
    open REAL,
    high REAL,
    low REAL,
    close REAL,
    volume REAL,
    close_time INTEGER,
    quote_volume REAL,
    count INTEGER,
    taker_buy_volume REAL,
    taker_buy_quote_volume REAL,
    ignore INTEGER
);
"""

_TF_TRADES_CANDLES_TABLE = """
CREATE TABLE IF NOT EXISTS tf_trades (
    symbol TEXT,
    open_time INTEGER,
    open REAL,
    high REAL,
    low REAL,
    close REAL,
    volume REAL,
    close_time INTEGER,
    quote_volume REAL,
    count INTEGER,
    taker_buy_volume REAL,
    taker_buy_quote_volume REAL,
    tf TEXT,
    ignore INTEGER
);
"""

_TRADES_TABLE = """
CREATE TABLE IF NOT EXISTS trades (
    id INTEGER PRIMARY KEY,
    order_id TEXT,
    symbol TEXT,
    maker BOOLEAN,
    price REAL,
    commission TEXT,
    position_side TEXT,
    side TEXT,
    realized_pnl REAL,
    exit_order_type JSON,
    qty REAL,
    quote_qty REAL,
    time INTEGER
);
"""

_LINKS_TABLE = """
CREATE TABLE IF NOT EXISTS tf_trades_to_entries (
    tf_trade_id INTEGER,
    trade_entry_id INTEGER,
    symbol TEXT,
    tf INTEGER,
    PRIMARY KEY (tf_trade_id, trade_entry_id),
    FOREIGN KEY (tf_trade_id) REFERENCES tf_trades(id) ON DELETE CASCADE,
    FOREIGN KEY (trade_entry_id) REFERENCES trade_entries(id) ON DELETE CASCADE
);
"""

_KLINE_COLUMNS = (
    "symbol", "open_time", "open", "high", "low", "close", "volume", "close_time",
    "quote_volume", "count", "taker_buy_volume", "taker_buy_quote_volume", "ignore",
)
_CANDLE_COLUMNS = _KLINE_COLUMNS + ("tf",)
_ORDER_COLUMNS = (
    "order_id", "symbol", "side", "price", "quantity", "time", "order_type",
    "lifetime", "close_policy",
)
_TRADE_COLUMNS = (
    "order_id", "symbol", "maker", "price", "commission", "position_side", "side",
    "realized_pnl", "exit_order_type", "qty", "quote_qty", "time",
)

_TF_TRADES_JOINED = """
SELECT
    A.id AS id,
    A.symbol AS symbol,
    A.tf AS tf,
    A.timestamp AS timestamp,
    A.min_trade_time AS min_trade_time,
    A.max_trade_time AS max_trade_time,
    json_group_array(
        json_object(
            'id', B.id,
            'price', B.price,
            'qty', B.qty,
            'timestamp', B.timestamp,
            'delta', B.delta,
            'symbol', B.symbol
        )
    ) AS trades
FROM tf_trades A
JOIN tf_trades_to_entries AB ON A.id = AB.tf_trade_id
JOIN trade_entries B ON B.id = AB.trade_entry_id
WHERE A.symbol = ? AND A.timestamp > ?
GROUP BY A.id
ORDER BY A.timestamp ASC
"""

_INSERT_TF_TRADE = (
    "INSERT INTO tf_trades (symbol, tf, timestamp, min_trade_time, max_trade_time, trades) "
    "VALUES (?, ?, ?, ?, ?, ?)"
)


def _symbol_name(symbol: SymbolLike) -> str:
    return symbol.symbol if isinstance(symbol, Symbol) else str(symbol)


def _insert_sql(table: str, columns: Sequence[str]) -> str:
    placeholders = ", ".join("?" for _ in columns)
    return f"INSERT INTO {table} ({', '.join(columns)}) VALUES ({placeholders})"


def _values(row: Dict[str, Any], columns: Sequence[str]) -> Tuple[Any, ...]:
    return tuple(row[column] for column in columns)


def _entry_json(entry: TradeEntry) -> Dict[str, Any]:
    return {
        "id": entry.id,
        "price": format(entry.price, "f"),
        "qty": format(entry.qty, "f"),
        "timestamp": entry.timestamp,
        "delta": format(entry.delta, "f"),
        "symbol": entry.symbol,
    }


def _tf_trade_params(tf_trade: TfTrade) -> Tuple[Any, ...]:
    return (
        tf_trade.symbol.symbol,
        int(tf_trade.tf),
        int(tf_trade.timestamp),
        int(tf_trade.min_trade_time),
        int(tf_trade.max_trade_time),
        json.dumps([_entry_json(entry) for entry in tf_trade.trades]),
    )


class SQLiteClient:
    """A thread-safe handle on the market database.

    Methods that only make sense for one :class:`DataMode` raise
    :class:`ValueError` when called on a client opened in the other.
    """

    def __init__(self, path: str = DEFAULT_PATH, mode: DataMode = DataMode.TRADES) -> None:
        self.path = path
        self.mode = DataMode(mode)
        self._lock = threading.RLock()
        self._conn = sqlite3.connect(path, isolation_level=None, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        for pragma in (
            "PRAGMA journal_mode = WAL;",
            "PRAGMA temp_store = MEMORY;",
            "PRAGMA shrink_memory;",
            "PRAGMA synchronous = OFF;",
        ):
            self._conn.execute(pragma).fetchall()
        self.create_tables()

    def close(self) -> None:
        """Close the database connection."""
        with self._lock:
            self._conn.close()

    def __enter__(self) -> "SQLiteClient":
        return self

    def __exit__(self, *args: Any) -> None:
        self.close()

    # -- plumbing -------------------------------------------------------

    def _require(self, mode: DataMode, what: str) -> None:
        if self.mode is not mode:
            raise ValueError(f"{what} is only available in {mode.value} mode")

    def _execute(self, sql: str, params: Sequence[Any] = ()) -> sqlite3.Cursor:
        with self._lock:
            return self._conn.execute(sql, params)

    def _script(self, sql: str) -> None:
        with self._lock:
            self._conn.executescript(sql)

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        with self._lock:
            self._conn.execute("BEGIN")
            try:
                yield self._conn
            except BaseException:
                self._conn.execute("ROLLBACK")
                raise
            self._conn.execute("COMMIT")

    def _stream(
        self, sql: str, params: Sequence[Any], factory: Callable[[sqlite3.Row], T]
    ) -> Iterator[T]:
        with self._lock:
            cursor = self._conn.execute(sql, params)
        try:
            while True:
                with self._lock:
                    rows = cursor.fetchmany(_FETCH_SIZE)
                if not rows:
                    return
                for row in rows:
                    yield factory(row)
        finally:
            cursor.close()

    def _fetch_all(
        self, sql: str, params: Sequence[Any], factory: Callable[[sqlite3.Row], T]
    ) -> List[T]:
        with self._lock:
            rows = self._conn.execute(sql, params).fetchall()
        return [factory(row) for row in rows]

    # -- schema ---------------------------------------------------------

    def create_tables(self) -> None:
        """Create the tables of the client's mode if they do not exist."""
        if self.mode is DataMode.TRADES:
            tables = [
                _TRADE_ENTRIES_TABLE, _TF_TRADES_WINDOWS_TABLE, _ORDERS_TABLE,
                _KLINES_TABLE, _TRADES_TABLE, _LINKS_TABLE,
            ]
        else:
            tables = [_ORDERS_TABLE, _KLINES_TABLE, _TF_TRADES_CANDLES_TABLE, _TRADES_TABLE]
        for statement in tables:
            self._execute(statement)

    def create_download_indices(self) -> None:
        """Create the indices that speed up downloading."""
        if self.mode is DataMode.TRADES:
            self._execute(
                "CREATE INDEX IF NOT EXISTS trade_entries_symbols ON trade_entries(symbol);"
            )

    def drop_download_indices(self) -> None:
        """Drop the indices created by :meth:`create_download_indices`."""
        if self.mode is DataMode.TRADES:
            self._script("DROP INDEX trade_entries_symbols;")

    def create_compile_indices(self) -> None:
        """Create the indices used while compiling timeframe windows."""
        self._require(DataMode.TRADES, "create_compile_indices")
        self._execute("CREATE INDEX IF NOT EXISTS tf_symbols_tf ON tf_trades(symbol, tf);")
        self._execute(
            "CREATE INDEX IF NOT EXISTS trade_entries_symbols_timestamps "
            "ON trade_entries(symbol, timestamp);"
        )

    def drop_compile_indices(self) -> None:
        """Drop the indices created by :meth:`create_compile_indices`."""
        self._require(DataMode.TRADES, "drop_compile_indices")
        self._script(
            "DROP INDEX tf_symbols_tf;\nDROP INDEX trade_entries_symbols_timestamps;"
        )

    def create_backtest_indices(self) -> None:
        """Create the indices used while backtesting."""
        if self.mode is DataMode.TRADES:
            self._execute(
                "CREATE INDEX IF NOT EXISTS kline_symbols_close_times "
                "ON klines(symbol, close_time);"
            )
            self._execute(
                "CREATE INDEX IF NOT EXISTS tf_trades_to_trade_entries_tf_trades_id "
                "ON tf_trades_to_entries(tf_trade_id);"
            )
        else:
            self._execute(
                "CREATE INDEX IF NOT EXISTS kline_symbols_close_times_tf "
                "ON tf_trades(symbol, close_time, tf);"
            )

    def drop_backtest_indices(self) -> None:
        """Drop the indices created by :meth:`create_backtest_indices`."""
        if self.mode is DataMode.TRADES:
            self._script(
                "DROP INDEX kline_symbols_close_times;\n"
                "DROP INDEX tf_trades_to_trade_entries_tf_trades_id;"
            )
        else:
            self._script("DROP INDEX kline_symbols_close_times_tf;")

    # -- orders and trades ---------------------------------------------

    def insert_order(self, order: Order) -> None:
        """Store an order."""
        row = order_to_row(order)
        self._execute(_insert_sql("orders", _ORDER_COLUMNS), _values(row, _ORDER_COLUMNS))

    def insert_trade(self, trade: Trade) -> None:
        """Store a trade; the database assigns its id."""
        row = trade_to_row(trade)
        self._execute(_insert_sql("trades", _TRADE_COLUMNS), _values(row, _TRADE_COLUMNS))

    def get_orders(self, symbol: SymbolLike) -> List[Order]:
        """Return the stored orders of ``symbol`` in insertion order."""
        return self._fetch_all(
            "SELECT * FROM orders WHERE symbol = ? ORDER BY rowid ASC",
            (_symbol_name(symbol),),
            order_from_row,
        )

    def get_trades(self, symbol: SymbolLike) -> List[Trade]:
        """Return the stored trades of ``symbol`` in id order."""
        return self._fetch_all(
            "SELECT * FROM trades WHERE symbol = ? ORDER BY id ASC",
            (_symbol_name(symbol),),
            trade_from_row,
        )

    # -- trade entries --------------------------------------------------

    def get_trades_count_by_symbol(self, symbol: SymbolLike) -> int:
        """Return how many trade entries ``symbol`` has."""
        self._require(DataMode.TRADES, "get_trades_count_by_symbol")
        row = self._execute(
            "SELECT COUNT(*) FROM trade_entries WHERE symbol = ?;", (_symbol_name(symbol),)
        ).fetchone()
        return int(row[0])

    def _edge_trade(self, symbol: SymbolLike, order: str) -> TradeEntry:
        self._require(DataMode.TRADES, "trade entry lookup")
        name = _symbol_name(symbol)
        row = self._execute(
            f"SELECT * FROM trade_entries WHERE symbol = ? ORDER BY timestamp {order} LIMIT 1;",
            (name,),
        ).fetchone()
        if row is None:
            raise LookupError(f"no trade entries for {name}")
        return trade_entry_from_row(row)

    def get_oldest_trade(self, symbol: SymbolLike) -> TradeEntry:
        """Return the earliest trade entry of ``symbol``; LookupError if none."""
        return self._edge_trade(symbol, "ASC")

    def get_latest_trade(self, symbol: SymbolLike) -> TradeEntry:
        """Return the latest trade entry of ``symbol``; LookupError if none."""
        return self._edge_trade(symbol, "DESC")

    def select_values_between(self, symbol: SymbolLike, start: int, end: int) -> List[TradeEntry]:
        """Return the entries with ``start <= timestamp <= end``, oldest first."""
        self._require(DataMode.TRADES, "select_values_between")
        return self._fetch_all(
            "SELECT * FROM trade_entries WHERE symbol = ? AND timestamp BETWEEN ? AND ? "
            "ORDER BY timestamp ASC;",
            (_symbol_name(symbol), int(start), int(end)),
            trade_entry_from_row,
        )

    def select_ids_between(self, symbol: SymbolLike, start: int, end: int) -> List[Tuple[int, int]]:
        """Return ``(id, timestamp)`` of entries in ``[start, end]``, oldest first."""
        self._require(DataMode.TRADES, "select_ids_between")
        return self._fetch_all(
            "SELECT id, timestamp FROM trade_entries WHERE symbol = ? "
            "AND timestamp BETWEEN ? AND ? ORDER BY timestamp ASC;",
            (_symbol_name(symbol), int(start), int(end)),
            lambda row: (int(row[0]), int(row[1])),
        )

    def insert_trade_entries(self, entries: Iterable[TradeEntry]) -> int:
        """Store trade entries in one transaction and return how many.

        The ids of the given entries are ignored; the database assigns them.
        """
        self._require(DataMode.TRADES, "insert_trade_entries")
        started = time.perf_counter()
        params = [
            (float(e.price), float(e.qty), int(e.timestamp), float(e.delta), e.symbol)
            for e in entries
        ]
        with self._transaction() as conn:
            conn.executemany(
                "INSERT INTO trade_entries (price, qty, timestamp, delta, symbol) "
                "VALUES (?, ?, ?, ?, ?)",
                params,
            )
        logger.info("inserted %d entries in %.3fs", len(params), time.perf_counter() - started)
        return len(params)

    # -- klines and candles ---------------------------------------------

    def iter_klines(self, symbol: SymbolLike, until: int) -> Iterator[Kline]:
        """Yield the klines of ``symbol`` closing after ``until``, by close time."""
        return self._stream(
            "SELECT * FROM klines WHERE symbol = ? AND close_time > ? ORDER BY close_time ASC",
            (_symbol_name(symbol), int(until)),
            kline_from_row,
        )

    def iter_klines_with_tf(self, symbol: SymbolLike, until: int, tf: str) -> Iterator[Kline]:
        """Yield the candles of timeframe ``tf`` as plain klines, by close time."""
        self._require(DataMode.CANDLES, "iter_klines_with_tf")
        return self._stream(
            "SELECT * FROM tf_trades WHERE symbol = ? AND close_time > ? AND tf = ? "
            "ORDER BY close_time ASC",
            (_symbol_name(symbol), int(until), str(tf)),
            kline_from_row,
        )

    def iter_candles_with_tf(self, symbol: SymbolLike, until: int, tf: str) -> Iterator[Candle]:
        """Yield the candles of timeframe ``tf`` closing after ``until``."""
        self._require(DataMode.CANDLES, "iter_candles_with_tf")
        return self._stream(
            "SELECT * FROM tf_trades WHERE symbol = ? AND close_time > ? AND tf = ? "
            "ORDER BY close_time ASC",
            (_symbol_name(symbol), int(until), str(tf)),
            candle_from_row,
        )

    def insert_klines(self, klines: Iterable[Kline]) -> None:
        """Store klines in one transaction."""
        self._require(DataMode.TRADES, "insert_klines")
        params = [_values(kline_to_row(k), _KLINE_COLUMNS) for k in klines]
        with self._transaction() as conn:
            conn.executemany(_insert_sql("klines", _KLINE_COLUMNS), params)

    def insert_candles(self, candles: Iterable[Candle]) -> None:
        """Store timeframe-tagged candles in one transaction."""
        self._require(DataMode.CANDLES, "insert_candles")
        params = [_values(candle_to_row(c), _CANDLE_COLUMNS) for c in candles]
        with self._transaction() as conn:
            conn.executemany(_insert_sql("tf_trades", _CANDLE_COLUMNS), params)

    # -- timeframe windows ----------------------------------------------

    def iter_tf_trades(self, symbol: SymbolLike, until: int) -> Iterator[TfTrade]:
        """Yield the windows of ``symbol`` after ``until`` with their linked entries."""
        self._require(DataMode.TRADES, "iter_tf_trades")
        return self._stream(
            _TF_TRADES_JOINED, (_symbol_name(symbol), int(until)), tf_trade_from_row
        )

    def insert_tf_trades(self, tf_trades: Iterable[TfTrade]) -> List[int]:
        """Store windows in one transaction and return their new ids."""
        self._require(DataMode.TRADES, "insert_tf_trades")
        ids = []
        with self._transaction() as conn:
            for tf_trade in tf_trades:
                ids.append(int(conn.execute(_INSERT_TF_TRADE, _tf_trade_params(tf_trade)).lastrowid))
        return ids

    def insert_tf_trade(self, tf_trade: TfTrade) -> int:
        """Store one window and return its new id."""
        self._require(DataMode.TRADES, "insert_tf_trade")
        return int(self._execute(_INSERT_TF_TRADE, _tf_trade_params(tf_trade)).lastrowid)

    def insert_tf_trade_links(self, links: Iterable[TfTradeLink]) -> None:
        """Store window-to-entry links in one transaction."""
        self._require(DataMode.TRADES, "insert_tf_trade_links")
        params = [
            (int(link.tf_trade_id), int(link.trade_entry_id), link.symbol, int(link.tf))
            for link in links
        ]
        with self._transaction() as conn:
            conn.executemany(
                "INSERT INTO tf_trades_to_entries (tf_trade_id, trade_entry_id, symbol, tf) "
                "VALUES (?, ?, ?, ?)",
                params,
            )

    # -- resets ---------------------------------------------------------

    def reset_klines(self, symbol: SymbolLike) -> None:
        """Delete the klines of ``symbol``."""
        self._require(DataMode.TRADES, "reset_klines")
        self._execute("DELETE FROM klines WHERE symbol = ?", (_symbol_name(symbol),))

    def reset_trades(self, symbol: SymbolLike) -> None:
        """Delete the trades of ``symbol``."""
        self._execute("DELETE FROM trades WHERE symbol = ?", (_symbol_name(symbol),))

    def reset_orders(self, symbol: SymbolLike) -> None:
        """Delete the orders of ``symbol``."""
        self._execute("DELETE FROM orders WHERE symbol = ?", (_symbol_name(symbol),))

    def reset_trade_entries(self, symbol: SymbolLike) -> None:
        """Delete the trade entries of ``symbol``."""
        self._require(DataMode.TRADES, "reset_trade_entries")
        self._execute("DELETE FROM trade_entries WHERE symbol = ?", (_symbol_name(symbol),))

    def reset_tf_trades(self, symbol: SymbolLike) -> None:
        """Delete every window or candle of ``symbol``."""
        self._execute("DELETE FROM tf_trades WHERE symbol = ?", (_symbol_name(symbol),))

    def reset_tf_trade_links_by_tf(self, symbol: SymbolLike, tf: int) -> None:
        """Delete the window-to-entry links of ``symbol`` for timeframe ``tf``."""
        self._require(DataMode.TRADES, "reset_tf_trade_links_by_tf")
        self._execute(
            "DELETE FROM tf_trades_to_entries WHERE symbol = ? AND tf = ?",
            (_symbol_name(symbol), str(tf)),
        )

    def reset_tf_trades_by_tf(self, symbol: SymbolLike, tf: Union[int, str]) -> None:
        """Delete the windows or candles of ``symbol`` for timeframe ``tf``."""
        self._execute(
            "DELETE FROM tf_trades WHERE symbol = ? AND tf = ?",
            (_symbol_name(symbol), str(tf)),
        )

    def vacuum(self) -> None:
        """Rebuild the database file to reclaim space."""
        self._execute("VACUUM;")