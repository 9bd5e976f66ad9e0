import sqlite3
import uuid
from dataclasses import replace
from decimal import Decimal

import pytest

from tradelab.db.client import DataMode, SQLiteClient
from tradelab.db.records import (
    Candle,
    Kline,
    Order,
    Side,
    Symbol,
    TfTrade,
    TfTradeLink,
    Trade,
    TradeEntry,
)

BTC = Symbol("BTCUSDT")
ETH = Symbol("ETHUSDT")


@pytest.fixture
def trades_client():
    with SQLiteClient(":memory:", DataMode.TRADES) as client:
        yield client


@pytest.fixture
def candles_client():
    with SQLiteClient(":memory:", DataMode.CANDLES) as client:
        yield client


def make_kline(close_time, symbol=BTC, close="101.25"):
    return Kline(
        symbol=symbol,
        open_time=close_time - 59999,
        open=Decimal("100.5"),
        high=Decimal("102.75"),
        low=Decimal("99.5"),
        close=Decimal(close),
        volume=Decimal("12.5"),
        close_time=close_time,
        quote_volume=Decimal("1250.25"),
        count=42,
        taker_buy_volume=Decimal("6.25"),
        taker_buy_quote_volume=Decimal("625.5"),
        ignore=0,
    )


def make_candle(close_time, tf, symbol=BTC):
    k = make_kline(close_time, symbol)
    return Candle(**{f: getattr(k, f) for f in k.__dataclass_fields__}, tf=tf)


def make_entry(timestamp, price="10.5", symbol="BTCUSDT"):
    return TradeEntry(
        id=0,
        price=Decimal(price),
        qty=Decimal("0.25"),
        timestamp=timestamp,
        delta=Decimal("0.5"),
        symbol=symbol,
    )


def make_order(symbol=BTC):
    return Order(
        id=uuid.UUID("12345678-1234-5678-1234-567812345678"),
        symbol=symbol,
        side=Side.BID,
        price=Decimal("100.5"),
        quantity=Decimal("0.5"),
        time=1700000000000,
        order_type={"Limit": "100.5"},
        lifetime=30000,
        close_policy="ImmediateMarket",
    )


def make_trade(symbol=BTC):
    return Trade(
        id=0,
        order_id=uuid.UUID("87654321-4321-8765-4321-876543218765"),
        symbol=symbol,
        maker=True,
        price=Decimal("100.5"),
        commission=Decimal("0.1"),
        position_side=Side.BID,
        side=Side.ASK,
        realized_pnl=Decimal("2.5"),
        exit_order_type={"TakeProfit": None},
        qty=Decimal("0.5"),
        quote_qty=Decimal("50.25"),
        time=1700000000000,
    )


def table_names(path):
    with sqlite3.connect(path) as conn:
        return {r[0] for r in conn.execute("SELECT name FROM sqlite_master WHERE type='table'")}


def index_names(path):
    with sqlite3.connect(path) as conn:
        return {r[0] for r in conn.execute("SELECT name FROM sqlite_master WHERE type='index'")}


def test_trades_mode_tables(tmp_path):
    path = str(tmp_path / "market.db")
    SQLiteClient(path, DataMode.TRADES).close()
    assert {"trade_entries", "tf_trades", "orders", "klines", "trades",
            "tf_trades_to_entries"} <= table_names(path)


def test_candles_mode_tables(tmp_path):
    path = str(tmp_path / "market.db")
    SQLiteClient(path, DataMode.CANDLES).close()
    names = table_names(path)
    assert {"orders", "klines", "tf_trades", "trades"} <= names
    assert "trade_entries" not in names
    assert "tf_trades_to_entries" not in names


def test_data_persists_across_reopen(tmp_path):
    path = str(tmp_path / "market.db")
    with SQLiteClient(path) as client:
        client.insert_klines([make_kline(1000)])
    with SQLiteClient(path) as client:
        assert list(client.iter_klines(BTC, 0)) == [make_kline(1000)]


def test_closed_client_rejects_queries():
    client = SQLiteClient(":memory:")
    client.close()
    with pytest.raises(sqlite3.ProgrammingError):
        client.get_orders(BTC)


def test_order_round_trip_and_reset(trades_client):
    trades_client.insert_order(make_order())
    trades_client.insert_order(make_order(ETH))
    assert trades_client.get_orders(BTC) == [make_order()]
    trades_client.reset_orders(BTC)
    assert trades_client.get_orders(BTC) == []
    assert trades_client.get_orders("ETHUSDT") == [make_order(ETH)]


def test_trade_round_trip_and_reset(trades_client):
    trades_client.insert_trade(make_trade())
    trades_client.insert_trade(make_trade())
    stored = trades_client.get_trades(BTC)
    assert [replace(t, id=0) for t in stored] == [make_trade(), make_trade()]
    assert stored[0].id < stored[1].id
    trades_client.reset_trades(BTC)
    assert trades_client.get_trades(BTC) == []


def test_klines_filtered_and_ordered(trades_client):
    trades_client.insert_klines([make_kline(3000), make_kline(1000), make_kline(2000),
                                 make_kline(2500, ETH)])
    result = list(trades_client.iter_klines(BTC, 1000))
    assert [k.close_time for k in result] == [2000, 3000]
    assert result[0] == make_kline(2000)


def test_reset_klines(trades_client):
    trades_client.insert_klines([make_kline(1000), make_kline(1000, ETH)])
    trades_client.reset_klines(BTC)
    assert list(trades_client.iter_klines(BTC, 0)) == []
    assert len(list(trades_client.iter_klines(ETH, 0))) == 1


def test_candles_by_timeframe(candles_client):
    candles_client.insert_candles([
        make_candle(2000, "1m"), make_candle(1000, "1m"), make_candle(1500, "5m"),
    ])
    candles = list(candles_client.iter_candles_with_tf(BTC, 0, "1m"))
    assert candles == [make_candle(1000, "1m"), make_candle(2000, "1m")]
    klines = list(candles_client.iter_klines_with_tf(BTC, 1000, "1m"))
    assert klines == [make_kline(2000)]


def test_reset_candles_by_timeframe(candles_client):
    candles_client.insert_candles([make_candle(1000, "1m"), make_candle(1000, "5m")])
    candles_client.reset_tf_trades_by_tf(BTC, "1m")
    assert list(candles_client.iter_candles_with_tf(BTC, 0, "1m")) == []
    assert list(candles_client.iter_candles_with_tf(BTC, 0, "5m")) == [make_candle(1000, "5m")]
    candles_client.reset_tf_trades(BTC)
    assert list(candles_client.iter_candles_with_tf(BTC, 0, "5m")) == []


def test_trade_entries_count_and_edges(trades_client):
    inserted = trades_client.insert_trade_entries(
        [make_entry(2000, "11.5"), make_entry(1000, "10.5"), make_entry(3000, "12.5"),
         make_entry(1500, symbol="ETHUSDT")]
    )
    assert inserted == 4
    assert trades_client.get_trades_count_by_symbol(BTC) == 3
    oldest = trades_client.get_oldest_trade(BTC)
    latest = trades_client.get_latest_trade(BTC)
    assert (oldest.timestamp, oldest.price) == (1000, Decimal("10.5"))
    assert (latest.timestamp, latest.price) == (3000, Decimal("12.5"))
    assert replace(oldest, id=0) == make_entry(1000, "10.5")


def test_edge_trade_missing_raises(trades_client):
    with pytest.raises(LookupError):
        trades_client.get_oldest_trade(BTC)
    with pytest.raises(LookupError):
        trades_client.get_latest_trade(BTC)


def test_select_between_is_inclusive(trades_client):
    trades_client.insert_trade_entries([make_entry(t) for t in (1000, 2000, 3000, 4000)])
    values = trades_client.select_values_between(BTC, 2000, 3000)
    assert [v.timestamp for v in values] == [2000, 3000]
    pairs = trades_client.select_ids_between("BTCUSDT", 2000, 3000)
    assert pairs == [(v.id, v.timestamp) for v in values]


def test_reset_trade_entries(trades_client):
    trades_client.insert_trade_entries([make_entry(1000), make_entry(1000, symbol="ETHUSDT")])
    trades_client.reset_trade_entries(BTC)
    assert trades_client.get_trades_count_by_symbol(BTC) == 0
    assert trades_client.get_trades_count_by_symbol(ETH) == 1


def window(timestamp, tf=60, entries=()):
    return TfTrade(symbol=BTC, tf=tf, id=0, timestamp=timestamp,
                   min_trade_time=timestamp, max_trade_time=timestamp + 500,
                   trades=list(entries))


def test_tf_trades_with_links(trades_client):
    trades_client.insert_trade_entries([make_entry(t) for t in (1000, 1200, 5000)])
    ids = trades_client.select_ids_between(BTC, 0, 10000)
    first = trades_client.insert_tf_trade(window(1000))
    second = trades_client.insert_tf_trade(window(5000))
    trades_client.insert_tf_trade_links([
        TfTradeLink(tf=60, symbol="BTCUSDT", tf_trade_id=first, trade_entry_id=ids[0][0]),
        TfTradeLink(tf=60, symbol="BTCUSDT", tf_trade_id=first, trade_entry_id=ids[1][0]),
        TfTradeLink(tf=60, symbol="BTCUSDT", tf_trade_id=second, trade_entry_id=ids[2][0]),
    ])
    result = list(trades_client.iter_tf_trades(BTC, 0))
    assert [w.id for w in result] == [first, second]
    assert sorted(e.timestamp for e in result[0].trades) == [1000, 1200]
    assert [e.price for e in result[1].trades] == [Decimal("10.5")]
    assert [w.id for w in trades_client.iter_tf_trades(BTC, 1000)] == [second]


def test_reset_links_by_tf(trades_client):
    trades_client.insert_trade_entries([make_entry(1000)])
    entry_id = trades_client.select_ids_between(BTC, 0, 2000)[0][0]
    wid = trades_client.insert_tf_trade(window(1000))
    trades_client.insert_tf_trade_links(
        [TfTradeLink(tf=60, symbol="BTCUSDT", tf_trade_id=wid, trade_entry_id=entry_id)]
    )
    trades_client.reset_tf_trade_links_by_tf(BTC, 60)
    assert list(trades_client.iter_tf_trades(BTC, 0)) == []


def test_duplicate_link_rejected(trades_client):
    link = TfTradeLink(tf=60, symbol="BTCUSDT", tf_trade_id=1, trade_entry_id=1)
    trades_client.insert_tf_trade_links([link])
    with pytest.raises(sqlite3.IntegrityError):
        trades_client.insert_tf_trade_links([link])


def test_insert_tf_trades_returns_ids(trades_client):
    ids = trades_client.insert_tf_trades([window(1000), window(2000), window(3000)])
    assert len(ids) == 3
    assert ids == sorted(set(ids))
    trades_client.reset_tf_trades_by_tf(BTC, 60)
    assert trades_client.insert_tf_trades([]) == []


def test_mode_restrictions(trades_client, candles_client):
    with pytest.raises(ValueError):
        candles_client.insert_trade_entries([make_entry(1000)])
    with pytest.raises(ValueError):
        candles_client.iter_tf_trades(BTC, 0)
    with pytest.raises(ValueError):
        candles_client.create_compile_indices()
    with pytest.raises(ValueError):
        trades_client.insert_candles([make_candle(1000, "1m")])
    with pytest.raises(ValueError):
        trades_client.iter_candles_with_tf(BTC, 0, "1m")


def test_download_indices(tmp_path):
    path = str(tmp_path / "market.db")
    with SQLiteClient(path) as client:
        client.create_download_indices()
        assert "trade_entries_symbols" in index_names(path)
        client.drop_download_indices()
        assert "trade_entries_symbols" not in index_names(path)
        with pytest.raises(sqlite3.OperationalError):
            client.drop_download_indices()


def test_compile_and_backtest_indices(tmp_path):
    path = str(tmp_path / "market.db")
    with SQLiteClient(path) as client:
        client.create_compile_indices()
        client.create_backtest_indices()
        names = index_names(path)
        assert {"tf_symbols_tf", "trade_entries_symbols_timestamps",
                "kline_symbols_close_times",
                "tf_trades_to_trade_entries_tf_trades_id"} <= names
        client.drop_compile_indices()
        client.drop_backtest_indices()
        assert not names & index_names(path) - {n for n in names if n.startswith("sqlite_")}


def test_candle_backtest_indices(tmp_path):
    path = str(tmp_path / "market.db")
    with SQLiteClient(path, DataMode.CANDLES) as client:
        client.create_backtest_indices()
        assert "kline_symbols_close_times_tf" in index_names(path)
        client.drop_backtest_indices()
        assert "kline_symbols_close_times_tf" not in index_names(path)


def test_vacuum_keeps_data(trades_client):
    trades_client.insert_klines([make_kline(1000), make_kline(2000)])
    trades_client.reset_klines(ETH)
    trades_client.vacuum()
    assert [k.close_time for k in trades_client.iter_klines(BTC, 0)] == [1000, 2000]