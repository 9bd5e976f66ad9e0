# tradelab

Building blocks for back-testing trading strategies on historical market data.

- **`tradelab.events.channel`**: a bounded asyncio broadcast channel.
  `Broadcast` delivers every message to each of its `Receiver`s. A receiver
  that falls `capacity` messages behind holds the sender back, or, with
  `overflow=True`, loses its oldest pending message and gets `Overflowed`
  (with the `missed` count) on its next `recv()`. After `close()`, receivers
  drain what is pending and then get `ChannelClosed`.
- **`tradelab.db.records`**: the record types (`Side`, `Symbol`, `Kline`,
  `Candle`, `TradeEntry`, `TfTrade`, `TfTradeLink`, `Trade`, `Order`) and
  functions converting them to and from database rows (`kline_to_row`,
  `kline_from_row`, `candle_to_row`, `candle_from_row`, `trade_to_row`,
  `trade_from_row`, `order_to_row`, `order_from_row`, `trade_entry_from_row`,
  `tf_trade_from_row`). Prices and quantities are `decimal.Decimal`.
- **`tradelab.db.client`**: `SQLiteClient`, a thread-safe handle on a SQLite
  file holding klines, candles, aggregated trade entries, timeframe windows,
  orders and trades. It is opened in one of two `DataMode`s:
  - `DataMode.TRADES`: trade entries grouped into timeframe windows, plus
    klines;
  - `DataMode.CANDLES`: candles tagged with their timeframe.

  Methods that belong to the other mode raise `ValueError`.
- **`tradelab.db.archive`**: calendar helpers (`is_leap_year`,
  `days_per_month`, `datediff`, `history_months`), archive URL builders
  (`kline_archive_url`, `agg_trades_archive_url`), parsers for the monthly
  zipped CSV archives (`read_zip_csv`, `parse_kline_csv`, `parse_candle_csv`,
  `parse_agg_trades_csv`) and `trade_entries_from_agg_trades`, which turns
  consecutive aggregated trades into entries carrying their percent price
  change.
- **`tradelab.db.loader`**: `fetch_archive_csv` downloads an archive, retrying
  connection errors and timeouts three times; `load_klines_from_archive` and
  `load_history_from_archive` replace a symbol's stored klines/candles or trade
  entries with archived months; `compile_agg_trades` groups the stored trade
  entries into windows of `tf` seconds.

## Installation

```
pip install tradelab
```

To run the tests:

```
pip install "tradelab[test]"
pytest
```

## Examples

Loading and reading candles:

```python
from tradelab.db.client import DataMode, SQLiteClient
from tradelab.db.loader import load_klines_from_archive
from tradelab.db.records import Symbol

symbol = Symbol(symbol="BTCUSDT")
with SQLiteClient("studies.db", DataMode.CANDLES) as client:
    # fetch_history_span is in seconds; -1 means the full history
    stored = load_klines_from_archive(client, symbol, "1m", fetch_history_span=30 * 24 * 3600)
    for candle in client.iter_candles_with_tf(symbol, 0, "1m"):
        print(candle.close_time, candle.close)
```

Loading aggregated trades and compiling one-minute windows:

```python
from tradelab.db.client import DataMode, SQLiteClient
from tradelab.db.loader import compile_agg_trades, load_history_from_archive

with SQLiteClient("studies.db", DataMode.TRADES) as client:
    load_history_from_archive(client, "BTCUSDT", fetch_history_span=7 * 24 * 3600)
    windows = compile_agg_trades(client, "BTCUSDT", 60)
    for window in client.iter_tf_trades("BTCUSDT", 0):
        print(window.timestamp, len(window.trades))
```

The loaders accept an optional `progress` object with `inc_length(n)` and
`inc(n)` methods, and an optional `requests.Session`.

Broadcasting messages:

```python
import asyncio

from tradelab.events.channel import Broadcast, ChannelClosed

async def main():
    channel = Broadcast(100)
    first = channel.new_receiver()
    second = channel.new_receiver()
    await channel.broadcast("tick")
    await channel.close()
    print(await first.recv(), await second.recv())
    try:
        await first.recv()
    except ChannelClosed:
        print("closed")

asyncio.run(main())
```

## What this package does not do

It stores and loads market data and passes messages between asyncio tasks.
It does not run back-tests: there are no strategies, no risk or order
management, no simulated exchange account, no event handler or emitter base
classes on top of the channel, and no command-line program.