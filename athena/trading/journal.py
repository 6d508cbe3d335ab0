import sqlite3
from typing import Optional

from athena.trading.trade import TradeRecord
from athena.utils.candle import Candle, Tick
from athena.utils.logger import log

TABLES = ("ticks", "candles", "trades")

class TradeJournal:
    """
    Append-only sqlite store for ticks, candles and settled trades.

    Every table keeps at most `retention` rows (oldest evicted first). Reads
    return oldest-first; `limit` gives the short-term view (most recent K),
    no limit the long-term one (everything retained).
    """

    def __init__(self, db_path: str, retention: int = 10000):
        self.retention = max(1, int(retention))
        self.conn = sqlite3.connect(db_path)
        self._init_db()

    def _init_db(self):
        self.conn.execute("""
            CREATE TABLE IF NOT EXISTS ticks (
                seq         INTEGER PRIMARY KEY AUTOINCREMENT,
                symbol      TEXT,
                price       REAL,
                volume      REAL,
                timestamp   REAL
            )
        """)
        self.conn.execute("""
            CREATE TABLE IF NOT EXISTS candles (
                seq         INTEGER PRIMARY KEY AUTOINCREMENT,
                symbol      TEXT,
                timestamp   REAL,
                open        REAL,
                high        REAL,
                low         REAL,
                close       REAL,
                volume      REAL
            )
        """)
        self.conn.execute("""
            CREATE TABLE IF NOT EXISTS trades (
                seq         INTEGER PRIMARY KEY AUTOINCREMENT,
                id          TEXT UNIQUE,
                symbol      TEXT,
                result      TEXT,
                pnl         REAL,
                stake       REAL,
                direction   TEXT,
                duration    INTEGER,
                strategy    TEXT,
                indicators  TEXT,
                market      TEXT,
                timestamp   REAL
            )
        """)
        self.conn.commit()

    def _write(self, table: str, sql: str, params: tuple) -> bool:
        try:
            self.conn.execute(sql, params)
            self.conn.execute(
                f"DELETE FROM {table} WHERE seq NOT IN "
                f"(SELECT seq FROM {table} ORDER BY seq DESC LIMIT ?)",
                (self.retention,),
            )
            self.conn.commit()
            return True
        except sqlite3.Error as e:
            log.error("Journal write to %s failed: %s", table, e)
            return False

    def _read(self, sql: str, limit: Optional[int], params: tuple = ()) -> list:
        try:
            if limit is not None:
                rows = self.conn.execute(sql + " ORDER BY seq DESC LIMIT ?", params + (int(limit),)).fetchall()
                rows.reverse()
            else:
                rows = self.conn.execute(sql + " ORDER BY seq ASC", params).fetchall()
        except sqlite3.Error as e:
            log.error("Journal read failed: %s", e)
            return []
        return rows

    # -- writes --
    def append_tick(self, tick: Tick) -> bool:
        return self._write(
            "ticks",
            "INSERT INTO ticks (symbol, price, volume, timestamp) VALUES (?,?,?,?)",
            (tick.symbol, tick.price, tick.volume, tick.timestamp),
        )

    def append_candle(self, candle: Candle) -> bool:
        return self._write(
            "candles",
            "INSERT INTO candles (symbol, timestamp, open, high, low, close, volume) VALUES (?,?,?,?,?,?,?)",
            (candle.symbol, candle.timestamp, candle.open, candle.high, candle.low, candle.close, candle.volume),
        )

    def append_trade(self, t: TradeRecord) -> bool:
        return self._write(
            "trades",
            "INSERT OR REPLACE INTO trades (id, symbol, result, pnl, stake, direction, duration, "
            "strategy, indicators, market, timestamp) VALUES (?,?,?,?,?,?,?,?,?,?,?)",
            t.to_row(),
        )

    # -- reads --
    def load_ticks(self, limit: Optional[int] = None) -> list[Tick]:
        rows = self._read("SELECT symbol, price, volume, timestamp FROM ticks", limit)
        return [Tick(symbol=s, price=p, timestamp=ts, volume=v) for s, p, v, ts in rows]

    def load_candles(self, symbol: Optional[str] = None, limit: Optional[int] = None) -> list[Candle]:
        sql = "SELECT symbol, timestamp, open, high, low, close, volume FROM candles"
        params: tuple = ()
        if symbol is not None:
            sql += " WHERE symbol = ?"
            params = (symbol,)
        rows = self._read(sql, limit, params)
        return [Candle(timestamp=ts, open=o, high=h, low=lo, close=c, volume=v, symbol=s)
                for s, ts, o, h, lo, c, v in rows]

    def load_trades(self, limit: Optional[int] = None) -> list[TradeRecord]:
        rows = self._read(
            "SELECT id, symbol, result, pnl, stake, direction, duration, strategy, "
            "indicators, market, timestamp FROM trades",
            limit,
        )
        trades = []
        for row in rows:
            try:
                trades.append(TradeRecord.from_row(row))
            except (ValueError, TypeError) as e:
                log.warning("Skipping unreadable trade row %s: %s", row[0], e)
        return trades

    def recent_win_rate(self, n: int = 50) -> float:
        trades = self.load_trades(limit=n)
        if not trades:
            return 0.5
        return sum(1 for t in trades if t.won) / len(trades)

    def total_trades(self) -> int:
        cur = self.conn.execute("SELECT COUNT(*) FROM trades")
        return cur.fetchone()[0]

    def count(self, table: str) -> int:
        if table not in TABLES:
            raise ValueError(f"unknown journal table {table!r}")
        return self.conn.execute(f"SELECT COUNT(*) FROM {table}").fetchone()[0]

    def close(self):
        self.conn.close()
