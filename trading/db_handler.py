"""
Database Handler for Trading Module
Handles SQLite connection and schema initialization.
"""

import sqlite3
import os
import logging
import threading
from typing import Dict, List

logger = logging.getLogger(__name__)

DB_PATH = os.path.join(os.getcwd(), 'data', 'sniper.db')

POSITION_COLUMNS = [
    'token_key', 'token_address', 'symbol', 'name', 'buy_tx_hash', 'buy_timestamp', 'buy_price_base',
    'amount_tokens', 'amount_spent_base', 'decimals', 'sell_tx_hash', 'sell_timestamp',
    'sell_price_base', 'profit_loss_percent', 'status', 'error',
]

ORDER_COLUMNS = [
    'id', 'token_address', 'order_type', 'target_price_base', 'amount_tokens',
    'slippage_percent', 'created_at', 'executed_at', 'tx_hash', 'status', 'error',
]


class TradingDB:
    """
    Positions keyed by lowercase token address, limit orders by order id.
    Prices and amounts are TEXT so decimal strings round-trip unchanged.
    """

    def __init__(self, db_path: str = DB_PATH):
        self.db_path = db_path
        self._ensure_db_dir()
        # One shared connection so ":memory:" keeps its tables
        self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._lock = threading.Lock()
        self._init_db()

    def _ensure_db_dir(self):
        if self.db_path == ':memory:':
            return
        directory = os.path.dirname(self.db_path)
        if directory and not os.path.exists(directory):
            os.makedirs(directory)

    def _init_db(self):
        """Initialize database schema."""
        try:
            with self._lock, self._conn:
                cursor = self._conn.cursor()

                # Table: positions
                cursor.execute('''
                CREATE TABLE IF NOT EXISTS positions (
                    token_key TEXT PRIMARY KEY,
                    token_address TEXT NOT NULL,
                    symbol TEXT NOT NULL,
                    name TEXT NOT NULL,

                    -- Entry
                    buy_tx_hash TEXT NOT NULL,
                    buy_timestamp INTEGER NOT NULL,
                    buy_price_base TEXT NOT NULL,
                    amount_tokens TEXT NOT NULL,
                    amount_spent_base TEXT NOT NULL,
                    decimals INTEGER NOT NULL,

                    -- Exit (NULL while holding)
                    sell_tx_hash TEXT,
                    sell_timestamp INTEGER,
                    sell_price_base TEXT,
                    profit_loss_percent TEXT,

                    status TEXT DEFAULT 'holding',
                    error TEXT
                )
                ''')
                cursor.execute('CREATE INDEX IF NOT EXISTS idx_positions_status ON positions(status)')

                # Table: limit_orders
                cursor.execute('''
                CREATE TABLE IF NOT EXISTS limit_orders (
                    id TEXT PRIMARY KEY,
                    token_address TEXT NOT NULL,
                    order_type TEXT NOT NULL,
                    target_price_base TEXT NOT NULL,
                    amount_tokens TEXT NOT NULL,
                    slippage_percent TEXT NOT NULL,
                    created_at INTEGER NOT NULL,
                    executed_at INTEGER,
                    tx_hash TEXT,
                    status TEXT DEFAULT 'pending',
                    error TEXT
                )
                ''')
                cursor.execute('CREATE INDEX IF NOT EXISTS idx_orders_token ON limit_orders(token_address)')
            logger.info("Trading database initialized successfully.")
        except Exception as e:
            logger.error(f"Failed to initialize trading database: {e}")
            raise

    def _upsert(self, table: str, columns: List[str], data: Dict) -> bool:
        placeholders = ', '.join(['?'] * len(columns))
        sql = f"INSERT OR REPLACE INTO {table} ({', '.join(columns)}) VALUES ({placeholders})"
        try:
            with self._lock, self._conn:
                self._conn.execute(sql, [data.get(c) for c in columns])
            return True
        except sqlite3.Error as e:
            logger.error(f"Error writing {table}: {e}")
            return False

    def _select_all(self, table: str) -> List[Dict]:
        try:
            with self._lock:
                rows = self._conn.execute(f"SELECT * FROM {table}").fetchall()
            return [dict(row) for row in rows]
        except sqlite3.Error as e:
            logger.error(f"Error reading {table}: {e}")
            return []

    def save_position(self, data: Dict) -> bool:
        """Insert or replace a position record."""
        data = dict(data, token_key=data['token_address'].lower())
        return self._upsert('positions', POSITION_COLUMNS, data)

    def get_positions(self) -> List[Dict]:
        rows = self._select_all('positions')
        for row in rows:
            row.pop('token_key', None)
        return rows

    def save_order(self, data: Dict) -> bool:
        """Insert or replace a limit order record."""
        data = dict(data, slippage_percent=str(data['slippage_percent']))
        return self._upsert('limit_orders', ORDER_COLUMNS, data)

    def get_orders(self) -> List[Dict]:
        rows = self._select_all('limit_orders')
        for row in rows:
            row['slippage_percent'] = float(row['slippage_percent'])
        return rows

    def close(self):
        with self._lock:
            self._conn.close()
