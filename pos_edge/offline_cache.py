# Offline Order Cache - SQLite storage for tickets taken while the cloud is unreachable
# Also holds the local_id -> cloud order id sync map and the device's inventory counts

import csv
import io
import json
import logging
import sqlite3
import threading
from typing import Any, Dict, Iterable, List, Optional, Tuple

from .clock import utc_now_iso
from .orders import (
    OFFLINE_STATUSES, CreateOrderInput, OfflineOrder, OfflineOrderPayment, new_local_id,
)

logger = logging.getLogger(__name__)

EXPORT_COLUMNS = [
    'local_id', 'created_at', 'status', 'order_type', 'subtotal', 'tax', 'total',
    'item_count', 'payment_method', 'paid_at',
]


class OfflineOrderCache:
    """SQLite-backed offline ticket queue for one restaurant on this device"""

    DB_PATH = "pos_offline.db"

    def __init__(self, restaurant_id: str, db_path: str = None):
        self.restaurant_id = restaurant_id
        self.db_path = str(db_path or self.DB_PATH)
        self.lock = threading.Lock()
        self._init_db()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        return conn

    def _init_db(self):
        """Initialize database schema"""
        with self.lock:
            conn = self._connect()
            cursor = conn.cursor()

            # seq keeps insertion order; re-saving a ticket keeps its seq
            cursor.execute('''
                CREATE TABLE IF NOT EXISTS offline_orders (
                    seq INTEGER PRIMARY KEY AUTOINCREMENT,
                    restaurant_id TEXT NOT NULL,
                    local_id TEXT NOT NULL,
                    created_by_user_id TEXT,
                    created_at TEXT NOT NULL,
                    status TEXT NOT NULL DEFAULT 'open',
                    payload_json TEXT NOT NULL,
                    payment_json TEXT,
                    updated_at TEXT,
                    UNIQUE (restaurant_id, local_id)
                )
            ''')

            cursor.execute('''
                CREATE TABLE IF NOT EXISTS offline_sync_map (
                    restaurant_id TEXT NOT NULL,
                    local_id TEXT NOT NULL,
                    cloud_order_id TEXT NOT NULL,
                    synced_at TEXT,
                    PRIMARY KEY (restaurant_id, local_id)
                )
            ''')

            cursor.execute('''
                CREATE TABLE IF NOT EXISTS inventory (
                    restaurant_id TEXT NOT NULL,
                    menu_item_id TEXT NOT NULL,
                    tracked INTEGER DEFAULT 0,
                    stock REAL DEFAULT 0,
                    updated_at TEXT,
                    PRIMARY KEY (restaurant_id, menu_item_id)
                )
            ''')

            # One row per order whose sale already decremented inventory
            cursor.execute('''
                CREATE TABLE IF NOT EXISTS inventory_applied (
                    restaurant_id TEXT NOT NULL,
                    order_key TEXT NOT NULL,
                    applied_at TEXT,
                    PRIMARY KEY (restaurant_id, order_key)
                )
            ''')

            conn.commit()
            conn.close()

    # -- orders -----------------------------------------------------------

    def _row_to_order(self, row: sqlite3.Row) -> Optional[OfflineOrder]:
        try:
            payload = CreateOrderInput.from_dict(json.loads(row['payload_json']))
            payment = OfflineOrderPayment.from_dict(json.loads(row['payment_json'])) if row['payment_json'] else None
        except (ValueError, TypeError) as e:
            logger.warning("Skipping unreadable offline ticket %s: %s", row['local_id'], e)
            return None
        return OfflineOrder(
            local_id=row['local_id'],
            restaurant_id=row['restaurant_id'],
            created_by_user_id=row['created_by_user_id'] or '',
            created_at=row['created_at'],
            status=row['status'],
            payload=payload,
            payment=payment,
        )

    def upsert_offline_order(self, payload: CreateOrderInput, created_by_user_id: str,
                             local_id: str = None, status: str = None,
                             payment: OfflineOrderPayment = None, created_at: str = None) -> str:
        """
        Save a ticket; returns its local_id.
        Re-saving an existing local_id keeps its created_at, and keeps its
        status/payment unless new ones are passed.
        """
        if status is not None and status not in OFFLINE_STATUSES:
            raise ValueError(f'Unknown offline status: {status}')
        local_id = local_id or new_local_id()
        now_iso = utc_now_iso()
        payload_json = json.dumps(payload.to_dict())
        payment_json = json.dumps(payment.__dict__) if payment is not None else None

        with self.lock:
            conn = self._connect()
            cursor = conn.cursor()
            cursor.execute('''
                SELECT status, payment_json FROM offline_orders
                WHERE restaurant_id = ? AND local_id = ?
            ''', (self.restaurant_id, local_id))
            existing = cursor.fetchone()

            if existing:
                cursor.execute('''
                    UPDATE offline_orders
                    SET created_by_user_id = ?, status = ?, payload_json = ?, payment_json = ?, updated_at = ?
                    WHERE restaurant_id = ? AND local_id = ?
                ''', (created_by_user_id,
                      status or existing['status'] or 'open',
                      payload_json,
                      payment_json if payment is not None else existing['payment_json'],
                      now_iso, self.restaurant_id, local_id))
            else:
                cursor.execute('''
                    INSERT INTO offline_orders
                    (restaurant_id, local_id, created_by_user_id, created_at, status,
                     payload_json, payment_json, updated_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                ''', (self.restaurant_id, local_id, created_by_user_id, created_at or now_iso,
                      status or 'open', payload_json, payment_json, now_iso))
            conn.commit()
            conn.close()

        logger.info("Offline ticket %s saved (%s)", local_id, 'updated' if existing else 'new')
        return local_id

    def remove_offline_order(self, local_id: str) -> bool:
        with self.lock:
            conn = self._connect()
            cursor = conn.cursor()
            cursor.execute('DELETE FROM offline_orders WHERE restaurant_id = ? AND local_id = ?',
                           (self.restaurant_id, local_id))
            removed = cursor.rowcount > 0
            conn.commit()
            conn.close()
        return removed

    def get_offline_order(self, local_id: str) -> Optional[OfflineOrder]:
        with self.lock:
            conn = self._connect()
            cursor = conn.cursor()
            cursor.execute('SELECT * FROM offline_orders WHERE restaurant_id = ? AND local_id = ?',
                           (self.restaurant_id, local_id))
            row = cursor.fetchone()
            conn.close()
        return self._row_to_order(row) if row else None

    def list_offline_orders(self, oldest_first: bool = False) -> List[OfflineOrder]:
        """Queued tickets, newest first unless oldest_first."""
        direction = 'ASC' if oldest_first else 'DESC'
        with self.lock:
            conn = self._connect()
            cursor = conn.cursor()
            cursor.execute(f'SELECT * FROM offline_orders WHERE restaurant_id = ? ORDER BY seq {direction}',
                           (self.restaurant_id,))
            rows = cursor.fetchall()
            conn.close()
        return [o for o in (self._row_to_order(row) for row in rows) if o is not None]

    def list_offline_order_summaries(self) -> List[Dict[str, Any]]:
        return [order.summary() for order in self.list_offline_orders()]

    def count(self) -> int:
        with self.lock:
            conn = self._connect()
            cursor = conn.cursor()
            cursor.execute('SELECT COUNT(*) FROM offline_orders WHERE restaurant_id = ?', (self.restaurant_id,))
            total = cursor.fetchone()[0]
            conn.close()
        return total

    # -- sync map ---------------------------------------------------------

    def mark_offline_order_synced(self, local_id: str, cloud_order_id: str):
        """Remember which cloud order a local ticket became"""
        with self.lock:
            conn = self._connect()
            cursor = conn.cursor()
            cursor.execute('''
                INSERT OR REPLACE INTO offline_sync_map (restaurant_id, local_id, cloud_order_id, synced_at)
                VALUES (?, ?, ?, ?)
            ''', (self.restaurant_id, local_id, cloud_order_id, utc_now_iso()))
            conn.commit()
            conn.close()

    def get_synced_cloud_order_id(self, local_id: str) -> Optional[str]:
        with self.lock:
            conn = self._connect()
            cursor = conn.cursor()
            cursor.execute('''
                SELECT cloud_order_id FROM offline_sync_map WHERE restaurant_id = ? AND local_id = ?
            ''', (self.restaurant_id, local_id))
            row = cursor.fetchone()
            conn.close()
        return row[0] if row else None

    # -- inventory --------------------------------------------------------

    def load_inventory(self) -> Dict[str, Dict[str, Any]]:
        with self.lock:
            conn = self._connect()
            cursor = conn.cursor()
            cursor.execute('SELECT * FROM inventory WHERE restaurant_id = ?', (self.restaurant_id,))
            rows = cursor.fetchall()
            conn.close()
        return {
            row['menu_item_id']: {
                'tracked': bool(row['tracked']),
                'stock': row['stock'],
                'updated_at': row['updated_at'],
            }
            for row in rows
        }

    def set_inventory_item(self, menu_item_id: str, tracked: bool = None, stock: float = None):
        current = self.load_inventory().get(menu_item_id, {'tracked': False, 'stock': 0})
        with self.lock:
            conn = self._connect()
            cursor = conn.cursor()
            cursor.execute('''
                INSERT OR REPLACE INTO inventory (restaurant_id, menu_item_id, tracked, stock, updated_at)
                VALUES (?, ?, ?, ?, ?)
            ''', (self.restaurant_id, menu_item_id,
                  1 if (current['tracked'] if tracked is None else tracked) else 0,
                  current['stock'] if stock is None else float(stock),
                  utc_now_iso()))
            conn.commit()
            conn.close()

    @staticmethod
    def _decrement(cursor, restaurant_id: str, deltas: Iterable[Dict[str, Any]], now_iso: str) -> int:
        changed = 0
        for delta in deltas:
            try:
                qty = float(delta.get('qty'))
            except (TypeError, ValueError):
                continue
            if qty <= 0:
                continue
            cursor.execute('''
                UPDATE inventory SET stock = stock - ?, updated_at = ?
                WHERE restaurant_id = ? AND menu_item_id = ? AND tracked = 1
            ''', (qty, now_iso, restaurant_id, str(delta.get('menu_item_id') or '')))
            changed += cursor.rowcount
        return changed

    def apply_inventory_delta(self, deltas: Iterable[Dict[str, Any]]) -> int:
        """Decrement tracked items by positive quantities; returns rows changed."""
        with self.lock:
            conn = self._connect()
            cursor = conn.cursor()
            changed = self._decrement(cursor, self.restaurant_id, deltas, utc_now_iso())
            conn.commit()
            conn.close()
        return changed

    def apply_inventory_for_order(self, order_key: str, deltas: Iterable[Dict[str, Any]]) -> bool:
        """Decrement inventory for one sale at most once; False if already applied."""
        now_iso = utc_now_iso()
        with self.lock:
            conn = self._connect()
            cursor = conn.cursor()
            cursor.execute('''
                INSERT OR IGNORE INTO inventory_applied (restaurant_id, order_key, applied_at)
                VALUES (?, ?, ?)
            ''', (self.restaurant_id, order_key, now_iso))
            if cursor.rowcount == 0:
                conn.close()
                return False
            self._decrement(cursor, self.restaurant_id, deltas, now_iso)
            conn.commit()
            conn.close()
        return True

    # -- export -----------------------------------------------------------

    def export_offline_tickets(self) -> Tuple[str, str]:
        """JSON dump and CSV summary of every queued ticket."""
        orders = self.list_offline_orders()
        exported = {
            'exported_at': utc_now_iso(),
            'restaurant_id': self.restaurant_id,
            'tickets': [
                {
                    'local_id': o.local_id,
                    'restaurant_id': o.restaurant_id,
                    'created_by_user_id': o.created_by_user_id,
                    'created_at': o.created_at,
                    'status': o.status,
                    'payload': o.payload.to_dict(),
                    'payment': o.payment.__dict__ if o.payment else None,
                }
                for o in orders
            ],
        }

        buf = io.StringIO()
        writer = csv.writer(buf, lineterminator='\n')
        writer.writerow(EXPORT_COLUMNS)
        for o in orders:
            writer.writerow([
                o.local_id,
                o.created_at,
                o.status,
                o.payload.order_type or 'counter',
                o.payload.subtotal,
                o.payload.tax,
                o.payload.total,
                sum(float(it.qty) for it in o.payload.items),
                o.payment.payment_method if o.payment else '',
                o.payment.paid_at if o.payment else '',
            ])
        return json.dumps(exported, indent=2), buf.getvalue()
