# Tests for the offline order cache

import csv
import io
import json

import pytest

from pos_edge.offline_cache import OfflineOrderCache
from pos_edge.orders import (
    CreateOrderInput, OfflineOrderPayment, OrderItem, is_offline_order_id, new_local_id,
)


def make_payload(total=21.30, qty=2, restaurant_id='r1'):
    return CreateOrderInput(
        restaurant_id=restaurant_id,
        created_by_user_id='u1',
        subtotal=19.72,
        tax=1.58,
        total=total,
        items=[OrderItem(menu_item_id='burger', name='Burger', unit_price=9.86, qty=qty, line_total=19.72)],
        order_type='takeout',
        customer_name='Ana',
    )


class TestOrderIds:

    def test_local_ids_are_recognizable(self):
        local_id = new_local_id()

        assert is_offline_order_id(local_id)
        assert not is_offline_order_id('8f14e45f-ceea-467f-a8c5-1a2b3c4d5e6f')
        assert not is_offline_order_id(None)
        assert new_local_id() != local_id

    def test_unknown_order_type_rejected(self):
        with pytest.raises(ValueError):
            CreateOrderInput(restaurant_id='r1', created_by_user_id='u1', subtotal=1, tax=0, total=1,
                             order_type='drive_thru')

    def test_payload_round_trips_through_dict(self):
        payload = make_payload()

        assert CreateOrderInput.from_dict(payload.to_dict()) == payload


class TestOfflineOrderCache:

    @pytest.fixture(autouse=True)
    def setup_cache(self, tmp_path):
        self.db_path = tmp_path / 'pos_offline.db'
        self.cache = OfflineOrderCache('r1', self.db_path)

    def test_upsert_generates_local_id(self):
        local_id = self.cache.upsert_offline_order(make_payload(), 'u1')

        order = self.cache.get_offline_order(local_id)
        assert is_offline_order_id(local_id)
        assert order.status == 'open'
        assert order.payload.total == 21.30
        assert order.payload.items[0].menu_item_id == 'burger'
        assert order.payment is None

    def test_resave_preserves_created_at_and_status(self):
        local_id = self.cache.upsert_offline_order(make_payload(), 'u1', created_at='2024-01-01T09:00:00.000Z')
        payment = OfflineOrderPayment(payment_method='cash', paid_at='2024-01-01T09:05:00.000Z',
                                      amount_tendered=25.0, change_due=3.70)
        self.cache.upsert_offline_order(make_payload(), 'u1', local_id=local_id, status='paid', payment=payment)

        self.cache.upsert_offline_order(make_payload(total=30.0), 'u1', local_id=local_id)

        order = self.cache.get_offline_order(local_id)
        assert order.created_at == '2024-01-01T09:00:00.000Z'
        assert order.status == 'paid'
        assert order.payment == payment
        assert order.payload.total == 30.0
        assert self.cache.count() == 1

    def test_unknown_status_rejected(self):
        with pytest.raises(ValueError):
            self.cache.upsert_offline_order(make_payload(), 'u1', status='refunded')

    def test_list_order_and_remove(self):
        first = self.cache.upsert_offline_order(make_payload(), 'u1')
        second = self.cache.upsert_offline_order(make_payload(), 'u1')

        assert [o.local_id for o in self.cache.list_offline_orders()] == [second, first]
        assert [o.local_id for o in self.cache.list_offline_orders(oldest_first=True)] == [first, second]

        assert self.cache.remove_offline_order(first) is True
        assert self.cache.remove_offline_order(first) is False
        assert self.cache.get_offline_order(first) is None

    def test_summaries_match_cloud_shape(self):
        local_id = self.cache.upsert_offline_order(make_payload(), 'u1')

        summary = self.cache.list_offline_order_summaries()[0]

        assert summary['id'] == local_id
        assert summary['ticket_no'] is None
        assert summary['status'] == 'open'
        assert summary['total'] == 21.30
        assert summary['order_type'] == 'takeout'
        assert summary['payment_method'] is None

    def test_scoped_per_restaurant(self):
        self.cache.upsert_offline_order(make_payload(), 'u1')
        other = OfflineOrderCache('r2', self.db_path)

        assert other.list_offline_orders() == []
        assert other.count() == 0

    def test_survives_reopen(self):
        local_id = self.cache.upsert_offline_order(make_payload(), 'u1')

        reopened = OfflineOrderCache('r1', self.db_path)

        assert reopened.get_offline_order(local_id).payload.customer_name == 'Ana'

    def test_sync_map(self):
        assert self.cache.get_synced_cloud_order_id('local_1') is None

        self.cache.mark_offline_order_synced('local_1', 'cloud-9')

        assert self.cache.get_synced_cloud_order_id('local_1') == 'cloud-9'


class TestInventory:

    @pytest.fixture(autouse=True)
    def setup_cache(self, tmp_path):
        self.cache = OfflineOrderCache('r1', tmp_path / 'pos_offline.db')
        self.cache.set_inventory_item('burger', tracked=True, stock=10)
        self.cache.set_inventory_item('fries', tracked=False, stock=5)

    def test_delta_only_touches_tracked_items(self):
        changed = self.cache.apply_inventory_delta([
            {'menu_item_id': 'burger', 'qty': 2},
            {'menu_item_id': 'fries', 'qty': 1},
            {'menu_item_id': 'burger', 'qty': -4},
            {'menu_item_id': 'burger', 'qty': 'x'},
        ])

        inventory = self.cache.load_inventory()
        assert changed == 1
        assert inventory['burger']['stock'] == 8
        assert inventory['fries']['stock'] == 5

    def test_set_item_keeps_unspecified_fields(self):
        self.cache.set_inventory_item('burger', stock=3)

        item = self.cache.load_inventory()['burger']
        assert item['tracked'] is True
        assert item['stock'] == 3

    def test_order_decrement_applies_once(self):
        deltas = [{'menu_item_id': 'burger', 'qty': 2}]

        assert self.cache.apply_inventory_for_order('local_1', deltas) is True
        assert self.cache.apply_inventory_for_order('local_1', deltas) is False

        assert self.cache.load_inventory()['burger']['stock'] == 8


class TestExport:

    def test_export_json_and_csv(self, tmp_path):
        cache = OfflineOrderCache('r1', tmp_path / 'pos_offline.db')
        local_id = cache.upsert_offline_order(make_payload(qty=3), 'u1')

        json_text, csv_text = cache.export_offline_tickets()

        exported = json.loads(json_text)
        assert exported['restaurant_id'] == 'r1'
        assert exported['tickets'][0]['local_id'] == local_id
        assert exported['tickets'][0]['payload']['total'] == 21.30

        rows = list(csv.DictReader(io.StringIO(csv_text)))
        assert list(rows[0].keys()) == ['local_id', 'created_at', 'status', 'order_type', 'subtotal',
                                        'tax', 'total', 'item_count', 'payment_method', 'paid_at']
        assert rows[0]['local_id'] == local_id
        assert rows[0]['total'] == '21.3'
        assert float(rows[0]['item_count']) == 3
