# Order API - cloud order endpoints used by the POS, with offline fallback
# Network-shaped failures become OfflineError; the cloud's own rejections become OrderApiError

import logging
from typing import Any, Dict, Iterable, List, Optional

import requests

from .errors import OfflineError, OrderApiError, is_likely_offline_error
from .offline_cache import OfflineOrderCache
from .orders import CreateOrderInput, OfflineOrderPayment, is_offline_order_id

logger = logging.getLogger(__name__)

OFFLINE_STATUS_CODES = (502, 503, 504)
USER_AGENT = 'IslaPOS-POS/1.0'


class CloudOrderApi:
    """REST client for the cloud order API"""

    def __init__(self, base_url: str, api_key: str = None, timeout: int = 15,
                 session: requests.Session = None):
        self.base_url = base_url.rstrip('/')
        self.timeout = timeout
        self.session = session or requests.Session()
        self.session.headers.update({
            'Content-Type': 'application/json',
            'User-Agent': USER_AGENT,
        })
        if api_key:
            self.session.headers['Authorization'] = f'Bearer {api_key}'

    def _request(self, method: str, path: str, **kwargs) -> Dict[str, Any]:
        endpoint = f"{self.base_url}{path}"
        try:
            response = self.session.request(method, endpoint, timeout=self.timeout, **kwargs)
        except requests.exceptions.RequestException as e:
            logger.warning("Order API %s %s failed: %s", method, path, e)
            raise OfflineError(f'Network error: {e}')

        if response.status_code in OFFLINE_STATUS_CODES:
            raise OfflineError(f'Cloud unavailable ({response.status_code})')

        try:
            body = response.json()
        except ValueError:
            body = None
        if not response.ok:
            message = body.get('error') if isinstance(body, dict) and body.get('error') else response.reason
            raise OrderApiError(str(message or 'Request failed'), response.status_code)
        return body if isinstance(body, dict) else {}

    def health(self) -> bool:
        """True when the cloud answers its health endpoint"""
        try:
            self._request('GET', '/api/health')
        except (OfflineError, OrderApiError):
            return False
        return True

    def create_order(self, payload: CreateOrderInput) -> Dict[str, Any]:
        """Create an order; returns {id, ticket_no}"""
        body = self._request('POST', '/api/orders', json=payload.to_dict())
        order_id = body.get('id') or body.get('orderId')
        if not order_id:
            raise OrderApiError('Order created without an id')
        return {'id': str(order_id), 'ticket_no': body.get('ticket_no')}

    def find_order_by_offline_local_id(self, restaurant_id: str, local_id: str) -> Optional[Dict[str, Any]]:
        """Cloud order tagged with local_id, or None"""
        local_id = (local_id or '').strip()
        if not local_id:
            return None
        body = self._request('GET', '/api/orders', params={
            'restaurant_id': restaurant_id,
            'offline_local_id': local_id,
        })
        orders = body.get('orders') or []
        return orders[0] if orders else None

    def mark_paid(self, order_id: str, payment: OfflineOrderPayment) -> Dict[str, Any]:
        body = self._request('POST', f'/api/orders/{order_id}/pay', json={
            'payment_method': payment.payment_method,
            'paid_at': payment.paid_at,
            'amount_tendered': payment.amount_tendered,
            'change_due': payment.change_due,
        })
        return {'id': str(body.get('id') or order_id), 'status': body.get('status') or 'paid'}


class PosOrderService:
    """Order path used by the register: cloud first, offline cache when the network is gone"""

    def __init__(self, api: CloudOrderApi, cache: OfflineOrderCache):
        self.api = api
        self.cache = cache

    def create_order(self, payload: CreateOrderInput) -> Dict[str, Any]:
        try:
            created = self.api.create_order(payload)
        except Exception as e:
            if not is_likely_offline_error(e):
                raise
            local_id = self.cache.upsert_offline_order(payload, payload.created_by_user_id)
            logger.warning("Cloud unreachable, ticket saved offline as %s: %s", local_id, e)
            return {'id': local_id, 'ticket_no': None, 'offline': True}
        return {'id': created['id'], 'ticket_no': created.get('ticket_no'), 'offline': False}

    def _mark_offline_paid(self, local_id: str, payment: OfflineOrderPayment) -> Dict[str, Any]:
        offline = self.cache.get_offline_order(local_id)
        if offline is None:
            raise OfflineError('Offline save failed')
        self.cache.upsert_offline_order(
            offline.payload,
            offline.created_by_user_id,
            local_id=offline.local_id,
            status='paid',
            payment=payment,
        )
        self.cache.apply_inventory_for_order(offline.local_id, offline.payload.inventory_deltas())
        return {'id': offline.local_id, 'status': 'paid', 'offline': True}

    def mark_paid(self, order_id: str, payment: OfflineOrderPayment,
                  items: Iterable[Dict[str, Any]] = ()) -> Dict[str, Any]:
        """
        Record payment for an order.
        Local ids are updated in the cache; cloud ids fall back to the cache
        only if the order is also queued there. items feed the inventory decrement.
        """
        if is_offline_order_id(order_id):
            return self._mark_offline_paid(order_id, payment)
        try:
            paid = self.api.mark_paid(order_id, payment)
        except Exception as e:
            if not is_likely_offline_error(e):
                raise
            return self._mark_offline_paid(order_id, payment)
        self.cache.apply_inventory_for_order(order_id, _deltas(items))
        return {'id': paid['id'], 'status': paid['status'], 'offline': False}

    def list_orders(self, cloud_orders: List[Dict[str, Any]] = None) -> List[Dict[str, Any]]:
        """Queued offline tickets followed by cloud summaries, in one shape."""
        return self.cache.list_offline_order_summaries() + list(cloud_orders or [])


def _deltas(items: Iterable[Dict[str, Any]]) -> List[Dict[str, Any]]:
    return [{'menu_item_id': it.get('menu_item_id'), 'qty': it.get('qty')} for it in items or ()]
