# Orders - order payloads shared by the cloud order API and the offline cache

import secrets
import time
from dataclasses import asdict, dataclass, field, fields
from typing import Any, Dict, List, Optional

ORDER_TYPES = ('counter', 'dine_in', 'takeout', 'delivery')
OFFLINE_STATUSES = ('open', 'paid', 'canceled')
LOCAL_ID_PREFIX = 'local_'


def new_local_id() -> str:
    """Locally generated order id, recognizable by its prefix."""
    return f'{LOCAL_ID_PREFIX}{int(time.time() * 1000)}_{secrets.token_hex(6)}'


def is_offline_order_id(order_id: str) -> bool:
    return isinstance(order_id, str) and order_id.startswith(LOCAL_ID_PREFIX)


@dataclass
class OrderItem:
    menu_item_id: str
    name: str
    unit_price: float
    qty: float
    line_total: float

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'OrderItem':
        return cls(
            menu_item_id=str(data.get('menu_item_id') or ''),
            name=str(data.get('name') or ''),
            unit_price=float(data.get('unit_price') or 0),
            qty=float(data.get('qty') or 0),
            line_total=float(data.get('line_total') or 0),
        )


@dataclass
class CreateOrderInput:
    """Full order-creation request as the POS builds it"""
    restaurant_id: str
    created_by_user_id: str
    subtotal: float
    tax: float
    total: float
    items: List[OrderItem] = field(default_factory=list)
    order_type: str = 'counter'
    offline_local_id: Optional[str] = None
    customer_name: Optional[str] = None
    customer_phone: Optional[str] = None
    id_verified: Optional[bool] = None
    id_verified_at: Optional[str] = None
    id_verified_by_user_id: Optional[str] = None
    delivery_address1: Optional[str] = None
    delivery_address2: Optional[str] = None
    delivery_city: Optional[str] = None
    delivery_state: Optional[str] = None
    delivery_postal_code: Optional[str] = None
    delivery_instructions: Optional[str] = None

    def __post_init__(self):
        if self.order_type not in ORDER_TYPES:
            raise ValueError(f'Unknown order type: {self.order_type}')

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'CreateOrderInput':
        known = {f.name for f in fields(cls)}
        values = {k: v for k, v in data.items() if k in known}
        values['items'] = [OrderItem.from_dict(it) for it in data.get('items') or [] if isinstance(it, dict)]
        values['order_type'] = data.get('order_type') or 'counter'
        for key in ('subtotal', 'tax', 'total'):
            values[key] = float(data.get(key) or 0)
        return cls(**values)

    def inventory_deltas(self) -> List[Dict[str, Any]]:
        return [{'menu_item_id': it.menu_item_id, 'qty': it.qty} for it in self.items]


@dataclass
class OfflineOrderPayment:
    payment_method: str
    paid_at: str
    amount_tendered: Optional[float] = None
    change_due: Optional[float] = None

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> Optional['OfflineOrderPayment']:
        if not data:
            return None
        return cls(
            payment_method=str(data.get('payment_method') or ''),
            paid_at=str(data.get('paid_at') or ''),
            amount_tendered=data.get('amount_tendered'),
            change_due=data.get('change_due'),
        )


@dataclass
class OfflineOrder:
    local_id: str
    restaurant_id: str
    created_by_user_id: str
    created_at: str
    status: str
    payload: CreateOrderInput
    payment: Optional[OfflineOrderPayment] = None

    def summary(self) -> Dict[str, Any]:
        """Same shape as a cloud order summary so lists can mix both."""
        return {
            'id': self.local_id,
            'ticket_no': None,
            'status': self.status,
            'total': float(self.payload.total),
            'created_at': self.created_at,
            'order_type': self.payload.order_type or 'counter',
            'payment_method': self.payment.payment_method if self.payment else None,
            'paid_at': self.payment.paid_at if self.payment else None,
            'amount_tendered': self.payment.amount_tendered if self.payment else None,
            'change_due': self.payment.change_due if self.payment else None,
        }
