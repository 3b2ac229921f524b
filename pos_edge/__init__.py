# IslaPOS Edge Gateway
# LAN receipt printing, event outbox and offline order sync

__version__ = '0.1.0'

from .errors import GatewayError, OfflineError, OrderApiError, is_likely_offline_error
from .gateway import EdgeGateway, create_server
from .local_store import LocalStore
from .offline_cache import OfflineOrderCache
from .order_api import CloudOrderApi, PosOrderService
from .print_queue import PrintQueue, PrintQueueWorker
from .printer_transport import LanPrinterTransport
from .settings import GatewaySettings, load_settings
from .sync_reconciler import ConnectivityMonitor, OfflineOrderReconciler, SyncReport

__all__ = [
    'GatewayError',
    'OfflineError',
    'OrderApiError',
    'is_likely_offline_error',
    'EdgeGateway',
    'create_server',
    'LocalStore',
    'OfflineOrderCache',
    'CloudOrderApi',
    'PosOrderService',
    'PrintQueue',
    'PrintQueueWorker',
    'LanPrinterTransport',
    'GatewaySettings',
    'load_settings',
    'ConnectivityMonitor',
    'OfflineOrderReconciler',
    'SyncReport',
]
