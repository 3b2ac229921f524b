# LAN Printer Transport - raw TCP printing and port 9100 discovery
# Thermal printers expose a bare TCP listener with no discovery protocol,
# so discovery is a bounded, timed connect-scan of the host's /24

import logging
import math
import socket
import threading
from concurrent.futures import ThreadPoolExecutor
from typing import Dict, List, Optional

from .errors import PrinterUnreachableError

logger = logging.getLogger(__name__)

RAW_PRINT_PORT = 9100
DEFAULT_SEND_TIMEOUT_MS = 4000
DEFAULT_PROBE_TIMEOUT_MS = 250
DEFAULT_CONCURRENCY = 50
MIN_PROBE_TIMEOUT_MS, MAX_PROBE_TIMEOUT_MS = 50, 2000
MIN_CONCURRENCY, MAX_CONCURRENCY = 1, 200


def clamp(value, low: int, high: int, default: int) -> int:
    """Coerce value to int within [low, high]; default when it is not numeric."""
    try:
        number = float(value)
    except (TypeError, ValueError):
        return max(low, min(high, default))
    except OverflowError:
        return high if value > 0 else low
    if math.isnan(number):
        number = default
    elif math.isinf(number):
        return high if number > 0 else low
    return max(low, min(high, int(number)))


def get_lan_address() -> Optional[str]:
    """Best guess at this host's non-loopback IPv4 address."""
    # No packets are sent; connect() on UDP only selects the outbound interface
    for target in ('8.8.8.8', '1.1.1.1'):
        try:
            with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as s:
                s.connect((target, 80))
                ip = s.getsockname()[0]
                if ip and not ip.startswith('127.'):
                    return ip
        except OSError:
            continue
    try:
        infos = socket.getaddrinfo(socket.gethostname(), None, family=socket.AF_INET)
    except OSError:
        return None
    for info in infos:
        ip = info[4][0]
        if ip and not ip.startswith('127.'):
            return ip
    return None


def subnet_candidates(own_ip: Optional[str]) -> List[str]:
    """Every .1-.254 address of own_ip's /24 except own_ip itself."""
    if not own_ip:
        return []
    parts = own_ip.split('.')
    if len(parts) != 4 or not all(p.isdigit() and 0 <= int(p) <= 255 for p in parts):
        return []
    prefix = '.'.join(parts[:3]) + '.'
    return [f'{prefix}{i}' for i in range(1, 255) if f'{prefix}{i}' != own_ip]


class LanPrinterTransport:
    """Sends encoded tickets to printers and scans the LAN for listeners"""

    def __init__(self, send_timeout_ms: int = DEFAULT_SEND_TIMEOUT_MS, lan_address=get_lan_address):
        self.send_timeout_ms = send_timeout_ms
        self._lan_address = lan_address

    def lan_address(self) -> Optional[str]:
        return self._lan_address()

    def send(self, ip: str, port: int, data: bytes, timeout_ms: int = None):
        """Stream data to ip:port; any failure raises PrinterUnreachableError."""
        timeout = (timeout_ms or self.send_timeout_ms) / 1000.0
        sock = None
        try:
            sock = socket.create_connection((ip, int(port)), timeout=timeout)
            sock.settimeout(timeout)
            sock.sendall(data)
            sock.shutdown(socket.SHUT_WR)
            logger.info("Sent %d bytes to printer %s:%s", len(data), ip, port)
        except socket.timeout:
            logger.warning("Printer %s:%s timed out", ip, port)
            raise PrinterUnreachableError('Printer connection timed out')
        except OSError as e:
            logger.warning("Printer %s:%s unreachable: %s", ip, port, e)
            raise PrinterUnreachableError(str(e) or 'Printer connection error')
        finally:
            if sock is not None:
                sock.close()

    def probe(self, ip: str, port: int, timeout_ms: int) -> bool:
        """One timed connect attempt; errors and timeouts count as negative."""
        try:
            with socket.create_connection((ip, port), timeout=timeout_ms / 1000.0):
                return True
        except OSError:
            return False

    def discover(self, port: int = RAW_PRINT_PORT, timeout_ms: int = DEFAULT_PROBE_TIMEOUT_MS,
                 concurrency: int = DEFAULT_CONCURRENCY) -> List[Dict]:
        """Probe every /24 neighbour on port with a fixed pool of workers."""
        timeout_ms = clamp(timeout_ms, MIN_PROBE_TIMEOUT_MS, MAX_PROBE_TIMEOUT_MS, DEFAULT_PROBE_TIMEOUT_MS)
        workers = clamp(concurrency, MIN_CONCURRENCY, MAX_CONCURRENCY, DEFAULT_CONCURRENCY)

        candidates = subnet_candidates(self.lan_address())
        if not candidates:
            logger.warning("No LAN IPv4 address; discovery skipped")
            return []

        hits = []
        hits_lock = threading.Lock()

        def check(ip):
            if self.probe(ip, port, timeout_ms):
                with hits_lock:
                    hits.append({'ip': ip, 'port': port})

        logger.info("Scanning %d addresses on port %d (timeout %dms, %d workers)",
                    len(candidates), port, timeout_ms, workers)
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix='lan-scan') as pool:
            list(pool.map(check, candidates))

        hits.sort(key=lambda hit: socket.inet_aton(hit['ip']))
        logger.info("Discovery found %d printer(s)", len(hits))
        return hits


if __name__ == '__main__':
    logging.basicConfig(level=logging.INFO)

    transport = LanPrinterTransport()
    print(f"LAN address: {transport.lan_address()}")
    for hit in transport.discover(timeout_ms=200, concurrency=100):
        print(f"  {hit['ip']}:{hit['port']}")
