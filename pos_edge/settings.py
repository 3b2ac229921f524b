# Settings - process environment configuration for the edge gateway
# Read once at startup; the stored config file supplies the cloud URL when the env does not

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Optional

DEFAULT_PORT = 9123
DEFAULT_HOST = '0.0.0.0'
DEFAULT_PRINT_WORKER_TICK_MS = 1500
DEFAULT_PRINTER_TIMEOUT_MS = 4000


def _int_env(environ: Mapping[str, str], key: str, default: int) -> int:
    raw = (environ.get(key) or '').strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


@dataclass
class GatewaySettings:
    """Startup settings for one gateway process"""
    port: int = DEFAULT_PORT
    host: str = DEFAULT_HOST
    cloud_base_url: str = ''
    data_dir: Path = Path('data')
    print_worker_tick_ms: int = DEFAULT_PRINT_WORKER_TICK_MS
    printer_timeout_ms: int = DEFAULT_PRINTER_TIMEOUT_MS
    log_level: str = 'INFO'
    log_file: Optional[Path] = None


def load_settings(environ: Mapping[str, str] = None) -> GatewaySettings:
    """Build GatewaySettings from the process environment"""
    environ = os.environ if environ is None else environ

    data_dir = Path((environ.get('EDGE_GATEWAY_DATA_DIR') or '').strip() or Path.cwd() / 'data')
    log_file = (environ.get('EDGE_GATEWAY_LOG_FILE') or '').strip()
    tick = _int_env(environ, 'PRINT_WORKER_TICK_MS', DEFAULT_PRINT_WORKER_TICK_MS)

    return GatewaySettings(
        port=_int_env(environ, 'EDGE_GATEWAY_PORT', DEFAULT_PORT),
        host=(environ.get('EDGE_GATEWAY_HOST') or '').strip() or DEFAULT_HOST,
        cloud_base_url=(environ.get('CLOUD_BASE_URL') or '').strip(),
        data_dir=data_dir,
        print_worker_tick_ms=max(500, min(5000, tick)),
        printer_timeout_ms=max(1, _int_env(environ, 'PRINTER_TIMEOUT_MS', DEFAULT_PRINTER_TIMEOUT_MS)),
        log_level=((environ.get('EDGE_GATEWAY_LOG_LEVEL') or '').strip() or 'INFO').upper(),
        log_file=Path(log_file) if log_file else data_dir / 'logs' / 'edge_gateway.log',
    )
