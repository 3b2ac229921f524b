#!/usr/bin/env python3
"""
IslaPOS Edge Gateway - LAN printing and offline event buffering for the POS
"""

import logging

from pos_edge.gateway import EdgeGateway, create_server, is_bound
from pos_edge.logging_config import setup_logging
from pos_edge.print_queue import PrintQueueWorker
from pos_edge.settings import GatewaySettings, load_settings

logger = logging.getLogger(__name__)


class EdgeGatewayApp:
    """Gateway process: HTTP surface plus the print worker"""

    def __init__(self, settings: GatewaySettings):
        self.settings = settings
        self.gateway = EdgeGateway(settings)
        self.worker = PrintQueueWorker(self.gateway.print_queue, settings.print_worker_tick_ms)
        self.server = None
        self.running = False

    def start(self):
        self.server = create_server(self.gateway)
        self.worker.start()
        self.running = True
        host, port = self.server.server_address[:2]
        config = self.gateway.store.read_config()
        logger.info("Edge gateway listening on %s:%s (paired: %s)", host, port, is_bound(config))

    def serve_forever(self):
        self.server.serve_forever()

    def stop(self):
        if not self.running:
            return
        self.running = False
        self.worker.stop()
        if self.server:
            self.server.shutdown()
            self.server.server_close()
        logger.info("Edge gateway stopped")


def main():
    settings = load_settings()
    setup_logging(settings.log_file, level=settings.log_level)

    app = EdgeGatewayApp(settings)
    app.start()

    print("=" * 50)
    print("  IslaPOS Edge Gateway")
    print("=" * 50)
    print(f"Gateway: {app.gateway.gateway_url()}")
    print(f"Data:    {settings.data_dir}")
    print(f"Logs:    {settings.log_file}")
    print("=" * 50)
    print("Press Ctrl+C to stop")

    try:
        app.serve_forever()
    except KeyboardInterrupt:
        print("\nStopping...")
    finally:
        app.stop()


if __name__ == '__main__':
    main()
