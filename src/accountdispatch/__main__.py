"""Run the account dispatch scheduler until SIGINT/SIGTERM.

A second signal exits immediately, abandoning any in-flight cycle.
"""
import logging
import os
import signal
import sys

from prometheus_client import start_http_server

from accountdispatch.client import Dispatcher
from accountdispatch.config import DispatchConfig

logger = logging.getLogger('accountdispatch')


def main() -> int:
    logging.basicConfig(
        level=os.getenv('DISPATCH_LOG_LEVEL', 'INFO').upper(),
        format='%(asctime)s %(levelname)s %(name)s %(message)s',
    )
    config = DispatchConfig.from_env()

    if config.metrics_port:
        start_http_server(config.metrics_port)
        logger.info(f'Serving metrics on port {config.metrics_port}')

    dispatcher = Dispatcher(config)
    received = []

    def handle_signal(signum, frame):
        if received:
            logger.warning(f'Received second signal {signum}, exiting immediately')
            os._exit(1)
        received.append(signum)
        logger.info(f'Received signal {signum}, shutting down')
        dispatcher.request_shutdown()

    signal.signal(signal.SIGINT, handle_signal)
    signal.signal(signal.SIGTERM, handle_signal)

    with dispatcher:
        dispatcher.wait()
    return 0


if __name__ == '__main__':
    sys.exit(main())
