# crossify/monitoring.py
import time
import psutil
import socket
from prometheus_client import Counter, Gauge, CollectorRegistry
from prometheus_client.exposition import make_wsgi_app
from wsgiref.simple_server import make_server, WSGIServer
from socketserver import ThreadingMixIn
import threading
import logging

logger = logging.getLogger(__name__)


class ThreadingWSGIServer(ThreadingMixIn, WSGIServer):
    """A WSGI server that runs in a separate thread to not block the replica."""
    allow_reuse_address = True


class Monitor:
    def __init__(self, chain_id: int, host="127.0.0.1", port=9090):
        self.chain_id = chain_id
        self.host = host
        self.port = port
        self.server = None
        self.thread = None

        # Isolated registry so several replicas can live in one process
        self.registry = CollectorRegistry()

        self.inbound_messages = Counter('crossify_inbound_messages_total', 'Inbound cross-chain messages by outcome', ['kind', 'status'], registry=self.registry)
        self.deliveries = Counter('crossify_outbound_deliveries_total', 'Outbound deliveries by final status', ['status'], registry=self.registry)
        self.delivery_attempts = Counter('crossify_delivery_attempts_total', 'Transport publish attempts', registry=self.registry)
        self.in_flight = Gauge('crossify_relay_in_flight', 'Deliveries currently in flight', registry=self.registry)
        self.circuit_trips = Counter('crossify_circuit_trips_total', 'Circuit breaker trips', ['reason'], registry=self.registry)
        self.halted_tokens = Gauge('crossify_halted_tokens', 'Tokens currently halted', registry=self.registry)
        self.token_price = Gauge('crossify_token_price', 'Last local unit price', ['token'], registry=self.registry)
        self.cpu_usage = Gauge('system_cpu_percent', 'Current CPU usage percent', registry=self.registry)
        self.memory_usage = Gauge('system_memory_percent', 'Current memory usage percent', registry=self.registry)
        self.last_update = Gauge('crossify_monitor_last_update_seconds', 'Unix time of the last system sample', registry=self.registry)

    def start_server(self):
        """Start the Prometheus HTTP endpoint in a daemon thread, retrying if the port is busy."""
        app = make_wsgi_app(self.registry)

        max_retries = 5
        retry_delay = 2

        for attempt in range(max_retries):
            try:
                self.server = make_server(self.host, self.port, app, ThreadingWSGIServer)
                self.server.socket.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)

                self.thread = threading.Thread(target=self.server.serve_forever)
                self.thread.daemon = True
                self.thread.start()
                logger.info(f"Prometheus server for chain {self.chain_id} started on http://{self.host}:{self.port}")
                return
            except OSError as e:
                if e.errno == 98 and attempt < max_retries - 1:  # Address already in use
                    logger.warning(f"Port {self.port} in use, retrying in {retry_delay}s (attempt {attempt+1}/{max_retries})...")
                    time.sleep(retry_delay)
                else:
                    logger.error(f"Failed to bind metrics server to port {self.port}: {e}")
                    raise

    def stop_server(self):
        if self.server:
            self.server.shutdown()
            self.server.server_close()
            self.server = None
            logger.info("Prometheus server stopped.")

    def update_system(self):
        self.cpu_usage.set(psutil.cpu_percent())
        self.memory_usage.set(psutil.virtual_memory().percent)
        self.last_update.set(time.time())

    def record_inbound(self, kind: str, status: str):
        self.inbound_messages.labels(kind=kind, status=status).inc()

    def record_attempt(self):
        self.delivery_attempts.inc()

    def record_delivery(self, status: str):
        self.deliveries.labels(status=status).inc()

    def set_in_flight(self, count: int):
        self.in_flight.set(count)

    def record_trip(self, reason: str):
        self.circuit_trips.labels(reason=reason).inc()
        self.halted_tokens.inc()

    def record_reset(self):
        self.halted_tokens.dec()

    def set_price(self, token_id: int, price: int):
        self.token_price.labels(token=str(token_id)).set(price)
