"""
Health Monitoring HTTP Server for timetag-sync.

Exposes the coordinator's session status for monitoring systems.

Endpoints:
    GET /health     - Basic health check (200 OK if running)
    GET /status     - JSON coordinator and session status
    GET /metrics    - Prometheus-compatible metrics

Usage:
    from timetag_sync.output.health_server import HealthServer

    server = HealthServer(port=8080)
    server.set_coordinator(master)
    server.start()
"""

import json
import logging
import threading
from http.server import HTTPServer, BaseHTTPRequestHandler
from typing import Any, Callable, Dict, Optional

logger = logging.getLogger(__name__)

STATE_VALUES = {
    'idle': 0,
    'preparing': 1,
    'ready_for_trigger': 2,
    'triggered': 3,
    'acquiring': 4,
    'stopping': 5,
    'completed': 6,
    'error': 7,
}


class HealthRequestHandler(BaseHTTPRequestHandler):
    """HTTP request handler for health endpoints."""

    get_status: Optional[Callable[[], Dict[str, Any]]] = None

    def log_message(self, format, *args):
        """Suppress default HTTP logging."""
        pass

    def do_GET(self):
        if self.path == '/health':
            self._reply(200, 'text/plain', b'OK\n')
        elif self.path == '/status':
            self._handle_status()
        elif self.path == '/metrics':
            self._handle_metrics()
        else:
            self.send_error(404, "Not Found")

    def _reply(self, code: int, content_type: str, body: bytes):
        self.send_response(code)
        self.send_header('Content-Type', content_type)
        self.end_headers()
        self.wfile.write(body)

    def _handle_status(self):
        if not self.get_status:
            self._reply(503, 'application/json',
                        json.dumps({'error': 'No coordinator connected'}).encode())
            return
        try:
            body = json.dumps(self.get_status(), indent=2, default=str).encode()
            self._reply(200, 'application/json', body)
        except Exception as e:
            logger.exception("Status endpoint failed")
            self._reply(500, 'application/json', json.dumps({'error': str(e)}).encode())

    def _handle_metrics(self):
        if not self.get_status:
            self._reply(503, 'text/plain', b'# No coordinator connected\n')
            return
        try:
            metrics = self._format_prometheus_metrics(self.get_status())
            self._reply(200, 'text/plain; version=0.0.4', metrics.encode())
        except Exception as e:
            logger.exception("Metrics endpoint failed")
            self._reply(500, 'text/plain', f'# Error: {e}\n'.encode())

    def _format_prometheus_metrics(self, status: Dict[str, Any]) -> str:
        """Format status as Prometheus metrics."""
        role = status.get('role', 'node')

        def metric(name, kind, help_text, value, fmt='{}'):
            return [
                f'# HELP timetag_sync_{name} {help_text}',
                f'# TYPE timetag_sync_{name} {kind}',
                f'timetag_sync_{name}{{role="{role}"}} {fmt.format(value)}',
                '',
            ]

        lines = []
        lines += metric('session_state', 'gauge',
                        'Session state (0=idle 1=preparing 2=ready 3=triggered 4=acquiring '
                        '5=stopping 6=completed 7=error)',
                        STATE_VALUES.get(status.get('state', 'idle'), 0))
        lines += metric('acquisition_active', 'gauge', 'Whether an acquisition is running',
                        int(bool(status.get('acquisition_active'))))
        lines += metric('progress_percent', 'gauge', 'Progress of the current acquisition',
                        status.get('progress', 0.0), '{:.1f}')
        lines += metric('sessions_completed_total', 'counter', 'Sessions completed',
                        status.get('sessions_completed', 0))
        lines += metric('sessions_failed_total', 'counter', 'Sessions ended in error',
                        status.get('sessions_failed', 0))
        lines += metric('records_merged_total', 'counter', 'Timestamps merged by this node',
                        status.get('records_merged', 0))
        lines += metric('uptime_seconds', 'gauge', 'Coordinator uptime in seconds',
                        status.get('uptime_seconds', 0.0), '{:.1f}')
        if 'last_offset' in status:
            lines += metric('last_offset', 'gauge', 'Last estimated slave-master offset',
                            status['last_offset'], '{:.3f}')
            lines += metric('last_quality_percent', 'gauge', 'Quality of the last offset estimate',
                            status.get('last_quality', 0.0), '{:.1f}')
        return '\n'.join(lines)


class HealthServer:
    """
    HTTP server for health monitoring.

    Runs in a background thread next to a master or slave coordinator.
    """

    def __init__(self, port: int = 8080, bind_address: str = '0.0.0.0'):
        self.port = port
        self.bind_address = bind_address
        self.server: Optional[HTTPServer] = None
        self.thread: Optional[threading.Thread] = None
        self.coordinator = None
        self._running = False

    def set_coordinator(self, coordinator):
        """Report the status of `coordinator` (anything with get_status())."""
        self.coordinator = coordinator
        HealthRequestHandler.get_status = self._get_status

    def _get_status(self) -> Dict[str, Any]:
        if not self.coordinator:
            return {'error': 'No coordinator connected'}
        return self.coordinator.get_status()

    def start(self):
        """Start the health server in a background thread."""
        if self._running:
            logger.warning("Health server already running")
            return

        try:
            self.server = HTTPServer((self.bind_address, self.port), HealthRequestHandler)
            self.server.timeout = 1.0
        except OSError as e:
            logger.error(f"Failed to start health server: {e}")
            return

        self._running = True
        self.thread = threading.Thread(target=self._serve, name="HealthServer", daemon=True)
        self.thread.start()
        logger.info(f"Health server started on http://{self.bind_address}:{self.port}")
        logger.info("  GET /health  - Health check")
        logger.info("  GET /status  - JSON status")
        logger.info("  GET /metrics - Prometheus metrics")

    def _serve(self):
        while self._running:
            try:
                self.server.handle_request()
            except OSError:
                if self._running:
                    logger.exception("Health server request failed")

    def stop(self):
        self._running = False
        if self.thread:
            self.thread.join(timeout=2.0)
            self.thread = None
        if self.server:
            self.server.server_close()
            self.server = None
        logger.info("Health server stopped")
