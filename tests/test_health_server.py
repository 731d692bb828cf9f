"""
Tests for health monitoring server.
"""

import json
import pytest
import time
import urllib.request
from unittest.mock import MagicMock


class TestHealthServer:
    """Tests for HealthServer."""

    def test_health_server_initialization(self):
        """Test HealthServer initialization with custom port."""
        from timetag_sync.output.health_server import HealthServer

        server = HealthServer(port=9999, bind_address='127.0.0.1')
        assert server.port == 9999
        assert server.bind_address == '127.0.0.1'
        assert server.coordinator is None
        assert server._running is False

    def test_status_without_coordinator(self):
        from timetag_sync.output.health_server import HealthServer

        server = HealthServer(port=9999)
        assert server._get_status() == {'error': 'No coordinator connected'}


class TestHealthServerIntegration:
    """Integration tests for HealthServer (requires network)."""

    @pytest.fixture
    def mock_coordinator(self):
        """Create a mock master coordinator for testing."""
        coordinator = MagicMock()
        coordinator.get_status.return_value = {
            'role': 'master',
            'state': 'acquiring',
            'activity': 'running',
            'sequence_id': 3,
            'progress': 42.0,
            'acquisition_active': True,
            'sessions_completed': 2,
            'sessions_failed': 1,
            'records_merged': 12000,
            'uptime_seconds': 100.0,
            'last_offset': 1234.5,
            'last_quality': 97.25,
        }
        return coordinator

    @pytest.fixture
    def health_server(self, mock_coordinator, free_ports):
        """Create and start a health server for testing."""
        from timetag_sync.output.health_server import HealthServer

        port = free_ports(1)[0]
        server = HealthServer(port=port, bind_address='127.0.0.1')
        server.set_coordinator(mock_coordinator)
        server.start()

        # Give server time to start
        time.sleep(0.1)

        yield server

        server.stop()

    def _get(self, server, path):
        return urllib.request.urlopen(f'http://127.0.0.1:{server.port}{path}', timeout=2)

    def test_health_endpoint(self, health_server):
        """Test /health endpoint returns OK."""
        try:
            response = self._get(health_server, '/health')
            assert response.status == 200
            assert response.read() == b'OK\n'
        except OSError as e:
            pytest.skip(f"Network test failed: {e}")

    def test_status_endpoint(self, health_server):
        """Test /status endpoint returns the coordinator status as JSON."""
        try:
            response = self._get(health_server, '/status')
            assert response.status == 200

            data = json.loads(response.read())
            assert data['state'] == 'acquiring'
            assert data['sequence_id'] == 3
            assert data['last_offset'] == 1234.5
        except OSError as e:
            pytest.skip(f"Network test failed: {e}")

    def test_metrics_endpoint(self, health_server):
        """Test /metrics endpoint returns Prometheus format."""
        try:
            response = self._get(health_server, '/metrics')
            assert response.status == 200

            content = response.read().decode()
            assert 'timetag_sync_session_state{role="master"} 4' in content
            assert 'timetag_sync_last_offset{role="master"} 1234.500' in content
        except OSError as e:
            pytest.skip(f"Network test failed: {e}")


class TestPrometheusMetrics:
    """Tests for Prometheus metrics formatting."""

    def test_prometheus_format(self):
        """Test that metrics are properly formatted for Prometheus."""
        from timetag_sync.output.health_server import HealthRequestHandler

        handler = HealthRequestHandler.__new__(HealthRequestHandler)

        status = {
            'role': 'slave',
            'state': 'completed',
            'progress': 100.0,
            'acquisition_active': False,
            'sessions_completed': 5,
            'sessions_failed': 0,
            'records_merged': 4800,
            'uptime_seconds': 3600.0,
        }

        metrics = handler._format_prometheus_metrics(status)

        assert 'timetag_sync_session_state{role="slave"} 6' in metrics  # completed = 6
        assert 'timetag_sync_acquisition_active{role="slave"} 0' in metrics
        assert 'timetag_sync_progress_percent{role="slave"} 100.0' in metrics
        assert 'timetag_sync_sessions_completed_total{role="slave"} 5' in metrics
        assert 'timetag_sync_records_merged_total{role="slave"} 4800' in metrics
        assert '# TYPE timetag_sync_sessions_failed_total counter' in metrics
        # Offset metrics only appear once the master has an estimate
        assert 'timetag_sync_last_offset' not in metrics

    def test_error_state_value(self):
        from timetag_sync.output.health_server import HealthRequestHandler

        handler = HealthRequestHandler.__new__(HealthRequestHandler)
        metrics = handler._format_prometheus_metrics({'state': 'error'})
        assert 'timetag_sync_session_state{role="node"} 7' in metrics
