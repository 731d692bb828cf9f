"""
Tests for configuration loading.
"""

import pytest


class TestSyncConfig:

    def test_defaults(self):
        from timetag_sync.coordinator.config import SyncConfig

        config = SyncConfig()
        assert config.trigger_port == 5557
        assert config.status_port == 5559
        assert config.file_port == 5560
        assert config.command_port == 5561
        assert config.sync_port == 5562
        assert config.stream_port(1) == 4242
        assert config.channels == (1, 2, 3, 4)
        assert config.sync_fraction == 0.1

    def test_window_parameters(self):
        from timetag_sync.coordinator.config import SyncConfig

        config = SyncConfig(sub_duration=0.2, dead_time_s=40e-9)
        assert config.pwid_ps == 200_000_000_000
        assert config.pper_ps == 200_000_040_000
        assert config.window_timeout == pytest.approx(0.40000008)

    def test_window_timeout_minimum(self):
        from timetag_sync.coordinator.config import SyncConfig

        assert SyncConfig(sub_duration=0.01, min_window_wait=0.25).window_timeout == 0.25

    def test_from_sectioned_dict(self):
        from timetag_sync.coordinator.config import SyncConfig

        config = SyncConfig.from_dict({
            'network': {'slave_address': '10.0.0.2', 'command_port': 6001},
            'acquisition': {'duration': 1.5, 'channels': [2, 3]},
            'instrument': {'kind': 'time_controller', 'address': '169.254.0.10'},
            'sync': {'transfer_mode': 'full'},
            'unrelated': {'whatever': 1},
        })

        assert config.slave_address == '10.0.0.2'
        assert config.command_port == 6001
        assert config.duration == 1.5
        assert config.channels == (2, 3)
        assert config.instrument == 'time_controller'
        assert config.instrument_address == '169.254.0.10'
        assert config.transfer_mode == 'full'

    def test_from_flat_dict(self):
        from timetag_sync.coordinator.config import SyncConfig

        config = SyncConfig.from_dict({'duration': 2.0, 'output_dir': '/data'})
        assert config.duration == 2.0
        assert config.output_dir == '/data'

    def test_sections_round_trip(self):
        from timetag_sync.coordinator.config import SyncConfig

        original = SyncConfig(slave_address='node-b', channels=(1, 3), instrument='time_controller')
        assert SyncConfig.from_dict(original.to_sections()) == original

    def test_overrides_skip_none(self):
        from timetag_sync.coordinator.config import SyncConfig

        config = SyncConfig().with_overrides(output_dir='/tmp/x', duration=None)
        assert config.output_dir == '/tmp/x'
        assert config.duration == 0.6

    def test_frozen(self):
        from dataclasses import FrozenInstanceError
        from timetag_sync.coordinator.config import SyncConfig

        with pytest.raises(FrozenInstanceError):
            SyncConfig().duration = 3.0

    @pytest.mark.parametrize('kwargs', [
        {'channels': ()},
        {'channels': (1, 1)},
        {'channels': (0,)},
        {'duration': 0},
        {'sync_fraction': 0.0},
        {'sync_fraction': 1.5},
        {'transfer_mode': 'some'},
        {'ready_retries': 0},
    ])
    def test_validation(self, kwargs):
        from timetag_sync.coordinator.config import SyncConfig

        with pytest.raises(ValueError):
            SyncConfig(**kwargs)

    def test_endpoints(self):
        from timetag_sync.coordinator.config import SyncConfig

        config = SyncConfig(bind_address='0.0.0.0')
        assert config.endpoint('host', 5561) == 'tcp://host:5561'
        assert config.bind_endpoint(5557) == 'tcp://0.0.0.0:5557'


class TestLoadConfig:

    def test_toml_file(self, tmp_path):
        from timetag_sync.coordinator.config import SyncConfig
        from timetag_sync.main import load_config

        path = tmp_path / 'config.toml'
        path.write_text(
            '[network]\n'
            'master_address = "10.0.0.1"\n'
            '\n'
            '[acquisition]\n'
            'duration = 0.8\n'
            'channels = [1, 2]\n'
            '\n'
            '[instrument]\n'
            'kind = "simulated"\n'
            'silent_channels = [2]\n'
        )
        config = SyncConfig.from_dict(load_config(str(path)))

        assert config.master_address == '10.0.0.1'
        assert config.duration == 0.8
        assert config.channels == (1, 2)
        assert config.silent_channels == (2,)

    def test_defaults_without_file(self):
        from timetag_sync.coordinator.config import SyncConfig
        from timetag_sync.main import load_config

        assert SyncConfig.from_dict(load_config(None)) == SyncConfig()

    def test_missing_file_falls_back_to_defaults(self, tmp_path):
        from timetag_sync.coordinator.config import SyncConfig
        from timetag_sync.main import load_config

        assert SyncConfig.from_dict(load_config(str(tmp_path / 'nope.toml'))) == SyncConfig()
