"""
Tests for the timetag-sync command line.
"""

import json

import pytest


def write_file(path, timestamps):
    from timetag_sync.output.timestamp_files import from_arrays, write_binary

    return write_binary(path, from_arrays(timestamps, [1] * len(timestamps)))


class TestCommandLine:

    def test_no_command_prints_help(self, capsys):
        from timetag_sync.main import main

        assert main([]) == 2
        assert 'timetag-sync' in capsys.readouterr().out

    def test_convert(self, tmp_path):
        from timetag_sync.main import main
        from timetag_sync.output.timestamp_files import read_text

        src = write_file(tmp_path / 'a.bin', [1, 2, 3])
        assert main(['convert', str(src), str(tmp_path / 'a.txt')]) == 0
        assert read_text(tmp_path / 'a.txt').timestamps.tolist() == [1, 2, 3]

    def test_convert_bad_extension(self, tmp_path):
        from timetag_sync.main import main

        src = write_file(tmp_path / 'a.bin', [1])
        assert main(['convert', str(src), str(tmp_path / 'b.bin')]) == 1

    def test_align(self, tmp_path, capsys):
        from timetag_sync.main import main

        master = write_file(tmp_path / 'master.bin', [100 * i for i in range(1, 41)])
        slave = write_file(tmp_path / 'slave.bin', [100 * i + 7 for i in range(1, 41)])
        out = tmp_path / 'out'

        code = main(['align', str(master), str(slave), '--full',
                     '--sync-fraction', '0.25', '-o', str(out), '--no-text'])

        assert code == 0
        result = json.loads(capsys.readouterr().out)
        assert result['offset']['mean_offset'] == 7.0
        assert result['offset']['sample_count'] == 9
        assert (out / 'master_corrected.bin').exists()
        assert not (out / 'master_corrected.txt').exists()

    def test_build_config_overrides(self, tmp_path):
        import argparse
        from timetag_sync.main import build_config

        args = argparse.Namespace(config=None, output_dir=str(tmp_path), health_port=None,
                                  instrument='simulated', duration=1.25, channels=[1, 3],
                                  slave_address='10.1.1.1')
        config = build_config(args)

        assert config.output_dir == str(tmp_path)
        assert config.duration == 1.25
        assert config.channels == (1, 3)
        assert config.slave_address == '10.1.1.1'
        assert config.health_port == 0


def write_config(path, ports, **instrument):
    import toml

    trigger, status, file_, command, sync = ports
    path.write_text(toml.dumps({
        'network': {'bind_address': '127.0.0.1', 'trigger_port': trigger,
                    'status_port': status, 'file_port': file_,
                    'command_port': command, 'sync_port': sync},
        'handshake': {'command_timeout': 0.2},
        'instrument': instrument,
    }))
    return path


class TestStartupFailures:
    """Startup errors end the command with a logged message and exit code 1."""

    def test_unreachable_instrument(self, tmp_path, free_ports, caplog):
        from timetag_sync.main import main

        *control, scpi = free_ports(6)
        config = write_config(tmp_path / 'master.toml', control,
                              kind='time_controller', scpi_port=scpi)

        code = main(['master', '--config', str(config), '-o', str(tmp_path / 'out')])

        assert code == 1
        assert "master failed: [acquisition]" in caplog.text
        assert "*IDN?" in caplog.text

    def test_port_in_use(self, tmp_path, free_ports, caplog):
        import zmq
        from timetag_sync.main import main

        ports = free_ports(5)
        config = write_config(tmp_path / 'slave.toml', ports, kind='simulated')
        context = zmq.Context()
        blocker = context.socket(zmq.PULL)
        try:
            # the slave binds the command port
            blocker.bind(f"tcp://127.0.0.1:{ports[3]}")
            code = main(['slave', '--config', str(config), '-o', str(tmp_path / 'out')])
        finally:
            blocker.close(linger=0)
            context.term()

        assert code == 1
        assert "slave failed:" in caplog.text
