"""
Pytest configuration and fixtures for timetag-sync tests.
"""

import pytest
import socket
import sys
from pathlib import Path

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / 'src'))


def _free_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(('127.0.0.1', 0))
        return s.getsockname()[1]


def _bindable(port: int) -> bool:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        try:
            s.bind(('127.0.0.1', port))
        except OSError:
            return False
    return True


def _free_block(size: int, exclude) -> int:
    """First port of `size` consecutive free ports, none of them in `exclude`."""
    for _ in range(100):
        base = _free_port()
        block = range(base, base + size)
        if any(p in exclude for p in block) or base + size > 65535:
            continue
        if all(_bindable(p) for p in block):
            return base
    raise RuntimeError(f"no block of {size} free ports")


@pytest.fixture
def free_ports():
    """Returns a function giving `n` distinct free TCP ports on localhost."""
    def allocate(n: int):
        ports = set()
        while len(ports) < n:
            ports.add(_free_port())
        return sorted(ports)
    return allocate


@pytest.fixture
def ladder_timestamps():
    """Master/slave leading data from the offset-estimation example (ps)."""
    return {
        'master': [1000, 2000, 3000, 4000],
        'slave': [1050, 2050, 3050, 4050],
    }


@pytest.fixture
def loopback_config(tmp_path, free_ports):
    """
    Master and slave SyncConfig for one host with simulated instruments.

    Both nodes share the control ports; each gets its own range of stream
    ports so their listeners do not collide.
    """
    from timetag_sync.coordinator.config import SyncConfig

    ports = free_ports(5)
    trigger, status, file_, command, sync = ports
    # Stream ports are base + channel, so each node needs two consecutive ports
    master_base = _free_block(2, set(ports))
    slave_base = _free_block(2, set(ports) | {master_base, master_base + 1})
    common = dict(
        master_address='127.0.0.1',
        slave_address='127.0.0.1',
        bind_address='127.0.0.1',
        trigger_port=trigger,
        status_port=status,
        file_port=file_,
        command_port=command,
        sync_port=sync,
        duration=0.5,
        channels=(1, 2),
        sub_duration=0.05,
        merge_grace=1.0,
        command_timeout=1.0,
        ready_timeout=3.0,
        ready_retries=3,
        retry_pause=0.1,
        settle_delay=0.05,
        trigger_grace=0.3,
        completion_timeout=10.0,
        heartbeat_interval=0.05,
        transfer_timeout=5.0,
        instrument='simulated',
        rate_hz=2000.0,
        seed=7,
        sync_fraction=0.1,
    )
    master = SyncConfig(stream_base_port=master_base - 1,
                        output_dir=str(tmp_path / 'master'), **common)
    slave = SyncConfig(stream_base_port=slave_base - 1,
                       output_dir=str(tmp_path / 'slave'),
                       clock_offset_ps=250_000, **common)
    return master, slave
