"""
Coordinator configuration.

SyncConfig flattens the sections of the TOML config file into one frozen
dataclass shared by both roles. Every field has a working default, so an
empty dict gives the standard loopback deployment.
"""

from dataclasses import dataclass, field, fields, replace
from typing import Any, Dict, Optional, Tuple

# Channel ports
TRIGGER_PORT = 5557
STATUS_PORT = 5559
FILE_PORT = 5560
COMMAND_PORT = 5561
SYNC_PORT = 5562
STREAM_BASE_PORT = 4241

# Instrument service ports
SCPI_PORT = 5555
DLT_PORT = 6060

DEAD_TIME_S = 40e-9
PS_PER_SECOND = 1e12

# TOML section each field is read from
_SECTIONS = {
    'network': (
        'master_address', 'slave_address', 'bind_address',
        'trigger_port', 'status_port', 'file_port', 'command_port', 'sync_port',
    ),
    'acquisition': (
        'duration', 'channels', 'sub_duration', 'dead_time_s', 'stream_base_port',
        'stream_bind_host', 'merge_grace', 'text_output', 'progress_interval',
        'inter_session_pause',
    ),
    'handshake': (
        'command_timeout', 'ready_timeout', 'ready_retries', 'retry_pause',
        'settle_delay', 'trigger_grace', 'trigger_resends', 'completion_timeout',
        'heartbeat_interval',
    ),
    'merge': (
        'window_wait_factor', 'min_window_wait', 'stall_window_limit', 'poll_timeout',
    ),
    'sync': (
        'sync_fraction', 'transfer_mode', 'chunk_size', 'transfer_timeout',
    ),
    'instrument': (
        'instrument', 'instrument_address', 'scpi_port', 'dlt_port', 'rate_hz',
        'clock_offset_ps', 'jitter_ps', 'seed', 'silent_channels', 'relative_timestamps',
    ),
    'output': (
        'output_dir', 'health_port',
    ),
}

# TOML keys that differ from the field name
_ALIASES = {
    ('instrument', 'kind'): 'instrument',
    ('instrument', 'address'): 'instrument_address',
}


@dataclass(frozen=True)
class SyncConfig:
    """All tunables of a master or slave node."""

    # network
    master_address: str = '127.0.0.1'
    slave_address: str = '127.0.0.1'
    bind_address: str = '*'
    trigger_port: int = TRIGGER_PORT
    status_port: int = STATUS_PORT
    file_port: int = FILE_PORT
    command_port: int = COMMAND_PORT
    sync_port: int = SYNC_PORT

    # acquisition
    duration: float = 0.6
    channels: Tuple[int, ...] = (1, 2, 3, 4)
    sub_duration: float = 0.2
    dead_time_s: float = DEAD_TIME_S
    stream_base_port: int = STREAM_BASE_PORT
    stream_bind_host: str = '127.0.0.1'
    merge_grace: float = 2.0
    text_output: bool = True
    progress_interval: float = 0.1
    inter_session_pause: float = 0.5

    # handshake
    command_timeout: float = 2.0
    ready_timeout: float = 10.0
    ready_retries: int = 5
    retry_pause: float = 0.5
    settle_delay: float = 0.1
    trigger_grace: float = 0.5
    trigger_resends: int = 2
    completion_timeout: float = 30.0
    heartbeat_interval: float = 0.1

    # merge
    window_wait_factor: float = 2.0
    min_window_wait: float = 0.25
    stall_window_limit: int = 3
    poll_timeout: float = 0.1

    # sync
    sync_fraction: float = 0.1
    transfer_mode: str = 'partial'
    chunk_size: int = 65536
    transfer_timeout: float = 10.0

    # instrument
    instrument: str = 'simulated'
    instrument_address: str = '127.0.0.1'
    scpi_port: int = SCPI_PORT
    dlt_port: int = DLT_PORT
    rate_hz: float = 2000.0
    clock_offset_ps: int = 0
    jitter_ps: int = 0
    seed: Optional[int] = None
    silent_channels: Tuple[int, ...] = field(default_factory=tuple)
    relative_timestamps: bool = False

    # output
    output_dir: str = './outputs'
    health_port: int = 0

    def __post_init__(self):
        channels = tuple(int(c) for c in self.channels)
        if not channels:
            raise ValueError("at least one channel is required")
        if any(c < 1 for c in channels) or len(set(channels)) != len(channels):
            raise ValueError(f"channels must be distinct positive integers, got {channels}")
        object.__setattr__(self, 'channels', channels)
        object.__setattr__(self, 'silent_channels',
                           tuple(int(c) for c in self.silent_channels))
        if self.duration <= 0:
            raise ValueError(f"duration must be positive, got {self.duration}")
        if not 0.0 < self.sync_fraction <= 1.0:
            raise ValueError(f"sync_fraction must be in (0, 1], got {self.sync_fraction}")
        if self.transfer_mode not in ('partial', 'full'):
            raise ValueError(f"transfer_mode must be 'partial' or 'full', got {self.transfer_mode!r}")
        if self.ready_retries < 1:
            raise ValueError("ready_retries must be at least 1")

    @classmethod
    def from_dict(cls, config: Dict[str, Any]) -> 'SyncConfig':
        """Build from a parsed TOML document (sectioned or flat)."""
        known = {f.name for f in fields(cls)}
        values = {}
        for key, value in config.items():
            if isinstance(value, dict):
                for sub_key, sub_value in value.items():
                    name = _ALIASES.get((key, sub_key), sub_key)
                    if name in known:
                        values[name] = sub_value
            elif key in known:
                values[key] = value
        for name in ('channels', 'silent_channels'):
            if name in values:
                values[name] = tuple(values[name])
        return cls(**values)

    def with_overrides(self, **overrides) -> 'SyncConfig':
        """Copy with the given non-None values replaced (CLI flags)."""
        return replace(self, **{k: v for k, v in overrides.items() if v is not None})

    @property
    def pwid_ps(self) -> int:
        return int(round(PS_PER_SECOND * self.sub_duration))

    @property
    def pper_ps(self) -> int:
        return int(round(PS_PER_SECOND * (self.sub_duration + self.dead_time_s)))

    @property
    def pper_s(self) -> float:
        return self.sub_duration + self.dead_time_s

    @property
    def window_timeout(self) -> float:
        return max(self.min_window_wait, self.window_wait_factor * self.pper_s)

    def stream_port(self, channel: int) -> int:
        return self.stream_base_port + channel

    def endpoint(self, host: str, port: int) -> str:
        return f"tcp://{host}:{port}"

    def bind_endpoint(self, port: int) -> str:
        return f"tcp://{self.bind_address}:{port}"

    def to_sections(self) -> Dict[str, Dict[str, Any]]:
        """Inverse of from_dict, for writing an example config."""
        inverse = {v: k for k, v in _ALIASES.items()}
        out: Dict[str, Dict[str, Any]] = {}
        for section, names in _SECTIONS.items():
            for name in names:
                value = getattr(self, name)
                if value is None:
                    continue
                key = inverse.get(name, (section, name))[1]
                out.setdefault(section, {})[key] = list(value) if isinstance(value, tuple) else value
        return out
