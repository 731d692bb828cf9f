"""Time-tagging instruments: the Time Controller driver and a simulator."""

import zmq

from .base import TimeTagger
from .simulated import SimulatedTimeTagger
from .time_controller import TimeControllerInstrument


def create_instrument(config, context: zmq.Context) -> TimeTagger:
    """Build the instrument named by config.instrument."""
    if config.instrument == 'simulated':
        return SimulatedTimeTagger(
            context,
            rate_hz=config.rate_hz,
            clock_offset_ps=config.clock_offset_ps,
            jitter_ps=config.jitter_ps,
            seed=config.seed,
            silent_channels=config.silent_channels,
            stream_host=config.stream_bind_host,
            relative_timestamps=config.relative_timestamps,
        )
    if config.instrument == 'time_controller':
        return TimeControllerInstrument(
            context,
            address=config.instrument_address,
            scpi_port=config.scpi_port,
            dlt_port=config.dlt_port,
            timeout=config.command_timeout,
        )
    raise ValueError(f"unknown instrument {config.instrument!r}")


__all__ = ['TimeTagger', 'SimulatedTimeTagger', 'TimeControllerInstrument', 'create_instrument']
