"""Abstract time-tagging instrument driven by the acquisition runner."""

from abc import ABC, abstractmethod
from typing import Dict, List, Sequence


class TimeTagger(ABC):
    """
    One time-tagging instrument streaming each channel to a local port.

    Call order within a session:
        configure -> start_streams -> play -> stop -> wait_end -> close_streams

    Any command the instrument rejects raises InstrumentCommandFailure.
    """

    name = "instrument"
    # Block timestamps restart at 0 in every sub-acquisition window
    window_relative = False

    @abstractmethod
    def identify(self) -> str:
        """Instrument identification string."""

    @abstractmethod
    def configure(self, channels: Sequence[int], pwid_ps: int, pper_ps: int):
        """Prepare recording of `channels` in sub-acquisitions of pwid/pper."""

    @abstractmethod
    def start_streams(self, ports: Dict[int, int]):
        """Start streaming each channel to its listener port."""

    @abstractmethod
    def play(self):
        """Start recording."""

    @abstractmethod
    def stop(self):
        """Stop recording; streams drain afterwards."""

    @abstractmethod
    def wait_end(self, timeout: float):
        """Wait (bounded) until all streamed data has been sent."""

    @abstractmethod
    def close_streams(self) -> Dict[int, List[str]]:
        """Tear down channel streams; returns per-channel error messages."""

    def close(self):
        """Release instrument connections."""
