"""Master/slave coordination: configuration, session context and wire protocol.

The role implementations live in .master and .slave and are imported from
there directly; the acquisition engine depends on this package's config and
session modules.
"""

from .config import SyncConfig
from .session import AcquisitionSession, SessionState

__all__ = ['SyncConfig', 'AcquisitionSession', 'SessionState']
