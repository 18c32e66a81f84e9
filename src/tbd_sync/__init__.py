"""Git-native, file-per-entity issue store with field-level sync."""

__version__ = "0.1.0"

from tbd_sync.bootstrap import init_repository, open_tracker  # noqa: E402
from tbd_sync.errors import TbdSyncError  # noqa: E402
from tbd_sync.tracker import Tracker  # noqa: E402

__all__ = [
    "Tracker",
    "TbdSyncError",
    "init_repository",
    "open_tracker",
    "__version__",
]
