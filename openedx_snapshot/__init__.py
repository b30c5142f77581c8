from .config import SnapshotConfig
from .exceptions import SnapshotError
from .settings import Settings

__version__ = "0.3.1"
__author__ = "Open edX Platform Ops"
__url__ = "https://github.com/openedx-ops/openedx-snapshot"

__all__ = ["SnapshotConfig", "Settings", "SnapshotError", "__version__"]
