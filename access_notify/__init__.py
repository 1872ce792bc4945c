"""Chat notifications for access requests."""

from .background import BackgroundRunner  # noqa: F401
from .config import Config, get_config, load_config  # noqa: F401
from .logging_config import configure_logging  # noqa: F401
from .notifier import AccessRequestNotifier  # noqa: F401
from .plugindata import GenericPluginData, decode_plugin_data, encode_plugin_data  # noqa: F401
from .recipients import RecipientsMap  # noqa: F401
from .service import NotifierService, build_bot  # noqa: F401
from .watcher import WatcherJob  # noqa: F401

__version__ = "0.1.0"

__all__ = [
    "AccessRequestNotifier",
    "BackgroundRunner",
    "Config",
    "get_config",
    "load_config",
    "configure_logging",
    "GenericPluginData",
    "decode_plugin_data",
    "encode_plugin_data",
    "RecipientsMap",
    "NotifierService",
    "build_bot",
    "WatcherJob",
]
