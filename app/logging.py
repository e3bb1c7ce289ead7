import logging
import sys

from app.config import settings

_LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


def configure_logging() -> None:
    root = logging.getLogger()
    if getattr(root, "_pppoe_configured", False):
        return
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(logging.Formatter(_LOG_FORMAT))
    root.addHandler(handler)
    root.setLevel(settings.log_level.upper())
    # routeros_api and paramiko are chatty at INFO.
    logging.getLogger("paramiko").setLevel(logging.WARNING)
    logging.getLogger("routeros_api").setLevel(logging.WARNING)
    root._pppoe_configured = True
