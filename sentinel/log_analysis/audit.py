import logging
import os
from datetime import datetime
from pydantic import BaseModel, ConfigDict

# Audit trail mirror, between INFO and WARNING
AUDIT = 25

# Classification verdicts
ALERT_I = 51
ALERT_II = 52
ALERT_III = 53

logging.addLevelName(AUDIT, "AUDIT")
logging.addLevelName(ALERT_I, "ALERT I")
logging.addLevelName(ALERT_II, "ALERT II")
logging.addLevelName(ALERT_III, "ALERT III")

LOG_FORMAT = "%(asctime)s - %(levelname)s - %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def configure_logging(log_dir: str = "app_log", level: int = logging.INFO) -> str:
    """
    Sends the package log to <log_dir>/sentinel.log.

    Args:
        log_dir (str): Directory for the log file, created when missing.
        level (int): Lowest level written to the file.

    Returns:
        str: Path of the log file.
    """
    if not os.path.exists(log_dir):
        os.makedirs(log_dir)

    log_path = os.path.join(log_dir, "sentinel.log")
    logging.basicConfig(
        filename=log_path,
        level=level,
        format=LOG_FORMAT,
        datefmt=DATE_FORMAT,
    )
    return log_path


class AuditLogEntry(BaseModel):
    model_config = ConfigDict(frozen=True)

    timestamp: datetime
    actor: str
    message: str

    def __str__(self) -> str:
        return f"[{self.actor}] {self.message}"
