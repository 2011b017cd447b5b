import logging
import os
from decimal import Decimal

from dotenv import load_dotenv

load_dotenv()


class Config:
    SERVICE_NAME = "splitledger"

    LOG_LEVEL = os.environ.get("SPLITLEDGER_LOG_LEVEL", "INFO")
    LOG_FORMAT = os.environ.get(
        "SPLITLEDGER_LOG_FORMAT", "%(asctime)s %(levelname)s %(name)s: %(message)s"
    )

    # Unset means records live only for the lifetime of the process
    STORAGE_PATH = os.environ.get("SPLITLEDGER_STORAGE_PATH") or None

    SPLIT_TOLERANCE = Decimal(os.environ.get("SPLITLEDGER_SPLIT_TOLERANCE", "0.01"))
    ACTIVITY_APPEND_RETRIES = int(os.environ.get("SPLITLEDGER_ACTIVITY_RETRIES", 2))

    CORS_ORIGINS = [
        origin.strip()
        for origin in os.environ.get("SPLITLEDGER_CORS_ORIGINS", "*").split(",")
        if origin.strip()
    ]


config = Config()


def configure_logging(level: str = None) -> None:
    logging.basicConfig(level=(level or config.LOG_LEVEL).upper(), format=config.LOG_FORMAT)
