import logging
import os
from typing import Optional


def setup_logging(default_level: Optional[str] = None) -> None:
    level_name = (default_level or os.getenv("FDC_SEEDER_LOG_LEVEL") or "INFO").upper()
    level = getattr(logging, level_name, logging.INFO)
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
