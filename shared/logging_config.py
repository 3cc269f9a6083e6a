"""
Logging configuration for shardfix.

Provides consistent logging setup for the repair CLI, the snapshot exporter
and the helper scripts.
"""

import logging
import sys
from pathlib import Path
from typing import Optional, TextIO

DATE_FORMAT = '%Y-%m-%d %H:%M:%S'


def setup_logging(
    component_name: str,
    level=logging.INFO,
    log_file: Optional[str] = None,
    format_string: Optional[str] = None,
    stream: Optional[TextIO] = None,
):
    """
    Configure logging for a shardfix component.
    
    Args:
        component_name: Component identifier (e.g., 'shardfix', 'snapshot')
        level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_file: Optional file path for log output
        format_string: Custom format string (default provided)
        stream: Console stream (default: sys.stdout)
    """
    if format_string is None:
        format_string = f'[%(asctime)s] [{component_name.upper()}] %(levelname)s - %(message)s'
    
    # Configure root logger; force so repeated runs in one process pick up the new level
    logging.basicConfig(
        level=level,
        format=format_string,
        datefmt=DATE_FORMAT,
        handlers=[
            logging.StreamHandler(stream if stream is not None else sys.stdout)
        ],
        force=True,
    )
    
    # Add file handler if specified
    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(logging.Formatter(format_string, datefmt=DATE_FORMAT))
        logging.getLogger().addHandler(file_handler)
    
    logger = logging.getLogger(component_name)
    logger.debug(f"{component_name.upper()} logging initialized (level={logging.getLevelName(level)})")
    
    return logger
