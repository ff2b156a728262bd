"""
Utilities Module

Logging setup shared by the sync engine and its command-line entry point.
"""

from src.content_sync.utils.logging import configure_logging, get_logger, mask_secret

__all__ = [
    'configure_logging',
    'get_logger',
    'mask_secret',
]
