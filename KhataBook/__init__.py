"""
KhataBook: a Google Sheets-backed record store with managed Google credentials.

This package provides:

- :mod:`KhataBook.core` – Session management, schema resolution, record CRUD, and backup/import.
- :mod:`KhataBook.settings` – Configuration paths and validated application settings.
- :mod:`KhataBook.status` – Status codes and the exception taxonomy used across the core.
- :mod:`KhataBook.log` – Logging setup with an in-memory log tank.

Use :meth:`KhataBook.core.context.ClientContext.create` to wire the components together.
"""

import sys

# Fail on Python < 3.11
if not (sys.version_info.major == 3 and sys.version_info.minor >= 11):
    raise RuntimeError('KhataBook requires Python 3.11 or higher.')

__version__ = '2.0.0'
__license__ = 'GPL-3.0'
__description__ = 'KhataBook: a Google Sheets-backed record store with managed Google credentials.'

from .log import log

log.setup_logging()
