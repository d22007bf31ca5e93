"""
Core package for KhataBook providing the record store and its collaborators.

This package includes:

- :mod:`KhataBook.core.auth` – Session lifecycle: token acquisition, silent refresh, expiry and the session-age cap.
- :mod:`KhataBook.core.context` – The client context handed to every component.
- :mod:`KhataBook.core.service` – Google Sheets and Drive API client, error translation and the async worker.
- :mod:`KhataBook.core.storage` – Durable and transient key-value storage.
- :mod:`KhataBook.core.schema` – Column schema model, inference and persistence.
- :mod:`KhataBook.core.store` – Record CRUD over document rows and sync-state tracking.
- :mod:`KhataBook.core.backup` – Drive backups, local export/import, auto-backup scheduling and document import.
- :mod:`KhataBook.core.signals` – Application-wide Qt signals.
"""
