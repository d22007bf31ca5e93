"""
Logging subsystem for KhataBook.

Modules:

- :mod:`KhataBook.log.log` – Root logger setup, the in-memory log tank, and the Qt message bridge.
"""
