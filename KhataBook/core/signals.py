"""Application-wide Qt signals for KhataBook.

The presentation layer, notification facility and router connect to these
signals; the core only emits them.
"""
from PySide6 import QtCore


class Signals(QtCore.QObject):
    """Centralized Qt signals for configuration, authentication and user notifications."""
    authenticationRequested = QtCore.Signal()

    configSectionChanged = QtCore.Signal(str)  # Section name

    error = QtCore.Signal(str)
    info = QtCore.Signal(str)


signals = Signals()
