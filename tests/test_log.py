# tests/test_log.py
"""
Tests for KhataBook.log.log
(covers TankHandler, the Qt bridge and the setup helpers).

Run:
    python -m unittest tests.test_log
"""
import logging
from typing import List

from PySide6.QtCore import QtMsgType

from KhataBook.log.log import (
    TankHandler,
    get_tank,
    qt_message_handler,
    set_logging_level,
    setup_logging,
)
from tests.base import BaseTestCase


class LogModuleTests(BaseTestCase):
    """
    Each test starts with a fresh root logger configured by
    setup_logging(enable_stream_handler=False).
    """

    def setUp(self) -> None:
        super().setUp()

        # enable logging
        logging.disable(logging.NOTSET)

        setup_logging(enable_stream_handler=False,
                      enable_qt_handler=False,
                      log_level=logging.DEBUG)

        self.root_logger = logging.getLogger()
        self.tank: TankHandler = get_tank()

    def test_setup_logging_installs_tank_handler_only(self):
        self.assertEqual(
            [type(h) for h in self.root_logger.handlers],
            [TankHandler],
        )

    def test_tank_handler_stores_and_filters(self):
        logging.debug("dbg message")
        logging.error("err message")
        self.assertEqual(len(self.tank.tank), 2)
        errs: List[str] = self.tank.get_logs(logging.ERROR)
        self.assertEqual(len(errs), 1)
        self.assertIn("err message", errs[0])
        self.tank.clear_logs()
        self.assertEqual(len(self.tank.tank), 0)

    def test_tank_drops_oldest_records(self):
        tank = TankHandler(max_records=3)
        for i in range(5):
            tank.emit(logging.LogRecord('t', logging.INFO, __file__, 1, f'msg-{i}', None, None))
        self.assertEqual(tank.get_logs(), ['msg-2', 'msg-3', 'msg-4'])

    def test_status_exceptions_are_logged(self):
        from KhataBook.status import status
        status.MalformedDataException('bad payload')
        self.assertTrue(any('bad payload' in m for m in self.tank.get_logs(logging.ERROR)))

    def test_set_logging_level_accepts_valid_levels(self):
        set_logging_level(logging.ERROR)
        self.assertEqual(self.root_logger.level, logging.ERROR)

    def test_set_logging_level_rejects_non_int(self):
        with self.assertRaises(ValueError):
            set_logging_level("INFO")  # type: ignore[arg-type]

    def test_set_logging_level_rejects_unknown(self):
        with self.assertRaises(ValueError):
            set_logging_level(1234)

    def test_qt_message_handler_maps_to_logging(self):
        qt_message_handler(QtMsgType.QtInfoMsg, None, "Qt info")
        qt_message_handler(QtMsgType.QtWarningMsg, None, "Qt warn")
        msgs = self.tank.get_logs()
        self.assertTrue(any("Qt info" in m for m in msgs))
        self.assertTrue(any("Qt warn" in m for m in msgs))

    def test_qt_message_handler_fatal_exits(self):
        with self.assertRaises(SystemExit):
            qt_message_handler(QtMsgType.QtFatalMsg, None, "fatal")
