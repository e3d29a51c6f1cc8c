"""
Integration tests for HouseholdLedger.log.log
(covers TankHandler, the Qt bridge and the setup helpers).

Run:
    python -m unittest tests.test_log
"""
import logging
import os
from typing import List
from unittest.mock import patch

from PySide6.QtCore import QtMsgType

from HouseholdLedger.log.log import (
    QUIET_LOGGERS,
    TankHandler,
    get_tank_handler,
    level_from_environment,
    qt_message_handler,
    set_logging_level,
    setup_logging,
)
from HouseholdLedger.ui.actions import signals
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
        self.tank: TankHandler = get_tank_handler()

        self.triggered: List[bool] = []
        signals.showLogs.connect(self._on_show_logs)

    def tearDown(self) -> None:
        signals.showLogs.disconnect(self._on_show_logs)
        self.root_logger.setLevel(logging.DEBUG)
        super().tearDown()

    def _on_show_logs(self) -> None:
        self.triggered.append(True)

    def test_setup_logging_installs_tank_handler_only(self):
        self.assertEqual(
            [type(h) for h in self.root_logger.handlers],
            [TankHandler],
        )
        self.assertIs(self.root_logger.handlers[0], self.tank)

    def test_setup_logging_replaces_handlers(self):
        setup_logging(enable_stream_handler=True, enable_qt_handler=False)
        self.assertEqual(len(self.root_logger.handlers), 2)
        self.assertIsNot(get_tank_handler(), self.tank)

    def test_tank_handler_stores_and_filters(self):
        logging.debug('dbg message')
        logging.warning('sync retry scheduled')
        logging.error('err message')
        self.assertEqual(len(self.tank.tank), 3)

        errs: List[str] = self.tank.get_logs(logging.ERROR)
        self.assertEqual(len(errs), 1)
        self.assertIn('err message', errs[0])
        self.assertEqual(len(self.tank.get_logs(logging.WARNING)), 2)

        self.tank.clear_logs()
        self.assertEqual(self.tank.get_logs(), [])

    def test_tank_keeps_many_records(self):
        for i in range(2000):
            logging.debug('bulk-%05d', i)
        self.assertEqual(len(self.tank.tank), 2000)
        self.assertIn('bulk-01999', self.tank.get_logs()[-1])

    def test_emit_triggers_showLogs_on_error_only(self):
        logging.warning('not worth showing')
        self.assertEqual(self.triggered, [])

        logging.error('should emit signal')
        self.assertEqual(self.triggered, [True])

    def test_tank_handles_very_long_message(self):
        long_msg = 'X' * 100_000
        logging.error(long_msg)

        self.assertTrue(self.triggered, 'showLogs not emitted for long ERROR message')
        stored = self.tank.get_logs(logging.ERROR)[-1]
        self.assertIn(long_msg[-50:], stored[-60:], 'Long message truncated in TankHandler')

    def test_set_logging_level_accepts_valid_levels(self):
        set_logging_level(logging.ERROR)
        self.assertEqual(self.root_logger.level, logging.ERROR)

        logging.warning('filtered out')
        self.assertEqual(self.tank.get_logs(), [])

    def test_set_logging_level_rejects_non_int(self):
        with self.assertRaises(ValueError):
            set_logging_level('INFO')  # type: ignore[arg-type]

    def test_set_logging_level_rejects_unknown(self):
        with self.assertRaises(ValueError):
            set_logging_level(1234)

    def test_qt_message_handler_maps_to_logging(self):
        qt_message_handler(QtMsgType.QtInfoMsg, None, 'Qt info ')
        qt_message_handler(QtMsgType.QtWarningMsg, None, 'Qt warn')
        qt_message_handler(QtMsgType.QtCriticalMsg, None, 'Qt critical')

        msgs = self.tank.get_logs()
        self.assertTrue(any('Qt info' in m for m in msgs))
        self.assertTrue(any('WARNING' in m and 'Qt warn' in m for m in msgs))
        self.assertTrue(any('ERROR' in m and 'Qt critical' in m for m in msgs))

    def test_qt_message_handler_fatal_exits(self):
        with self.assertRaises(SystemExit):
            qt_message_handler(QtMsgType.QtFatalMsg, None, 'fatal')

    def test_tank_drops_oldest_records_beyond_capacity(self):
        tank = TankHandler(capacity=3)
        for i in range(5):
            tank.emit(logging.LogRecord('test', logging.INFO, __file__, 0, f'record-{i}', None, None))
        self.assertEqual(tank.get_logs(), ['record-2', 'record-3', 'record-4'])

    def test_google_client_loggers_are_held_at_warning(self):
        for name in QUIET_LOGGERS:
            self.assertEqual(logging.getLogger(name).level, logging.WARNING)

        logging.getLogger('googleapiclient.discovery').info('URL being requested: GET ...')
        self.assertEqual(self.tank.get_logs(), [])

    def test_level_from_environment(self):
        with patch.dict(os.environ, {'HOUSEHOLD_LEDGER_LOG_LEVEL': 'warning'}):
            self.assertEqual(level_from_environment(), logging.WARNING)
            setup_logging(enable_stream_handler=False, enable_qt_handler=False)
            self.assertEqual(self.root_logger.level, logging.WARNING)

        with patch.dict(os.environ, {'HOUSEHOLD_LEDGER_LOG_LEVEL': 'chatty'}):
            self.assertEqual(level_from_environment(logging.INFO), logging.INFO)

        with patch.dict(os.environ, {}, clear=True):
            self.assertEqual(level_from_environment(), logging.DEBUG)
