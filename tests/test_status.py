"""Tests for HouseholdLedger.status.status.

Run: python -m unittest tests.test_status
"""
import socket
import unittest

import httplib2
from googleapiclient.errors import HttpError

from HouseholdLedger.status import status
from HouseholdLedger.status.status import FailureKind, classify_error, to_status_exception


def http_error(code: int) -> HttpError:
    return HttpError(httplib2.Response({'status': code}), b'{}')


class ClassifyErrorTests(unittest.TestCase):

    def test_http_codes(self):
        self.assertEqual(classify_error(http_error(401)), FailureKind.AuthExpired)
        self.assertEqual(classify_error(http_error(403)), FailureKind.AuthExpired)
        self.assertEqual(classify_error(http_error(404)), FailureKind.RemoteNotFound)
        self.assertEqual(classify_error(http_error(503)), FailureKind.NetworkTransient)
        self.assertEqual(classify_error(http_error(429)), FailureKind.NetworkTransient)
        self.assertEqual(classify_error(http_error(400)), FailureKind.Unclassified)

    def test_http_code_wins_over_message(self):
        class Response(Exception):
            status_code = 404

        self.assertEqual(classify_error(Response('authentication failed')), FailureKind.RemoteNotFound)

    def test_transport_errors_are_transient(self):
        self.assertEqual(classify_error(socket.timeout('timed out')), FailureKind.NetworkTransient)
        self.assertEqual(classify_error(ConnectionResetError()), FailureKind.NetworkTransient)
        self.assertEqual(classify_error(httplib2.ServerNotFoundError('dns')), FailureKind.NetworkTransient)

    def test_messages(self):
        self.assertEqual(classify_error(RuntimeError('Not authenticated')), FailureKind.AuthExpired)
        self.assertEqual(classify_error(RuntimeError('Failed to fetch')), FailureKind.NetworkTransient)
        self.assertEqual(classify_error(RuntimeError('Network is unreachable')), FailureKind.NetworkTransient)
        self.assertEqual(classify_error(ValueError('bad value')), FailureKind.Unclassified)

    def test_status_exceptions_keep_their_category(self):
        self.assertEqual(classify_error(status.AuthExpiredException()), FailureKind.AuthExpired)
        self.assertEqual(classify_error(status.RemoteNotFoundException()), FailureKind.RemoteNotFound)
        self.assertEqual(classify_error(status.NetworkTransientException()), FailureKind.NetworkTransient)
        self.assertEqual(classify_error(status.SettingsInvalidException()), FailureKind.Unclassified)


class StatusExceptionTests(unittest.TestCase):

    def test_message_composition(self):
        ex = status.RemoteNotFoundException('spreadsheet-id')
        self.assertEqual(ex.status, status.Status.RemoteNotFound)
        self.assertEqual(ex.detail, 'spreadsheet-id')
        self.assertTrue(str(ex).startswith(ex.status_message))
        self.assertTrue(str(ex).endswith('spreadsheet-id'))

        bare = status.AuthExpiredException()
        self.assertEqual(str(bare), status.get_message(status.Status.AuthExpired))
        self.assertEqual(bare.detail, '')

    def test_to_status_exception(self):
        original = http_error(404)
        wrapped = to_status_exception(original)
        self.assertIsInstance(wrapped, status.RemoteNotFoundException)
        self.assertIs(wrapped.__cause__, original)

        wrapped = to_status_exception(ValueError('odd'))
        self.assertIsInstance(wrapped, status.UnclassifiedException)

        existing = status.NetworkTransientException()
        self.assertIs(to_status_exception(existing), existing)

    def test_http_status_of(self):
        self.assertEqual(status.http_status_of(http_error(503)), 503)
        self.assertIsNone(status.http_status_of(ValueError('no code')))


if __name__ == '__main__':
    unittest.main()
