#!/usr/bin/env python3
"""
Unit tests for retry helpers.
"""

import os
import sys
import unittest
from unittest.mock import Mock, patch

# Add the project directory to the path so we can import our modules
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from group_sync.gateways.base import ApplyError, DirectoryUnavailableError
from group_sync.gateways.graph_directory import GraphAPIError
from group_sync.retry import (
    MaxRetriesExceeded,
    RetryableError,
    create_retry_callback,
    is_retryable_error,
    retry_call,
)


class TestRetryCall(unittest.TestCase):
    """Test cases for retry_call."""

    @patch('group_sync.retry.time.sleep')
    def test_succeeds_after_failures(self, mock_sleep):
        func = Mock(side_effect=[ConnectionError('reset'), ConnectionError('reset'), 'ok'])

        result = retry_call(func, args=('grp',), max_attempts=3, delay=2.0, backoff=2.0)

        self.assertEqual(result, 'ok')
        self.assertEqual(func.call_count, 3)
        mock_sleep.assert_any_call(2.0)
        mock_sleep.assert_any_call(4.0)

    @patch('group_sync.retry.time.sleep')
    def test_raises_after_max_attempts(self, mock_sleep):
        error = TimeoutError('timed out')
        func = Mock(side_effect=error)

        with self.assertRaises(MaxRetriesExceeded) as ctx:
            retry_call(func, max_attempts=2, delay=0)

        self.assertEqual(ctx.exception.attempts, 2)
        self.assertIs(ctx.exception.last_exception, error)
        self.assertEqual(mock_sleep.call_count, 1)

    @patch('group_sync.retry.time.sleep')
    def test_should_retry_rejects_permanent_errors(self, mock_sleep):
        error = ApplyError('insufficient access rights')
        func = Mock(side_effect=error)

        with self.assertRaises(ApplyError):
            retry_call(func, max_attempts=5, should_retry=is_retryable_error)

        func.assert_called_once()
        mock_sleep.assert_not_called()

    @patch('group_sync.retry.time.sleep')
    def test_callback_failure_does_not_stop_retries(self, mock_sleep):
        func = Mock(side_effect=[RetryableError('busy'), 'done'])
        callback = Mock(side_effect=ValueError('broken callback'))

        self.assertEqual(retry_call(func, max_attempts=2, on_retry=callback), 'done')
        callback.assert_called_once()

    def test_kwargs_are_passed(self):
        func = Mock(return_value=1)
        retry_call(func, args=('a',), kwargs={'b': 2})
        func.assert_called_once_with('a', b=2)


class TestIsRetryableError(unittest.TestCase):
    """Test cases for is_retryable_error."""

    def test_transport_errors(self):
        self.assertTrue(is_retryable_error(ConnectionError('reset')))
        self.assertTrue(is_retryable_error(TimeoutError()))
        self.assertTrue(is_retryable_error(DirectoryUnavailableError('socket closed')))

    def test_http_status_codes(self):
        self.assertTrue(is_retryable_error(GraphAPIError('HTTP 429', status_code=429)))
        self.assertTrue(is_retryable_error(GraphAPIError('HTTP 503', status_code=503)))
        self.assertFalse(is_retryable_error(GraphAPIError('HTTP 403', status_code=403)))
        self.assertFalse(is_retryable_error(GraphAPIError('HTTP 400 timeout in body', status_code=400)))

    def test_message_patterns(self):
        self.assertTrue(is_retryable_error(Exception('LDAP server is busy')))
        self.assertTrue(is_retryable_error(Exception('Service Unavailable')))
        self.assertFalse(is_retryable_error(ApplyError('constraintViolation')))

    def test_directory_rejections_ignore_message_patterns(self):
        self.assertFalse(is_retryable_error(ApplyError('LDAP modify failed: unavailableCriticalExtension')))
        self.assertFalse(is_retryable_error(ApplyError('server busy rejecting constraint')))
        self.assertTrue(is_retryable_error(DirectoryUnavailableError('LDAP modify failed: unavailable')))

    def test_callback_logs_warning(self):
        callback = create_retry_callback('Membership change for U1')
        with self.assertLogs('group_sync.retry', level='WARNING') as logs:
            callback(1, ConnectionError('reset'))
        self.assertIn('Membership change for U1 failed on attempt 1', logs.output[0])


if __name__ == '__main__':
    unittest.main()
