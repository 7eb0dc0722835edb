#!/usr/bin/env python3
"""
Unit tests for retry mechanism.
"""

import os
import sys
import unittest
from unittest.mock import Mock, patch, call

# Add the project directory to the path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from groupsync.errors import ConnectorAPIError, DeadlineExceeded
from groupsync.retry import MaxRetriesExceeded, RetryableError, is_retryable_error, retry_call
from groupsync.services.base import Deadline


@patch('groupsync.retry.time.sleep')
class TestRetryCall(unittest.TestCase):
    """Test cases for retry_call."""

    def test_success_on_first_attempt(self, mock_sleep):
        func = Mock(return_value='ok')

        self.assertEqual(retry_call(func, ('a',), {'b': 1}), 'ok')
        func.assert_called_once_with('a', b=1)
        mock_sleep.assert_not_called()

    def test_success_after_failures(self, mock_sleep):
        func = Mock(side_effect=[ConnectionError('reset'), ConnectionError('reset'), 'ok'])

        result = retry_call(func, max_attempts=3, delay=1.0, backoff=2.0)

        self.assertEqual(result, 'ok')
        self.assertEqual(mock_sleep.call_args_list, [call(1.0), call(2.0)])

    def test_max_retries_exceeded(self, mock_sleep):
        error = ConnectionError('reset')
        func = Mock(side_effect=error)

        with self.assertRaises(MaxRetriesExceeded) as cm:
            retry_call(func, max_attempts=3, delay=0.1)

        self.assertEqual(cm.exception.attempts, 3)
        self.assertIs(cm.exception.last_exception, error)
        self.assertEqual(func.call_count, 3)

    def test_unlisted_exceptions_propagate(self, mock_sleep):
        func = Mock(side_effect=KeyError('x'))

        with self.assertRaises(KeyError):
            retry_call(func, exceptions=(ConnectionError,))
        func.assert_called_once()

    def test_should_retry_rejects(self, mock_sleep):
        func = Mock(side_effect=ConnectorAPIError('forbidden', status_code=403))

        with self.assertRaises(ConnectorAPIError):
            retry_call(func, max_attempts=5, should_retry=is_retryable_error)
        func.assert_called_once()

    def test_on_retry_callback(self, mock_sleep):
        callback = Mock()
        func = Mock(side_effect=[ConnectionError('reset'), 'ok'])

        retry_call(func, on_retry=callback)

        callback.assert_called_once()
        self.assertEqual(callback.call_args[0][0], 1)

    def test_zero_attempts_still_calls_once(self, mock_sleep):
        func = Mock(return_value='ok')

        self.assertEqual(retry_call(func, max_attempts=0), 'ok')

    def test_deadline_stops_retries(self, mock_sleep):
        func = Mock(side_effect=ConnectionError('reset'))
        deadline = Deadline.after(0.5)

        with self.assertRaises(MaxRetriesExceeded):
            retry_call(func, max_attempts=5, delay=10.0, deadline=deadline)

        func.assert_called_once()
        mock_sleep.assert_not_called()


class TestIsRetryableError(unittest.TestCase):
    """Test cases for is_retryable_error."""

    def test_retryable(self):
        for error in (ConnectionError('x'), TimeoutError('x'), RetryableError('x'),
                      ConnectorAPIError('busy', status_code=503),
                      ConnectorAPIError('slow down', status_code=429),
                      Exception('connection reset by peer')):
            with self.subTest(error=error):
                self.assertTrue(is_retryable_error(error))

    def test_not_retryable(self):
        for error in (ConnectorAPIError('nope', status_code=404),
                      ConnectorAPIError('timeout in body', status_code=400),
                      ValueError('bad value'),
                      DeadlineExceeded('Deadline exceeded before GET /users')):
            with self.subTest(error=error):
                self.assertFalse(is_retryable_error(error))


if __name__ == '__main__':
    unittest.main()
