#!/usr/bin/env python3
"""
Unit tests for retry utilities.
"""

import os
import sys
import unittest
from unittest.mock import Mock, patch

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from posix_ids.retry import (
    RetryableError, MaxRetriesExceeded, retry_call, create_retry_callback
)


class TestRetryCall(unittest.TestCase):
    """Test cases for retry_call."""

    @patch('posix_ids.retry.time.sleep')
    def test_succeeds_after_retries(self, mock_sleep):
        func = Mock(side_effect=[RetryableError("1"), RetryableError("2"), 'done'])
        on_retry = Mock()
        
        result = retry_call(func, (1,), {'x': 2}, max_attempts=3, delay=0.5, backoff=2.0, on_retry=on_retry)
        
        self.assertEqual(result, 'done')
        func.assert_called_with(1, x=2)
        self.assertEqual(on_retry.call_count, 2)
        mock_sleep.assert_any_call(0.5)
        mock_sleep.assert_any_call(1.0)

    @patch('posix_ids.retry.time.sleep')
    def test_max_retries_exceeded(self, mock_sleep):
        error = RetryableError("down")
        func = Mock(side_effect=error)
        
        with self.assertRaises(MaxRetriesExceeded) as ctx:
            retry_call(func, max_attempts=2, delay=0)
        
        self.assertEqual(ctx.exception.attempts, 2)
        self.assertIs(ctx.exception.last_exception, error)
        self.assertEqual(mock_sleep.call_count, 1)

    def test_other_exceptions_propagate(self):
        func = Mock(side_effect=ValueError("bad"))
        with self.assertRaises(ValueError):
            retry_call(func, max_attempts=3, delay=0)
        self.assertEqual(func.call_count, 1)

    @patch('posix_ids.retry.time.sleep')
    def test_callback_failure_does_not_stop_retry(self, mock_sleep):
        func = Mock(side_effect=[RetryableError("1"), 'ok'])
        self.assertEqual(retry_call(func, delay=0, on_retry=Mock(side_effect=RuntimeError)), 'ok')


class TestRetryCallback(unittest.TestCase):
    """Test cases for create_retry_callback."""

    def test_callback_logs(self):
        callback = create_retry_callback("list_users")
        with self.assertLogs('posix_ids.retry', level='WARNING') as logs:
            callback(1, RetryableError("down"))
        self.assertIn('list_users failed on attempt 1', logs.output[0])


if __name__ == '__main__':
    unittest.main()
