#!/usr/bin/env python3
"""
Tests for the shared HTTP connector base.
"""

import os
import sys
import json
import unittest
from unittest.mock import Mock, patch

# Add the project directory to the path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from groupsync.errors import ConnectorAPIError, ConnectorError, DeadlineExceeded
from groupsync.services.base import Deadline
from groupsync.services.http import ConnectorConnectionError, HTTPConnectorBase


class ExampleConnector(HTTPConnectorBase):

    def __init__(self, config):
        self.name = 'example'
        self.config = config
        self._setup_http()

    def auth_headers(self):
        return {'Authorization': 'Bearer t0k3n'}


def response(status, body=None, reason='OK'):
    mock_response = Mock()
    mock_response.status = status
    mock_response.reason = reason
    mock_response.read.return_value = json.dumps(body).encode('utf-8') if body is not None else b''
    return mock_response


class TestHTTPConnectorBase(unittest.TestCase):
    """Test cases for HTTPConnectorBase."""

    def setUp(self):
        self.config = {
            'api_url': 'https://api.example.com/v2',
            'error_handling': {'max_retries': 2, 'retry_wait_seconds': 1},
        }
        patcher = patch('groupsync.services.http.HTTPSConnection')
        self.mock_https = patcher.start()
        self.addCleanup(patcher.stop)
        self.conn = self.mock_https.return_value

        sleep_patcher = patch('groupsync.retry.time.sleep')
        self.mock_sleep = sleep_patcher.start()
        self.addCleanup(sleep_patcher.stop)

    def test_setup(self):
        connector = ExampleConnector(self.config)

        self.assertEqual(connector.host, 'api.example.com')
        self.assertEqual(connector.base_path, '/v2')
        self.assertEqual(connector.max_retries, 2)
        self.assertIsNotNone(connector.ssl_context)

    def test_missing_url(self):
        with self.assertRaises(ValueError):
            ExampleConnector({})

    def test_get_with_params(self):
        self.conn.getresponse.return_value = response(200, {'data': []})
        connector = ExampleConnector(self.config)

        result = connector.request('GET', '/users', params={'filter[roles]': 'ADMIN'})

        self.assertEqual(result, {'data': []})
        method, path, body, headers = self.conn.request.call_args[0]
        self.assertEqual(method, 'GET')
        self.assertEqual(path, '/v2/users?filter%5Broles%5D=ADMIN')
        self.assertIsNone(body)
        self.assertEqual(headers['Authorization'], 'Bearer t0k3n')

    def test_post_json_body(self):
        self.conn.getresponse.return_value = response(200, {'ok': True})
        connector = ExampleConnector(self.config)

        connector.request('POST', 'graphql', body={'query': '{}'})

        method, path, body, headers = self.conn.request.call_args[0]
        self.assertEqual(path, '/v2/graphql')
        self.assertEqual(json.loads(body), {'query': '{}'})
        self.assertEqual(headers['Content-Type'], 'application/json')

    def test_absolute_url_keeps_query(self):
        self.conn.getresponse.return_value = response(200, {})
        connector = ExampleConnector(self.config)

        connector.request('GET', 'https://api.example.com/v2/users?cursor=abc')

        self.assertEqual(self.conn.request.call_args[0][1], '/v2/users?cursor=abc')

    def test_absolute_url_on_other_host_is_refused(self):
        connector = ExampleConnector(self.config)

        with self.assertRaises(ConnectorError):
            connector.request('GET', 'https://elsewhere.example.net/v2/users?cursor=abc')
        self.conn.request.assert_not_called()

    def test_empty_body(self):
        self.conn.getresponse.return_value = response(204, reason='No Content')
        connector = ExampleConnector(self.config)

        self.assertEqual(connector.request('DELETE', '/users/1'), {})

    def test_server_errors_are_retried(self):
        self.conn.getresponse.side_effect = [
            response(502, reason='Bad Gateway'),
            response(200, {'ok': True}),
        ]
        connector = ExampleConnector(self.config)

        self.assertEqual(connector.request('GET', '/users'), {'ok': True})
        self.assertEqual(self.conn.request.call_count, 2)
        self.mock_sleep.assert_called_once_with(1.0)

    def test_client_errors_are_not_retried(self):
        self.conn.getresponse.return_value = response(404, reason='Not Found')
        connector = ExampleConnector(self.config)

        with self.assertRaises(ConnectorAPIError) as cm:
            connector.request('GET', '/users/404')

        self.assertEqual(cm.exception.status_code, 404)
        self.assertEqual(self.conn.request.call_count, 1)

    def test_retries_exhausted_raise_last_error(self):
        self.conn.getresponse.return_value = response(503, reason='Service Unavailable')
        connector = ExampleConnector(self.config)

        with self.assertRaises(ConnectorAPIError) as cm:
            connector.request('GET', '/users')

        self.assertEqual(cm.exception.status_code, 503)
        self.assertEqual(self.conn.request.call_count, 3)

    def test_connection_errors(self):
        self.conn.request.side_effect = ConnectionRefusedError('refused')
        connector = ExampleConnector(dict(self.config, error_handling={'max_retries': 0}))

        with self.assertRaises(ConnectorConnectionError):
            connector.request('GET', '/users')
        self.assertIsNone(connector.connection)

    def test_invalid_json(self):
        bad = response(200)
        bad.read.return_value = b'<html>'
        self.conn.getresponse.return_value = bad
        connector = ExampleConnector(self.config)

        with self.assertRaises(ConnectorError):
            connector.request('GET', '/users')

    def test_expired_deadline(self):
        connector = ExampleConnector(self.config)

        with self.assertRaises(DeadlineExceeded):
            connector.request('GET', '/users', deadline=Deadline.after(-1))
        self.conn.request.assert_not_called()


if __name__ == '__main__':
    unittest.main()
