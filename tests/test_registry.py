#!/usr/bin/env python3
"""
Unit tests for the connector registry.
"""

import os
import sys
import threading
import unittest
from unittest.mock import Mock

# Add the project directory to the path so we can import our modules
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from groupsync.errors import ConfigurationError, ServiceNotDefined, TargetNotDefined
from groupsync.registry import READ_ONLY, READ_WRITE, ConnectorKind, ConnectorRegistry
from groupsync.services.ldap import LDAPService
from groupsync.services.mock import MockService, MockTarget


class TestConnectorRegistry(unittest.TestCase):
    """Test cases for ConnectorRegistry."""

    def setUp(self):
        self.config = {
            'ldap': {
                'server': 'ldap.example.com',
                'bind_user': 'cn=sync,dc=example,dc=com',
                'bind_password': 'secret',
                'user_base_dn': 'ou=people,dc=example,dc=com',
            },
            'mock': {'groups': {'devs': ['1']}},
            'writable': {'kind': 'mock_target'},
            'error_handling': {'max_retries': 4, 'retry_wait_seconds': 0},
        }

    def test_connector_is_built_once(self):
        built = []

        def factory(name, config):
            built.append(name)
            return MockTarget(name, config)

        registry = ConnectorRegistry({'counted': {'kind': 'counted'}},
                                     kinds={'counted': ConnectorKind('counted', factory, READ_WRITE)})

        first = registry.connector_from_name('counted')
        second = registry.target_from_name('counted')

        self.assertIs(first, second)
        self.assertEqual(built, ['counted'])

    def test_concurrent_lookups_build_once(self):
        factory = Mock(side_effect=lambda name, config: MockService(name, config))
        registry = ConnectorRegistry({'m': {'kind': 'counted'}},
                                     kinds={'counted': ConnectorKind('counted', factory, READ_ONLY)})

        threads = [threading.Thread(target=registry.connector_from_name, args=('m',)) for _ in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        self.assertEqual(factory.call_count, 1)

    def test_kind_defaults_to_section_name(self):
        registry = ConnectorRegistry(self.config)

        self.assertIsInstance(registry.connector_from_name('mock'), MockService)
        self.assertIsInstance(registry.connector_from_name('writable'), MockTarget)

    def test_read_only_backend_is_not_a_target(self):
        registry = ConnectorRegistry(self.config)

        with self.assertRaises(TargetNotDefined) as cm:
            registry.target_from_name('ldap')
        self.assertEqual(cm.exception.name, 'ldap')

        self.assertIsInstance(registry.connector_from_name('ldap'), LDAPService)

    def test_unknown_name(self):
        registry = ConnectorRegistry(self.config)

        with self.assertRaises(ServiceNotDefined) as cm:
            registry.connector_from_name('nowhere')
        self.assertEqual(cm.exception.name, 'nowhere')

        with self.assertRaises(ServiceNotDefined):
            registry.target_from_name('nowhere')

    def test_unknown_kind(self):
        registry = ConnectorRegistry({'odd': {'kind': 'carrier_pigeon'}})

        with self.assertRaises(ServiceNotDefined):
            registry.connector_from_name('odd')

    def test_error_handling_is_passed_to_connectors(self):
        registry = ConnectorRegistry(self.config)

        connector = registry.connector_from_name('mock')

        self.assertEqual(connector.config['error_handling']['max_retries'], 4)
        self.assertNotIn('error_handling', self.config['mock'])

    def test_invalid_section_becomes_configuration_error(self):
        registry = ConnectorRegistry({'ldap': {'user_base_dn': 'dc=example'}})

        with self.assertRaises(ConfigurationError):
            registry.connector_from_name('ldap')

    def test_factory_value_error_becomes_configuration_error(self):
        def factory(name, config):
            raise ValueError("bad port")

        registry = ConnectorRegistry({'x': {'kind': 'broken'}},
                                     kinds={'broken': ConnectorKind('broken', factory, READ_ONLY)})

        with self.assertRaises(ConfigurationError):
            registry.connector_from_name('x')

    def test_register(self):
        registry = ConnectorRegistry()
        registry.register('extra', ConnectorKind('mock_target', lambda n, c: MockTarget(n, c), READ_WRITE),
                          {'groups': {'team': ['7']}})

        self.assertIn('extra', registry.names())
        target = registry.target_from_name('extra')
        self.assertEqual(target.groups, {'team': ['7']})

    def test_register_only_affects_its_name(self):
        registry = ConnectorRegistry({
            'corp': {'kind': 'mock', 'groups': {'devs': ['alice']}},
            'legacy': {'kind': 'mock', 'groups': {'devs': ['bob']}},
        })

        registry.register('corp', ConnectorKind('mock', lambda n, c: MockTarget(n, c), READ_WRITE))

        self.assertIsInstance(registry.target_from_name('corp'), MockTarget)
        self.assertEqual(registry.kind_of('legacy').capabilities, READ_ONLY)
        with self.assertRaises(TargetNotDefined):
            registry.target_from_name('legacy')

    def test_close_closes_every_connector(self):
        registry = ConnectorRegistry(self.config)
        connector = registry.connector_from_name('mock')
        connector.close = Mock()

        with registry:
            pass

        connector.close.assert_called_once()
        self.assertIsNot(registry.connector_from_name('mock'), connector)


if __name__ == '__main__':
    unittest.main()
