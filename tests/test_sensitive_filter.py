#!/usr/bin/env python3
"""
Tests for scrubbing credentials out of log records.
"""

import sys
import os
import logging
import unittest

# Add the project directory to the path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from ldap_scim_sync.logging_setup import SensitiveDataFilter


def make_record(msg, args=None):
    return logging.LogRecord('test', logging.INFO, __file__, 1, msg, args, None)


class TestSensitiveDataFilter(unittest.TestCase):

    def setUp(self):
        self.filter = SensitiveDataFilter()

    def scrub(self, msg, args=None):
        record = make_record(msg, args)
        self.assertTrue(self.filter.filter(record))
        return record.getMessage()

    def test_filter_patterns(self):
        test_cases = [
            ('password=secret123', 'password=****'),
            ('token=abc123def456', 'token=****'),
            ('{"bind_password": "topsecret"}', '{"bind_password": "****"}'),
            ('{"password": "test123"}', '{"password": "****"}'),
            ('Authorization: Bearer abc123token', 'Authorization: Bearer ****'),
            ('Normal message without secrets', 'Normal message without secrets'),
        ]

        for input_msg, expected in test_cases:
            with self.subTest(msg=input_msg):
                self.assertEqual(self.scrub(input_msg), expected)

    def test_bare_bearer_token(self):
        result = self.scrub('retrying with Bearer eyJhbGciOiJIUzI1NiJ9.payload.sig')

        self.assertEqual(result, 'retrying with Bearer ****')

    def test_secrets_in_format_arguments(self):
        result = self.scrub('bind failed: bind_password=%s', ('hunter2',))

        self.assertNotIn('hunter2', result)
        self.assertIn('bind_password=****', result)

    def test_access_token_in_config_dump(self):
        result = self.scrub("scim config {'endpoint': 'https://scim', 'access_token': 'tok-123'}")

        self.assertNotIn('tok-123', result)
        self.assertIn('https://scim', result)

    def test_case_insensitive_keys(self):
        self.assertEqual(self.scrub('SMTP_PASSWORD=abc'), 'SMTP_PASSWORD=****')

    def test_records_without_args(self):
        class BareRecord:
            def __init__(self, msg):
                self.msg = msg

        record = BareRecord('secret=abc')
        self.filter.filter(record)

        self.assertEqual(record.msg, 'secret=****')


if __name__ == '__main__':
    unittest.main()
