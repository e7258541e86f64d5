#!/usr/bin/env python3
"""
Unit tests for the reconciliation data model.
"""

import os
import sys
import unittest

# Add the project directory to the path so we can import our modules
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from group_sync.models import (
    ContractError,
    Delta,
    Identity,
    MembershipSnapshot,
    Outcome,
    SyncDirection,
    SyncReport,
)


class TestIdentity(unittest.TestCase):

    def test_empty_correlation_values_become_none(self):
        identity = Identity('CN=carol', mapping_value='', remote_key='')
        self.assertIsNone(identity.mapping_value)
        self.assertIsNone(identity.remote_key)

    def test_equality_ignores_display_data(self):
        self.assertEqual(Identity('U1', remote_key='U1', display_name='Alice'),
                         Identity('U1', remote_key='U1', display_name='alice@corp'))
        self.assertNotEqual(Identity('U1', remote_key='U1'), Identity('U1', remote_key='U2'))

    def test_label_falls_back_to_key(self):
        self.assertEqual(Identity('CN=bob').label(), 'CN=bob')
        self.assertEqual(Identity('CN=bob', display_name='Bob').label(), 'Bob')


class TestMembershipSnapshot(unittest.TestCase):

    def test_keeps_directory_order(self):
        snapshot = MembershipSnapshot([Identity('b'), Identity('a'), Identity('c')], group_ref='g')
        self.assertEqual(snapshot.keys(), ['b', 'a', 'c'])
        self.assertEqual(len(snapshot), 3)

    def test_duplicate_key_rejected(self):
        with self.assertRaises(ContractError):
            MembershipSnapshot([Identity('a'), Identity('a', mapping_value='U1')])

    def test_missing_key_rejected(self):
        with self.assertRaises(ContractError):
            MembershipSnapshot([Identity(None, mapping_value='U1')])

    def test_non_identity_rejected(self):
        with self.assertRaises(ContractError):
            MembershipSnapshot([{'key': 'a'}])


class TestSyncDirection(unittest.TestCase):

    def test_parse(self):
        self.assertIs(SyncDirection.parse('to_remote'), SyncDirection.TO_REMOTE)
        self.assertIs(SyncDirection.parse('TO-LOCAL'), SyncDirection.TO_LOCAL)
        self.assertIs(SyncDirection.parse(SyncDirection.TO_LOCAL), SyncDirection.TO_LOCAL)
        with self.assertRaises(ValueError):
            SyncDirection.parse('both')

    def test_target(self):
        self.assertEqual(SyncDirection.TO_REMOTE.target, 'remote')
        self.assertEqual(SyncDirection.TO_LOCAL.target, 'local')


class TestDelta(unittest.TestCase):

    def test_sequences_are_immutable(self):
        to_add = [Identity('U1', remote_key='U1')]
        delta = Delta(SyncDirection.TO_REMOTE, to_add, [])
        to_add.append(Identity('U2', remote_key='U2'))

        self.assertEqual(len(delta.to_add), 1)
        self.assertIsInstance(delta.to_add, tuple)
        with self.assertRaises(AttributeError):
            delta.to_add = ()

    def test_is_empty_ignores_unresolved(self):
        self.assertTrue(Delta(SyncDirection.TO_LOCAL).is_empty())


class TestSyncReport(unittest.TestCase):

    def test_summary_counts(self):
        report = SyncReport('grp', 'remote')
        report.record('add', 'U1', Outcome.ADDED)
        report.record('add', 'U2', Outcome.ALREADY_MEMBER)
        report.record('remove', 'U3', Outcome.FAILED, 'ApplyError: denied')

        summary = report.summary()
        self.assertEqual(summary['added'], 1)
        self.assertEqual(summary['already_member'], 1)
        self.assertEqual(summary['failed'], 1)
        self.assertEqual(summary['removed'], 0)
        self.assertEqual(summary['unresolved'], 0)
        self.assertEqual([failure.key for failure in report.failures], ['U3'])
        self.assertFalse(report.succeeded)


if __name__ == '__main__':
    unittest.main()
