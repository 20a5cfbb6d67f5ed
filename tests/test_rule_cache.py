import sys
import os
import unittest
# Add src to path
sys.path.append(os.path.abspath(os.path.join(os.path.dirname(__file__), '../src')))

from utils.rule_cache import RuleSetCache


class TestRuleSetCache(unittest.TestCase):
    def setUp(self):
        self.now = 0.0
        self.cache = RuleSetCache(ttl_seconds=10, clock=lambda: self.now)

    def test_get_or_load_caches(self):
        calls = []

        def loader():
            calls.append(1)
            return ['rule']

        self.assertEqual(self.cache.get_or_load(('org-1', None), loader), ['rule'])
        self.assertEqual(self.cache.get_or_load(('org-1', None), loader), ['rule'])
        self.assertEqual(len(calls), 1)
        self.assertEqual(self.cache.get_stats()['hits'], 1)
        self.assertEqual(self.cache.get_stats()['misses'], 1)

    def test_entries_expire(self):
        self.cache.put(('org-1', None), ['rule'])
        self.now = 9.9
        self.assertEqual(self.cache.get(('org-1', None)), ['rule'])
        self.now = 10.0
        self.assertIsNone(self.cache.get(('org-1', None)))

    def test_invalidate_organization(self):
        self.cache.put(('org-1', None), ['a'])
        self.cache.put(('org-1', 'proj-a'), ['b'])
        self.cache.put(('org-2', None), ['c'])

        self.assertEqual(self.cache.invalidate('org-1'), 2)
        self.assertIsNone(self.cache.get(('org-1', 'proj-a')))
        self.assertEqual(self.cache.get(('org-2', None)), ['c'])

        self.assertEqual(self.cache.invalidate(), 1)
        self.assertEqual(self.cache.get_stats()['cached_rule_sets'], 0)

    def test_zero_ttl_disables_caching(self):
        cache = RuleSetCache(ttl_seconds=0, clock=lambda: self.now)
        cache.put('key', 'value')
        self.assertIsNone(cache.get('key'))


if __name__ == '__main__':
    unittest.main()
