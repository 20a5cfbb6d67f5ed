import sys
import os
import unittest
from unittest.mock import MagicMock, patch
# Add src to path
sys.path.append(os.path.abspath(os.path.join(os.path.dirname(__file__), '../src')))

from utils.rule_lock import RuleLock


class TestRuleLockMemory(unittest.TestCase):
    def test_second_holder_is_refused(self):
        lock = RuleLock()

        with lock.hold('rule-1') as first:
            self.assertTrue(first)
            with lock.hold('rule-1') as second:
                self.assertFalse(second)
            with lock.hold('rule-2') as other:
                self.assertTrue(other)

        with lock.hold('rule-1') as again:
            self.assertTrue(again)

    def test_released_on_error(self):
        lock = RuleLock()
        with self.assertRaises(RuntimeError):
            with lock.hold('rule-1'):
                raise RuntimeError("boom")

        with lock.hold('rule-1') as acquired:
            self.assertTrue(acquired)

    def test_use_redis_without_config_falls_back(self):
        lock = RuleLock(use_redis=True)
        self.assertFalse(lock.use_redis)


class TestRuleLockRedis(unittest.TestCase):
    def test_acquire_and_release(self):
        client = MagicMock()
        client.set.return_value = True
        lock = RuleLock(ttl_seconds=30, redis_client=client)

        with lock.hold('rule-1') as acquired:
            self.assertTrue(acquired)

        args, kwargs = client.set.call_args
        self.assertEqual(args[0], 'alert_rule_lock:rule-1')
        self.assertEqual(kwargs, {'nx': True, 'ex': 30})
        token = args[1]

        eval_args = client.eval.call_args[0]
        self.assertEqual(eval_args[1:], (1, 'alert_rule_lock:rule-1', token))

    def test_held_elsewhere(self):
        client = MagicMock()
        client.set.return_value = None
        lock = RuleLock(redis_client=client)

        with lock.hold('rule-1') as acquired:
            self.assertFalse(acquired)
        client.eval.assert_not_called()

    def test_release_failure_is_logged(self):
        client = MagicMock()
        client.set.return_value = True
        client.eval.side_effect = ConnectionError("gone")
        lock = RuleLock(redis_client=client)

        with self.assertLogs('utils.rule_lock', level='ERROR'):
            with lock.hold('rule-1') as acquired:
                self.assertTrue(acquired)

    @patch('redis.Redis')
    def test_connection_failure_falls_back_to_memory(self, mock_redis):
        mock_redis.return_value.ping.side_effect = ConnectionError("refused")

        lock = RuleLock(use_redis=True, redis_config={'host': 'redis', 'port': 6379})

        self.assertFalse(lock.use_redis)
        self.assertIsNone(lock.redis_client)
        with lock.hold('rule-1') as acquired:
            self.assertTrue(acquired)


if __name__ == '__main__':
    unittest.main()
