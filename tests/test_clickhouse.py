import sys
import os
import unittest
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock, patch
# Add src to path
sys.path.append(os.path.abspath(os.path.join(os.path.dirname(__file__), '../src')))

from consumers.clickhouse_consumer import ClickHouseConsumer
from storage.clickhouse_history import ClickHouseAlertHistoryRepository
from storage.memory import PersistenceError

T0 = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)

COLUMNS = [('time', 'DateTime64'), ('organization_id', 'String'), ('project_id', 'String'),
           ('service', 'String'), ('level', 'String'), ('message', 'String'), ('metadata', 'String')]


class TestClickHouseConsumer(unittest.TestCase):
    def setUp(self):
        self.client = MagicMock()
        self.checkpoint = MagicMock()
        self.checkpoint.load.return_value = T0
        self.config = {'host': 'localhost', 'batch_size': 100, 'retry_count': 2, 'retry_delay': 0}

    def test_resumes_from_checkpoint(self):
        consumer = ClickHouseConsumer(self.config, self.checkpoint, client=self.client)
        self.assertEqual(consumer.last_query_time, T0)

    def test_initial_start_mode_beginning(self):
        self.checkpoint.load.return_value = None
        config = dict(self.config, initial_start_mode='beginning')
        consumer = ClickHouseConsumer(config, self.checkpoint, client=self.client)
        self.assertEqual(consumer.last_query_time, datetime.fromtimestamp(0, tz=timezone.utc))

    def test_fetch_logs_advances_checkpoint(self):
        newest = datetime(2024, 5, 1, 12, 0, 5)
        self.client.execute.return_value = (
            [
                (datetime(2024, 5, 1, 12, 0, 1), 'org-1', 'proj-a', 'api', 'error', 'boom', '{"user": "bob"}'),
                (newest, 'org-1', 'proj-a', 'api', 'info', 'ok', ''),
            ],
            COLUMNS,
        )
        consumer = ClickHouseConsumer(self.config, self.checkpoint, client=self.client)

        logs = consumer.fetch_logs()

        self.assertEqual(len(logs), 2)
        self.assertEqual(logs[0]['metadata'], {'user': 'bob'})
        self.assertEqual(logs[1]['metadata'], {})
        self.assertEqual(logs[1]['time'], newest.replace(tzinfo=timezone.utc))
        self.assertEqual(consumer.last_query_time, newest.replace(tzinfo=timezone.utc))
        self.checkpoint.save.assert_called_once_with(newest.replace(tzinfo=timezone.utc), logs_count=2)

        query, params = self.client.execute.call_args[0]
        self.assertIn('time > %(since)s', query)
        self.assertEqual(params, {'since': T0})

    def test_rows_sharing_cursor_time_are_not_skipped(self):
        stamp = datetime(2024, 5, 1, 12, 0, 5)
        first = (stamp, 'org-1', 'proj-a', 'api', 'error', 'first', '')
        second = (stamp, 'org-1', 'proj-a', 'api', 'error', 'second', '')
        third = (stamp, 'org-1', 'proj-a', 'api', 'error', 'third', '')
        later = (datetime(2024, 5, 1, 12, 0, 6), 'org-1', 'proj-a', 'api', 'error', 'later', '')
        self.config['batch_size'] = 2
        consumer = ClickHouseConsumer(self.config, self.checkpoint, client=self.client)

        # The batch limit cuts the same-second rows in half
        self.client.execute.return_value = ([first, second], COLUMNS)
        self.assertEqual([log['message'] for log in consumer.fetch_logs()], ['first', 'second'])

        self.client.execute.return_value = ([first, second, third, later], COLUMNS)
        logs = consumer.fetch_logs()

        self.assertEqual([log['message'] for log in logs], ['third', 'later'])
        query, params = self.client.execute.call_args[0]
        self.assertIn('time >= %(since)s', query)
        self.assertIn('LIMIT 4', query)
        self.assertEqual(params, {'since': stamp.replace(tzinfo=timezone.utc)})
        self.assertEqual(consumer.last_query_time, later[0].replace(tzinfo=timezone.utc))

    def test_no_new_rows_at_cursor_returns_empty(self):
        stamp = datetime(2024, 5, 1, 12, 0, 5)
        row = (stamp, 'org-1', 'proj-a', 'api', 'error', 'only', '')
        consumer = ClickHouseConsumer(self.config, self.checkpoint, client=self.client)

        self.client.execute.return_value = ([row], COLUMNS)
        self.assertEqual(len(consumer.fetch_logs()), 1)
        self.client.execute.return_value = ([row], COLUMNS)
        self.assertEqual(consumer.fetch_logs(), [])
        self.assertEqual(self.checkpoint.save.call_count, 1)

    def test_invalid_metadata_is_kept_raw(self):
        self.client.execute.return_value = ([(T0, 'org-1', 'proj-a', 'api', 'info', 'x', 'not json')], COLUMNS)
        consumer = ClickHouseConsumer(self.config, self.checkpoint, client=self.client)

        self.assertEqual(consumer.fetch_logs()[0]['metadata'], {'raw': 'not json'})

    @patch('consumers.clickhouse_consumer.time.sleep')
    def test_fetch_failure_returns_empty(self, mock_sleep):
        self.client.execute.side_effect = RuntimeError("connection reset")
        consumer = ClickHouseConsumer(self.config, self.checkpoint, client=self.client)

        self.assertEqual(consumer.fetch_logs(), [])
        self.assertEqual(self.client.execute.call_count, 2)
        self.assertEqual(consumer.last_query_time, T0)
        self.checkpoint.save.assert_not_called()

    def test_count_logs_project_scope(self):
        self.client.execute.return_value = [(7,)]
        consumer = ClickHouseConsumer(self.config, self.checkpoint, client=self.client)

        count = consumer.count_logs(organization_id='org-1', project_id='proj-a', service='api',
                                    levels=['error'], since=T0 - timedelta(minutes=5), until=T0)

        self.assertEqual(count, 7)
        query, params = self.client.execute.call_args[0]
        self.assertIn('time > %(since)s', query)
        self.assertIn('time <= %(until)s', query)
        self.assertIn('project_id = %(project_id)s', query)
        self.assertIn('service = %(service)s', query)
        self.assertEqual(params['levels'], ('error',))

    def test_count_logs_org_wide(self):
        self.client.execute.return_value = [(3,)]
        consumer = ClickHouseConsumer(self.config, self.checkpoint, client=self.client)

        consumer.count_logs(organization_id='org-1', project_id=None, service=None,
                            levels=['error', 'critical'], since=T0, until=T0)

        query, params = self.client.execute.call_args[0]
        self.assertNotIn('project_id', query)
        self.assertNotIn('service', params)

    @patch('consumers.clickhouse_consumer.time.sleep')
    def test_count_logs_failure_propagates(self, _sleep):
        self.client.execute.side_effect = RuntimeError("timeout")
        consumer = ClickHouseConsumer(self.config, self.checkpoint, client=self.client)

        with self.assertRaises(RuntimeError):
            consumer.count_logs(organization_id='org-1', project_id=None, service=None,
                                levels=['error'], since=T0, until=T0)


class TestClickHouseAlertHistoryRepository(unittest.TestCase):
    def setUp(self):
        self.client = MagicMock()
        self.repository = ClickHouseAlertHistoryRepository(self.client, {'history_table': 'alert_history'})

    def test_creates_table(self):
        self.assertIn('CREATE TABLE IF NOT EXISTS alert_history', self.client.execute.call_args_list[0][0][0])

    def test_create_history(self):
        entry = self.repository.create_history(rule_id='rule-1', triggered_at=T0, log_count=5)

        query, rows = self.client.execute.call_args[0]
        self.assertTrue(query.startswith('INSERT INTO alert_history'))
        self.assertEqual(rows, [(entry.id, 'rule-1', T0, 5, 0, None)])

    def test_latest_history_for(self):
        self.client.execute.return_value = [('h1', 'rule-1', datetime(2024, 5, 1, 12, 0), 5, 1, None)]

        entry = self.repository.latest_history_for('rule-1')

        self.assertEqual(entry.id, 'h1')
        self.assertEqual(entry.triggered_at, T0)
        self.assertTrue(entry.notified)

    def test_latest_history_for_unknown_rule(self):
        self.client.execute.return_value = []
        self.assertIsNone(self.repository.latest_history_for('rule-x'))

    def test_mark_as_notified(self):
        self.repository.mark_as_notified('h1', 'Email failed: x')

        query, params = self.client.execute.call_args[0]
        self.assertIn('UPDATE notified = 1', query)
        self.assertEqual(params, {'id': 'h1', 'error': 'Email failed: x'})

    def test_mark_as_notified_without_id(self):
        calls = self.client.execute.call_count
        self.repository.mark_as_notified(None)
        self.assertEqual(self.client.execute.call_count, calls)

    def test_failures_become_persistence_errors(self):
        self.client.execute.side_effect = RuntimeError("down")
        with self.assertRaises(PersistenceError):
            self.repository.create_history(rule_id='rule-1', triggered_at=T0, log_count=1)


if __name__ == '__main__':
    unittest.main()
