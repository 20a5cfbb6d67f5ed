import sys
import os
import shutil
import tempfile
import unittest
from unittest.mock import MagicMock, patch
# Add src to path
sys.path.append(os.path.abspath(os.path.join(os.path.dirname(__file__), '../src')))

from detection.rule_parser import SigmaParser
from detection.sigma_engine import SigmaDetectionEngine
from main import detect_and_notify, group_logs_by_tenant, load_config, run_alert_checks
from storage.memory import InMemorySigmaRuleRepository

RULE = """
title: Kernel Panic
id: kernel-panic
logsource: {}
detection:
  keywords: ['kernel panic']
  condition: keywords
"""


class TestLoadConfig(unittest.TestCase):
    def setUp(self):
        self.tmpdir = tempfile.mkdtemp()
        self.path = os.path.join(self.tmpdir, 'config.yaml')

    def tearDown(self):
        shutil.rmtree(self.tmpdir)

    @patch.dict(os.environ, {'CLICKHOUSE_HOST': 'ch.internal'}, clear=False)
    def test_environment_expansion(self):
        os.environ.pop('UNSET_PASSWORD_VAR', None)
        with open(self.path, 'w') as f:
            f.write("clickhouse:\n  host: ${CLICKHOUSE_HOST}\n  password: '${UNSET_PASSWORD_VAR}'\n")

        config = load_config(self.path)

        self.assertEqual(config['clickhouse']['host'], 'ch.internal')
        self.assertEqual(config['clickhouse']['password'], '')

    def test_bundled_config_loads(self):
        path = os.path.abspath(os.path.join(os.path.dirname(__file__), '../config/config.yaml'))
        config = load_config(path)
        for section in ('clickhouse', 'sigma', 'alerts', 'notifications', 'redis', 'checkpoint'):
            self.assertIn(section, config)


class TestServiceLoop(unittest.TestCase):
    def setUp(self):
        rule = SigmaParser.parse_or_raise(RULE)
        rule.organization_id = 'org-1'
        rule.webhook_url = 'https://hooks.example.com/sigma'
        self.rules = InMemorySigmaRuleRepository([rule])
        self.engine = SigmaDetectionEngine(self.rules)
        self.alerter = MagicMock()

    def test_group_logs_by_tenant(self):
        logs = [
            {'organization_id': 'org-1', 'project_id': 'proj-a', 'message': 'a'},
            {'organization_id': 'org-2', 'project_id': 'proj-x', 'message': 'b'},
            {'organization_id': 'org-1', 'project_id': 'proj-a', 'message': 'c'},
            {'message': 'no tenant'},
        ]
        groups = group_logs_by_tenant(logs)
        self.assertEqual(list(groups), [('org-1', 'proj-a'), ('org-2', 'proj-x')])
        self.assertEqual([log['message'] for log in groups[('org-1', 'proj-a')]], ['a', 'c'])

    def test_detect_and_notify(self):
        logs = [
            {'organization_id': 'org-1', 'project_id': 'proj-a', 'message': 'kernel panic'},
            {'organization_id': 'org-1', 'project_id': 'proj-a', 'message': 'kernel panic again'},
            {'organization_id': 'org-2', 'project_id': 'proj-x', 'message': 'kernel panic'},
        ]

        sent = detect_and_notify(logs, self.engine, self.rules, self.alerter)

        self.assertEqual(sent, 1)
        payload = self.alerter.process_notification.call_args[0][0]
        self.assertEqual(payload['rule_name'], '[Sigma] Kernel Panic')
        self.assertEqual(payload['log_count'], 2)
        self.assertEqual(payload['project_id'], 'proj-a')

    def test_notification_failure_does_not_stop_batch(self):
        self.alerter.process_notification.side_effect = RuntimeError("smtp exploded")
        logs = [{'organization_id': 'org-1', 'project_id': 'proj-a', 'message': 'kernel panic'}]

        with self.assertLogs('main', level='ERROR'):
            self.assertEqual(detect_and_notify(logs, self.engine, self.rules, self.alerter), 0)

    def test_run_alert_checks_dispatches_triggers(self):
        evaluator = MagicMock()
        evaluator.check_alert_rules.return_value = [{'rule_name': 'a'}, {'rule_name': 'b'}]

        self.assertEqual(run_alert_checks(evaluator, self.alerter), 2)
        self.assertEqual(self.alerter.process_notification.call_count, 2)


if __name__ == '__main__':
    unittest.main()
