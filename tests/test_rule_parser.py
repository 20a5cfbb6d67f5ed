import sys
import os
import unittest
from unittest.mock import patch
# Add src to path
sys.path.append(os.path.abspath(os.path.join(os.path.dirname(__file__), '../src')))

from detection.rule_parser import RuleValidationError, SigmaParser

VALID_RULE = """
title: SSH Brute Force
id: 11111111-2222-3333-4444-555555555555
status: stable
level: high
author: secops
tags:
  - attack.t1110
logsource:
  product: linux
  service: sshd
detection:
  selection:
    message|contains: 'Failed password'
  condition: selection
custom_field: kept
"""


class TestSigmaParser(unittest.TestCase):
    def test_parse_valid_rule(self):
        result = SigmaParser.parse(VALID_RULE)

        self.assertTrue(result.ok)
        rule = result.rule
        self.assertEqual(rule.id, '11111111-2222-3333-4444-555555555555')
        self.assertEqual(rule.title, 'SSH Brute Force')
        self.assertEqual(rule.level, 'high')
        self.assertEqual(rule.logsource, {'product': 'linux', 'service': 'sshd'})
        self.assertEqual(rule.tags, ['attack.t1110'])
        self.assertEqual(rule.extra, {'custom_field': 'kept'})
        self.assertIsNotNone(rule.compiled)
        self.assertTrue(rule.compiled.matches({'message': 'Failed password for root'}))

    def test_defaults_applied(self):
        rule = SigmaParser.parse_or_raise("""
title: Minimal
logsource: {}
detection:
  keywords: ['panic']
  condition: keywords
""")
        self.assertEqual(rule.level, 'medium')
        self.assertEqual(rule.status, 'stable')
        self.assertTrue(rule.id)

    def test_existing_id_is_kept(self):
        first = SigmaParser.parse_or_raise(VALID_RULE)
        second = SigmaParser.parse_or_raise(VALID_RULE)
        self.assertEqual(first.id, second.id)

    def test_invalid_yaml(self):
        result = SigmaParser.parse("title: [unclosed")
        self.assertIsNone(result.rule)
        self.assertTrue(result.errors[0].startswith('YAML parsing failed'))

    def test_empty_document(self):
        result = SigmaParser.parse("")
        self.assertEqual(result.errors, ['YAML parsing failed: document is empty'])

    def test_non_mapping_root(self):
        result = SigmaParser.parse("- a\n- b\n")
        self.assertEqual(result.errors, ['Invalid YAML: expected object, got list'])

    def test_collects_every_error(self):
        result = SigmaParser.parse("""
level: severe
status: draft
detection:
  selection:
    a: b
""")
        self.assertIsNone(result.rule)
        self.assertIn('Missing or invalid "title" field', result.errors)
        self.assertIn('Missing or invalid "logsource" field', result.errors)
        self.assertIn('Missing "detection.condition" field', result.errors)
        self.assertTrue(any(e.startswith('Invalid "level": severe') for e in result.errors))
        self.assertTrue(any(e.startswith('Invalid "status": draft') for e in result.errors))

    def test_missing_detection(self):
        result = SigmaParser.parse("title: x\nlogsource: {}\n")
        self.assertIn('Missing or invalid "detection" field', result.errors)

    def test_condition_errors_reported(self):
        result = SigmaParser.parse("""
title: Bad condition
logsource: {}
detection:
  selection:
    a: b
  condition: selection and filter
""")
        self.assertIsNone(result.rule)
        self.assertEqual(len(result.errors), 1)
        self.assertIn("undefined selection 'filter'", result.errors[0])

    def test_parse_or_raise(self):
        with self.assertRaises(RuleValidationError) as ctx:
            SigmaParser.parse_or_raise("title: only a title")
        self.assertGreaterEqual(len(ctx.exception.errors), 2)

    def test_to_document_round_trips_through_parser(self):
        rule = SigmaParser.parse_or_raise(VALID_RULE)
        doc = rule.to_document()
        self.assertEqual(doc['custom_field'], 'kept')
        self.assertEqual(SigmaParser.validate(doc), [])

    def test_yaml_bool_selection_key_does_not_raise(self):
        # `no` loads as False under YAML 1.1
        result = SigmaParser.parse(
            "title: Bool key\n"
            "logsource: {product: linux}\n"
            "detection:\n"
            "  selection: {service: sshd}\n"
            "  no: {level: debug}\n"
            "  condition: selection\n"
        )
        self.assertTrue(result.ok, result.errors)
        self.assertTrue(result.rule.compiled.matches({'service': 'sshd'}))

    def test_condition_may_reference_bool_loaded_key(self):
        rule = SigmaParser.parse_or_raise(
            "title: Yes key\n"
            "logsource: {}\n"
            "detection:\n"
            "  yes: {service: sshd}\n"
            "  filter: {user: root}\n"
            "  condition: True and not filter\n"
        )
        self.assertTrue(rule.compiled.matches({'service': 'sshd', 'user': 'bob'}))
        self.assertFalse(rule.compiled.matches({'service': 'sshd', 'user': 'root'}))

    def test_unexpected_compile_error_is_reported_not_raised(self):
        with patch('detection.models.compile_selection', side_effect=TypeError('unhashable type')):
            result = SigmaParser.parse(VALID_RULE)
        self.assertIsNone(result.rule)
        self.assertEqual(result.errors, ['Invalid "detection" block: unhashable type'])

    def test_mitre_enrichment_from_tags(self):
        rule = SigmaParser.parse_or_raise(VALID_RULE.replace(
            "  - attack.t1110\n",
            "  - attack.credential_access\n"
            "  - attack.execution\n"
            "  - attack.t1110\n"
            "  - attack.T1059.001\n"
            "  - attack.t1110\n"
            "  - attack.g0007\n",
        ))
        self.assertEqual(rule.mitre_techniques, ['T1110', 'T1059.001'])
        self.assertEqual(rule.mitre_tactics, ['execution', 'credential-access'])

    def test_rule_without_attack_tags_has_no_mitre_data(self):
        rule = SigmaParser.parse_or_raise(VALID_RULE.replace("  - attack.t1110\n", "  - detection.emerging_threats\n"))
        self.assertEqual(rule.mitre_tactics, [])
        self.assertEqual(rule.mitre_techniques, [])


if __name__ == '__main__':
    unittest.main()
