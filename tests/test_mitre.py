import sys
import os
import unittest
# Add src to path
sys.path.append(os.path.abspath(os.path.join(os.path.dirname(__file__), '../src')))

from detection.mitre import extract_tactics, extract_techniques, parse_from_tags


class TestMitreTags(unittest.TestCase):
    def test_techniques_and_subtechniques(self):
        tags = ['attack.t1003', 'attack.t1003.001', 'attack.T1003', 'attack.s0002']
        self.assertEqual(extract_techniques(tags), ['T1003', 'T1003.001'])

    def test_tactic_tags_must_be_known(self):
        tags = ['attack.persistence', 'attack.not-a-tactic', 'attack.lateral-movement', 'cve.2021.1234']
        self.assertEqual(extract_tactics(tags), ['persistence', 'lateral-movement'])

    def test_technique_implies_its_tactic(self):
        self.assertEqual(extract_tactics(['attack.t1486']), ['impact'])
        # Unknown technique ids are kept but add no tactic
        self.assertEqual(parse_from_tags(['attack.t9999']), ([], ['T9999']))

    def test_empty_tags(self):
        self.assertEqual(parse_from_tags(None), ([], []))
        self.assertEqual(parse_from_tags([]), ([], []))


if __name__ == '__main__':
    unittest.main()
