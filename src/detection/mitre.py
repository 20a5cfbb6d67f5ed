import re
from typing import Dict, Iterable, List, Tuple

# Enterprise ATT&CK tactics by their Sigma tag name.
MITRE_TACTICS: Dict[str, str] = {
    'reconnaissance': 'TA0043',
    'resource-development': 'TA0042',
    'initial-access': 'TA0001',
    'execution': 'TA0002',
    'persistence': 'TA0003',
    'privilege-escalation': 'TA0004',
    'defense-evasion': 'TA0005',
    'credential-access': 'TA0006',
    'discovery': 'TA0007',
    'lateral-movement': 'TA0008',
    'collection': 'TA0009',
    'command-and-control': 'TA0011',
    'exfiltration': 'TA0010',
    'impact': 'TA0040',
}

# Techniques commonly tagged in Sigma rules -> (name, tactic). Not the full matrix.
MITRE_TECHNIQUES: Dict[str, Tuple[str, str]] = {
    'T1059': ('Command and Scripting Interpreter', 'execution'),
    'T1059.001': ('PowerShell', 'execution'),
    'T1059.003': ('Windows Command Shell', 'execution'),
    'T1059.005': ('Visual Basic', 'execution'),
    'T1059.006': ('Python', 'execution'),
    'T1059.007': ('JavaScript', 'execution'),
    'T1047': ('Windows Management Instrumentation', 'execution'),
    'T1053': ('Scheduled Task/Job', 'execution'),
    'T1053.005': ('Scheduled Task', 'execution'),
    'T1204': ('User Execution', 'execution'),
    'T1204.002': ('Malicious File', 'execution'),
    'T1547': ('Boot or Logon Autostart Execution', 'persistence'),
    'T1547.001': ('Registry Run Keys / Startup Folder', 'persistence'),
    'T1543': ('Create or Modify System Process', 'persistence'),
    'T1543.003': ('Windows Service', 'persistence'),
    'T1574': ('Hijack Execution Flow', 'persistence'),
    'T1574.001': ('DLL Search Order Hijacking', 'persistence'),
    'T1134': ('Access Token Manipulation', 'privilege-escalation'),
    'T1134.001': ('Token Impersonation/Theft', 'privilege-escalation'),
    'T1068': ('Exploitation for Privilege Escalation', 'privilege-escalation'),
    'T1548': ('Abuse Elevation Control Mechanism', 'privilege-escalation'),
    'T1548.002': ('Bypass User Account Control', 'privilege-escalation'),
    'T1027': ('Obfuscated Files or Information', 'defense-evasion'),
    'T1027.010': ('Command Obfuscation', 'defense-evasion'),
    'T1070': ('Indicator Removal', 'defense-evasion'),
    'T1070.001': ('Clear Windows Event Logs', 'defense-evasion'),
    'T1112': ('Modify Registry', 'defense-evasion'),
    'T1218': ('System Binary Proxy Execution', 'defense-evasion'),
    'T1218.011': ('Rundll32', 'defense-evasion'),
    'T1055': ('Process Injection', 'defense-evasion'),
    'T1562': ('Impair Defenses', 'defense-evasion'),
    'T1562.001': ('Disable or Modify Tools', 'defense-evasion'),
    'T1003': ('OS Credential Dumping', 'credential-access'),
    'T1003.001': ('LSASS Memory', 'credential-access'),
    'T1003.002': ('Security Account Manager', 'credential-access'),
    'T1003.003': ('NTDS', 'credential-access'),
    'T1110': ('Brute Force', 'credential-access'),
    'T1552': ('Unsecured Credentials', 'credential-access'),
    'T1555': ('Credentials from Password Stores', 'credential-access'),
    'T1007': ('System Service Discovery', 'discovery'),
    'T1018': ('Remote System Discovery', 'discovery'),
    'T1033': ('System Owner/User Discovery', 'discovery'),
    'T1049': ('System Network Connections Discovery', 'discovery'),
    'T1069': ('Permission Groups Discovery', 'discovery'),
    'T1069.001': ('Local Groups', 'discovery'),
    'T1069.002': ('Domain Groups', 'discovery'),
    'T1082': ('System Information Discovery', 'discovery'),
    'T1083': ('File and Directory Discovery', 'discovery'),
    'T1021': ('Remote Services', 'lateral-movement'),
    'T1021.001': ('Remote Desktop Protocol', 'lateral-movement'),
    'T1021.002': ('SMB/Windows Admin Shares', 'lateral-movement'),
    'T1021.006': ('Windows Remote Management', 'lateral-movement'),
    'T1570': ('Lateral Tool Transfer', 'lateral-movement'),
    'T1005': ('Data from Local System', 'collection'),
    'T1039': ('Data from Network Shared Drive', 'collection'),
    'T1056': ('Input Capture', 'collection'),
    'T1056.001': ('Keylogging', 'collection'),
    'T1074': ('Data Staged', 'collection'),
    'T1114': ('Email Collection', 'collection'),
    'T1020': ('Automated Exfiltration', 'exfiltration'),
    'T1041': ('Exfiltration Over C2 Channel', 'exfiltration'),
    'T1048': ('Exfiltration Over Alternative Protocol', 'exfiltration'),
    'T1567': ('Exfiltration Over Web Service', 'exfiltration'),
    'T1485': ('Data Destruction', 'impact'),
    'T1486': ('Data Encrypted for Impact', 'impact'),
    'T1490': ('Inhibit System Recovery', 'impact'),
    'T1491': ('Defacement', 'impact'),
    'T1498': ('Network Denial of Service', 'impact'),
    'T1499': ('Endpoint Denial of Service', 'impact'),
}

_TECHNIQUE_TAG = re.compile(r"attack\.t(\d{4})(?:\.(\d{3}))?")
_TACTIC_TAG = re.compile(r"^attack\.([a-z-]+)$")


def extract_techniques(tags: Iterable[str]) -> List[str]:
    """Technique ids from ``attack.t1059`` / ``attack.t1059.001`` tags, in tag order."""
    techniques: List[str] = []
    for tag in tags or ():
        match = _TECHNIQUE_TAG.search(str(tag).lower())
        if not match:
            continue
        technique = f"T{match.group(1)}" + (f".{match.group(2)}" if match.group(2) else "")
        if technique not in techniques:
            techniques.append(technique)
    return techniques


def extract_tactics(tags: Iterable[str]) -> List[str]:
    """
    Tactic names from ``attack.<tactic>`` tags, followed by the tactics of
    known tagged techniques.
    """
    tags = list(tags or ())
    tactics: List[str] = []
    for tag in tags:
        match = _TACTIC_TAG.match(str(tag).lower())
        if match and match.group(1) in MITRE_TACTICS and match.group(1) not in tactics:
            tactics.append(match.group(1))

    for technique in extract_techniques(tags):
        known = MITRE_TECHNIQUES.get(technique)
        if known and known[1] not in tactics:
            tactics.append(known[1])
    return tactics


def parse_from_tags(tags: Iterable[str]) -> Tuple[List[str], List[str]]:
    """
    Returns:
        (tactics, techniques)
    """
    tags = list(tags or ())
    return extract_tactics(tags), extract_techniques(tags)
