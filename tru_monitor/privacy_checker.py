"""
Privacy Violation Detector

Scans outgoing data for anything that must never reach the federation
network. Unlike validate_message, findings are graded by severity so the
same scan can drive both the publish gate and human-readable reports.
"""

import datetime
import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List

from .errors import PrivacyViolationError

log = logging.getLogger("TruMonitor.PrivacyChecker")

CRITICAL = 'CRITICAL'
HIGH = 'HIGH'
MEDIUM = 'MEDIUM'

SEVERITY_DEDUCTIONS = {CRITICAL: 50, HIGH: 20, MEDIUM: 10}
BLOCKING_SEVERITIES = (CRITICAL, HIGH)

SENSITIVE_PATTERNS = {
    'wallet_address': (re.compile(r'0x[a-fA-F0-9]{40}'), 'Ethereum wallet address', CRITICAL),
    'execution_id': (re.compile(r'[a-f0-9]{8}-[a-f0-9]{4}-[a-f0-9]{4}-[a-f0-9]{4}-[a-f0-9]{12}', re.IGNORECASE),
                     'Execution ID (UUID)', HIGH),
    'ip_address': (re.compile(r'\b(?:(?:25[0-5]|2[0-4][0-9]|[01]?[0-9][0-9]?)\.){3}'
                              r'(?:25[0-5]|2[0-4][0-9]|[01]?[0-9][0-9]?)\b'), 'IP address', HIGH),
    'private_key': (re.compile(r'(?:private[_\s-]?key|priv[_\s-]?key|secret[_\s-]?key)[\s:=]+[a-fA-F0-9]{64}',
                               re.IGNORECASE), 'Private key', CRITICAL),
    'exact_timestamp': (re.compile(r'\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2}\.\d{3}Z'),
                        'Exact timestamp (should be rounded)', MEDIUM),
    'sensitive_field': (re.compile(r'"(input_data|output_data|error_data|execution_id|nodeAddress|walletAddress|privateKey)":',
                                   re.IGNORECASE), 'Sensitive JSON field name', HIGH),
}

# Timestamps on the 5-minute grid are what the anonymizer produces.
ROUNDED_TIMESTAMP_RE = re.compile(r'\d{4}-\d{2}-\d{2}T\d{2}:[0-5][05]:00\.000Z')


@dataclass
class PrivacyViolation:
    type: str
    description: str
    severity: str
    count: int
    examples: List[str] = field(default_factory=list)
    location: str = 'root'

    def to_dict(self) -> Dict[str, Any]:
        return {
            'type': self.type,
            'description': self.description,
            'severity': self.severity,
            'count': self.count,
            'examples': list(self.examples),
            'location': self.location,
        }


def mask_sensitive_data(value: str, violation_type: str) -> str:
    """Returns a form of a match that is safe to put in a log line."""
    if violation_type == 'wallet_address':
        return f"{value[:6]}...{value[-4:]}"
    if violation_type in ('private_key', 'execution_id'):
        return '***REDACTED***'
    if violation_type == 'ip_address':
        parts = value.split('.')
        return f"{parts[0]}.{parts[1]}.***.***"
    return '***'


def find_location(data: Any, match: str) -> str:
    """Dotted path of the first string value containing match."""
    if not isinstance(data, (dict, list)):
        return 'root'

    def search(node, path):
        items = node.items() if isinstance(node, dict) else enumerate(node)
        for key, value in items:
            current = path + [str(key)]
            if isinstance(value, str) and match in value:
                return '.'.join(current)
            if isinstance(value, (dict, list)):
                found = search(value, current)
                if found:
                    return found
        return None

    return search(data, []) or 'unknown'


class PrivacyViolationDetector:
    def _serialize(self, data: Any) -> str:
        if isinstance(data, str):
            return data
        if isinstance(data, (dict, list)):
            return json.dumps(data, separators=(',', ':'), default=str)
        return str(data)

    def check(self, data: Any) -> List[PrivacyViolation]:
        try:
            text = self._serialize(data)
        except (TypeError, ValueError) as e:
            log.error(f"Failed to serialize data for privacy check: {e}")
            return [PrivacyViolation('serialization', 'Failed to serialize data for privacy check', CRITICAL, 1)]

        violations = []
        for violation_type, (pattern, description, severity) in SENSITIVE_PATTERNS.items():
            matches = [m.group(0) for m in pattern.finditer(text)]
            if violation_type == 'exact_timestamp':
                matches = [m for m in matches if not ROUNDED_TIMESTAMP_RE.fullmatch(m)]
            if not matches:
                continue
            violations.append(PrivacyViolation(
                type=violation_type,
                description=description,
                severity=severity,
                count=len(matches),
                examples=[mask_sensitive_data(m, violation_type) for m in matches[:3]],
                location=find_location(data, matches[0]),
            ))
        return violations

    def assert_safe(self, data: Any, context: str = 'data') -> bool:
        """Raises PrivacyViolationError if any CRITICAL or HIGH finding is present."""
        violations = self.check(data)
        blocking = [v for v in violations if v.severity in BLOCKING_SEVERITIES]
        if blocking:
            summary = '; '.join(f"{v.severity}: {v.description} ({v.count} found at {v.location})"
                                for v in violations)
            raise PrivacyViolationError(f"detected in {context}: {summary}", blocking[0].type)
        return True

    def privacy_score(self, data: Any) -> int:
        """100 means nothing found; each finding deducts by severity."""
        deductions = sum(SEVERITY_DEDUCTIONS.get(v.severity, 5) for v in self.check(data))
        return max(0, 100 - deductions)

    def generate_report(self, data: Any, context: str = 'data') -> Dict[str, Any]:
        violations = self.check(data)
        score = max(0, 100 - sum(SEVERITY_DEDUCTIONS.get(v.severity, 5) for v in violations))
        if score == 100:
            status = 'SAFE'
        elif score >= 80:
            status = 'WARNING'
        else:
            status = 'UNSAFE'
        return {
            'context': context,
            'timestamp': datetime.datetime.now(datetime.timezone.utc).isoformat(),
            'privacyScore': score,
            'status': status,
            'violations': len(violations),
            'details': [v.to_dict() for v in violations],
            'recommendation': ('Remove or anonymize sensitive data before transmission' if score < 100
                               else 'Data is safe for federation'),
        }
