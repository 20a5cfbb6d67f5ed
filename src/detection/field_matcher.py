from __future__ import annotations

import base64
import binascii
import functools
import ipaddress
import json
import logging
import re
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

logger = logging.getLogger(__name__)

# Modifiers that pick how the (possibly transformed) value is compared.
TEST_MODIFIERS = ("contains", "startswith", "endswith", "re", "cidr")
# Modifiers that transform the value or the pattern before the test runs.
TRANSFORM_MODIFIERS = ("base64", "base64offset", "windash")
FLAG_MODIFIERS = ("all", "cased")
KNOWN_MODIFIERS = frozenset(TEST_MODIFIERS + TRANSFORM_MODIFIERS + FLAG_MODIFIERS)


def get_nested_value(data: Dict[str, Any], path: str) -> Optional[Any]:
    """
    Retrieves a value from a nested dictionary using dot notation.
    Supports composite keys containing dots by attempting to match the
    remaining path as a single key when traversal fails.
    """
    if not path or not isinstance(data, dict):
        return None
    if path in data:
        return data.get(path)

    keys = path.split(".")
    current: Any = data
    for i, key in enumerate(keys):
        if not isinstance(current, dict):
            return None

        if i < len(keys) - 1:
            remaining = ".".join(keys[i:])
            if remaining in current:
                return current.get(remaining)

        current = current.get(key)

    return current


def coerce_str(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (dict, list)):
        return json.dumps(value, default=str, sort_keys=True)
    return str(value)


def parse_field_key(raw_key: str) -> Tuple[str, Tuple[str, ...]]:
    """Split ``Field|mod1|mod2`` into the field name and its modifier chain."""
    parts = [p for p in str(raw_key).split("|")]
    field = parts[0].strip()
    modifiers = tuple(p.strip().lower() for p in parts[1:] if p.strip())
    return field, modifiers


@functools.lru_cache(maxsize=4096)
def _compile_regex(pattern: str, flags: int) -> Optional[re.Pattern]:
    try:
        return re.compile(pattern, flags)
    except re.error as e:
        logger.warning(f"Invalid regex pattern {pattern!r}: {e}")
        return None


@functools.lru_cache(maxsize=4096)
def _wildcard_regex(pattern: str, flags: int) -> re.Pattern:
    parts: List[str] = []
    i = 0
    while i < len(pattern):
        ch = pattern[i]
        if ch == "\\" and i + 1 < len(pattern) and pattern[i + 1] in "*?\\":
            parts.append(re.escape(pattern[i + 1]))
            i += 2
            continue
        if ch == "*":
            parts.append(".*")
        elif ch == "?":
            parts.append(".")
        else:
            parts.append(re.escape(ch))
        i += 1
    return re.compile("".join(parts), flags | re.DOTALL)


def _has_wildcard(pattern: str) -> bool:
    return "*" in pattern or "?" in pattern


def _windash_variants(pattern: str) -> List[str]:
    """
    Sigma `windash` modifier: treat '-' and '/' as interchangeable option prefixes.
    """
    if not pattern:
        return [pattern]

    variants = [pattern]
    for src, dst in (("-", "/"), ("/", "-")):
        swapped = re.sub(r"(^|\s)" + re.escape(src), lambda m: m.group(1) + dst, pattern)
        if swapped not in variants:
            variants.append(swapped)
    return variants


def _b64decode(text: str) -> Optional[str]:
    stripped = text.strip()
    if not stripped:
        return None
    padded = stripped + ("=" * (-len(stripped) % 4))
    try:
        decoded = base64.b64decode(padded, validate=True)
    except (binascii.Error, ValueError):
        return None
    if b"\x00" not in decoded:
        try:
            return decoded.decode("utf-8")
        except UnicodeDecodeError:
            pass
    # PowerShell -EncodedCommand payloads are UTF-16LE.
    text16 = decoded.decode("utf-16le", errors="ignore").strip("\x00")
    return text16 or None


def _b64decode_offsets(text: str) -> List[str]:
    """
    Sigma `base64offset` modifier: the value may be a slice of a larger encoded
    blob that does not start on a 4-character boundary, so decode it at each
    possible alignment and keep every readable candidate.
    """
    stripped = text.strip()
    candidates: List[str] = []
    for offset in range(4):
        chunk = stripped[offset:]
        if len(chunk) < 4:
            continue
        chunk = chunk[: len(chunk) - (len(chunk) % 4)]
        try:
            decoded_bytes = base64.b64decode(chunk, validate=True)
        except (binascii.Error, ValueError):
            continue
        for encoding in ("utf-8", "utf-16le"):
            decoded = decoded_bytes.decode(encoding, errors="ignore").strip("\x00")
            if decoded and decoded not in candidates:
                candidates.append(decoded)
    return candidates


@dataclass(frozen=True)
class FieldMatcher:
    field: str
    modifiers: Tuple[str, ...]
    expected: Any
    case_sensitive: bool = False

    @property
    def operator(self) -> str:
        mods = set(self.modifiers)
        for name in ("cidr", "re", "contains", "startswith", "endswith"):
            if name in mods:
                return name
        if mods & {"base64", "base64offset"}:
            return "contains"
        if "all" in mods and not isinstance(self.expected, list):
            return "contains"
        return "eq"

    @property
    def unknown_modifiers(self) -> Tuple[str, ...]:
        return tuple(m for m in self.modifiers if m not in KNOWN_MODIFIERS)

    def _expected_values(self) -> List[Optional[str]]:
        raw = self.expected if isinstance(self.expected, list) else [self.expected]
        values: List[Optional[str]] = []
        for item in raw:
            values.append(None if item is None else coerce_str(item))

        if "all" in self.modifiers and not isinstance(self.expected, list):
            # Scalar pattern under `all`: every whitespace-separated token must be present.
            tokens: List[Optional[str]] = []
            for value in values:
                tokens.extend((value or "").split())
            return tokens
        return values

    def _actual_values(self, value: Any) -> List[str]:
        items = value if isinstance(value, list) else [value]
        actual = [coerce_str(item) for item in items if item is not None]

        mods = self.modifiers
        if "base64offset" in mods:
            decoded: List[str] = []
            for item in actual:
                decoded.extend(_b64decode_offsets(item))
            return decoded
        if "base64" in mods:
            decoded = []
            for item in actual:
                text = _b64decode(item)
                if text is not None:
                    decoded.append(text)
            return decoded
        return actual

    def _test(self, actual: str, expected: Optional[str]) -> bool:
        cased = self.case_sensitive or "cased" in self.modifiers
        operator = self.operator

        if expected is None:
            return actual == ""

        if operator == "re":
            pattern = _compile_regex(expected, 0 if cased else re.IGNORECASE)
            if pattern is None:
                return False
            return pattern.search(actual) is not None

        if operator == "cidr":
            try:
                network = ipaddress.ip_network(expected.strip(), strict=False)
                address = ipaddress.ip_address(actual.strip())
            except ValueError:
                return False
            return address.version == network.version and address in network

        variants = _windash_variants(expected) if "windash" in self.modifiers else [expected]
        haystack = actual if cased else actual.lower()
        for variant in variants:
            needle = variant if cased else variant.lower()
            if operator == "contains":
                if needle in haystack:
                    return True
            elif operator == "startswith":
                if haystack.startswith(needle):
                    return True
            elif operator == "endswith":
                if haystack.endswith(needle):
                    return True
            elif _has_wildcard(variant):
                if _wildcard_regex(variant, 0 if cased else re.IGNORECASE).fullmatch(actual):
                    return True
            elif haystack == needle:
                return True
        return False

    def match_value(self, value: Any) -> bool:
        if value is None:
            return False
        if self.unknown_modifiers:
            return False

        actual_values = self._actual_values(value)
        if not actual_values:
            return False

        expected_values = self._expected_values()
        if not expected_values:
            return False

        if "all" in self.modifiers:
            return all(
                any(self._test(actual, expected) for actual in actual_values)
                for expected in expected_values
            )

        return any(
            self._test(actual, expected)
            for actual in actual_values
            for expected in expected_values
        )

    def matches(self, event: Dict[str, Any]) -> bool:
        return self.match_value(lookup_field(event, self.field))


def lookup_field(event: Dict[str, Any], field: str) -> Optional[Any]:
    value = get_nested_value(event, field)
    if value is None and not field.startswith("metadata."):
        metadata = event.get("metadata") if isinstance(event, dict) else None
        if isinstance(metadata, dict):
            value = get_nested_value(metadata, field)
    return value


def compile_matcher(raw_key: str, raw_value: Any, case_sensitive: bool = False) -> FieldMatcher:
    field, modifiers = parse_field_key(raw_key)
    matcher = FieldMatcher(field=field, modifiers=modifiers, expected=raw_value, case_sensitive=case_sensitive)
    if matcher.unknown_modifiers:
        logger.warning(f"Unsupported modifier(s) {list(matcher.unknown_modifiers)} on field {field!r}; it will never match")
    return matcher


def match(
    value: Any,
    pattern: Any,
    modifier: Optional[Iterable[str] | str] = None,
    case_sensitive: bool = False,
) -> bool:
    """
    Match one log value against one Sigma pattern.

    Args:
        value: Scalar or list taken from the log record (None never matches)
        pattern: Scalar or list of scalars (a list is OR-combined)
        modifier: A single modifier name or a modifier chain, e.g. ("contains", "all")
        case_sensitive: Force exact-case comparison

    Returns:
        True if the value matches
    """
    if modifier is None:
        modifiers: Sequence[str] = ()
    elif isinstance(modifier, str):
        modifiers = tuple(m for m in modifier.split("|") if m)
    else:
        modifiers = tuple(modifier)

    matcher = FieldMatcher(
        field="",
        modifiers=tuple(m.strip().lower() for m in modifiers),
        expected=pattern,
        case_sensitive=case_sensitive,
    )
    return matcher.match_value(value)
