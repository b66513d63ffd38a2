"""
Rule Schemas - One variant per rule type

Each variant carries only the fields it needs and decides for itself
whether it applies to a kind of traffic and whether it matches.
"""

import re
from dataclasses import asdict, dataclass, field
from datetime import datetime
from functools import lru_cache
from typing import Any, ClassVar, Dict, Optional, Type

import structlog

from callguard.schemas.events import DetectionType

logger = structlog.get_logger()


@lru_cache(maxsize=512)
def compile_pattern(pattern: str, ignore_case: bool = True) -> Optional[re.Pattern]:
    """Compile a user supplied pattern, or None when it is malformed"""
    try:
        return re.compile(pattern, re.IGNORECASE if ignore_case else 0)
    except re.error as e:
        logger.warning("Malformed rule pattern", pattern=pattern, error=str(e))
        return None


@dataclass(frozen=True)
class Rule:
    """Common rule fields"""
    id: str
    name: str
    active: bool = True
    priority: int = 0
    created_at: datetime = field(default_factory=datetime.now, compare=False)

    rule_type: ClassVar[str] = ""
    blocks: ClassVar[bool] = True
    needs_content: ClassVar[bool] = False

    def applies_to(self, kind: DetectionType, content: Optional[str]) -> bool:
        """Whether the rule can be evaluated for this traffic at all"""
        if self.needs_content:
            return kind == DetectionType.SMS and content is not None
        return True

    def matches(self, sender_id: str, content: Optional[str] = None, at: Optional[datetime] = None) -> bool:
        raise NotImplementedError

    def to_record(self) -> Dict[str, Any]:
        record = asdict(self)
        record['type'] = self.rule_type
        record['created_at'] = self.created_at.isoformat()
        return record


@dataclass(frozen=True)
class BlacklistRule(Rule):
    pattern: str = ""

    rule_type: ClassVar[str] = "blacklist"

    def matches(self, sender_id, content=None, at=None):
        return bool(self.pattern) and sender_id == self.pattern


@dataclass(frozen=True)
class WhitelistRule(Rule):
    """Signals "do not block" when the sender equals the pattern"""
    pattern: str = ""

    rule_type: ClassVar[str] = "whitelist"
    blocks: ClassVar[bool] = False

    def matches(self, sender_id, content=None, at=None):
        return bool(self.pattern) and sender_id == self.pattern


@dataclass(frozen=True)
class PrefixRule(Rule):
    pattern: str = ""

    rule_type: ClassVar[str] = "prefix"

    def matches(self, sender_id, content=None, at=None):
        return bool(self.pattern) and sender_id.startswith(self.pattern)


@dataclass(frozen=True)
class KeywordRule(Rule):
    pattern: str = ""

    rule_type: ClassVar[str] = "keyword"
    needs_content: ClassVar[bool] = True

    def matches(self, sender_id, content=None, at=None):
        if not self.pattern or content is None:
            return False
        return self.pattern.lower() in content.lower()


@dataclass(frozen=True)
class RegexRule(Rule):
    """Regular expression over the message body"""
    pattern: str = ""

    rule_type: ClassVar[str] = "regex"
    needs_content: ClassVar[bool] = True

    def matches(self, sender_id, content=None, at=None):
        if not self.pattern or content is None:
            return False
        compiled = compile_pattern(self.pattern)
        return compiled is not None and compiled.search(content) is not None


@dataclass(frozen=True)
class PatternRule(Rule):
    """Regular expression over the sender, and over the body when there is one"""
    pattern: str = ""

    rule_type: ClassVar[str] = "pattern"

    def matches(self, sender_id, content=None, at=None):
        if not self.pattern:
            return False
        compiled = compile_pattern(self.pattern)
        if compiled is None:
            return False
        if compiled.search(sender_id):
            return True
        return content is not None and compiled.search(content) is not None


@dataclass(frozen=True)
class InternationalRule(Rule):
    """International senders outside the home country code"""
    home_country_code: str = "+55"

    rule_type: ClassVar[str] = "international"

    def matches(self, sender_id, content=None, at=None):
        return sender_id.startswith('+') and not sender_id.startswith(self.home_country_code)

    def to_record(self) -> Dict[str, Any]:
        record = super().to_record()
        record['pattern'] = record.pop('home_country_code')
        return record


@dataclass(frozen=True)
class ShortCodeRule(Rule):
    max_length: int = 6

    rule_type: ClassVar[str] = "shortCode"

    def matches(self, sender_id, content=None, at=None):
        return sender_id.isdigit() and len(sender_id) <= self.max_length

    def to_record(self) -> Dict[str, Any]:
        record = super().to_record()
        record['pattern'] = str(record.pop('max_length'))
        return record


_HOUR_WINDOW = re.compile(r'^\s*(\d{1,2})\s*-\s*(\d{1,2})\s*$')


@dataclass(frozen=True)
class TimeBasedRule(Rule):
    """Blocks during an hour window such as "22-07" (end exclusive, may wrap midnight)"""
    pattern: str = ""

    rule_type: ClassVar[str] = "timeBased"

    def matches(self, sender_id, content=None, at=None):
        window = _HOUR_WINDOW.match(self.pattern or "")
        if not window:
            return False
        start, end = int(window.group(1)), int(window.group(2))
        if not (0 <= start <= 23 and 0 <= end <= 24):
            return False
        hour = (at or datetime.now()).hour
        if start == end:
            return True
        if start < end:
            return start <= hour < end
        return hour >= start or hour < end


RULE_TYPES: Dict[str, Type[Rule]] = {
    cls.rule_type: cls
    for cls in (
        BlacklistRule, WhitelistRule, PrefixRule, KeywordRule, RegexRule,
        PatternRule, InternationalRule, ShortCodeRule, TimeBasedRule,
    )
}

# Legacy type names still found in stored rules
RULE_TYPE_ALIASES = {
    "smsBlacklist": "blacklist",
    "phoneNumber": "blacklist",
    "keywordFilter": "keyword",
}


def rule_from_record(record: Dict[str, Any], home_country_code: str = "+55") -> Optional[Rule]:
    """
    Build a rule variant from a stored record

    Records look like {id, name, type, pattern, active, priority}.
    Unknown types yield None.
    """
    rule_type = RULE_TYPE_ALIASES.get(record.get('type', ''), record.get('type', ''))
    cls = RULE_TYPES.get(rule_type)
    if cls is None:
        logger.warning("Unsupported rule type", rule_id=record.get('id'), rule_type=record.get('type'))
        return None

    common = {
        'id': str(record.get('id', '')),
        'name': record.get('name') or str(record.get('id', '')),
        'active': bool(record.get('active', True)),
        'priority': int(record.get('priority', 0)),
    }
    created_at = record.get('created_at')
    if isinstance(created_at, datetime):
        common['created_at'] = created_at
    elif isinstance(created_at, str):
        common['created_at'] = datetime.fromisoformat(created_at)

    if cls is InternationalRule:
        return InternationalRule(**common, home_country_code=record.get('pattern') or home_country_code)
    if cls is ShortCodeRule:
        pattern = str(record.get('pattern') or '')
        if pattern.isdigit():
            return ShortCodeRule(**common, max_length=int(pattern))
        return ShortCodeRule(**common)
    return cls(**common, pattern=record.get('pattern') or "")
