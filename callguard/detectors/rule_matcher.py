"""
Rule Matcher - Evaluates prioritized user/system rules against a sender
"""

import dataclasses
import threading
import time
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

import structlog

from callguard.memory.rule_store import RuleStore
from callguard.schemas.events import DetectionType
from callguard.schemas.rules import BlacklistRule, Rule, WhitelistRule, rule_from_record

logger = structlog.get_logger()


@dataclass(frozen=True)
class RuleMatch:
    """Outcome of rule evaluation"""
    matched: bool
    rule: Optional[Rule] = None

    @property
    def blocks(self) -> bool:
        return self.matched and self.rule is not None and self.rule.blocks

    @property
    def allows(self) -> bool:
        return self.matched and self.rule is not None and not self.rule.blocks


NO_MATCH = RuleMatch(matched=False)


class RuleMatcher:
    """
    Evaluates rules in descending priority; the first active, applicable,
    matching rule wins.

    Rules are loaded from the store and kept for `refresh_seconds`, or until
    a rule mutation through this matcher invalidates them.
    """

    def __init__(
        self,
        store: RuleStore,
        scope: str = "current_user",
        refresh_seconds: float = 300,
        home_country_code: str = "+55",
        clock: Callable[[], float] = time.monotonic
    ):
        self.store = store
        self.scope = scope
        self.refresh_seconds = refresh_seconds
        self.home_country_code = home_country_code
        self._clock = clock

        self._lock = threading.Lock()
        self._rules: Optional[List[Rule]] = None
        self._loaded_at: Optional[float] = None
        self._listeners: List[Callable[[], None]] = []

        logger.info("Rule matcher initialized", scope=scope, refresh_seconds=refresh_seconds)

    # ==================== Evaluation ====================

    def evaluate(
        self,
        sender_id: str,
        content: Optional[str] = None,
        kind: Optional[DetectionType] = None,
        at: Optional[datetime] = None
    ) -> RuleMatch:
        """
        Find the rule deciding this sender/content, if any

        Args:
            sender_id: Phone number or short code
            content: Message body (None for calls)
            kind: Call or SMS; inferred from content when omitted
            at: Event time, used by time-based rules

        Returns:
            RuleMatch with the winning rule, or a non-match
        """
        if kind is None:
            kind = DetectionType.SMS if content is not None else DetectionType.CALL

        for rule in self._get_rules():
            if not rule.active:
                continue
            if not rule.applies_to(kind, content):
                continue
            if rule.matches(sender_id, content, at):
                logger.debug(
                    "Rule matched",
                    rule_id=rule.id,
                    rule_type=rule.rule_type,
                    sender_id=sender_id
                )
                return RuleMatch(matched=True, rule=rule)

        return NO_MATCH

    def _get_rules(self) -> List[Rule]:
        with self._lock:
            now = self._clock()
            if (
                self._rules is not None
                and self._loaded_at is not None
                and now - self._loaded_at < self.refresh_seconds
            ):
                return self._rules

            try:
                records = self.store.list_rules(self.scope)
            except Exception as e:
                logger.warning("Rule store unavailable, keeping previous rules", error=str(e))
                self._loaded_at = now
                if self._rules is None:
                    self._rules = []
                return self._rules

            rules = []
            for record in records:
                rule = self._parse(record)
                if rule is not None:
                    rules.append(rule)
            rules.sort(key=lambda r: r.priority, reverse=True)

            self._rules = rules
            self._loaded_at = now
            logger.debug("Rules refreshed", count=len(rules))
            return rules

    def _parse(self, record: Dict[str, Any]) -> Optional[Rule]:
        """One stored record as a rule, or None when it cannot be read"""
        try:
            return rule_from_record(record, self.home_country_code)
        except (ValueError, TypeError) as e:
            logger.warning("Skipping malformed rule record", rule_id=record.get('id'), error=str(e))
            return None

    def invalidate(self):
        """Force a reload on the next evaluation"""
        with self._lock:
            self._rules = None
            self._loaded_at = None

    def _changed(self):
        self.invalidate()
        for listener in self._listeners:
            listener()

    def add_listener(self, listener: Callable[[], None]):
        """Call `listener` after every rule mutation"""
        self._listeners.append(listener)

    # ==================== Management ====================

    def list_rules(self) -> List[Rule]:
        return list(self._get_rules())

    def get_rule(self, rule_id: str) -> Optional[Rule]:
        for rule in self._get_rules():
            if rule.id == rule_id:
                return rule
        return None

    def create_rule(self, rule: Rule) -> bool:
        created = self.store.create_rule(self.scope, rule.to_record())
        if created:
            self._changed()
            logger.info("Rule created", rule_id=rule.id, rule_type=rule.rule_type)
        return created

    def update_rule(self, rule: Rule) -> bool:
        updated = self.store.update_rule(self.scope, rule.to_record())
        if updated:
            self._changed()
            logger.info("Rule updated", rule_id=rule.id)
        return updated

    def delete_rule(self, rule_id: str) -> bool:
        deleted = self.store.delete_rule(self.scope, rule_id)
        if deleted:
            self._changed()
            logger.info("Rule deleted", rule_id=rule_id)
        return deleted

    def toggle_rule(self, rule_id: str, active: bool) -> bool:
        rule = self.get_rule(rule_id)
        if rule is None:
            return False
        return self.update_rule(dataclasses.replace(rule, active=active))

    def add_to_whitelist(self, phone_number: str) -> Rule:
        rule = WhitelistRule(
            id=f"whitelist_{uuid.uuid4().hex[:12]}",
            name=f"Whitelist - {phone_number}",
            pattern=phone_number,
            priority=100
        )
        self.create_rule(rule)
        return rule

    def add_to_blacklist(self, phone_number: str) -> Rule:
        rule = BlacklistRule(
            id=f"blacklist_{uuid.uuid4().hex[:12]}",
            name=f"Blacklist - {phone_number}",
            pattern=phone_number,
            priority=50
        )
        self.create_rule(rule)
        return rule

    def test_rule(
        self,
        rule_id: str,
        sender_id: str,
        content: Optional[str] = None,
        at: Optional[datetime] = None
    ) -> Optional[Dict[str, Any]]:
        """
        Check a single rule against a sample sender/content

        Ignores priority and the active flag. Returns None for an unknown rule.
        """
        rule = self.get_rule(rule_id)
        if rule is None:
            return None

        sender_matches = rule.matches(sender_id, None, at) if rule.applies_to(DetectionType.CALL, None) else False
        content_matches = False
        if content is not None and rule.applies_to(DetectionType.SMS, content):
            content_matches = rule.matches(sender_id, content, at)

        return {
            "rule_id": rule.id,
            "rule_name": rule.name,
            "sender_matches": sender_matches,
            "content_matches": content_matches,
            "would_block": rule.blocks and (sender_matches or content_matches),
        }

    def rule_stats(self) -> Dict[str, Any]:
        rules = self._get_rules()
        by_type: Dict[str, int] = {}
        for rule in rules:
            by_type[rule.rule_type] = by_type.get(rule.rule_type, 0) + 1
        return {
            "total_rules": len(rules),
            "active_rules": sum(1 for rule in rules if rule.active),
            "rules_by_type": by_type,
        }

    # ==================== Backup ====================

    def export_rules(self) -> List[Dict[str, Any]]:
        return [rule.to_record() for rule in self._get_rules()]

    def import_rules(self, records: List[Dict[str, Any]]) -> int:
        """
        Create rules from exported records

        Unreadable records and ids that already exist are skipped.

        Returns:
            Number of rules imported
        """
        imported = 0
        for record in records:
            rule = self._parse(record)
            if rule is None:
                continue
            if self.store.create_rule(self.scope, rule.to_record()):
                imported += 1

        if imported:
            self._changed()
        logger.info("Rules imported", imported=imported, offered=len(records))
        return imported

    def optimize_rules(self) -> int:
        """
        Delete rules duplicating the type and pattern of a higher-priority rule

        Returns:
            Number of rules removed
        """
        seen = set()
        removed = 0
        for rule in self._get_rules():
            signature = (rule.rule_type, rule.to_record().get('pattern') or '')
            if signature in seen:
                if self.store.delete_rule(self.scope, rule.id):
                    removed += 1
                continue
            seen.add(signature)

        if removed:
            self._changed()
        logger.info("Rules optimized", removed=removed)
        return removed
