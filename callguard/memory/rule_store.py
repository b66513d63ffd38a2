"""
Rule Store - Persistence interface for user and system rules

The real store lives outside the engine (the device database). This module
defines the interface the engine consumes plus an in-memory implementation.
"""

import copy
import threading
from typing import Any, Dict, List, Protocol

import structlog

logger = structlog.get_logger()


class RuleStore(Protocol):
    """What the rule matcher needs from a rule store"""

    def list_rules(self, scope: str) -> List[Dict[str, Any]]:
        ...

    def create_rule(self, scope: str, record: Dict[str, Any]) -> bool:
        ...

    def update_rule(self, scope: str, record: Dict[str, Any]) -> bool:
        ...

    def delete_rule(self, scope: str, rule_id: str) -> bool:
        ...


class InMemoryRuleStore:
    """Rule records kept in process, keyed by scope then rule id"""

    def __init__(self):
        self._lock = threading.Lock()
        self._rules: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self.list_calls = 0

    def list_rules(self, scope: str) -> List[Dict[str, Any]]:
        with self._lock:
            self.list_calls += 1
            return [copy.deepcopy(r) for r in self._rules.get(scope, {}).values()]

    def create_rule(self, scope: str, record: Dict[str, Any]) -> bool:
        rule_id = str(record.get('id', ''))
        if not rule_id:
            return False
        with self._lock:
            rules = self._rules.setdefault(scope, {})
            if rule_id in rules:
                return False
            rules[rule_id] = copy.deepcopy(record)
        logger.debug("Rule stored", scope=scope, rule_id=rule_id)
        return True

    def update_rule(self, scope: str, record: Dict[str, Any]) -> bool:
        rule_id = str(record.get('id', ''))
        with self._lock:
            rules = self._rules.get(scope, {})
            if rule_id not in rules:
                return False
            rules[rule_id] = copy.deepcopy(record)
        return True

    def delete_rule(self, scope: str, rule_id: str) -> bool:
        with self._lock:
            return self._rules.get(scope, {}).pop(rule_id, None) is not None
