"""
Heuristic Spam Detection - Rule-derived score
Fast detection from message wording, sender shape and call context
"""

import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional, Set, Tuple

import structlog

from callguard.schemas.events import CallDirection, DetectionType, MessageDirection

logger = structlog.get_logger()


@dataclass
class DetectionSignal:
    """A single detection signal"""
    signal_type: str
    description: str
    weight: float
    matched_text: Optional[str] = None
    confidence: float = 1.0


@dataclass
class HeuristicResult:
    """Result from heuristic detection"""
    score: float = 0.0
    signals: List[DetectionSignal] = field(default_factory=list)

    def add_signal(self, signal: DetectionSignal):
        self.signals.append(signal)
        self._recalculate_score()

    def _recalculate_score(self):
        # Noisy-OR: every signal can only raise the score
        remaining = 1.0
        for s in self.signals:
            remaining *= 1.0 - max(0.0, min(s.weight * s.confidence, 1.0))
        self.score = 1.0 - remaining

    @property
    def signal_types(self) -> List[str]:
        return [s.signal_type for s in self.signals]


# Number prefixes used by telemarketing, automated and virtual lines
SUSPICIOUS_PREFIXES = {
    '0800': 0.3,
    '4000': 0.4,
    '4003': 0.4,
    '4004': 0.4,
    '3000': 0.5,
    '2000': 0.6,
    '1000': 0.7,
}

SUSPICIOUS_CONTACT_NAMES = ('promoção', 'promocao', 'oferta', 'vendas', 'marketing', 'cobrança', 'cobranca')


class HeuristicDetector:
    """
    Rule-derived scoring from fixed heuristics

    Content patterns only apply to messages; sender and timing heuristics
    apply to both calls and messages.
    """

    def __init__(self, home_country_code: str = "+55"):
        self.home_country_code = home_country_code

        self.content_patterns = [
            (r'\b(promoção|promocao|oferta|grátis|gratis|ganhe|desconto|liquidação|imperdível)\b', 'promotional', 0.5),
            (r'\b(urgente|último dia|ultimo dia|expira|limitado|últimas? \d+ vagas?)\b', 'urgency', 0.4),
            (r'\b(parabéns|parabens|sorteio|prêmio|premio|ganhador|você ganhou)\b', 'lottery', 0.6),
            (r'\b(empréstimo|crédito|financiamento|cartão aprovado|dívida|negativado|spc|serasa|limpe seu nome)\b', 'financial_offer', 0.5),
            (r'\b(senha|cpf|confirme seus dados)\b|cadastre.{0,20}cpf', 'credential_request', 0.7),
            (r'\b(bitcoin|investimento|renda extra|trabalhe em casa|pirâmide|dinheiro fácil)\b', 'money_scheme', 0.5),
            (r'\b(free|winner|act now|claim your|prize)\b', 'promotional', 0.4),
            (r'\d+%\s*(de\s+)?desconto', 'discount', 0.3),
            (r'https?://\S+|www\.\S+|bit\.ly/\S+|tinyurl\.com/\S+', 'link', 0.5),
            (r'clique aqui|clique no link|click here|acesse agora', 'click_bait', 0.4),
        ]

        self.custom_keywords: Set[str] = set()

        self._compile_patterns()

        logger.info("Heuristic detector initialized", patterns=len(self.compiled_patterns))

    def _compile_patterns(self):
        """Compile regex patterns for efficiency"""
        self.compiled_patterns: List[Tuple[re.Pattern, str, float]] = []

        for pattern, signal_type, weight in self.content_patterns:
            try:
                self.compiled_patterns.append((re.compile(pattern, re.IGNORECASE), signal_type, weight))
            except re.error as e:
                logger.warning("Failed to compile pattern", pattern=pattern, error=str(e))

    # ==================== Custom keywords ====================

    def add_custom_keyword(self, keyword: str) -> bool:
        """Flag messages containing `keyword`; False if it was already known"""
        keyword = keyword.strip().lower()
        if not keyword or keyword in self.custom_keywords:
            return False
        self.custom_keywords.add(keyword)
        logger.info("Custom keyword added", keyword=keyword)
        return True

    def remove_custom_keyword(self, keyword: str) -> bool:
        keyword = keyword.strip().lower()
        if keyword not in self.custom_keywords:
            return False
        self.custom_keywords.discard(keyword)
        logger.info("Custom keyword removed", keyword=keyword)
        return True

    def list_custom_keywords(self) -> List[str]:
        return sorted(self.custom_keywords)

    # ==================== Detection ====================

    def detect(
        self,
        sender_id: str,
        content: Optional[str] = None,
        kind: DetectionType = DetectionType.CALL,
        contact_name: Optional[str] = None,
        direction: Optional[str] = None,
        at: Optional[datetime] = None
    ) -> HeuristicResult:
        """
        Score one call or message

        Args:
            sender_id: Phone number or short code
            content: Message body (messages only)
            kind: Call or SMS
            contact_name: Address book name for calls
            direction: Call or message direction
            at: Event time

        Returns:
            HeuristicResult with score and signals
        """
        result = HeuristicResult()

        # Traffic the user started is never spam
        if direction in (CallDirection.OUTGOING.value, MessageDirection.SENT.value):
            return result

        self._check_sender(sender_id, result)

        if kind == DetectionType.SMS and content:
            self._check_content(content, result)
        elif kind == DetectionType.CALL:
            self._check_call(contact_name, direction, result)

        if at is not None and (at.hour < 7 or at.hour > 22):
            result.add_signal(DetectionSignal(
                signal_type='unusual_hour',
                description='Contact at an unusual hour',
                weight=0.2,
                matched_text=at.strftime('%H:%M'),
                confidence=0.8
            ))

        logger.debug(
            "Heuristic detection complete",
            sender_id=sender_id,
            score=result.score,
            signal_count=len(result.signals)
        )

        return result

    def _check_sender(self, sender_id: str, result: HeuristicResult):
        clean = re.sub(r'[^0-9+]', '', sender_id)
        digits = clean.lstrip('+')

        if digits and not clean.startswith('+') and len(digits) <= 6:
            result.add_signal(DetectionSignal(
                signal_type='short_code',
                description='Short code sender',
                weight=0.4,
                matched_text=clean
            ))
        elif len(digits) > 15:
            result.add_signal(DetectionSignal(
                signal_type='long_number',
                description='Unusually long number',
                weight=0.2,
                matched_text=clean
            ))

        for prefix, weight in SUSPICIOUS_PREFIXES.items():
            if clean.startswith(prefix):
                result.add_signal(DetectionSignal(
                    signal_type='suspicious_prefix',
                    description=f"Number prefix {prefix}",
                    weight=weight,
                    matched_text=prefix
                ))
                break

        if clean.startswith('+') and not clean.startswith(self.home_country_code):
            result.add_signal(DetectionSignal(
                signal_type='international',
                description='International sender',
                weight=0.3,
                matched_text=clean[:4]
            ))

    def _check_content(self, content: str, result: HeuristicResult):
        normalized = content.lower().strip()

        for pattern, signal_type, weight in self.compiled_patterns:
            matches = pattern.findall(normalized)
            if matches:
                first = matches[0] if isinstance(matches[0], str) else matches[0][0]
                result.add_signal(DetectionSignal(
                    signal_type=signal_type,
                    description=f"Content: {signal_type.replace('_', ' ')}",
                    weight=weight,
                    matched_text=first,
                    confidence=min(1.0, 0.5 + (len(matches) * 0.1))
                ))

        custom_hits = [k for k in sorted(self.custom_keywords) if k in normalized]
        if custom_hits:
            result.add_signal(DetectionSignal(
                signal_type='custom_keyword',
                description='Content: user defined spam keyword',
                weight=0.5,
                matched_text=custom_hits[0],
                confidence=min(1.0, 0.5 + (len(custom_hits) * 0.1))
            ))

        letters = [c for c in content if c.isalpha()]
        if len(letters) >= 10:
            caps_ratio = sum(1 for c in letters if c.isupper()) / len(letters)
            if caps_ratio > 0.5:
                result.add_signal(DetectionSignal(
                    signal_type='excessive_caps',
                    description='Excessive use of capital letters',
                    weight=0.3,
                    confidence=0.7
                ))

        digit_ratio = sum(1 for c in content if c.isdigit()) / len(content)
        if digit_ratio > 0.3:
            result.add_signal(DetectionSignal(
                signal_type='digit_heavy',
                description='Message is mostly digits',
                weight=0.2,
                confidence=0.6
            ))

        exclamation_count = content.count('!')
        if exclamation_count > 3:
            result.add_signal(DetectionSignal(
                signal_type='excessive_punctuation',
                description='Excessive exclamation marks',
                weight=0.2,
                matched_text=f"{exclamation_count} exclamation marks",
                confidence=0.6
            ))

        if len(content) < 50 and ('http' in normalized or 'www' in normalized):
            result.add_signal(DetectionSignal(
                signal_type='short_with_link',
                description='Short message with link',
                weight=0.4,
                confidence=0.5
            ))

        if len(content) > 500:
            result.add_signal(DetectionSignal(
                signal_type='long_message',
                description='Very long message',
                weight=0.1,
                confidence=0.5
            ))

    def _check_call(self, contact_name: Optional[str], direction: Optional[str], result: HeuristicResult):
        if direction == CallDirection.MISSED.value:
            result.add_signal(DetectionSignal(
                signal_type='missed_call',
                description='Missed call',
                weight=0.3,
                confidence=0.6
            ))

        if contact_name is None:
            result.add_signal(DetectionSignal(
                signal_type='unknown_caller',
                description='Caller not in contacts',
                weight=0.1
            ))
            return

        lower_name = contact_name.lower()
        for name in SUSPICIOUS_CONTACT_NAMES:
            if name in lower_name:
                result.add_signal(DetectionSignal(
                    signal_type='suspicious_contact_name',
                    description='Contact name looks commercial',
                    weight=0.3,
                    matched_text=contact_name
                ))
                break
