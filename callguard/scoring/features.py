"""
Feature Extraction - Numeric features for the learned scorer

All features are normalized to roughly [0, 1] so one learning rate fits them all.
"""

import re
from datetime import datetime
from typing import Dict, Optional

from callguard.detectors.heuristics import SUSPICIOUS_PREFIXES

FeatureVector = Dict[str, float]

# Keyword families and their weight in the keyword density feature
KEYWORD_FAMILIES = [
    (re.compile(r'\b(ganhe|grátis|gratis|promoção|promocao|oferta|desconto)\b', re.IGNORECASE), 0.8),
    (re.compile(r'\b(urgente|último dia|ultimo dia|expire|limitado)\b', re.IGNORECASE), 0.7),
    (re.compile(r'\b(clique|acesse|link)\b|www\.|https?://', re.IGNORECASE), 0.6),
    (re.compile(r'\b(banco|cartão|cartao|conta|senha|cpf)\b', re.IGNORECASE), 0.9),
    (re.compile(r'\b(parabéns|parabens|sorteio|prêmio|premio|ganhador)\b', re.IGNORECASE), 0.75),
]

URL_PATTERN = re.compile(r'https?://\S+|www\.\S+')
SPECIAL_CHARS = set('!@#$%^&*()_+-=[]{}|;:,.<>?')

PHONE_FEATURES = ('phone_length', 'phone_prefix_suspicious', 'phone_international', 'phone_shortcode')
CONTENT_FEATURES = (
    'content_length', 'content_uppercase_ratio', 'content_number_ratio',
    'content_special_char_ratio', 'content_spam_keywords', 'content_has_url',
)
TIME_FEATURES = ('time_hour', 'time_day_of_week', 'time_is_weekend')


def suspicious_prefix_score(phone_number: str) -> float:
    for prefix, score in SUSPICIOUS_PREFIXES.items():
        if phone_number.startswith(prefix):
            return score
    return 0.0


def uppercase_ratio(text: str) -> float:
    if not text:
        return 0.0
    return sum(1 for c in text if c.isupper()) / len(text)


def number_ratio(text: str) -> float:
    if not text:
        return 0.0
    return sum(1 for c in text if c.isdigit()) / len(text)


def special_char_ratio(text: str) -> float:
    if not text:
        return 0.0
    return sum(1 for c in text if c in SPECIAL_CHARS) / len(text)


def spam_keyword_score(text: str) -> float:
    """Weighted share of keyword families present in the text"""
    score = sum(weight for pattern, weight in KEYWORD_FAMILIES if pattern.search(text))
    return min(score / len(KEYWORD_FAMILIES), 1.0)


class FeatureExtractor:
    """Derives the learned scorer's feature vector from one event"""

    def extract(
        self,
        phone_number: str,
        content: Optional[str] = None,
        timestamp: Optional[datetime] = None
    ) -> FeatureVector:
        timestamp = timestamp or datetime.now()
        features: FeatureVector = {
            'phone_length': min(len(phone_number) / 15.0, 1.0),
            'phone_prefix_suspicious': suspicious_prefix_score(phone_number),
            'phone_international': 1.0 if phone_number.startswith('+') else 0.0,
            'phone_shortcode': 1.0 if len(phone_number) <= 5 else 0.0,
        }

        if content is not None:
            features.update({
                'content_length': min(len(content) / 160.0, 1.0),
                'content_uppercase_ratio': uppercase_ratio(content),
                'content_number_ratio': number_ratio(content),
                'content_special_char_ratio': special_char_ratio(content),
                'content_spam_keywords': spam_keyword_score(content),
                'content_has_url': 1.0 if URL_PATTERN.search(content) else 0.0,
            })

        # isoweekday: Monday=1 .. Sunday=7
        weekday = timestamp.isoweekday()
        features.update({
            'time_hour': timestamp.hour / 24.0,
            'time_day_of_week': weekday / 7.0,
            'time_is_weekend': 1.0 if weekday >= 6 else 0.0,
        })

        return features

    @staticmethod
    def prior(features: FeatureVector) -> float:
        """
        Score implied by the features alone, used while the model is immature
        """
        score = features.get('phone_prefix_suspicious', 0.0)
        score += features.get('content_spam_keywords', 0.0)
        score += 0.3 * features.get('content_has_url', 0.0)
        if features.get('content_number_ratio', 0.0) > 0.3:
            score += 0.2
        if features.get('content_uppercase_ratio', 0.0) > 0.5:
            score += 0.2
        return max(0.0, min(score, 1.0))
