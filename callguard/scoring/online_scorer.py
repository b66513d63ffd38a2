"""
Online Linear Scorer - Logistic model updated one feedback at a time
"""

import json
import math
import random
import threading
from collections import deque
from datetime import datetime
from pathlib import Path
from typing import Any, Deque, Dict, Optional, Tuple, Union

import structlog

from callguard.scoring.features import (
    CONTENT_FEATURES, PHONE_FEATURES, TIME_FEATURES, FeatureExtractor, FeatureVector,
)

logger = structlog.get_logger()

# sigmoid(30) is still distinguishable from 1.0 in double precision
LOGIT_LIMIT = 30.0

FEATURE_GROUPS = {
    'phone': PHONE_FEATURES,
    'content': CONTENT_FEATURES,
    'time': TIME_FEATURES,
}


def sigmoid(x: float) -> float:
    x = max(-LOGIT_LIMIT, min(LOGIT_LIMIT, x))
    return 1.0 / (1.0 + math.exp(-x))


def _split(feature_name: str) -> Tuple[str, str]:
    group, _, key = feature_name.partition('_')
    return group, key


class OnlineLinearScorer:
    """
    Per-feature weight maps plus a bias, squashed through a sigmoid

    Updates are single-sample gradient steps on the logistic loss and are
    serialized by one lock per model. Weights are clamped to
    +/- weight_limit after every step.
    """

    ACCURACY_WINDOW = 100
    MIN_ACCURACY_EXAMPLES = 10

    def __init__(
        self,
        learning_rate: float = 0.01,
        weight_limit: float = 5.0,
        init_scale: float = 0.05,
        seed: Optional[int] = None,
        history_size: int = 1000,
        maturity_examples: int = 50
    ):
        self.learning_rate = learning_rate
        self.weight_limit = weight_limit
        self.maturity_examples = maturity_examples

        self._lock = threading.RLock()
        self._history: Deque[Tuple[FeatureVector, float]] = deque(maxlen=history_size)
        self.update_count = 0
        self.last_update: Optional[datetime] = None

        rng = random.Random(seed)
        self.weights: Dict[str, Dict[str, float]] = {
            group: {
                _split(name)[1]: rng.uniform(-init_scale, init_scale)
                for name in names
            }
            for group, names in FEATURE_GROUPS.items()
        }
        self.bias = rng.uniform(-init_scale, init_scale)

        logger.info(
            "Online scorer initialized",
            learning_rate=learning_rate,
            weight_limit=weight_limit,
            features=sum(len(w) for w in self.weights.values())
        )

    # ==================== Prediction ====================

    def predict(self, features: FeatureVector) -> float:
        """Sigmoid of the weighted feature sum; always strictly inside (0, 1)"""
        with self._lock:
            return self._predict(features)

    def _predict(self, features: FeatureVector) -> float:
        total = self.bias
        for name, value in features.items():
            group, key = _split(name)
            weight = self.weights.get(group, {}).get(key)
            if weight is not None:
                total += weight * value
        return sigmoid(total)

    def score(self, features: FeatureVector) -> float:
        """
        Learned component score

        Until enough feedback has been seen the raw prediction is mostly
        replaced by the feature prior.
        """
        with self._lock:
            prediction = self._predict(features)
            mature = len(self._history) > self.maturity_examples

        model_weight = 0.7 if mature else 0.3
        blended = prediction * model_weight + FeatureExtractor.prior(features) * (1.0 - model_weight)
        return max(0.0, min(blended, 1.0))

    # ==================== Training ====================

    def update(self, features: FeatureVector, label: Union[bool, float]) -> float:
        """
        Apply one gradient step towards label (1.0 spam, 0.0 legitimate)

        Returns:
            The prediction error before the step
        """
        target = 1.0 if label is True else 0.0 if label is False else float(label)

        with self._lock:
            error = target - self._predict(features)
            step = self.learning_rate * error

            for name, value in features.items():
                group, key = _split(name)
                group_weights = self.weights.get(group)
                if group_weights is None or key not in group_weights:
                    continue
                group_weights[key] = self._clamp(group_weights[key] + step * value)

            self.bias = self._clamp(self.bias + step)
            self.update_count += 1
            self.last_update = datetime.now()
            self._history.append((dict(features), target))

        logger.debug("Online scorer updated", error=round(error, 4), updates=self.update_count)
        return error

    def _clamp(self, weight: float) -> float:
        return max(-self.weight_limit, min(self.weight_limit, weight))

    @property
    def training_examples(self) -> int:
        with self._lock:
            return len(self._history)

    def accuracy(self) -> float:
        """Share of the most recent feedback examples the model now gets right"""
        with self._lock:
            examples = list(self._history)[-self.ACCURACY_WINDOW:]
            if len(examples) < self.MIN_ACCURACY_EXAMPLES:
                return 0.0
            correct = sum(
                1 for features, target in examples
                if (self._predict(features) > 0.5) == (target >= 0.5)
            )
        return correct / len(examples)

    # ==================== Persistence ====================

    def to_dict(self) -> Dict[str, Any]:
        with self._lock:
            return {
                'learning_rate': self.learning_rate,
                'weight_limit': self.weight_limit,
                'maturity_examples': self.maturity_examples,
                'weights': {group: dict(w) for group, w in self.weights.items()},
                'bias': self.bias,
                'update_count': self.update_count,
                'last_update': self.last_update.isoformat() if self.last_update else None,
                'history_size': self._history.maxlen,
                'history': [
                    {'features': features, 'label': target}
                    for features, target in self._history
                ],
            }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "OnlineLinearScorer":
        scorer = cls(
            learning_rate=data.get('learning_rate', 0.01),
            weight_limit=data.get('weight_limit', 5.0),
            history_size=data.get('history_size', 1000),
            maturity_examples=data.get('maturity_examples', 50),
        )
        for group, weights in data.get('weights', {}).items():
            if group in scorer.weights:
                for key, value in weights.items():
                    if key in scorer.weights[group]:
                        scorer.weights[group][key] = float(value)
        scorer.bias = float(data.get('bias', scorer.bias))
        scorer.update_count = int(data.get('update_count', 0))
        if data.get('last_update'):
            scorer.last_update = datetime.fromisoformat(data['last_update'])
        for example in data.get('history', []):
            scorer._history.append((dict(example['features']), float(example['label'])))
        return scorer

    def save(self, path: Union[str, Path]):
        """Write the model as JSON, replacing any previous file atomically"""
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = path.with_suffix(path.suffix + '.tmp')
        tmp_path.write_text(json.dumps(self.to_dict()), encoding='utf-8')
        tmp_path.replace(path)
        logger.debug("Online scorer saved", path=str(path))

    @classmethod
    def load(cls, path: Union[str, Path]) -> "OnlineLinearScorer":
        data = json.loads(Path(path).read_text(encoding='utf-8'))
        scorer = cls.from_dict(data)
        logger.info("Online scorer loaded", path=str(path), updates=scorer.update_count)
        return scorer
