import math
import os
import pickle
from typing import Optional, Sequence

import numpy as np
from sklearn.linear_model import SGDClassifier
from sklearn.preprocessing import StandardScaler

from athena.constants import Direction
from athena.core.indicators import IndicatorSnapshot
from athena.utils.logger import log

FEATURE_NAMES = (
    "rsi", "macd_line", "macd_hist", "stoch_k", "stoch_d",
    "adx", "volatility", "sentiment", "bb_position",
)
MIN_SAMPLES = 20
KNOWLEDGE_MIN_SAMPLES = 50

def features(snapshot: IndicatorSnapshot, price: float) -> np.ndarray:
    """Fixed-order feature vector the scorers are trained on."""
    return np.array([
        snapshot.rsi,
        snapshot.macd.line,
        snapshot.macd.histogram,
        snapshot.stochastic.k,
        snapshot.stochastic.d,
        snapshot.adx,
        snapshot.volatility,
        snapshot.sentiment,
        snapshot.bollinger.position(price),
    ], dtype=np.float64)

def training_set(records: Sequence) -> tuple[np.ndarray, np.ndarray]:
    """Trade history -> (X, y). y = 1 when price went up over the contract."""
    if not records:
        return np.empty((0, len(FEATURE_NAMES))), np.empty(0, dtype=int)
    X = np.vstack([
        features(r.indicators, float(r.market_conditions.get("price", 0.0))) for r in records
    ])
    y = np.array([r.label for r in records], dtype=int)
    return X, y

def intelligence_level(dataset_size: int, model_confidence: float,
                       backtest_win_rate: float, live_win_rate: float) -> int:
    """
    0-10 readiness score: the mean of history size (full marks at 500 trades),
    average signal confidence and the backtest / live win rates, each on a
    0-10 scale. Below 50 trades the score is 0.
    """
    if dataset_size < KNOWLEDGE_MIN_SAMPLES:
        return 0
    data = min(10.0, dataset_size / KNOWLEDGE_MIN_SAMPLES)
    level = (data + 10 * (model_confidence + backtest_win_rate + live_win_rate)) / 4
    return int(math.floor(min(10.0, max(0.0, level)) + 0.5))

def knowledge_status(level: int) -> str:
    if level < 3:
        return "Insufficient data - training needed"
    if level < 7:
        return "Training in progress"
    return "Ready - high confidence"

def _to_direction(p_up: float) -> tuple[Direction, float]:
    if p_up >= 0.5:
        return Direction.CALL, p_up
    return Direction.PUT, 1.0 - p_up

class WinRateScorer:
    """
    Z-score model: features are standardised, each weight is the gap between
    the mean z-score of up-moves and down-moves, and the base rate sets the bias.
    Cheap, deterministic and stable on small histories.
    """

    name = "winrate"

    def __init__(self):
        self.scaler = StandardScaler()
        self.weights: Optional[np.ndarray] = None
        self.bias = 0.0
        self.samples = 0

    @property
    def ready(self) -> bool:
        return self.weights is not None

    def fit(self, records: Sequence):
        X, y = training_set(records)
        if len(y) < MIN_SAMPLES:
            log.debug("Scorer needs %d samples, have %d", MIN_SAMPLES, len(y))
            return
        Z = self.scaler.fit_transform(X)
        if y.min() == y.max():
            self.weights = np.zeros(X.shape[1])
        else:
            self.weights = Z[y == 1].mean(axis=0) - Z[y == 0].mean(axis=0)
        base = min(max(float(y.mean()), 0.05), 0.95)
        self.bias = math.log(base / (1 - base))
        self.samples = len(y)
        log.info("🧠 Win-rate scorer fitted on %d trades (up-rate %.1f%%)", len(y), y.mean() * 100)

    def score(self, snapshot: IndicatorSnapshot, price: float) -> Optional[tuple[Direction, float]]:
        if not self.ready:
            return None
        z = self.scaler.transform(features(snapshot, price).reshape(1, -1))[0]
        logit = self.bias + float(np.dot(self.weights, z))
        logit = max(min(logit, 30.0), -30.0)
        return _to_direction(1.0 / (1.0 + math.exp(-logit)))

class SgdScorer:
    """Online logistic model, fed incrementally with the trades it has not seen yet."""

    name = "sgd"

    def __init__(self):
        self.scaler = StandardScaler()
        self.clf = SGDClassifier(loss="log_loss", penalty="l2", alpha=1e-4, random_state=42)
        self._classes = np.array([0, 1])
        self._fitted = False
        self.samples = 0

    @property
    def ready(self) -> bool:
        return self._fitted

    def fit(self, records: Sequence):
        records = list(records)
        if len(records) < MIN_SAMPLES:
            return
        fresh = records[self.samples:] if self._fitted else records
        if not fresh:
            return
        X, y = training_set(fresh)
        self.scaler.partial_fit(X)
        self.clf.partial_fit(self.scaler.transform(X), y, classes=self._classes)
        self._fitted = True
        self.samples = len(records)
        log.info("🧠 SGD scorer updated (+%d trades, %d total)", len(y), self.samples)

    def score(self, snapshot: IndicatorSnapshot, price: float) -> Optional[tuple[Direction, float]]:
        if not self.ready:
            return None
        X = self.scaler.transform(features(snapshot, price).reshape(1, -1))
        proba = self.clf.predict_proba(X)[0]
        return _to_direction(float(proba[1]))

SCORERS = {WinRateScorer.name: WinRateScorer, SgdScorer.name: SgdScorer}

def make_scorer(name: str):
    return SCORERS.get(name, WinRateScorer)()

# -- persistence --
def save_brain(scorer, path: str = "athena_brain.pkl"):
    if not scorer.ready:
        log.warning("No trained scorer to save.")
        return
    try:
        with open(path, "wb") as f:
            pickle.dump({"name": scorer.name, "scorer": scorer}, f)
        log.info("🧠 Brain saved to %s", path)
    except OSError as e:
        log.warning("Failed to save brain: %s", e)

def load_brain(name: str, path: str = "athena_brain.pkl"):
    """Stored scorer of the requested kind, or a fresh one."""
    if not os.path.exists(path):
        return make_scorer(name)
    try:
        with open(path, "rb") as f:
            state = pickle.load(f)
    except Exception as e:
        log.warning("Failed to load brain: %s", e)
        return make_scorer(name)
    if state.get("name") != name:
        log.info("🧠 Stored brain is '%s', starting a fresh '%s' scorer", state.get("name"), name)
        return make_scorer(name)
    log.info("🧠 Brain loaded (%s, %d samples)", name, state["scorer"].samples)
    return state["scorer"]
