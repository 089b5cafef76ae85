"""
Relapse Risk Classifier

Small feed-forward binary classifier trained on-device.

Architecture (fixed, identified by ARCHITECTURE_ID in persisted blobs):

    input(12) -> dense(24, relu) -> dropout(0.3) -> dense(12, relu) -> dense(1, sigmoid)

Training: sample-weighted binary cross entropy, Adam(lr=0.001), 50 epochs,
batch size min(32, N // 2), shuffled 80/20 train/validation split.
"""

from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Sequence
import io
import logging
import threading

import torch
import torch.nn as nn
import torch.optim as optim

from core.exceptions import CorruptPersistedStateError, TrainingCancelled
from services.risk_features import NUM_FEATURES

logger = logging.getLogger(__name__)


# =============================================================================
# CONFIGURATION
# =============================================================================

ARCHITECTURE_ID = "ff-12-24-12-1-v1"
FORMAT_VERSION = 1

HIDDEN_UNITS = (24, 12)
DROPOUT_RATE = 0.3
LEARNING_RATE = 0.001
EPOCHS = 50
MAX_BATCH_SIZE = 32
VALIDATION_SPLIT = 0.2


# =============================================================================
# DATA STRUCTURES
# =============================================================================

class CancellationToken:
    """Cooperative cancellation for a running fit. Checked between epochs."""

    def __init__(self):
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise TrainingCancelled("Training cancelled", code="training_cancelled")


@dataclass
class FitResult:
    final_loss: float
    final_accuracy: float
    epoch_log: List[Dict[str, float]] = field(default_factory=list)
    train_indices: List[int] = field(default_factory=list)
    validation_indices: List[int] = field(default_factory=list)


ProgressCallback = Callable[[Dict[str, float]], None]


def build_network() -> nn.Sequential:
    return nn.Sequential(
        nn.Linear(NUM_FEATURES, HIDDEN_UNITS[0]),
        nn.ReLU(),
        nn.Dropout(DROPOUT_RATE),
        nn.Linear(HIDDEN_UNITS[0], HIDDEN_UNITS[1]),
        nn.ReLU(),
        nn.Linear(HIDDEN_UNITS[1], 1),
        nn.Sigmoid(),
    )


def batch_size_for(n_samples: int) -> int:
    return max(1, min(MAX_BATCH_SIZE, n_samples // 2))


# =============================================================================
# CLASSIFIER
# =============================================================================

class RiskClassifier:
    """
    Wraps the network, its optimizer and loss.

    A freshly constructed classifier is an untrained shell: it can predict
    but nothing should treat its output as meaningful until fit() succeeds
    (the orchestrator tracks that through TrainingHistory, not here).
    """

    def __init__(self, seed: Optional[int] = None):
        if seed is not None:
            torch.manual_seed(seed)
        self.network = build_network()
        self.compile()

    def compile(self) -> None:
        """(Re)create optimizer and loss. Called on construction and after deserialize."""
        self.optimizer = optim.Adam(self.network.parameters(), lr=LEARNING_RATE)
        # reduction='none' so per-sample weights can be applied
        self.criterion = nn.BCELoss(reduction="none")

    # -------------------------------------------------------------------------
    # Training
    # -------------------------------------------------------------------------

    def fit(
        self,
        features: Sequence[Sequence[float]],
        labels: Sequence[int],
        sample_weights: Sequence[float],
        on_progress: Optional[ProgressCallback] = None,
        cancel_token: Optional[CancellationToken] = None,
        seed: Optional[int] = None,
        epochs: int = EPOCHS,
    ) -> FitResult:
        """
        Train on normalized features.

        Args:
            features: (N, 12) normalized matrix
            labels: N labels in {0, 1}
            sample_weights: N positive weights
            on_progress: Called after every epoch; failures are logged and ignored
            cancel_token: Checked before every epoch
            seed: Seeds the split shuffle and batch order

        Returns:
            FitResult with final training loss/accuracy and the split used
        """
        n_samples = len(features)
        if n_samples == 0:
            raise ValueError("Cannot fit on an empty training set")
        if not (len(labels) == len(sample_weights) == n_samples):
            raise ValueError("features, labels and sample_weights must have the same length")

        x = torch.tensor(features, dtype=torch.float32)
        y = torch.tensor(labels, dtype=torch.float32).unsqueeze(1)
        w = torch.tensor(sample_weights, dtype=torch.float32).unsqueeze(1)

        generator = torch.Generator()
        if seed is not None:
            generator.manual_seed(seed)
        else:
            generator.seed()

        order = torch.randperm(n_samples, generator=generator)
        n_val = int(n_samples * VALIDATION_SPLIT)
        train_idx = order[: n_samples - n_val]
        val_idx = order[n_samples - n_val:]

        batch_size = batch_size_for(n_samples)
        epoch_log: List[Dict[str, float]] = []
        train_loss, train_acc = float("nan"), float("nan")

        for epoch in range(epochs):
            if cancel_token is not None:
                cancel_token.raise_if_cancelled()

            self.network.train()
            permutation = train_idx[torch.randperm(len(train_idx), generator=generator)]
            for start in range(0, len(permutation), batch_size):
                batch = permutation[start:start + batch_size]
                self.optimizer.zero_grad()
                predictions = self.network(x[batch])
                loss = self._weighted_loss(predictions, y[batch], w[batch])
                loss.backward()
                self.optimizer.step()

            train_loss, train_acc = self._score(x[train_idx], y[train_idx], w[train_idx])
            logs = {
                "epoch": epoch + 1,
                "totalEpochs": epochs,
                "loss": train_loss,
                "accuracy": train_acc,
            }
            if n_val > 0:
                val_loss, val_acc = self._score(x[val_idx], y[val_idx], w[val_idx])
                logs["valLoss"] = val_loss
                logs["valAccuracy"] = val_acc
            epoch_log.append(logs)

            if on_progress is not None:
                try:
                    on_progress(dict(logs))
                except Exception as e:
                    logger.warning(f"Progress callback failed at epoch {epoch + 1}: {e}")

        self.network.eval()
        return FitResult(
            final_loss=train_loss,
            final_accuracy=train_acc,
            epoch_log=epoch_log,
            train_indices=train_idx.tolist(),
            validation_indices=val_idx.tolist(),
        )

    def _weighted_loss(self, predictions, targets, weights):
        losses = self.criterion(predictions, targets)
        return (losses * weights).sum() / weights.sum().clamp_min(1e-8)

    def _score(self, x, y, w):
        """Weighted loss and plain accuracy in eval mode."""
        self.network.eval()
        with torch.no_grad():
            predictions = self.network(x)
            loss = self._weighted_loss(predictions, y, w).item()
            accuracy = ((predictions >= 0.5).float() == y).float().mean().item()
        return loss, accuracy

    # -------------------------------------------------------------------------
    # Inference
    # -------------------------------------------------------------------------

    def predict(self, vector: Sequence[float]) -> float:
        """Probability of relapse for one normalized vector, in [0, 1]."""
        return self.predict_many([vector])[0]

    def predict_many(self, matrix: Sequence[Sequence[float]]) -> List[float]:
        if len(matrix) == 0:
            return []
        self.network.eval()
        with torch.no_grad():
            output = self.network(torch.tensor(matrix, dtype=torch.float32))
        return [min(1.0, max(0.0, float(p))) for p in output.squeeze(1).tolist()]

    # -------------------------------------------------------------------------
    # Persistence
    # -------------------------------------------------------------------------

    def serialize(self) -> bytes:
        """Architecture id + weights as a torch-saved blob."""
        buffer = io.BytesIO()
        torch.save(
            {
                "architecture": ARCHITECTURE_ID,
                "formatVersion": FORMAT_VERSION,
                "state_dict": self.network.state_dict(),
            },
            buffer,
        )
        return buffer.getvalue()

    @classmethod
    def deserialize(cls, blob: bytes) -> "RiskClassifier":
        """
        Rebuild a classifier from serialize() output.

        Raises:
            CorruptPersistedStateError: unreadable blob, wrong architecture or bad tensors
        """
        if not blob:
            raise CorruptPersistedStateError("Empty model blob")
        try:
            payload = torch.load(io.BytesIO(blob), map_location="cpu", weights_only=True)
        except Exception as e:
            raise CorruptPersistedStateError(f"Unreadable model blob: {e}") from e

        if not isinstance(payload, dict) or payload.get("architecture") != ARCHITECTURE_ID:
            found = payload.get("architecture") if isinstance(payload, dict) else type(payload).__name__
            raise CorruptPersistedStateError(f"Unexpected model architecture: {found}")

        classifier = cls()
        try:
            classifier.network.load_state_dict(payload["state_dict"])
        except (KeyError, RuntimeError, TypeError) as e:
            raise CorruptPersistedStateError(f"Weights do not match architecture: {e}") from e

        classifier.network.eval()
        # Fresh optimizer/loss so a later fit behaves like a freshly built model
        classifier.compile()
        return classifier
