"""
Segmentation models for recovering word boundaries in unspaced text.

Includes:
- Dictionary (greedy longest match)
- Markov chain over words (two-step lookahead)
- Boosted decision stumps
- Random decision forest
- Bidirectional recurrent sequence tagger
"""

import io
import json
import math
import pickle
import types
import zipfile
from abc import ABC, abstractmethod
from bisect import bisect_left
from typing import Dict, Iterable, List, NamedTuple, Sequence, Tuple

import numpy as np
import torch
import torch.nn as nn
import torch.nn.functional as F

from .errors import ModelDecodeError, UnknownModelTypeError
from .preprocessing import apply_boundaries, byte_codes, offset_features, split_runs

MAX_WORD_LEN = 20

# ==============================================================================
# Common Contract
# ==============================================================================

class SegmentationModel(ABC):
    """
    Base class of every segmentation model.

    A model is immutable once trained or deserialized. `fields` only reads
    it, so one instance may serve many texts concurrently.
    """

    model_type = ""

    def fields(self, text: str) -> List[str]:
        """
        Split text whose spaces were removed into words.

        Every whitespace-delimited run is segmented on its own, and the words
        produced for a run always concatenate back to that run.

        Args:
            text: Input text

        Returns:
            Ordered list of words
        """
        words = []
        for run in split_runs(text):
            words.extend(self.segment_run(run))
        return words

    @abstractmethod
    def segment_run(self, run: str) -> List[str]:
        """Segment one non-empty, whitespace-free run."""

    @abstractmethod
    def serialize(self) -> bytes:
        """Encode the model as bytes."""

    @classmethod
    @abstractmethod
    def deserialize(cls, data: bytes) -> "SegmentationModel":
        """Rebuild a model from `serialize()` output."""


class BoundaryTagger(SegmentationModel):
    """Model that decides for every byte of a run whether a word ends there."""

    def segment_run(self, run: str) -> List[str]:
        return apply_boundaries(run, self.boundary_flags(run))

    @abstractmethod
    def boundary_flags(self, run: str) -> np.ndarray:
        """Boolean boundary decision per byte of `run`."""


def _decode_json(data: bytes, model_type: str) -> dict:
    try:
        obj = json.loads(bytes(data).decode("utf-8"))
    except (TypeError, UnicodeDecodeError, ValueError) as e:
        raise ModelDecodeError(f"invalid {model_type} model: {e}") from e
    if not isinstance(obj, dict):
        raise ModelDecodeError(f"invalid {model_type} model: expected a JSON object")
    return obj


def _check_counts(counts, what: str) -> Dict[str, int]:
    if not isinstance(counts, dict):
        raise ModelDecodeError(f"{what} must be an object")
    for word, count in counts.items():
        if isinstance(count, bool) or not isinstance(count, int) or count < 0:
            raise ModelDecodeError(f"{what}[{word!r}] is not a count")
    return counts


# ==============================================================================
# Dictionary
# ==============================================================================

class DictionaryModel(SegmentationModel):
    """
    Segments runs by repeatedly taking the longest known word.

    The vocabulary is kept sorted so membership is a binary search.
    """

    model_type = "dict"

    def __init__(self, words: Iterable[str], max_word_len: int = MAX_WORD_LEN):
        self.words = tuple(sorted(set(words)))
        self.max_word_len = max_word_len

    def __len__(self) -> int:
        return len(self.words)

    def __contains__(self, word: str) -> bool:
        idx = bisect_left(self.words, word)
        return idx < len(self.words) and self.words[idx] == word

    def segment_run(self, run: str) -> List[str]:
        words = []
        i = 0
        while i < len(run):
            best = 1
            for length in range(2, min(self.max_word_len, len(run) - i) + 1):
                if run[i:i + length] in self:
                    best = length
            words.append(run[i:i + best])
            i += best
        return words

    def serialize(self) -> bytes:
        return "\n".join(self.words).encode("utf-8")

    @classmethod
    def deserialize(cls, data: bytes) -> "DictionaryModel":
        try:
            text = bytes(data).decode("utf-8")
        except (TypeError, UnicodeDecodeError) as e:
            raise ModelDecodeError(f"invalid dict model: {e}") from e
        return cls(split_runs(text))


# ==============================================================================
# Markov Chain
# ==============================================================================

# Single-byte tokens outside this list are treated as noise during training.
SINGLE_BYTE_WORDS = frozenset({"a", "I"})


class MarkovModel(SegmentationModel):
    """
    Word-level Markov chain with two-step lookahead.

    Attributes:
        raw_counts: word -> occurrences
        table: previous word -> (next word -> occurrences); the previous word
            of a document's first word is ""
        table_counts: previous word -> total occurrences in `table`
        total_count: sum of `raw_counts`
    """

    model_type = "markov"

    def __init__(
        self,
        raw_counts: Dict[str, int],
        table: Dict[str, Dict[str, int]],
        max_word_len: int = MAX_WORD_LEN
    ):
        self.raw_counts = dict(raw_counts)
        self.table = {prev: dict(nexts) for prev, nexts in table.items()}
        self.table_counts = {prev: sum(nexts.values()) for prev, nexts in self.table.items()}
        self.total_count = sum(self.raw_counts.values())
        self.max_word_len = max_word_len

    def cond_prob(self, previous: str, word: str) -> float:
        """P(word | previous); the empty word means the text has ended."""
        if not word:
            return 1.0
        total = self.table_counts.get(previous, 0)
        if total == 0:
            return 0.0
        return self.table[previous].get(word, 0) / total

    def prob(self, word: str) -> float:
        """Unconditional P(word); the empty word means the text has ended."""
        if not word:
            return 1.0
        if self.total_count == 0:
            return 0.0
        return self.raw_counts.get(word, 0) / self.total_count

    def _candidates(self, text: str) -> List[str]:
        return [text[:length] for length in range(1, min(self.max_word_len, len(text)) + 1)]

    def best_field(self, previous: str, text: str) -> str:
        """
        Choose the next word of `text` given the word before it.

        Every first word w1 is scored together with every following word w2
        (or the end of text). The best conditional score
        P(w1 | previous) * P(w2 | w1) wins if positive, then the best
        unconditional score P(w1) * P(w2), then the single w1 with the
        highest P(w1). Ties go to the longer w1.

        Args:
            previous: Word chosen before `text` ("" at the start of a run)
            text: Non-empty remaining text

        Returns:
            A non-empty prefix of `text`
        """
        best_cond, best_cond_score = None, 0.0
        best_uncond, best_uncond_score = None, 0.0

        for w1 in self._candidates(text):
            rest = text[len(w1):]
            followers = self._candidates(rest) if rest else [""]

            cond1 = self.cond_prob(previous, w1)
            if cond1 > 0:
                for w2 in followers:
                    score = cond1 * self.cond_prob(w1, w2)
                    if score > 0 and score >= best_cond_score:
                        best_cond, best_cond_score = w1, score

            prob1 = self.prob(w1)
            if prob1 > 0:
                for w2 in followers:
                    score = prob1 * self.prob(w2)
                    if score > 0 and score >= best_uncond_score:
                        best_uncond, best_uncond_score = w1, score

        if best_cond is not None:
            return best_cond
        if best_uncond is not None:
            return best_uncond

        best, best_score = text[:1], -1.0
        for w1 in self._candidates(text):
            score = self.prob(w1)
            if score >= best_score:
                best, best_score = w1, score
        return best

    def segment_run(self, run: str) -> List[str]:
        words = []
        previous = ""
        i = 0
        while i < len(run):
            word = self.best_field(previous, run[i:i + 2 * self.max_word_len])
            words.append(word)
            previous = word
            i += len(word)
        return words

    def serialize(self) -> bytes:
        return json.dumps(
            {"raw_counts": self.raw_counts, "table": self.table},
            sort_keys=True
        ).encode("utf-8")

    @classmethod
    def deserialize(cls, data: bytes) -> "MarkovModel":
        obj = _decode_json(data, cls.model_type)
        if "raw_counts" not in obj or "table" not in obj:
            raise ModelDecodeError("invalid markov model: missing raw_counts or table")
        raw_counts = _check_counts(obj["raw_counts"], "raw_counts")
        table = obj["table"]
        if not isinstance(table, dict):
            raise ModelDecodeError("table must be an object")
        for prev, nexts in table.items():
            _check_counts(nexts, f"table[{prev!r}]")
        return cls(raw_counts, table)


# ==============================================================================
# Boosted Decision Stumps
# ==============================================================================

# Widest relative offset a decoded stump may probe.
MAX_STUMP_OFFSET = 255


class Stump(NamedTuple):
    """
    Weak classifier over one relative byte offset.

    Votes +1 when the byte at `position + offset` equals `value`, else -1.
    """

    offset: int
    value: int

    def predict(self, column: np.ndarray) -> np.ndarray:
        return np.where(column == self.value, 1.0, -1.0)


class BoostedStumpsModel(BoundaryTagger):
    """
    Additive ensemble of weighted stumps.

    The ensemble score at a byte is the weighted sum of stump votes; a
    positive score marks a word boundary after that byte.
    """

    model_type = "stumps"

    def __init__(self, stumps: Sequence[Tuple[Stump, float]]):
        self.stumps = tuple((Stump(int(s.offset), int(s.value)), float(w)) for s, w in stumps)
        self._offsets = np.array([s.offset for s, _ in self.stumps], dtype=np.int64)
        self._values = np.array([s.value for s, _ in self.stumps], dtype=np.uint8)
        self._weights = np.array([w for _, w in self.stumps], dtype=np.float64)

    def __len__(self) -> int:
        return len(self.stumps)

    def scores(self, run: str) -> np.ndarray:
        """Real-valued ensemble score for every byte of `run`."""
        codes = byte_codes(run)
        if not self.stumps:
            return np.zeros(len(codes))
        features = offset_features(codes, self._offsets)
        votes = np.where(features == self._values[None, :], 1.0, -1.0)
        return votes @ self._weights

    def boundary_flags(self, run: str) -> np.ndarray:
        return self.scores(run) > 0

    def serialize(self) -> bytes:
        return json.dumps({
            "stumps": [
                {"offset": s.offset, "value": s.value, "weight": w}
                for s, w in self.stumps
            ]
        }).encode("utf-8")

    @classmethod
    def deserialize(cls, data: bytes) -> "BoostedStumpsModel":
        obj = _decode_json(data, cls.model_type)
        entries = obj.get("stumps")
        if not isinstance(entries, list):
            raise ModelDecodeError("invalid stumps model: missing stump list")

        stumps = []
        for i, entry in enumerate(entries):
            try:
                offset, value, weight = entry["offset"], entry["value"], entry["weight"]
            except (TypeError, KeyError) as e:
                raise ModelDecodeError(f"stump {i} is malformed") from e
            if isinstance(offset, bool) or not isinstance(offset, int):
                raise ModelDecodeError(f"stump {i} has a non-integer offset")
            if abs(offset) > MAX_STUMP_OFFSET:
                raise ModelDecodeError(f"stump {i} offset {offset} is out of range")
            if isinstance(value, bool) or not isinstance(value, int) or not 0 <= value <= 255:
                raise ModelDecodeError(f"stump {i} has an invalid byte value")
            if isinstance(weight, bool) or not isinstance(weight, (int, float)) or not math.isfinite(weight):
                raise ModelDecodeError(f"stump {i} has an invalid weight")
            stumps.append((Stump(offset, value), weight))
        return cls(stumps)


# ==============================================================================
# Random Forest
# ==============================================================================

DEFAULT_FOREST_THRESHOLD = 0.5


class DecisionTree:
    """
    Binary decision tree over relative-offset byte values.

    Internal node `i` sends a sample left when its byte at attribute
    `feature[i]` is <= `split[i]`. Leaves have `left[i] == -1` and carry the
    class distribution `proba[i] = [P(no boundary), P(boundary)]`.
    """

    def __init__(self, left, right, feature, split, proba):
        self.left = np.asarray(left, dtype=np.int64)
        self.right = np.asarray(right, dtype=np.int64)
        self.feature = np.asarray(feature, dtype=np.int64)
        self.split = np.asarray(split, dtype=np.float64)
        self.proba = np.asarray(proba, dtype=np.float64)

    def __len__(self) -> int:
        return len(self.left)

    @classmethod
    def from_sklearn(cls, clf) -> "DecisionTree":
        """Convert a fitted sklearn DecisionTreeClassifier with boolean labels."""
        tree = clf.tree_
        value = tree.value[:, 0, :]
        totals = value.sum(axis=1, keepdims=True)
        frac = value / np.where(totals > 0, totals, 1.0)

        proba = np.zeros((tree.node_count, 2))
        for col, label in enumerate(clf.classes_):
            proba[:, int(bool(label))] = frac[:, col]

        return cls(
            tree.children_left.copy(),
            tree.children_right.copy(),
            tree.feature.copy(),
            tree.threshold.copy(),
            proba
        )

    def validate(self, n_attrs: int):
        """
        Check the node arrays describe a well-formed tree.

        Children always have larger indices than their parent, which rules
        out cycles.
        """
        n = len(self.left)
        if n == 0:
            raise ValueError("tree has no nodes")
        for name in ("right", "feature", "split"):
            if getattr(self, name).shape != (n,):
                raise ValueError(f"tree array {name} has the wrong shape")
        if self.proba.shape != (n, 2):
            raise ValueError("tree leaf probabilities have the wrong shape")

        ids = np.nonzero(self.left >= 0)[0]
        if np.any(self.left[ids] <= ids) or np.any(self.right[ids] <= ids):
            raise ValueError("tree children must follow their parent")
        if np.any(self.left[ids] >= n) or np.any(self.right[ids] >= n):
            raise ValueError("tree child index out of range")
        if np.any(self.feature[ids] < 0) or np.any(self.feature[ids] >= n_attrs):
            raise ValueError("tree split attribute out of range")

    def predict_proba(self, features: np.ndarray) -> np.ndarray:
        """
        Leaf class distribution for every row of `features`.

        Args:
            features: Byte values [n_samples, n_attrs]

        Returns:
            Probabilities [n_samples, 2]
        """
        node = np.zeros(len(features), dtype=np.int64)
        active = np.nonzero(self.left[node] >= 0)[0]
        while len(active):
            cur = node[active]
            go_left = features[active, self.feature[cur]] <= self.split[cur]
            node[active] = np.where(go_left, self.left[cur], self.right[cur])
            active = active[self.left[node[active]] >= 0]
        return self.proba[node]


class RandomForestModel(BoundaryTagger):
    """
    Forest of decision trees voting on every byte.

    Tree probabilities are averaged; a boundary is declared when
    P(boundary) >= P(no boundary) * threshold. A threshold below 1 favours
    predicting boundaries.
    """

    model_type = "forest"

    def __init__(
        self,
        trees: Sequence[DecisionTree],
        offsets: Sequence[int],
        threshold: float = DEFAULT_FOREST_THRESHOLD
    ):
        self.trees = tuple(trees)
        self.offsets = np.asarray(offsets, dtype=np.int64)
        self.threshold = float(threshold)

    def __len__(self) -> int:
        return len(self.trees)

    def with_threshold(self, threshold: float) -> "RandomForestModel":
        """Same trees with a different decision cutoff."""
        return RandomForestModel(self.trees, self.offsets, threshold)

    def class_probabilities(self, run: str) -> np.ndarray:
        """Averaged [P(no boundary), P(boundary)] for every byte of `run`."""
        codes = byte_codes(run)
        probs = np.zeros((len(codes), 2))
        if not self.trees:
            return probs
        features = offset_features(codes, self.offsets)
        for tree in self.trees:
            probs += tree.predict_proba(features)
        return probs / len(self.trees)

    def boundary_flags(self, run: str) -> np.ndarray:
        probs = self.class_probabilities(run)
        return probs[:, 1] >= probs[:, 0] * self.threshold

    def serialize(self) -> bytes:
        def concat(name, empty_shape):
            parts = [getattr(t, name) for t in self.trees]
            return np.concatenate(parts) if parts else np.zeros(empty_shape)

        buf = io.BytesIO()
        np.savez(
            buf,
            offsets=self.offsets,
            threshold=np.array(self.threshold),
            node_counts=np.array([len(t) for t in self.trees], dtype=np.int64),
            left=concat("left", (0,)).astype(np.int64),
            right=concat("right", (0,)).astype(np.int64),
            feature=concat("feature", (0,)).astype(np.int64),
            split=concat("split", (0,)),
            proba=concat("proba", (0, 2)),
        )
        return buf.getvalue()

    @classmethod
    def deserialize(cls, data: bytes) -> "RandomForestModel":
        try:
            with np.load(io.BytesIO(bytes(data)), allow_pickle=False) as archive:
                arrays = {
                    key: archive[key]
                    for key in ("offsets", "threshold", "node_counts",
                                "left", "right", "feature", "split", "proba")
                }
        except (TypeError, ValueError, OSError, KeyError, EOFError, zipfile.BadZipFile) as e:
            raise ModelDecodeError(f"invalid forest model: {e}") from e

        try:
            offsets = arrays["offsets"].astype(np.int64)
            threshold = float(arrays["threshold"])
            counts = arrays["node_counts"].astype(np.int64)
            if offsets.ndim != 1 or counts.ndim != 1 or np.any(counts <= 0):
                raise ValueError("bad offsets or node counts")
            total = int(counts.sum())
            for key in ("left", "right", "feature", "split"):
                if arrays[key].shape != (total,):
                    raise ValueError(f"{key} does not match node counts")
            if arrays["proba"].shape != (total, 2):
                raise ValueError("proba does not match node counts")

            trees = []
            bounds = np.concatenate([[0], np.cumsum(counts)])
            for start, end in zip(bounds[:-1], bounds[1:]):
                tree = DecisionTree(
                    arrays["left"][start:end],
                    arrays["right"][start:end],
                    arrays["feature"][start:end],
                    arrays["split"][start:end],
                    arrays["proba"][start:end]
                )
                tree.validate(len(offsets))
                trees.append(tree)
        except (TypeError, ValueError) as e:
            raise ModelDecodeError(f"invalid forest model: {e}") from e

        return cls(trees, offsets, threshold)


# ==============================================================================
# Bidirectional Recurrent Tagger
# ==============================================================================

BYTE_FEATURES = 256


class RecurrentUnit(nn.Module):
    """
    Single-direction GRU state machine.

    `step(state, x)` returns `(new_state, output)`; the output at a position
    is the new state itself.
    """

    def __init__(self, input_size: int, state_size: int):
        super().__init__()
        self.state_size = state_size
        self.cell = nn.GRUCell(input_size, state_size)

    def initial_state(self, batch_size: int, device=None) -> torch.Tensor:
        return torch.zeros(batch_size, self.state_size, device=device)

    def step(
        self,
        state: torch.Tensor,
        x: torch.Tensor
    ) -> Tuple[torch.Tensor, torch.Tensor]:
        new_state = self.cell(x, state)
        return new_state, new_state

    def scan(self, inputs: torch.Tensor, reverse: bool = False) -> torch.Tensor:
        """
        Thread the state through a whole sequence.

        Args:
            inputs: Input vectors [batch, seq_len, input_size]
            reverse: Run right-to-left instead of left-to-right

        Returns:
            Outputs [batch, seq_len, state_size] aligned with input positions
        """
        batch_size, seq_len, _ = inputs.shape
        if seq_len == 0:
            return inputs.new_zeros(batch_size, 0, self.state_size)

        state = self.initial_state(batch_size, inputs.device)
        outputs = [None] * seq_len
        order = range(seq_len - 1, -1, -1) if reverse else range(seq_len)
        for t in order:
            state, outputs[t] = self.step(state, inputs[:, t])
        return torch.stack(outputs, dim=1)


class BidirectionalTagger(nn.Module):
    """
    Bidirectional recurrent network scoring every byte position.

    Architecture:
        one-hot bytes -> forward GRU + backward GRU -> concat
            -> Linear -> Tanh -> Linear

    Outputs one boundary logit per position.
    """

    def __init__(
        self,
        input_size: int = BYTE_FEATURES,
        state_size: int = 128,
        hidden_size: int = 128
    ):
        super().__init__()

        self.input_size = input_size
        self.state_size = state_size
        self.hidden_size = hidden_size

        self.forward_unit = RecurrentUnit(input_size, state_size)
        self.backward_unit = RecurrentUnit(input_size, state_size)
        self.out = nn.Sequential(
            nn.Linear(state_size * 2, hidden_size),
            nn.Tanh(),
            nn.Linear(hidden_size, 1)
        )

    def config(self) -> Dict[str, int]:
        return {
            "input_size": self.input_size,
            "state_size": self.state_size,
            "hidden_size": self.hidden_size
        }

    def forward(self, x: torch.Tensor) -> torch.Tensor:
        """
        Forward pass.

        Args:
            x: Byte values [batch, seq_len]

        Returns:
            Boundary logits [batch, seq_len]
        """
        inputs = F.one_hot(x.long(), self.input_size).float()
        fwd = self.forward_unit.scan(inputs)
        bwd = self.backward_unit.scan(inputs, reverse=True)
        return self.out(torch.cat([fwd, bwd], dim=-1)).squeeze(-1)


class SequenceTaggerModel(BoundaryTagger):
    """Marks a boundary wherever the bidirectional tagger's logit is positive."""

    model_type = "rnn"

    def __init__(self, net: BidirectionalTagger):
        self.net = net.eval()

    def scores(self, run: str) -> np.ndarray:
        """Boundary logit for every byte of `run`."""
        codes = torch.from_numpy(byte_codes(run).astype(np.int64)).unsqueeze(0)
        with torch.no_grad():
            logits = self.net(codes)[0]
        return logits.numpy()

    def boundary_flags(self, run: str) -> np.ndarray:
        return self.scores(run) > 0

    def serialize(self) -> bytes:
        buf = io.BytesIO()
        torch.save({"config": self.net.config(), "state_dict": self.net.state_dict()}, buf)
        return buf.getvalue()

    @classmethod
    def deserialize(cls, data: bytes) -> "SequenceTaggerModel":
        try:
            blob = torch.load(io.BytesIO(bytes(data)), map_location="cpu", weights_only=True)
            net = BidirectionalTagger(**blob["config"])
            net.load_state_dict(blob["state_dict"])
        except (RuntimeError, ValueError, TypeError, KeyError, IndexError, AttributeError, EOFError,
                pickle.UnpicklingError, zipfile.BadZipFile) as e:
            raise ModelDecodeError(f"invalid rnn model: {e}") from e
        return cls(net)


# ==============================================================================
# Model Types
# ==============================================================================

MODEL_TYPES = types.MappingProxyType({
    cls.model_type: cls
    for cls in (
        DictionaryModel,
        MarkovModel,
        BoostedStumpsModel,
        RandomForestModel,
        SequenceTaggerModel,
    )
})


def resolve_model_type(model_type: str) -> type:
    """Model class registered under `model_type`."""
    try:
        return MODEL_TYPES[model_type]
    except KeyError:
        raise UnknownModelTypeError(model_type, MODEL_TYPES) from None


def deserialize_model(model_type: str, data: bytes) -> SegmentationModel:
    """
    Rebuild a serialized model of the given type.

    Raises:
        UnknownModelTypeError: If `model_type` is not registered
        ModelDecodeError: If `data` is not a valid model of that type
    """
    return resolve_model_type(model_type).deserialize(data)
