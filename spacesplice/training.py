"""
Training utilities for word-boundary segmentation models.

Includes:
- One training function per model type
- PyTorch Dataset of labeled byte windows
- Trainer registry
- Checkpoint management
- Cross-validation
"""

import copy
import hashlib
import json
import math
import os
import types
from collections import Counter, defaultdict
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Tuple

import numpy as np
import torch
import torch.nn as nn
from torch.utils.data import DataLoader, Dataset, Subset
from sklearn.model_selection import KFold
from sklearn.tree import DecisionTreeClassifier

from .errors import ModelDecodeError, UnknownModelTypeError
from .evaluation import evaluate_model, print_cv_summary
from .models import (
    BYTE_FEATURES,
    DEFAULT_FOREST_THRESHOLD,
    MAX_STUMP_OFFSET,
    SINGLE_BYTE_WORDS,
    BidirectionalTagger,
    BoostedStumpsModel,
    DecisionTree,
    DictionaryModel,
    MarkovModel,
    RandomForestModel,
    SegmentationModel,
    SequenceTaggerModel,
    Stump,
    deserialize_model,
)
from .preprocessing import (
    Document,
    Run,
    SamplePool,
    decode_document,
    extract_runs,
    partial_shuffle,
    read_corpus,
    split_runs,
)

# ==============================================================================
# Hyperparameters
# ==============================================================================

BOOST_STEPS = 20
BOOST_MAX_SAMPLES = 50000
BOOST_BACKTRACK = 15
BOOST_LOOKAHEAD = 5

FOREST_SIZE = 100
FOREST_SAMPLE_COUNT = 1000
FOREST_FEATURE_COUNT = 10
FOREST_WINDOW = (-20, 20)

RNN_SEQ_LEN = 128
RNN_STATE_SIZE = 128
RNN_OUTPUT_HIDDEN = 128
RNN_STEP_SIZE = 0.001
RNN_BATCH_SIZE = 20
RNN_MAX_SAMPLES = 1 << 13
RNN_EPOCHS = 10


def _require_samples(pool_size: int):
    if pool_size == 0:
        raise ValueError("corpus contains no training samples")


# ==============================================================================
# Dictionary & Markov
# ==============================================================================

def train_dictionary(
    documents: Iterable[Document],
    verbose: bool = True
) -> Tuple[DictionaryModel, Dict[str, Any]]:
    """
    Collect every distinct word of the corpus.

    Args:
        documents: Training documents with normal spacing
        verbose: Print progress

    Returns:
        Tuple of (model, history dict)
    """
    words = set()
    n_documents = 0
    for document in documents:
        words.update(split_runs(decode_document(document)))
        n_documents += 1

    model = DictionaryModel(words)
    if verbose:
        print(f"Dictionary: {len(model):,} words from {n_documents:,} documents")
    return model, {"n_documents": n_documents, "vocab_size": len(model)}


def train_markov(
    documents: Iterable[Document],
    single_byte_words: Iterable[str] = SINGLE_BYTE_WORDS,
    verbose: bool = True
) -> Tuple[MarkovModel, Dict[str, Any]]:
    """
    Count word unigrams and bigrams.

    Single-byte words outside `single_byte_words` are dropped before
    counting. The first word of each document follows the empty word.

    Args:
        documents: Training documents with normal spacing
        single_byte_words: Single-byte words worth keeping
        verbose: Print progress

    Returns:
        Tuple of (model, history dict)
    """
    allowed = frozenset(single_byte_words)
    raw_counts = Counter()
    table = defaultdict(Counter)
    n_documents = 0

    for document in documents:
        previous = ""
        for word in split_runs(decode_document(document)):
            if len(word) == 1 and word not in allowed:
                continue
            raw_counts[word] += 1
            table[previous][word] += 1
            previous = word
        n_documents += 1

    model = MarkovModel(raw_counts, table)
    if verbose:
        print(f"Markov: {len(raw_counts):,} words, {model.total_count:,} tokens, "
              f"{len(table):,} contexts from {n_documents:,} documents")
    return model, {
        "n_documents": n_documents,
        "vocab_size": len(raw_counts),
        "total_count": model.total_count
    }


# ==============================================================================
# Boosted Stumps
# ==============================================================================

def exp_loss(outputs: np.ndarray, desired: np.ndarray) -> float:
    """Exponential loss sum(exp(-output * desired))."""
    return float(np.exp(-outputs * desired).sum())


def best_stump(
    features: np.ndarray,
    offsets: Sequence[int],
    weights: np.ndarray
) -> Tuple[Stump, float]:
    """
    Exhaustively search every (offset, byte value) stump.

    Args:
        features: Byte values [n_samples, len(offsets)]
        offsets: Relative offset of each feature column
        weights: Per-sample weights (signed)

    Returns:
        Tuple of (stump, dot) where the stump maximizes |votes . weights|;
        the first candidate wins ties
    """
    total = weights.sum()
    dots = np.empty((len(offsets), 256))
    for j in range(len(offsets)):
        matched = np.bincount(features[:, j], weights=weights, minlength=256)
        dots[j] = 2 * matched - total

    j, value = np.unravel_index(np.argmax(np.abs(dots)), dots.shape)
    return Stump(int(offsets[j]), int(value)), float(dots[j, value])


def optimal_step(
    outputs: np.ndarray,
    votes: np.ndarray,
    desired: np.ndarray,
    eps: float = 1e-12
) -> float:
    """
    Coefficient minimizing exponential loss when adding ±1 `votes`.

    The closed form 0.5 * ln(W+ / W-) is smoothed by `eps`, which keeps the
    step finite and still never increases the loss.
    """
    d = np.exp(-outputs * desired)
    agree = votes * desired > 0
    w_plus = d[agree].sum()
    w_minus = d[~agree].sum()
    return 0.5 * math.log((w_plus + eps) / (w_minus + eps))


def train_boosted_stumps(
    documents: Iterable[Document],
    steps: int = BOOST_STEPS,
    max_samples: int = BOOST_MAX_SAMPLES,
    backtrack: int = BOOST_BACKTRACK,
    lookahead: int = BOOST_LOOKAHEAD,
    seed: Optional[int] = None,
    verbose: bool = True
) -> Tuple[BoostedStumpsModel, Dict[str, Any]]:
    """
    Gradient boosting of byte stumps on exponential loss.

    Every byte of every run is a sample labeled +1 (word ends here) or -1.
    Samples beyond `max_samples` are subsampled uniformly.

    Args:
        documents: Training documents with normal spacing
        steps: Boosting steps (one stump each)
        max_samples: Sample cap
        backtrack: Furthest offset to the left of the focal byte
        lookahead: Furthest offset to the right of the focal byte
        seed: Random seed for subsampling
        verbose: Print progress

    Returns:
        Tuple of (model, history dict with per-step loss)
    """
    if steps < 1 or max_samples < 1:
        raise ValueError("steps and max_samples must be positive")
    if backtrack < 0 or lookahead < 0:
        raise ValueError("backtrack and lookahead must be non-negative")
    if max(backtrack, lookahead) > MAX_STUMP_OFFSET:
        raise ValueError(f"backtrack and lookahead must not exceed {MAX_STUMP_OFFSET}")

    if verbose:
        print("Building samples...")
    pool = SamplePool(extract_runs(documents), pad=max(backtrack, lookahead))
    _require_samples(len(pool))

    rng = np.random.default_rng(seed)
    indices = partial_shuffle(len(pool), max_samples, rng)
    offsets = np.arange(-backtrack, lookahead + 1)
    features = pool.features(offsets, indices)
    desired = np.where(pool.labels[indices], 1.0, -1.0)
    outputs = np.zeros(len(indices))

    history = {
        "n_available": len(pool),
        "n_samples": len(indices),
        "initial_loss": exp_loss(outputs, desired),
        "loss": []
    }

    if verbose:
        print(f"Creating classifier from {len(indices):,} samples...")
    stumps = []
    for step in range(steps):
        # Negative gradient of the exponential loss.
        weights = desired * np.exp(-outputs * desired)
        stump, _ = best_stump(features, offsets, weights)
        votes = stump.predict(features[:, stump.offset + backtrack])
        coef = optimal_step(outputs, votes, desired)

        outputs += coef * votes
        stumps.append((stump, coef))

        loss = exp_loss(outputs, desired)
        history["loss"].append(loss)
        if verbose:
            print(f"  step {step:02d} | offset={stump.offset:+d} value={stump.value:3d} "
                  f"weight={coef:+.4f} | cost={loss:.4f}")

    return BoostedStumpsModel(stumps), history


# ==============================================================================
# Random Forest
# ==============================================================================

def train_random_forest(
    documents: Iterable[Document],
    n_trees: int = FOREST_SIZE,
    samples_per_tree: int = FOREST_SAMPLE_COUNT,
    features_per_split: int = FOREST_FEATURE_COUNT,
    window: Tuple[int, int] = FOREST_WINDOW,
    threshold: float = DEFAULT_FOREST_THRESHOLD,
    seed: Optional[int] = None,
    verbose: bool = True
) -> Tuple[RandomForestModel, Dict[str, Any]]:
    """
    Grow a forest of information-gain decision trees.

    Each tree sees its own uniform subsample of the byte samples and, at every
    split, a random subset of `features_per_split` offsets from `window`.

    Args:
        documents: Training documents with normal spacing
        n_trees: Forest size
        samples_per_tree: Samples drawn for each tree
        features_per_split: Offsets considered at each split
        window: Inclusive (first, last) relative offsets
        threshold: Decision cutoff stored with the model
        seed: Random seed
        verbose: Print progress

    Returns:
        Tuple of (model, history dict)
    """
    lo, hi = window
    if lo > hi:
        raise ValueError(f"empty attribute window {window}")
    if n_trees < 1 or samples_per_tree < 1 or features_per_split < 1:
        raise ValueError("n_trees, samples_per_tree and features_per_split must be positive")

    offsets = np.arange(lo, hi + 1)
    pool = SamplePool(extract_runs(documents), pad=max(abs(lo), abs(hi)))
    _require_samples(len(pool))

    if verbose:
        print(f"Growing {n_trees} trees from {len(pool):,} samples...")

    rng = np.random.default_rng(seed)
    trees = []
    for i in range(n_trees):
        indices = partial_shuffle(len(pool), samples_per_tree, rng)
        clf = DecisionTreeClassifier(
            criterion="entropy",
            max_features=min(features_per_split, len(offsets)),
            random_state=int(rng.integers(2 ** 31 - 1))
        )
        clf.fit(pool.features(offsets, indices), pool.labels[indices])
        trees.append(DecisionTree.from_sklearn(clf))

        if verbose and ((i + 1) % 10 == 0 or i + 1 == n_trees):
            print(f"  tree {i + 1}/{n_trees} | nodes={len(trees[-1])}")

    history = {
        "n_available": len(pool),
        "n_trees": n_trees,
        "mean_nodes": float(np.mean([len(t) for t in trees]))
    }
    return RandomForestModel(trees, offsets, threshold), history


# ==============================================================================
# Sequence Tagger
# ==============================================================================

class BoundaryWindowDataset(Dataset):
    """
    PyTorch Dataset of fixed-length byte windows.

    Windows are cut back to back from each run; a tail shorter than
    `seq_len` is dropped. Each sample is a (byte values, boundary flags) pair.
    """

    def __init__(self, runs: Sequence[Run], seq_len: int = RNN_SEQ_LEN):
        if seq_len < 1:
            raise ValueError("seq_len must be positive")

        self.seq_len = seq_len
        self.codes = []
        self.labels = []

        for run in runs:
            for start in range(0, len(run) - seq_len + 1, seq_len):
                self.codes.append(run.codes[start:start + seq_len])
                self.labels.append(run.ends[start:start + seq_len])

    def __len__(self):
        return len(self.codes)

    def __getitem__(self, idx):
        return (
            torch.from_numpy(self.codes[idx].astype(np.int64)),
            torch.from_numpy(self.labels[idx].astype(np.float32))
        )


def train_sequence_tagger(
    documents: Iterable[Document],
    epochs: int = RNN_EPOCHS,
    seq_len: int = RNN_SEQ_LEN,
    max_samples: int = RNN_MAX_SAMPLES,
    batch_size: int = RNN_BATCH_SIZE,
    lr: float = RNN_STEP_SIZE,
    state_size: int = RNN_STATE_SIZE,
    hidden_size: int = RNN_OUTPUT_HIDDEN,
    seed: Optional[int] = None,
    device: str = "cpu",
    on_epoch_end: Optional[Callable[[int, float], bool]] = None,
    verbose: bool = True
) -> Tuple[SequenceTaggerModel, Dict[str, Any]]:
    """
    Train a bidirectional recurrent tagger with Adam on sigmoid cross-entropy.

    Parameters are snapshotted after every completed epoch. Training stops
    early when `on_epoch_end(epoch, loss)` returns False, and Ctrl+C rolls
    back to the last completed epoch instead of aborting.

    Args:
        documents: Training documents with normal spacing
        epochs: Maximum number of epochs
        seq_len: Training window length
        max_samples: Cap on the number of windows
        batch_size: Mini-batch size
        lr: Adam step size
        state_size: Hidden state size of each direction
        hidden_size: Hidden layer size of the output network
        seed: Random seed
        device: Training device
        on_epoch_end: Optional callback; return False to stop
        verbose: Print progress

    Returns:
        Tuple of (model, history dict)
    """
    if epochs < 0 or max_samples < 1 or batch_size < 1:
        raise ValueError("epochs must be non-negative; max_samples and batch_size positive")

    if verbose:
        print("Loading samples...")
    dataset = BoundaryWindowDataset(extract_runs(documents), seq_len)
    if len(dataset) == 0:
        raise ValueError(f"corpus has no run of at least {seq_len} bytes")

    rng = np.random.default_rng(seed)
    generator = torch.Generator()
    if seed is not None:
        torch.manual_seed(seed)
        generator.manual_seed(seed)

    train_set = Subset(dataset, partial_shuffle(len(dataset), max_samples, rng).tolist())
    loader = DataLoader(train_set, batch_size=batch_size, shuffle=True, generator=generator)

    net = BidirectionalTagger(BYTE_FEATURES, state_size, hidden_size).to(device)
    optimizer = torch.optim.Adam(net.parameters(), lr=lr)
    criterion = nn.BCEWithLogitsLoss()

    history = {
        "n_samples": len(train_set),
        "train_loss": [],
        "epochs_completed": 0,
        "interrupted": False
    }
    snapshot = copy.deepcopy(net.state_dict())

    if verbose:
        print(f"Training on {len(train_set):,} samples (Ctrl+C to end)...")
    try:
        for epoch in range(1, epochs + 1):
            net.train()
            train_loss = 0.0

            for x, y in loader:
                x, y = x.to(device), y.to(device)

                optimizer.zero_grad()
                loss = criterion(net(x), y)
                loss.backward()

                torch.nn.utils.clip_grad_norm_(net.parameters(), 1.0)
                optimizer.step()

                train_loss += loss.item()

            train_loss /= len(loader)
            snapshot = copy.deepcopy(net.state_dict())
            history["train_loss"].append(train_loss)
            history["epochs_completed"] = epoch

            if verbose:
                print(f"  ep {epoch:02d} | loss={train_loss:.4f}")
            if on_epoch_end is not None and not on_epoch_end(epoch, train_loss):
                break
    except KeyboardInterrupt:
        history["interrupted"] = True
        if verbose:
            print(f"Interrupted; keeping parameters from epoch {history['epochs_completed']}")

    net.load_state_dict(snapshot)
    return SequenceTaggerModel(net.cpu()), history


# ==============================================================================
# Trainer Registry
# ==============================================================================

TRAINERS = types.MappingProxyType({
    DictionaryModel.model_type: train_dictionary,
    MarkovModel.model_type: train_markov,
    BoostedStumpsModel.model_type: train_boosted_stumps,
    RandomForestModel.model_type: train_random_forest,
    SequenceTaggerModel.model_type: train_sequence_tagger,
})


def _resolve_trainer(model_type: str) -> Callable:
    try:
        return TRAINERS[model_type]
    except KeyError:
        raise UnknownModelTypeError(model_type, TRAINERS) from None


def train_model(
    model_type: str,
    documents: Iterable[Document],
    **kwargs
) -> Tuple[SegmentationModel, Dict[str, Any]]:
    """
    Train the model registered under `model_type`.

    Raises:
        UnknownModelTypeError: If no trainer is registered for `model_type`
    """
    return _resolve_trainer(model_type)(documents, **kwargs)


def train_from_directory(
    model_type: str,
    corpus_dir: str,
    **kwargs
) -> Tuple[SegmentationModel, Dict[str, Any]]:
    """Read a corpus directory and train on it; fails before reading on a bad tag."""
    trainer = _resolve_trainer(model_type)
    return trainer(read_corpus(corpus_dir), **kwargs)


# ==============================================================================
# Checkpoint Management
# ==============================================================================

def generate_model_id(**params) -> str:
    """Generate unique model ID from hyperparameters."""
    param_str = json.dumps(params, sort_keys=True)
    return hashlib.md5(param_str.encode()).hexdigest()[:16]


def save_checkpoint(
    model: SegmentationModel,
    model_id: str,
    save_dir: str,
    extra_data: Dict = None,
    verbose: bool = True
) -> str:
    """Save model checkpoint."""
    model_path = os.path.join(save_dir, model_id)
    os.makedirs(model_path, exist_ok=True)

    with open(os.path.join(model_path, "model.bin"), "wb") as f:
        f.write(model.serialize())

    meta = {"model_type": model.model_type}
    if extra_data:
        meta.update(extra_data)

    with open(os.path.join(model_path, "meta.json"), "w") as f:
        json.dump(meta, f)

    if verbose:
        print(f"Saved checkpoint to {model_path}")
    return model_path


def load_checkpoint(
    model_id: str,
    save_dir: str
) -> Optional[Dict]:
    """Load model checkpoint; None if it does not exist."""
    model_path = os.path.join(save_dir, model_id)

    if not os.path.exists(model_path):
        return None

    with open(os.path.join(model_path, "meta.json"), "r") as f:
        meta = json.load(f)

    if "model_type" not in meta:
        raise ModelDecodeError(f"checkpoint {model_path} has no model_type")

    with open(os.path.join(model_path, "model.bin"), "rb") as f:
        model = deserialize_model(meta["model_type"], f.read())

    return {"model": model, **meta}


# ==============================================================================
# Cross-Validation
# ==============================================================================

def run_kfold_cv(
    model_type: str,
    documents: Iterable[Document],
    n_folds: int = 5,
    random_state: int = 42,
    verbose: bool = True,
    **train_kwargs
) -> List[Dict]:
    """
    Run k-fold cross-validation over documents.

    Args:
        model_type: Registered model tag
        documents: Documents with normal spacing
        n_folds: Number of CV folds
        random_state: Random seed for the fold split
        verbose: Print progress
        **train_kwargs: Passed to the trainer

    Returns:
        List of fold result dicts
    """
    trainer = _resolve_trainer(model_type)
    documents = list(documents)

    kfold = KFold(n_splits=n_folds, shuffle=True, random_state=random_state)
    indices = np.arange(len(documents))

    fold_results = []

    for fold_idx, (train_idx, val_idx) in enumerate(kfold.split(indices), 1):
        if verbose:
            print(f"\n--- Fold {fold_idx}/{n_folds} ---")

        train_docs = [documents[i] for i in train_idx]
        val_docs = [documents[i] for i in val_idx]

        model, history = trainer(train_docs, verbose=verbose, **train_kwargs)
        results = evaluate_model(model, val_docs)

        results.update({
            "fold": fold_idx,
            "train_size": len(train_idx),
            "val_size": len(val_idx),
            "history": history
        })
        fold_results.append(results)

    if verbose:
        print_cv_summary(fold_results, name=model_type)

    return fold_results
