"""
Preprocessing utilities for word-boundary recovery.

Handles corpus reading, run extraction, boundary label generation and the
relative-offset byte features shared by the statistical models.
"""

import os
import re
from typing import Iterable, List, Optional, Sequence, Union

import numpy as np

from .errors import CorpusError

Document = Union[str, bytes]

# ==============================================================================
# Text Runs
# ==============================================================================

# Latin-1 maps every byte to exactly one character and back.
TEXT_ENCODING = "latin-1"
WHITESPACE = re.compile(r"[ \t\n\r\f\v]+")
SENTINEL = 0


def decode_document(document: Document) -> str:
    """Decode raw document bytes so that each byte is one character."""
    if isinstance(document, (bytes, bytearray)):
        return bytes(document).decode(TEXT_ENCODING)
    return document


def split_runs(text: str) -> List[str]:
    """Split text on ASCII whitespace, dropping empty pieces."""
    return [run for run in WHITESPACE.split(text) if run]


def byte_codes(run: str) -> np.ndarray:
    """
    Byte value of every character in a run.

    Characters outside Latin-1 are replaced by '?' so the result always has
    exactly one entry per character.
    """
    return np.frombuffer(run.encode(TEXT_ENCODING, errors="replace"), dtype=np.uint8)


class Run:
    """
    A document with its whitespace stripped.

    `ends[i]` is True when a word ended at byte `i` in the original text.
    """

    def __init__(self, text: str, ends: Sequence[bool]):
        if len(ends) != len(text):
            raise ValueError(f"got {len(ends)} boundary flags for {len(text)} bytes")
        codes = byte_codes(text)
        ends = np.array(ends, dtype=bool)
        ends.setflags(write=False)
        self.text = text
        self.codes = codes
        self.ends = ends

    def __len__(self) -> int:
        return len(self.text)

    def __repr__(self) -> str:
        return f"Run({self.text!r}, words={len(self.words())})"

    def words(self) -> List[str]:
        """The original words of the document."""
        return apply_boundaries(self.text, self.ends)


def extract_run(document: Document) -> Run:
    """
    Strip all whitespace from a document while remembering word ends.

    Args:
        document: Raw bytes or already-decoded text

    Returns:
        Run whose flag is set on the last byte of every word
    """
    words = split_runs(decode_document(document))
    text = "".join(words)
    ends = np.zeros(len(text), dtype=bool)
    pos = 0
    for word in words:
        pos += len(word)
        ends[pos - 1] = True
    return Run(text, ends)


def extract_runs(documents: Iterable[Document]) -> List[Run]:
    """Extract a run from every document, skipping documents with no text."""
    runs = []
    for document in documents:
        run = extract_run(document)
        if len(run):
            runs.append(run)
    return runs


def apply_boundaries(text: str, flags: Sequence[bool]) -> List[str]:
    """
    Split text after every flagged position.

    Args:
        text: Whitespace-free run
        flags: One boundary decision per character

    Returns:
        List of words; their concatenation is `text`
    """
    segments = []
    start = 0

    for i in range(len(text)):
        if i < len(flags) and flags[i]:
            segments.append(text[start:i + 1])
            start = i + 1

    if start < len(text):
        segments.append(text[start:])

    return segments


# ==============================================================================
# Relative-Offset Features
# ==============================================================================

def offset_features(codes: np.ndarray, offsets: Sequence[int]) -> np.ndarray:
    """
    Read the byte at `position + offset` for every position and offset.

    Args:
        codes: Byte values of a single run
        offsets: Relative offsets to probe

    Returns:
        uint8 array [len(codes), len(offsets)]; reads past either end are 0
    """
    offsets = np.asarray(offsets, dtype=np.int64)
    n = len(codes)
    if n == 0 or len(offsets) == 0:
        return np.zeros((n, len(offsets)), dtype=np.uint8)

    pad = int(np.abs(offsets).max())
    padded = np.full(n + 2 * pad, SENTINEL, dtype=np.uint8)
    padded[pad:pad + n] = codes
    index = np.arange(n)[:, None] + pad + offsets[None, :]
    return padded[index]


class SamplePool:
    """
    Every byte position of a set of runs as a labeled training sample.

    Runs are packed into one buffer separated by `pad` sentinel bytes, so any
    offset within `pad` reads the 0 sentinel instead of a neighbouring run.
    """

    def __init__(self, runs: Sequence[Run], pad: int):
        if pad < 0:
            raise ValueError("pad must be non-negative")

        pieces = [np.full(pad, SENTINEL, dtype=np.uint8)]
        positions = []
        labels = []
        cursor = pad

        for run in runs:
            pieces.append(run.codes)
            pieces.append(np.full(pad, SENTINEL, dtype=np.uint8))
            positions.append(np.arange(cursor, cursor + len(run), dtype=np.int64))
            labels.append(run.ends)
            cursor += len(run) + pad

        self.pad = pad
        self.buffer = np.concatenate(pieces)
        self.positions = np.concatenate(positions) if positions else np.zeros(0, dtype=np.int64)
        self.labels = np.concatenate(labels) if labels else np.zeros(0, dtype=bool)

    def __len__(self) -> int:
        return len(self.positions)

    def features(self, offsets: Sequence[int], indices: Optional[np.ndarray] = None) -> np.ndarray:
        """
        Byte values at each relative offset for the selected samples.

        Args:
            offsets: Relative offsets, each within [-pad, pad]
            indices: Sample indices (default: all samples)

        Returns:
            uint8 array [n_samples, len(offsets)]
        """
        offsets = np.asarray(offsets, dtype=np.int64)
        if len(offsets) and int(np.abs(offsets).max()) > self.pad:
            raise ValueError(f"offsets exceed pool padding of {self.pad}")
        positions = self.positions if indices is None else self.positions[indices]
        return self.buffer[positions[:, None] + offsets[None, :]]


def partial_shuffle(n: int, k: int, rng: Optional[np.random.Generator] = None) -> np.ndarray:
    """
    Choose `k` of `range(n)` uniformly without replacement.

    Runs a Fisher-Yates pass that stops after the first `k` swaps. When
    `k >= n` every index is returned in order.
    """
    if k >= n:
        return np.arange(n)
    if rng is None:
        rng = np.random.default_rng()

    indices = np.arange(n)
    swaps = rng.integers(np.arange(k), n)
    for i, j in enumerate(swaps):
        indices[i], indices[j] = indices[j], indices[i]
    return indices[:k]


# ==============================================================================
# Corpus
# ==============================================================================

HIDDEN_PREFIX = "."


def read_corpus(corpus_dir: Union[str, os.PathLike]) -> List[bytes]:
    """
    Read every document of a corpus directory.

    Entries whose names start with '.' are skipped. Documents are returned in
    name order. Any failure aborts the read.

    Args:
        corpus_dir: Directory holding one document per file

    Returns:
        List of raw document bytes

    Raises:
        CorpusError: If the directory or one of its documents is unreadable
    """
    try:
        names = sorted(os.listdir(corpus_dir))
    except OSError as e:
        raise CorpusError(f"cannot list corpus directory {corpus_dir}: {e}") from e

    documents = []
    for name in names:
        if name.startswith(HIDDEN_PREFIX):
            continue
        path = os.path.join(corpus_dir, name)
        try:
            with open(path, "rb") as f:
                documents.append(f.read())
        except OSError as e:
            raise CorpusError(f"cannot read corpus document {path}: {e}") from e

    return documents
