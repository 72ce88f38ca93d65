import pytest

from spacesplice import (
    train_dictionary,
    train_markov,
    train_boosted_stumps,
    train_random_forest,
    train_sequence_tagger
)

SMALL_CORPUS = [
    "the cat sat on the mat",
    "a dog sat on the log and the cat sat on a mat",
    "the dog and the cat ate the fish on the mat",
    "I saw the cat sat on the mat with the dog",
    "the fish sat in a dish on the mat near the log",
    "a cat and a dog ate fish in the house on the hill",
    "the man saw the dog and the cat in the house",
    "I gave the fish to the cat and the bone to the dog",
]

# Unspaced inputs every model must handle
SAMPLE_INPUTS = [
    "thecatsatonthemat",
    "adogatethefish",
    "x",
    "zzzzqqqq",
    "I",
    "themanandthedog sawthefish",
    "\tthecat\n\nonthemat  ",
    "",
    "   ",
    "0123456789!?#",
    "café",
]


@pytest.fixture
def small_corpus():
    return list(SMALL_CORPUS)


@pytest.fixture
def sample_inputs():
    return list(SAMPLE_INPUTS)


@pytest.fixture
def corpus_dir(tmp_path):
    """Corpus directory with one document per file and a hidden entry."""
    for i, doc in enumerate(SMALL_CORPUS):
        (tmp_path / f"doc{i:02d}.txt").write_bytes(doc.encode("latin-1"))
    (tmp_path / ".index").write_bytes(b"not a document")
    return tmp_path


@pytest.fixture(scope="session")
def trained_models():
    """One small instance of every model type, keyed by model type."""
    models = {}
    models["dict"], _ = train_dictionary(SMALL_CORPUS, verbose=False)
    models["markov"], _ = train_markov(SMALL_CORPUS, verbose=False)
    models["stumps"], _ = train_boosted_stumps(SMALL_CORPUS, steps=6, seed=0, verbose=False)
    models["forest"], _ = train_random_forest(
        SMALL_CORPUS, n_trees=5, samples_per_tree=150, window=(-4, 3), seed=0, verbose=False
    )
    models["rnn"], _ = train_sequence_tagger(
        SMALL_CORPUS, epochs=1, seq_len=16, batch_size=4,
        state_size=8, hidden_size=8, seed=0, verbose=False
    )
    return models
