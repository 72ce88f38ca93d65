"""
Spacesplice

A toolkit for putting the spaces back into text whose whitespace has been
removed, featuring five interchangeable boundary models trained from
ordinary spaced documents.
"""

from .errors import (
    CorpusError,
    ModelDecodeError,
    UnknownModelTypeError
)

from .preprocessing import (
    Run,
    SamplePool,
    split_runs,
    byte_codes,
    extract_run,
    extract_runs,
    apply_boundaries,
    offset_features,
    partial_shuffle,
    read_corpus,
    SENTINEL
)

from .models import (
    SegmentationModel,
    DictionaryModel,
    MarkovModel,
    Stump,
    BoostedStumpsModel,
    DecisionTree,
    RandomForestModel,
    RecurrentUnit,
    BidirectionalTagger,
    SequenceTaggerModel,
    MODEL_TYPES,
    deserialize_model,
    MAX_WORD_LEN
)

from .evaluation import (
    compute_boundary_prf,
    evaluate_predictions,
    evaluate_model,
    print_evaluation_summary,
    compute_cv_summary,
    print_cv_summary
)

from .training import (
    train_dictionary,
    train_markov,
    train_boosted_stumps,
    train_random_forest,
    train_sequence_tagger,
    BoundaryWindowDataset,
    TRAINERS,
    train_model,
    train_from_directory,
    save_checkpoint,
    load_checkpoint,
    generate_model_id,
    run_kfold_cv
)

__version__ = "0.1.0"
