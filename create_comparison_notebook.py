#!/usr/bin/env python3
"""
Script to generate the model comparison notebook.
Uses nbformat to construct the notebook programmatically.
"""

import nbformat
from nbformat.v4 import new_notebook, new_code_cell, new_markdown_cell


def create_notebook():
    """Create and return a new notebook object."""
    nb = new_notebook()
    nb.metadata.kernelspec = {
        "display_name": "Python 3",
        "language": "python",
        "name": "python3"
    }
    return nb


def add_header_section(nb):
    """Add title and overview markdown."""
    nb.cells.append(new_markdown_cell(
        "# Spacesplice: Model Comparison\n\n"
        "Recovering word boundaries in text whose spaces were removed, using:\n"
        "- Dictionary (greedy longest match)\n"
        "- Markov chain over words with two-step lookahead\n"
        "- Boosted byte stumps\n"
        "- Random forest over relative-offset bytes\n"
        "- Bidirectional GRU tagger\n\n"
        "All models are trained on the same documents and scored on held-out documents."
    ))


def add_imports_section(nb):
    """Add all imports in a single organized cell."""
    imports_code = '''import os
import time

import numpy as np
import torch

from spacesplice import (
    read_corpus,
    train_model,
    evaluate_model,
    print_evaluation_summary,
    save_checkpoint,
    generate_model_id,
    run_kfold_cv,
    TRAINERS
)'''
    nb.cells.append(new_code_cell(imports_code))


def add_config_section(nb):
    """Add configuration constants."""
    config_code = '''# Paths
CORPUS_DIR = "corpus"
MODELS_FOLDER = "models_spacesplice"
os.makedirs(MODELS_FOLDER, exist_ok=True)

# Random seeds
RANDOM_STATE = 42
torch.manual_seed(RANDOM_STATE)
np.random.seed(RANDOM_STATE)

# Held-out share of documents
TEST_FRACTION = 0.2

# Per-model hyperparameters (defaults elsewhere)
TRAIN_KWARGS = {
    "dict": {},
    "markov": {},
    "stumps": {"seed": RANDOM_STATE},
    "forest": {"seed": RANDOM_STATE},
    "rnn": {"seed": RANDOM_STATE, "epochs": 5},
}'''
    nb.cells.append(new_code_cell(config_code))


def add_data_loading_section(nb):
    """Add corpus loading and the train/test split."""
    loading_code = '''print("loading corpus...")
documents = read_corpus(CORPUS_DIR)
rng = np.random.default_rng(RANDOM_STATE)
order = rng.permutation(len(documents))
n_test = max(1, int(len(documents) * TEST_FRACTION))
test_docs = [documents[i] for i in order[:n_test]]
train_docs = [documents[i] for i in order[n_test:]]

print("=" * 60)
print("CORPUS SUMMARY")
print("=" * 60)
print(f"documents: {len(documents):,}")
print(f"training:  {len(train_docs):,}")
print(f"test:      {len(test_docs):,}")
print(f"bytes:     {sum(len(d) for d in documents):,}")
print("=" * 60)'''
    nb.cells.append(new_code_cell(loading_code))


def add_training_section(nb):
    """Add a cell training every registered model."""
    nb.cells.append(new_markdown_cell("## Training"))

    training_code = '''models = {}
histories = {}
for name in sorted(TRAINERS):
    print(f"\\n--- {name} ---")
    start = time.time()
    models[name], histories[name] = train_model(name, train_docs, **TRAIN_KWARGS[name])
    print(f"trained in {time.time() - start:.1f}s")'''
    nb.cells.append(new_code_cell(training_code))


def add_evaluation_section(nb):
    """Add evaluation and a summary table."""
    nb.cells.append(new_markdown_cell("## Evaluation on held-out documents"))

    eval_code = '''results = {}
for name, model in models.items():
    results[name] = evaluate_model(model, test_docs)
    print_evaluation_summary(results[name], name=name)'''
    nb.cells.append(new_code_cell(eval_code))

    table_code = '''print(f"{'model':8s} {'P':>7s} {'R':>7s} {'F1':>7s} {'EM':>7s}")
for name, r in sorted(results.items(), key=lambda kv: -kv[1]["boundary_metrics"]["f1"]):
    bm = r["boundary_metrics"]
    print(f"{name:8s} {bm['precision']:7.4f} {bm['recall']:7.4f} {bm['f1']:7.4f} {r['exact_match_rate']:7.4f}")'''
    nb.cells.append(new_code_cell(table_code))


def add_threshold_section(nb):
    """Add the forest decision-threshold sweep."""
    nb.cells.append(new_markdown_cell(
        "## Forest threshold sweep\n\n"
        "A boundary is declared when P(boundary) >= P(no boundary) * threshold. "
        "Lower thresholds trade precision for recall."
    ))

    sweep_code = '''forest = models["forest"]
for thr in [0.2, 0.3, 0.4, 0.5, 0.6, 0.8, 1.0]:
    r = evaluate_model(forest.with_threshold(thr), test_docs)
    bm = r["boundary_metrics"]
    print(f"threshold={thr:.1f} | P/R/F1={bm['precision']:.3f}/{bm['recall']:.3f}/{bm['f1']:.3f}")'''
    nb.cells.append(new_code_cell(sweep_code))


def add_checkpoint_section(nb):
    """Add checkpoint saving."""
    save_code = '''for name, model in models.items():
    model_id = generate_model_id(model=name, **TRAIN_KWARGS[name])
    save_checkpoint(model, model_id, MODELS_FOLDER, extra_data={"history": histories[name]})'''
    nb.cells.append(new_code_cell(save_code))


def add_kfold_section(nb):
    """Add k-fold cross-validation for the cheap models."""
    nb.cells.append(new_markdown_cell("## Cross-validation (word-level models)"))

    kfold_code = '''cv_results = {}
for name in ["dict", "markov"]:
    cv_results[name] = run_kfold_cv(name, documents, n_folds=5, random_state=RANDOM_STATE, verbose=False)'''
    nb.cells.append(new_code_cell(kfold_code))


def add_example_usage_section(nb):
    """Add interactive examples."""
    example_code = '''examples = ["thecatsatonthemat", "helloworld", "wordboundariesarehardtofind"]
for text in examples:
    print(text)
    for name, model in models.items():
        print(f"  {name:8s} {' '.join(model.fields(text))}")'''
    nb.cells.append(new_code_cell(example_code))


def main():
    """Build and save the comparison notebook."""
    nb = create_notebook()

    add_header_section(nb)
    add_imports_section(nb)
    add_config_section(nb)
    add_data_loading_section(nb)
    add_training_section(nb)
    add_evaluation_section(nb)
    add_threshold_section(nb)
    add_checkpoint_section(nb)
    add_kfold_section(nb)
    add_example_usage_section(nb)

    output_path = "Spacesplice_comparison.ipynb"
    with open(output_path, 'w', encoding='utf-8') as f:
        nbformat.write(nb, f)

    print(f"Comparison notebook saved to: {output_path}")


if __name__ == "__main__":
    main()
