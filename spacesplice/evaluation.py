"""
Evaluation utilities for word-boundary segmentation.

Metrics:
- Boundary F1 (precision, recall, F1 at boundary positions)
- Exact Match (full segmentation accuracy per run)
- Word-count metrics
"""

from typing import Any, Dict, Iterable, List, Set, Tuple

import numpy as np

from .preprocessing import Document, extract_runs


# ==============================================================================
# Boundary Metrics
# ==============================================================================

def boundary_positions_from_segments(segments: List[str]) -> Set[int]:
    """
    Extract boundary positions from a word list.

    The end of the last word is not a boundary: it is fixed by the input.

    Args:
        segments: List of words

    Returns:
        Set of boundary positions (0-indexed, after each character)
    """
    positions = set()
    pos = 0

    for seg in segments[:-1]:
        pos += len(seg)
        positions.add(pos - 1)

    return positions


def compute_boundary_prf(
    pred_positions: Set[int],
    gold_positions: Set[int]
) -> Tuple[float, float, float, int, int, int]:
    """
    Compute precision, recall, F1 from boundary position sets.

    Args:
        pred_positions: Predicted boundary positions
        gold_positions: Gold boundary positions

    Returns:
        Tuple of (precision, recall, f1, tp, fp, fn)
    """
    tp = len(pred_positions & gold_positions)
    fp = len(pred_positions - gold_positions)
    fn = len(gold_positions - pred_positions)

    metrics = aggregate_boundary_metrics(tp, fp, fn)
    return metrics["precision"], metrics["recall"], metrics["f1"], tp, fp, fn


def aggregate_boundary_metrics(
    all_tp: int,
    all_fp: int,
    all_fn: int
) -> Dict[str, float]:
    """
    Compute micro-averaged boundary metrics from aggregated counts.

    Args:
        all_tp: Total true positives
        all_fp: Total false positives
        all_fn: Total false negatives

    Returns:
        Dict with precision, recall, f1
    """
    if all_tp + all_fp == 0:
        precision = 1.0 if all_tp + all_fn == 0 else 0.0
    else:
        precision = all_tp / (all_tp + all_fp)

    if all_tp + all_fn == 0:
        recall = 1.0 if all_tp + all_fp == 0 else 0.0
    else:
        recall = all_tp / (all_tp + all_fn)

    if precision + recall == 0:
        f1 = 1.0 if (all_tp + all_fp + all_fn) == 0 else 0.0
    else:
        f1 = 2 * precision * recall / (precision + recall)

    return {
        "precision": precision,
        "recall": recall,
        "f1": f1,
        "tp": all_tp,
        "fp": all_fp,
        "fn": all_fn
    }


# ==============================================================================
# Word-Count Metrics
# ==============================================================================

def compute_word_count_metrics(
    predicted: List[str],
    gold: List[str]
) -> Dict[str, bool]:
    """Whether the predicted word count is exact, one too many or one too few."""
    diff = len(predicted) - len(gold)
    return {
        "exact": diff == 0,
        "plus1": diff == 1,
        "minus1": diff == -1,
        "pm1": abs(diff) <= 1
    }


# ==============================================================================
# Full Evaluation
# ==============================================================================

def evaluate_predictions(
    runs: List[str],
    predictions: List[List[str]],
    golds: List[List[str]]
) -> Dict[str, Any]:
    """
    Comprehensive evaluation of segmentation predictions.

    Args:
        runs: Unspaced input runs
        predictions: Predicted word lists
        golds: Gold word lists

    Returns:
        Evaluation results dict
    """
    results = {
        "n_runs": len(runs),
        "exact_matches": 0,
        "micro_tp": 0,
        "micro_fp": 0,
        "micro_fn": 0,
        "run_f1s": [],
        "count_exact": 0,
        "count_pm1": 0,
    }

    for pred, gold in zip(predictions, golds):
        results["exact_matches"] += int(pred == gold)

        p, r, f1, tp, fp, fn = compute_boundary_prf(
            boundary_positions_from_segments(pred),
            boundary_positions_from_segments(gold)
        )
        results["micro_tp"] += tp
        results["micro_fp"] += fp
        results["micro_fn"] += fn
        results["run_f1s"].append(f1)

        counts = compute_word_count_metrics(pred, gold)
        results["count_exact"] += int(counts["exact"])
        results["count_pm1"] += int(counts["pm1"])

    n = results["n_runs"]

    results["exact_match_rate"] = results["exact_matches"] / n if n > 0 else 0
    results["boundary_metrics"] = aggregate_boundary_metrics(
        results["micro_tp"], results["micro_fp"], results["micro_fn"]
    )
    results["macro_f1"] = float(np.mean(results["run_f1s"])) if results["run_f1s"] else 0
    results["count_exact_rate"] = results["count_exact"] / n if n > 0 else 0
    results["count_pm1_rate"] = results["count_pm1"] / n if n > 0 else 0

    return results


def evaluate_model(model, documents: Iterable[Document]) -> Dict[str, Any]:
    """
    Strip the spaces from held-out documents and score the model's guesses.

    Args:
        model: Any SegmentationModel
        documents: Held-out documents with their normal spacing

    Returns:
        Evaluation results dict (see evaluate_predictions)
    """
    runs = extract_runs(documents)
    texts = [run.text for run in runs]
    predictions = [model.fields(text) for text in texts]
    golds = [run.words() for run in runs]
    return evaluate_predictions(texts, predictions, golds)


def print_evaluation_summary(results: Dict[str, Any], name: str = "Model"):
    """Print formatted evaluation summary."""
    print(f"\n{'=' * 60}")
    print(f"Evaluation Results: {name}")
    print(f"{'=' * 60}")
    print(f"Runs evaluated: {results['n_runs']}")
    print(f"\nExact Match: {results['exact_match_rate']:.4f} ({results['exact_matches']}/{results['n_runs']})")

    bm = results['boundary_metrics']
    print(f"\nBoundary Metrics (micro):")
    print(f"  Precision: {bm['precision']:.4f}")
    print(f"  Recall:    {bm['recall']:.4f}")
    print(f"  F1:        {bm['f1']:.4f}")
    print(f"  Macro F1:  {results['macro_f1']:.4f}")

    print(f"\nWord-Count Metrics:")
    print(f"  Exact:  {results['count_exact_rate']:.4f}")
    print(f"  ±1:     {results['count_pm1_rate']:.4f}")
    print(f"{'=' * 60}\n")


# ==============================================================================
# Cross-Validation Utilities
# ==============================================================================

def compute_cv_summary(fold_results: List[Dict]) -> Dict[str, Any]:
    """
    Compute summary statistics across CV folds.

    Args:
        fold_results: List of per-fold result dicts

    Returns:
        Summary dict with means and stds
    """
    metrics = {}

    for key in ["exact_match_rate", "macro_f1"]:
        values = [r[key] for r in fold_results if key in r]
        if values:
            metrics[f"{key}_mean"] = float(np.mean(values))
            metrics[f"{key}_std"] = float(np.std(values))

    f1s = [r["boundary_metrics"]["f1"] for r in fold_results if "boundary_metrics" in r]
    if f1s:
        metrics["boundary_f1_mean"] = float(np.mean(f1s))
        metrics["boundary_f1_std"] = float(np.std(f1s))

    return metrics


def print_cv_summary(fold_results: List[Dict], name: str = "Model"):
    """Print CV summary across folds."""
    print(f"\n{'=' * 60}")
    print(f"Cross-Validation Summary: {name}")
    print(f"{'=' * 60}")

    for i, r in enumerate(fold_results, 1):
        em = r.get("exact_match_rate", 0)
        f1 = r.get("boundary_metrics", {}).get("f1", 0)
        print(f"  Fold {i}: EM={em:.4f}, B-F1={f1:.4f}")

    summary = compute_cv_summary(fold_results)

    print(f"\nMean ± Std over {len(fold_results)} folds:")
    if "exact_match_rate_mean" in summary:
        print(f"  Exact Match: {summary['exact_match_rate_mean']:.4f} ± {summary['exact_match_rate_std']:.4f}")
    if "boundary_f1_mean" in summary:
        print(f"  Boundary F1: {summary['boundary_f1_mean']:.4f} ± {summary['boundary_f1_std']:.4f}")

    print(f"{'=' * 60}\n")
