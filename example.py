#!/usr/bin/env python
"""
Example: Putting Spaces Back

Demonstrates basic usage of the segmentation toolkit.
"""

from spacesplice import (
    extract_run,
    train_dictionary,
    train_markov,
    train_boosted_stumps,
    train_random_forest,
    deserialize_model,
    evaluate_model,
    print_evaluation_summary
)


def main():
    print("=" * 60)
    print("Word Boundary Recovery Demo")
    print("=" * 60)

    corpus = [
        "the cat sat on the mat",
        "a dog sat on the log",
        "the dog and the cat ate a fish",
        "I saw the cat on the mat",
        "the fish sat in a dish on the mat",
    ]
    unspaced = "thedogsatonthemat"

    # Step 1: Training samples
    print("\n1. Training Samples")
    print("-" * 40)
    run = extract_run(corpus[0])
    print(f"  {corpus[0]!r} → {run.text!r}")
    print(f"  Word ends: {[i for i, end in enumerate(run.ends) if end]}")

    # Step 2: Word-level models
    print("\n2. Dictionary & Markov")
    print("-" * 40)
    dictionary, _ = train_dictionary(corpus)
    markov, _ = train_markov(corpus)
    print(f"  Dictionary: {dictionary.fields(unspaced)}")
    print(f"  Markov:     {markov.fields(unspaced)}")

    # Step 3: Byte-level classifiers
    print("\n3. Stumps & Forest")
    print("-" * 40)
    stumps, history = train_boosted_stumps(corpus, steps=10, seed=0, verbose=False)
    forest, _ = train_random_forest(corpus, n_trees=20, samples_per_tree=100, seed=0, verbose=False)
    print(f"  Stumps (loss {history['initial_loss']:.1f} → {history['loss'][-1]:.1f}): "
          f"{stumps.fields(unspaced)}")
    print(f"  Forest: {forest.fields(unspaced)}")

    # Step 4: Serialization
    print("\n4. Serialization Round-Trip")
    print("-" * 40)
    for model in (dictionary, markov, stumps, forest):
        blob = model.serialize()
        restored = deserialize_model(model.model_type, blob)
        same = restored.fields(unspaced) == model.fields(unspaced)
        print(f"  {model.model_type:7s} {len(blob):7,d} bytes  {'✓' if same else '✗'}")

    # Step 5: Evaluation
    print("\n5. Evaluation")
    print("-" * 40)
    held_out = ["the cat ate the fish on a mat"]
    results = evaluate_model(markov, held_out)
    print_evaluation_summary(results, name="Markov")

    print("=" * 60)
    print("Demo complete!")
    print("=" * 60)


if __name__ == "__main__":
    main()
