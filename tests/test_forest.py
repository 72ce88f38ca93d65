"""
Unit tests for the random decision forest model.
"""

import io

import numpy as np
import pytest

from spacesplice import DecisionTree, ModelDecodeError, RandomForestModel, train_random_forest


def byte_split_tree(split=100):
    """Root splits on the focal byte: <= split is not a boundary, above is."""
    return DecisionTree(
        left=[1, -1, -1],
        right=[2, -1, -1],
        feature=[0, -2, -2],
        split=[split, -2, -2],
        proba=[[0.5, 0.5], [1.0, 0.0], [0.0, 1.0]]
    )


class TestDecisionTree:
    """Test node-array traversal and validation."""

    def test_predict_proba(self):
        tree = byte_split_tree()
        probs = tree.predict_proba(np.array([[100], [101], [0]], dtype=np.uint8))
        assert probs.tolist() == [[1.0, 0.0], [0.0, 1.0], [1.0, 0.0]]

    def test_single_leaf(self):
        tree = DecisionTree([-1], [-1], [-2], [-2], [[0.25, 0.75]])
        probs = tree.predict_proba(np.zeros((3, 2), dtype=np.uint8))
        assert probs.tolist() == [[0.25, 0.75]] * 3

    def test_validate_accepts_well_formed_tree(self):
        byte_split_tree().validate(1)

    def test_validate_rejects_backward_child(self):
        tree = byte_split_tree()
        tree.left[0] = 0
        with pytest.raises(ValueError):
            tree.validate(1)

    def test_validate_rejects_out_of_range_child(self):
        tree = byte_split_tree()
        tree.right[0] = 7
        with pytest.raises(ValueError):
            tree.validate(1)

    def test_validate_rejects_unknown_attribute(self):
        with pytest.raises(ValueError):
            byte_split_tree().validate(0)


class TestForestModel:
    """Test voting and the decision threshold."""

    def test_fields_with_hand_built_tree(self):
        model = RandomForestModel([byte_split_tree()], offsets=[0])
        assert model.fields("dede") == ["de", "de"]

    def test_probabilities_are_averaged(self):
        always = DecisionTree([-1], [-1], [-2], [-2], [[0.0, 1.0]])
        model = RandomForestModel([byte_split_tree(), always], offsets=[0])
        probs = model.class_probabilities("de")
        np.testing.assert_allclose(probs, [[0.5, 0.5], [0.0, 1.0]])

    def test_threshold_controls_boundary_rate(self, trained_models):
        model = trained_models["forest"]
        text = "thedogsatonthematnearthehouse"
        strict = model.with_threshold(4.0).boundary_flags(text)
        default = model.boundary_flags(text)
        eager = model.with_threshold(0.1).boundary_flags(text)
        assert np.all(strict <= default) and np.all(default <= eager)

    def test_with_threshold_returns_new_model(self, trained_models):
        model = trained_models["forest"]
        other = model.with_threshold(2.0)
        assert other.threshold == 2.0
        assert model.threshold == 0.5
        assert other.trees is model.trees

    def test_empty_forest_marks_every_byte(self):
        model = RandomForestModel([], offsets=[0])
        assert model.fields("abc") == ["a", "b", "c"]


class TestForestTraining:
    """Test growing the forest."""

    def test_forest_size_and_offsets(self, small_corpus):
        model, history = train_random_forest(
            small_corpus, n_trees=3, samples_per_tree=100, window=(-2, 2), seed=1, verbose=False
        )
        assert len(model) == 3
        assert model.offsets.tolist() == [-2, -1, 0, 1, 2]
        assert history["n_trees"] == 3
        for tree in model.trees:
            tree.validate(len(model.offsets))

    def test_single_class_corpus(self):
        # every word is one byte, so every byte is a boundary
        model, _ = train_random_forest(["a b c"], n_trees=2, seed=0, verbose=False)
        assert model.fields("abc") == ["a", "b", "c"]

    def test_learns_separator_byte(self):
        corpus = ["ab" * 3 + " " + "ab" * 2 + " ab"] * 5
        model, _ = train_random_forest(
            corpus, n_trees=5, samples_per_tree=50, window=(0, 1), seed=0, verbose=False
        )
        assert "".join(model.fields("abab")) == "abab"

    def test_seeded_training_is_reproducible(self, small_corpus):
        kwargs = dict(n_trees=2, samples_per_tree=80, window=(-3, 3), seed=9, verbose=False)
        a, _ = train_random_forest(small_corpus, **kwargs)
        b, _ = train_random_forest(small_corpus, **kwargs)
        text = "thecatatethefish"
        np.testing.assert_array_equal(a.class_probabilities(text), b.class_probabilities(text))

    def test_invalid_window(self, small_corpus):
        with pytest.raises(ValueError):
            train_random_forest(small_corpus, window=(3, -3), verbose=False)

    def test_empty_corpus(self):
        with pytest.raises(ValueError):
            train_random_forest([" \n "], verbose=False)


class TestForestSerialization:
    """Test the npz node-array format."""

    def test_round_trip(self, trained_models):
        model = trained_models["forest"].with_threshold(0.8)
        restored = RandomForestModel.deserialize(model.serialize())
        assert len(restored) == len(model)
        assert restored.threshold == 0.8
        np.testing.assert_array_equal(restored.offsets, model.offsets)
        text = "aboneandafishinthehouse"
        np.testing.assert_array_equal(
            restored.class_probabilities(text), model.class_probabilities(text)
        )

    def test_empty_forest_round_trip(self):
        restored = RandomForestModel.deserialize(RandomForestModel([], [0, 1]).serialize())
        assert len(restored) == 0
        assert restored.offsets.tolist() == [0, 1]

    @pytest.mark.parametrize("blob", [b"", b"garbage", b'{"stumps": []}'])
    def test_garbage(self, blob):
        with pytest.raises(ModelDecodeError):
            RandomForestModel.deserialize(blob)

    def test_cyclic_tree_is_rejected(self):
        tree = byte_split_tree()
        tree.left[0] = 0
        blob = RandomForestModel([tree], offsets=[0]).serialize()
        with pytest.raises(ModelDecodeError):
            RandomForestModel.deserialize(blob)

    def test_attribute_outside_offsets_is_rejected(self):
        tree = byte_split_tree()
        tree.feature[0] = 3
        blob = RandomForestModel([tree], offsets=[0]).serialize()
        with pytest.raises(ModelDecodeError):
            RandomForestModel.deserialize(blob)

    def test_missing_array_is_rejected(self):
        buf = io.BytesIO()
        np.savez(buf, offsets=np.array([0]), threshold=np.array(0.5))
        with pytest.raises(ModelDecodeError):
            RandomForestModel.deserialize(buf.getvalue())
