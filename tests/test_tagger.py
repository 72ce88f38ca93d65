"""
Unit tests for the bidirectional recurrent tagger.
"""

import io

import pytest
import torch

from spacesplice import (
    BidirectionalTagger,
    BoundaryWindowDataset,
    ModelDecodeError,
    RecurrentUnit,
    SequenceTaggerModel,
    extract_runs,
    train_sequence_tagger
)

TAGGER_KWARGS = dict(seq_len=8, batch_size=4, state_size=6, hidden_size=6, seed=0, verbose=False)


def forced_net(bias):
    """Tagger whose output logit is `bias` at every position."""
    torch.manual_seed(0)
    net = BidirectionalTagger(state_size=4, hidden_size=4)
    with torch.no_grad():
        net.out[2].weight.zero_()
        net.out[2].bias.fill_(bias)
    return net


class TestRecurrentUnit:
    """Test the explicit state machine."""

    def test_step_returns_state_as_output(self):
        unit = RecurrentUnit(3, 5)
        state, output = unit.step(unit.initial_state(2), torch.randn(2, 3))
        assert state.shape == (2, 5)
        assert torch.equal(state, output)

    def test_reverse_scan_is_flipped_forward_scan(self):
        torch.manual_seed(0)
        unit = RecurrentUnit(3, 4)
        inputs = torch.randn(2, 6, 3)
        backward = unit.scan(inputs, reverse=True)
        flipped = unit.scan(inputs.flip(1)).flip(1)
        assert torch.allclose(backward, flipped)

    def test_empty_sequence(self):
        unit = RecurrentUnit(3, 4)
        assert unit.scan(torch.zeros(2, 0, 3)).shape == (2, 0, 4)


class TestBidirectionalTagger:
    """Test the network shape and context."""

    def test_output_shape(self):
        net = BidirectionalTagger(state_size=4, hidden_size=4)
        assert net(torch.randint(0, 256, (3, 7))).shape == (3, 7)

    def test_first_position_sees_last_byte(self):
        torch.manual_seed(0)
        net = BidirectionalTagger(state_size=4, hidden_size=4)
        a = torch.tensor([[1, 2, 3, 4]])
        b = torch.tensor([[1, 2, 3, 200]])
        with torch.no_grad():
            assert not torch.allclose(net(a)[0, 0], net(b)[0, 0])

    def test_config(self):
        net = BidirectionalTagger(state_size=3, hidden_size=5)
        assert net.config() == {"input_size": 256, "state_size": 3, "hidden_size": 5}


class TestSequenceTaggerModel:
    """Test boundary decisions from logits."""

    def test_positive_logits_split_every_byte(self):
        model = SequenceTaggerModel(forced_net(5.0))
        assert model.fields("abc") == ["a", "b", "c"]

    def test_negative_logits_keep_run_whole(self):
        model = SequenceTaggerModel(forced_net(-5.0))
        assert model.fields("abc de") == ["abc", "de"]

    def test_scores_per_byte(self):
        model = SequenceTaggerModel(forced_net(2.0))
        assert model.scores("caf\xe9").shape == (4,)

    def test_model_is_in_eval_mode(self):
        assert not SequenceTaggerModel(forced_net(0.0)).net.training


class TestWindowDataset:
    """Test fixed-length training windows."""

    def test_windows_are_back_to_back(self):
        dataset = BoundaryWindowDataset(extract_runs(["ab cd ef g"]), seq_len=3)
        # "abcdefg" yields two windows; the tail "g" is dropped
        assert len(dataset) == 2
        codes, labels = dataset[1]
        assert bytes(codes.tolist()) == b"def"
        assert labels.tolist() == [1.0, 0.0, 1.0]
        assert codes.dtype == torch.int64 and labels.dtype == torch.float32

    def test_invalid_length(self):
        with pytest.raises(ValueError):
            BoundaryWindowDataset([], seq_len=0)


class TestTaggerTraining:
    """Test the training loop and its stopping rules."""

    def test_history(self, small_corpus):
        _, history = train_sequence_tagger(small_corpus, epochs=2, **TAGGER_KWARGS)
        assert history["epochs_completed"] == 2
        assert len(history["train_loss"]) == 2
        assert not history["interrupted"]

    def test_sample_cap(self, small_corpus):
        _, history = train_sequence_tagger(
            small_corpus, epochs=1, max_samples=3, **TAGGER_KWARGS
        )
        assert history["n_samples"] == 3

    def test_callback_can_stop_training(self, small_corpus):
        seen = []

        def stop_after_first(epoch, loss):
            seen.append(epoch)
            return False

        _, history = train_sequence_tagger(
            small_corpus, epochs=5, on_epoch_end=stop_after_first, **TAGGER_KWARGS
        )
        assert seen == [1]
        assert history["epochs_completed"] == 1

    def test_interrupt_keeps_last_completed_epoch(self, small_corpus):
        def interrupt(epoch, loss):
            if epoch == 2:
                raise KeyboardInterrupt
            return True

        model, history = train_sequence_tagger(
            small_corpus, epochs=5, on_epoch_end=interrupt, **TAGGER_KWARGS
        )
        assert history["interrupted"]
        assert history["epochs_completed"] == 2
        assert "".join(model.fields("thecatsat")) == "thecatsat"

    def test_zero_epochs_returns_initial_network(self, small_corpus):
        _, history = train_sequence_tagger(small_corpus, epochs=0, **TAGGER_KWARGS)
        assert history["epochs_completed"] == 0
        assert history["train_loss"] == []

    def test_corpus_without_full_window(self):
        with pytest.raises(ValueError):
            train_sequence_tagger(["a b", "cd"], epochs=1, **TAGGER_KWARGS)

    def test_concatenation(self, trained_models):
        model = trained_models["rnn"]
        for text in ["thecatsatonthemat", "q", "I"]:
            assert "".join(model.fields(text)) == text


class TestTaggerSerialization:
    """Test the torch state-dict format."""

    def test_round_trip(self, trained_models):
        model = trained_models["rnn"]
        restored = SequenceTaggerModel.deserialize(model.serialize())
        assert restored.net.config() == model.net.config()
        text = "thedogatethefish"
        assert torch.allclose(
            torch.from_numpy(restored.scores(text)), torch.from_numpy(model.scores(text))
        )

    @pytest.mark.parametrize("blob", [b"", b"\x00not a model"])
    def test_garbage(self, blob):
        with pytest.raises(ModelDecodeError):
            SequenceTaggerModel.deserialize(blob)

    def test_missing_config(self):
        buf = io.BytesIO()
        torch.save({"state_dict": {}}, buf)
        with pytest.raises(ModelDecodeError):
            SequenceTaggerModel.deserialize(buf.getvalue())

    def test_shape_mismatch(self):
        buf = io.BytesIO()
        net = BidirectionalTagger(state_size=4, hidden_size=4)
        config = dict(net.config(), state_size=8)
        torch.save({"config": config, "state_dict": net.state_dict()}, buf)
        with pytest.raises(ModelDecodeError):
            SequenceTaggerModel.deserialize(buf.getvalue())
