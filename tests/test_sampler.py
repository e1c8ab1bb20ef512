"""
Unit tests for the logits-to-token sampling engine.
"""

import pytest
import torch

from tokengen.config import GenerationConfig
from tokengen.errors import ConfigurationError
from tokengen.sampling.rng import create_generator
from tokengen.sampling.sampler import (
    apply_repetition_penalty,
    apply_temperature,
    draw,
    select_token,
    softmax_inplace,
    to_scored,
    token_distribution,
    top_k_filter,
    top_p_filter,
)

GREEDY = GenerationConfig(do_sample=False)


class TestGreedySelection:
    """Test arg-max selection when sampling is disabled."""

    def test_selects_argmax(self):
        """Scores [0.1, 5.0, 0.2, 0.1, 0.1] select token 1."""
        scores = torch.tensor([0.1, 5.0, 0.2, 0.1, 0.1])
        assert select_token([], scores, GREEDY) == 1

    def test_independent_of_seed(self):
        """Greedy selection ignores the seed and the generator."""
        scores = torch.tensor([0.3, 0.1, 2.5, 2.4])
        picks = {
            select_token([], scores.clone(), GREEDY.replace(seed=seed), create_generator(seed))
            for seed in (0, 1, 7, 1234)
        }
        assert picks == {2}

    def test_uses_unmodified_scores(self):
        """Repetition penalty does not apply to greedy selection."""
        scores = torch.tensor([1.0, 3.0, 2.9])
        config = GREEDY.replace(repeat_penalty=10.0, repeat_last_n=8)
        assert select_token([1, 1, 1], scores, config) == 1

    def test_first_index_on_ties(self):
        """Equal maxima resolve to the lowest index."""
        scores = torch.tensor([0.0, 4.0, 4.0, 1.0])
        assert select_token([], scores, GREEDY) == 1

    def test_empty_vocabulary_raises(self):
        """An empty score vector is a configuration error."""
        with pytest.raises(ConfigurationError):
            select_token([], torch.tensor([]), GREEDY)


class TestRepetitionPenalty:
    """Test the repetition penalty stage."""

    def test_positive_score_divided(self):
        """History [3, 3], penalty 1.2: score 2.0 becomes 2.0 / 1.2 once."""
        scores = torch.tensor([0.0, 0.0, 0.0, 2.0, 0.0])
        apply_repetition_penalty(scores, [3, 3], penalty=1.2, last_n=2)
        assert scores[3].item() == pytest.approx(2.0 / 1.2)

    def test_negative_score_multiplied(self):
        """Non-positive scores are multiplied by the penalty."""
        scores = torch.tensor([0.0, -2.0, 1.0])
        apply_repetition_penalty(scores, [1], penalty=1.5, last_n=4)
        assert scores[1].item() == pytest.approx(-3.0)
        assert scores[2].item() == pytest.approx(1.0)

    def test_window_limits_history(self):
        """Only the last repeat_last_n history entries are penalized."""
        scores = torch.tensor([2.0, 2.0, 2.0])
        apply_repetition_penalty(scores, [0, 1, 2], penalty=2.0, last_n=1)
        assert scores.tolist() == pytest.approx([2.0, 2.0, 1.0])

    def test_skipped_without_history_or_window(self):
        """Empty history or a zero window leaves scores untouched."""
        scores = torch.tensor([1.0, 2.0])
        apply_repetition_penalty(scores, [], penalty=2.0, last_n=4)
        apply_repetition_penalty(scores, [0, 1], penalty=2.0, last_n=0)
        assert scores.tolist() == [1.0, 2.0]

    def test_out_of_vocabulary_ids_ignored(self):
        """History ids outside the vocabulary do not index the scores."""
        scores = torch.tensor([1.0, 1.0])
        apply_repetition_penalty(scores, [5, -1, 1], penalty=2.0, last_n=3)
        assert scores.tolist() == pytest.approx([1.0, 0.5])


class TestFilters:
    """Test temperature, top-k, top-p and softmax stages."""

    def test_temperature_scales_scores(self):
        """Scores are divided by the temperature."""
        scores = torch.tensor([1.0, 2.0])
        apply_temperature(scores, 0.5)
        assert scores.tolist() == pytest.approx([2.0, 4.0])

    def test_temperature_zero_skipped(self):
        """Zero temperature leaves scores untouched."""
        scores = torch.tensor([1.0, 2.0])
        apply_temperature(scores, 0.0)
        assert scores.tolist() == [1.0, 2.0]

    def test_top_k_keeps_highest(self):
        """top_k=2 over [1, 9, 3, 7, 2] keeps ids {1, 3}."""
        candidates = to_scored(torch.tensor([1.0, 9.0, 3.0, 7.0, 2.0]))
        kept = top_k_filter(candidates, 2)
        assert len(kept) == 2
        assert set(kept.ids.tolist()) == {1, 3}

    def test_top_k_dropped_scores_not_higher(self):
        """Every dropped candidate scores at most the lowest kept one."""
        scores = torch.tensor([0.5, 3.0, -1.0, 2.0, 2.5, 0.0])
        kept = top_k_filter(to_scored(scores.clone()), 3)
        dropped = set(range(6)) - set(kept.ids.tolist())
        assert max(scores[i].item() for i in dropped) <= kept.scores.min().item()

    def test_top_k_ties_prefer_lower_ids(self):
        """Tied scores keep ascending vocabulary order."""
        candidates = to_scored(torch.tensor([1.0, 5.0, 5.0, 5.0]))
        kept = top_k_filter(candidates, 2)
        assert kept.ids.tolist() == [1, 2]

    @pytest.mark.parametrize("top_k", [0, -1, 5, 10])
    def test_top_k_out_of_range_passes_through(self, top_k):
        """Non-positive or oversized top_k keeps every candidate."""
        candidates = to_scored(torch.tensor([1.0, 9.0, 3.0, 7.0, 2.0]))
        assert len(top_k_filter(candidates, top_k)) == 5

    @pytest.mark.parametrize("top_p", [0.1, 0.5, 0.8, 0.95])
    def test_top_p_coverage_is_minimal(self, top_p):
        """Kept mass reaches top_p and dropping the last kept element falls short."""
        scores = torch.tensor([2.0, 1.0, 0.5, 0.2, -1.0, 0.1])
        full = torch.softmax(scores.double(), dim=0)
        kept = top_p_filter(to_scored(scores.clone()), top_p)
        mass = full[kept.ids].sum().item()
        assert mass >= top_p
        if len(kept) > 1:
            assert mass - full[kept.ids[-1]].item() < top_p

    def test_top_p_keeps_at_least_one(self):
        """A tiny top_p still keeps the best candidate."""
        kept = top_p_filter(to_scored(torch.tensor([10.0, 0.0, 0.0])), 0.01)
        assert kept.ids.tolist() == [0]

    @pytest.mark.parametrize("top_p", [0.0, 1.0, 1.5])
    def test_top_p_out_of_range_passes_through(self, top_p):
        """top_p outside (0, 1) keeps every candidate."""
        candidates = to_scored(torch.tensor([1.0, 2.0, 3.0]))
        assert len(top_p_filter(candidates, top_p)) == 3

    def test_softmax_normalizes(self):
        """Softmax yields a probability vector."""
        candidates = softmax_inplace(to_scored(torch.tensor([3.0, 1.0, -2.0, 0.5])))
        assert candidates.scores.sum().item() == pytest.approx(1.0, abs=1e-6)
        assert (candidates.scores >= 0).all()


class TestStochasticSelection:
    """Test the full sampling pipeline with injected generators."""

    def test_draw_only_from_survivors(self):
        """With top_k=2, draws only ever return the two best ids."""
        config = GenerationConfig(temperature=1.0, top_k=2, top_p=1.0, repeat_penalty=1.0)
        generator = create_generator(0)
        scores = torch.tensor([1.0, 9.0, 3.0, 7.0, 2.0])
        picks = {select_token([], scores.clone(), config, generator) for _ in range(50)}
        assert picks <= {1, 3}

    def test_reproducible_per_seed(self):
        """Fresh generators with the same seed give the same draws."""
        config = GenerationConfig(temperature=1.0, top_k=0, top_p=1.0, repeat_penalty=1.0)
        scores = torch.zeros(16)

        def run(seed):
            generator = create_generator(seed)
            return [select_token([], scores.clone(), config, generator) for _ in range(20)]

        assert run(11) == run(11)

    def test_persistent_generator_advances(self):
        """A reused generator continues its stream instead of restarting."""
        config = GenerationConfig(temperature=1.0, top_k=0, top_p=1.0, repeat_penalty=1.0)
        scores = torch.zeros(1000)
        generator = create_generator(3)
        first = [select_token([], scores.clone(), config, generator) for _ in range(5)]
        second = [select_token([], scores.clone(), config, generator) for _ in range(5)]
        assert first != second

    def test_draw_respects_probabilities(self):
        """A dominant candidate is always drawn."""
        candidates = softmax_inplace(to_scored(torch.tensor([0.0, 50.0, 0.0])))
        assert draw(candidates, create_generator(5)) == 1


class TestTokenDistribution:
    """Test the full-vocabulary distribution used for verification."""

    def test_greedy_is_one_hot(self):
        """Greedy controls give a one-hot distribution."""
        probs = token_distribution([], torch.tensor([0.1, 5.0, 0.2]), GREEDY)
        assert probs.tolist() == [0.0, 1.0, 0.0]

    def test_sums_to_one_and_respects_top_k(self):
        """Filtered mass sums to one over the survivors."""
        config = GenerationConfig(temperature=1.0, top_k=2, top_p=1.0, repeat_penalty=1.0)
        probs = token_distribution([], torch.tensor([1.0, 9.0, 3.0, 7.0, 2.0]), config)
        assert probs.sum().item() == pytest.approx(1.0, abs=1e-6)
        assert torch.nonzero(probs).flatten().tolist() == [1, 3]

    def test_input_not_modified(self):
        """The caller's score tensor is not modified."""
        scores = torch.tensor([1.0, 2.0, 3.0])
        config = GenerationConfig(temperature=0.5, repeat_penalty=2.0)
        token_distribution([2], scores, config)
        assert scores.tolist() == [1.0, 2.0, 3.0]
