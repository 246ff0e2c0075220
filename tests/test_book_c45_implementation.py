"""Tests for the C4.5 tree: entropy, splitting, gain ratios, building, prediction and scoring."""

import math

import numpy as np
import pandas as pd
import pytest

from book_c45_implementation import (
    LABEL_COLUMN,
    C45DecisionTree,
    entropy,
    gain_ratios,
    make_dataset,
    split,
)
from book_preprocessing import AttributeDomain


GENRE_DOMAIN = AttributeDomain(
    {
        "genre": ("fiction", "romance"),
        "length": ("Short", "Medium", "Long"),
        "noise": ("a", "b"),
    }
)


def _frame(rows, domain=GENRE_DOMAIN):
    """rows: list of (attribute dict, rating); item ids are the row positions."""
    items = {i: attrs for i, (attrs, _) in enumerate(rows)}
    ratings = {i: rating for i, (_, rating) in enumerate(rows)}
    return make_dataset(items, ratings, domain)


@pytest.fixture
def genre_separable():
    """Genre decides the rating, noise is balanced within each genre."""
    return _frame(
        [
            ({"genre": "fiction", "length": "Short", "noise": "a"}, 5),
            ({"genre": "fiction", "length": "Long", "noise": "b"}, 5),
            ({"genre": "romance", "length": "Short", "noise": "a"}, 1),
            ({"genre": "romance", "length": "Long", "noise": "b"}, 1),
        ]
    )


def _random_frame(rng, domain, n_rows, n_labels=4):
    rows = []
    for _ in range(n_rows):
        attrs = {name: str(rng.choice(domain[name])) for name in domain}
        rows.append((attrs, int(rng.integers(1, n_labels + 1))))
    return _frame(rows, domain)


class TestEntropy:
    def test_single_value_has_zero_entropy(self):
        assert entropy([4, 4, 4]) == 0.0

    def test_two_balanced_values_have_one_bit(self):
        assert entropy([1, 1, 2, 2]) == 1.0

    @pytest.mark.parametrize("k", [1, 2, 3, 4, 5, 8])
    def test_k_equally_frequent_values(self, k):
        labels = list(range(k)) * 3
        assert entropy(labels) == pytest.approx(math.log2(k))

    def test_empty_labels_have_zero_entropy(self):
        assert entropy([]) == 0.0

    def test_accepts_a_series(self):
        assert entropy(pd.Series([1, 2, 1, 2])) == 1.0


class TestSplit:
    def test_keeps_only_matching_rows_with_labels(self, genre_separable):
        subset = split(genre_separable, "genre", "fiction")

        assert list(subset.index) == [0, 1]
        assert subset[LABEL_COLUMN].tolist() == [5, 5]

    def test_value_without_rows_gives_empty_frame(self, genre_separable):
        subset = split(genre_separable, "length", "Medium")

        assert len(subset) == 0
        assert LABEL_COLUMN in subset.columns

    def test_input_is_left_untouched(self, genre_separable):
        before = genre_separable.copy()
        split(genre_separable, "genre", "romance")

        pd.testing.assert_frame_equal(genre_separable, before)


class TestGainRatios:
    def test_noise_attribute_scores_zero(self, genre_separable):
        ratios = gain_ratios(genre_separable, GENRE_DOMAIN)

        assert ratios["noise"] == 0.0
        assert ratios["length"] == 0.0
        assert ratios["genre"] == 1.0

    def test_attribute_with_one_observed_value_scores_zero(self):
        frame = _frame(
            [
                ({"genre": "fiction", "length": "Short", "noise": "a"}, 5),
                ({"genre": "fiction", "length": "Long", "noise": "a"}, 1),
            ]
        )

        assert gain_ratios(frame, GENRE_DOMAIN)["noise"] == 0.0

    def test_only_eligible_attributes_are_scored(self, genre_separable):
        ratios = gain_ratios(genre_separable, GENRE_DOMAIN, ["noise", "length"])

        assert set(ratios) == {"noise", "length"}

    def test_matches_hand_computed_ratio(self):
        # length: Short -> {5, 5}, Long -> {5, 1}
        frame = _frame(
            [
                ({"genre": "fiction", "length": "Short", "noise": "a"}, 5),
                ({"genre": "fiction", "length": "Short", "noise": "a"}, 5),
                ({"genre": "fiction", "length": "Long", "noise": "a"}, 5),
                ({"genre": "fiction", "length": "Long", "noise": "a"}, 1),
            ]
        )
        total = -(0.75 * math.log2(0.75) + 0.25 * math.log2(0.25))
        expected = (total - 0.5 * 1.0) / 1.0

        assert gain_ratios(frame, GENRE_DOMAIN)["length"] == pytest.approx(expected)

    def test_empty_dataset_scores_zero(self, genre_separable):
        empty = genre_separable.iloc[0:0]

        assert gain_ratios(empty, GENRE_DOMAIN) == {"genre": 0.0, "length": 0.0, "noise": 0.0}

    @pytest.mark.parametrize("seed", range(25))
    def test_ratio_stays_within_unit_interval(self, seed):
        rng = np.random.default_rng(seed)
        frame = _random_frame(rng, GENRE_DOMAIN, int(rng.integers(2, 40)))

        for ratio in gain_ratios(frame, GENRE_DOMAIN).values():
            assert -1e-12 <= ratio <= 1 + 1e-12


class TestTreeBuilding:
    def test_perfect_attribute_gives_depth_one_tree(self, genre_separable):
        model = C45DecisionTree(domain=GENRE_DOMAIN).fit(genre_separable)

        assert model.depth == 1
        assert model.tree.attribute == "genre"
        assert model.score(genre_separable) == 1.0

    def test_children_follow_domain_order_and_carry_their_value(self, genre_separable):
        model = C45DecisionTree(domain=GENRE_DOMAIN).fit(genre_separable)

        assert list(model.tree.children) == ["fiction", "romance"]
        assert [child.value for child in model.tree.children.values()] == ["fiction", "romance"]
        assert model.tree.children["fiction"].label == 5
        assert model.tree.children["romance"].label == 1

    def test_empty_branch_gets_default_label(self):
        frame = _frame(
            [
                ({"genre": "fiction", "length": "Short", "noise": "a"}, 4),
                ({"genre": "fiction", "length": "Long", "noise": "a"}, 2),
            ]
        )

        model = C45DecisionTree(domain=GENRE_DOMAIN, default_label=0).fit(frame)
        medium = model.tree.children["Medium"]

        assert model.tree.attribute == "length"
        assert medium.is_leaf
        assert medium.label == 0
        assert medium.samples == 0

    def test_custom_default_label(self):
        frame = _frame(
            [
                ({"genre": "fiction", "length": "Short", "noise": "a"}, 4),
                ({"genre": "fiction", "length": "Long", "noise": "a"}, 2),
            ]
        )

        model = C45DecisionTree(domain=GENRE_DOMAIN, default_label=3).fit(frame)

        assert model.tree.children["Medium"].label == 3

    def test_tied_attributes_pick_smallest_name(self):
        domain = AttributeDomain({"b_attr": ("x", "y"), "a_attr": ("x", "y")})
        frame = _frame(
            [
                ({"b_attr": "x", "a_attr": "x"}, 1),
                ({"b_attr": "y", "a_attr": "y"}, 2),
            ],
            domain,
        )

        model = C45DecisionTree(domain=domain).fit(frame)

        assert model.tree.attribute == "a_attr"

    def test_majority_tie_picks_smallest_label(self):
        frame = _frame(
            [
                ({"genre": "fiction", "length": "Short", "noise": "a"}, 4),
                ({"genre": "fiction", "length": "Short", "noise": "a"}, 3),
            ]
        )

        model = C45DecisionTree(domain=GENRE_DOMAIN).fit(frame)

        assert model.tree.is_leaf
        assert model.tree.label == 3

    def test_majority_class_wins_at_leaf(self):
        frame = _frame(
            [
                ({"genre": "fiction", "length": "Short", "noise": "a"}, 2),
                ({"genre": "fiction", "length": "Short", "noise": "a"}, 4),
                ({"genre": "fiction", "length": "Short", "noise": "a"}, 4),
            ]
        )

        model = C45DecisionTree(domain=GENRE_DOMAIN).fit(frame)

        assert model.tree.label == 4
        assert model.tree.class_distribution == {2: 1, 4: 2}

    def test_training_data_and_domain_are_not_mutated(self, genre_separable):
        before = genre_separable.copy()
        attributes_before = GENRE_DOMAIN.attributes

        C45DecisionTree(domain=GENRE_DOMAIN).fit(genre_separable)

        pd.testing.assert_frame_equal(genre_separable, before)
        assert GENRE_DOMAIN.attributes == attributes_before

    def test_attribute_is_not_reused_on_a_path(self):
        rng = np.random.default_rng(7)
        frame = _random_frame(rng, GENRE_DOMAIN, 60)
        model = C45DecisionTree(domain=GENRE_DOMAIN).fit(frame)

        def walk(node, seen):
            if node.is_leaf:
                return
            assert node.attribute not in seen
            for child in node.children.values():
                walk(child, seen | {node.attribute})

        walk(model.tree, set())

    @pytest.mark.parametrize("seed", range(20))
    def test_depth_is_bounded_by_attribute_count(self, seed):
        rng = np.random.default_rng(seed)
        frame = _random_frame(rng, GENRE_DOMAIN, int(rng.integers(1, 50)))

        model = C45DecisionTree(domain=GENRE_DOMAIN).fit(frame)

        assert model.depth <= len(GENRE_DOMAIN)

    def test_node_counts(self, genre_separable):
        model = C45DecisionTree(domain=GENRE_DOMAIN).fit(genre_separable)

        assert model.n_nodes == 3
        assert model.n_leaves == 2

    def test_describe_lists_branches(self, genre_separable):
        text = C45DecisionTree(domain=GENRE_DOMAIN).fit(genre_separable).describe()

        assert "genre = fiction" in text
        assert "→ 5 (samples=2)" in text

    def test_plain_dict_domain_is_accepted(self, genre_separable):
        model = C45DecisionTree(domain={"genre": ["fiction", "romance"]}).fit(genre_separable)

        assert isinstance(model.domain, AttributeDomain)
        assert model.tree.attribute == "genre"


class TestPrediction:
    def test_unseen_value_falls_back_to_default_label(self, genre_separable):
        model = C45DecisionTree(domain=GENRE_DOMAIN).fit(genre_separable)

        assert model.predict_one({"genre": "poetry", "length": "Short", "noise": "a"}) == 0

    @pytest.mark.parametrize("seed", range(10))
    def test_predictor_is_total(self, seed):
        rng = np.random.default_rng(seed)
        frame = _random_frame(rng, GENRE_DOMAIN, 30)
        model = C45DecisionTree(domain=GENRE_DOMAIN).fit(frame)

        for _ in range(50):
            vector = {name: str(rng.choice(list(GENRE_DOMAIN[name]) + ["unseen"])) for name in GENRE_DOMAIN}
            first = model.predict_one(vector)
            assert isinstance(first, int)
            assert model.predict_one(vector) == first

    def test_untrained_model_raises(self):
        with pytest.raises(ValueError):
            C45DecisionTree(domain=GENRE_DOMAIN).predict_one({"genre": "fiction"})

    def test_predict_returns_one_label_per_row(self, genre_separable):
        model = C45DecisionTree(domain=GENRE_DOMAIN).fit(genre_separable)

        np.testing.assert_array_equal(model.predict(genre_separable), [5, 5, 1, 1])


class TestScore:
    def test_all_correct_is_one(self, genre_separable):
        model = C45DecisionTree(domain=GENRE_DOMAIN).fit(genre_separable)

        assert model.score(genre_separable) == 1.0

    def test_none_correct_is_zero(self, genre_separable):
        model = C45DecisionTree(domain=GENRE_DOMAIN).fit(genre_separable)
        wrong = genre_separable.copy()
        wrong[LABEL_COLUMN] = [1, 1, 5, 5]

        assert model.score(wrong) == 0.0

    def test_empty_held_out_set_raises(self, genre_separable):
        model = C45DecisionTree(domain=GENRE_DOMAIN).fit(genre_separable)

        with pytest.raises(ValueError):
            model.score(genre_separable.iloc[0:0])


class TestMakeDataset:
    def test_missing_attribute_is_fatal(self):
        with pytest.raises(KeyError):
            make_dataset({1: {"genre": "fiction"}}, {1: 5}, GENRE_DOMAIN)

    def test_missing_item_is_fatal(self):
        with pytest.raises(KeyError):
            make_dataset({}, {1: 5}, GENRE_DOMAIN)

    def test_rows_are_indexed_by_item(self):
        frame = make_dataset(
            {"b1": {"genre": "fiction", "length": "Long", "noise": "a"}}, {"b1": 3}, GENRE_DOMAIN
        )

        assert list(frame.index) == ["b1"]
        assert frame.loc["b1", LABEL_COLUMN] == 3
