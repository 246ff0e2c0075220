#!/usr/bin/env python3
"""
C4.5 Decision Tree over categorical book attributes.
Splits on the attribute with the highest gain ratio, one branch per legal value.
"""

import logging
import math
from collections import Counter

import numpy as np
import pandas as pd
from sklearn.metrics import accuracy_score

from book_preprocessing import AttributeDomain, BookDataPreprocessor

logger = logging.getLogger("bookrate.c45")

LABEL_COLUMN = "rating"


def make_dataset(items, ratings, domain):
    """
    Build the frame of one user's rated items.

    Args:
        items (Mapping): item_id -> {attribute: value}.
        ratings (Mapping): item_id -> rating, restricted to one partition.
        domain (AttributeDomain): Attributes to take from each item.

    Returns:
        pd.DataFrame: One row per rated item, one column per attribute plus the rating.

    Raises:
        KeyError: If a rated item or one of its attributes is missing.
    """
    item_ids = list(ratings)
    rows = [[items[item_id][attr] for attr in domain.attributes] for item_id in item_ids]
    frame = pd.DataFrame(
        rows,
        index=pd.Index(item_ids, name="item_id"),
        columns=list(domain.attributes),
        dtype=object,
    )
    frame[LABEL_COLUMN] = np.array([int(ratings[item_id]) for item_id in item_ids], dtype=int)
    return frame


def entropy(labels):
    """
    Compute the entropy (base 2) of a set of labels.

    Args:
        labels (Iterable[int]): Class labels.

    Returns:
        float: Entropy value, 0 for empty or single-class input.
    """
    class_counts = Counter(labels)
    n_samples = sum(class_counts.values())
    value = 0.0
    for count in class_counts.values():
        if count > 0:
            p = count / n_samples
            value -= p * math.log2(p)
    return value


def split(dataset, attribute, value):
    """
    Select the rows whose attribute equals value.

    Args:
        dataset (pd.DataFrame): Rows with attribute columns and the rating column.
        attribute (str): Attribute to test.
        value (str): Value to keep.

    Returns:
        pd.DataFrame: A new frame holding the matching rows and their ratings.
    """
    return dataset.loc[dataset[attribute] == value]


def gain_ratios(dataset, domain, attributes=None):
    """
    Compute the C4.5 gain ratio of every eligible attribute.

    Args:
        dataset (pd.DataFrame): Rows with attribute columns and the rating column.
        domain (AttributeDomain): Legal values per attribute.
        attributes (Sequence[str], optional): Eligible attributes. Defaults to the whole domain.

    Returns:
        dict: attribute -> gain ratio. 0 when the attribute does not partition the rows.
    """
    if attributes is None:
        attributes = domain.attributes
    n_total = len(dataset)
    if n_total == 0:
        return {attribute: 0.0 for attribute in attributes}

    total_entropy = entropy(dataset[LABEL_COLUMN])
    ratios = {}
    for attribute in attributes:
        weighted_entropy = 0.0
        split_info = 0.0
        for value in domain[attribute]:
            subset = split(dataset, attribute, value)
            if len(subset) == 0:
                continue
            weight = len(subset) / n_total
            weighted_entropy += weight * entropy(subset[LABEL_COLUMN])
            split_info -= weight * math.log2(weight)
        gain = total_entropy - weighted_entropy
        ratios[attribute] = 0.0 if split_info == 0 else gain / split_info
    return ratios


class Node:
    """Represents a node in the decision tree."""

    def __init__(self, is_leaf=False, label=None, attribute=None, value=None, children=None,
                 samples=0, class_distribution=None):
        """
        Initialize a decision tree node.

        Args:
            is_leaf (bool): Whether the node is a leaf.
            label (int): Classification of a leaf.
            attribute (str): Split attribute of an internal node.
            value (str): Value of the parent's split attribute this node stands for.
            children (dict): Split value -> child node.
            samples (int): Number of training rows that reached the node.
            class_distribution (dict): Rating -> count of those rows.
        """
        self.is_leaf = is_leaf
        self.label = label
        self.attribute = attribute
        self.value = value
        self.children = children or {}
        self.samples = samples
        self.class_distribution = class_distribution or {}

    def __repr__(self):
        if self.is_leaf:
            return f"Leaf({self.label}, samples={self.samples})"
        return f"Node({self.attribute}, children={len(self.children)}, samples={self.samples})"


class C45DecisionTree:
    """C4.5 Decision Tree on categorical attributes, one child per legal value."""

    def __init__(self, domain=None, default_label=0):
        """
        Initialize the C4.5 Decision Tree.

        Args:
            domain (AttributeDomain, optional): Attributes and their legal values.
                Defaults to the book domain.
            default_label (int): Classification of empty branches and of unseen values.
        """
        if domain is None:
            domain = BookDataPreprocessor.get_attribute_domain()
        if not isinstance(domain, AttributeDomain):
            domain = AttributeDomain(domain)
        self.domain = domain
        self.default_label = default_label
        self.tree = None
        self.is_fitted = False

    @property
    def n_nodes(self):
        if self.tree is None:
            return 0
        return self._count_all_nodes(self.tree)

    @property
    def n_leaves(self):
        if self.tree is None:
            return 0
        return self._count_leaves(self.tree)

    @property
    def depth(self):
        """Number of edges on the longest root-to-leaf path."""
        if self.tree is None:
            return 0
        return self._calculate_depth(self.tree)

    def _count_all_nodes(self, node):
        return 1 + sum(self._count_all_nodes(child) for child in node.children.values())

    def _count_leaves(self, node):
        if node.is_leaf:
            return 1
        return sum(self._count_leaves(child) for child in node.children.values())

    def _calculate_depth(self, node):
        if node.is_leaf or not node.children:
            return 0
        return 1 + max(self._calculate_depth(child) for child in node.children.values())

    def fit(self, dataset):
        """
        Train the tree.

        Args:
            dataset (pd.DataFrame): Training rows, see make_dataset.

        Returns:
            C45DecisionTree: Self reference.
        """
        self.tree = self._build_tree(dataset, list(self.domain.attributes))
        self.is_fitted = True
        self._log_tree_statistics()
        return self

    def _build_tree(self, dataset, available_attrs, value=None):
        """
        Recursively build the decision tree.

        Args:
            dataset (pd.DataFrame): Rows reaching this node.
            available_attrs (list): Attributes not yet used on this path.
            value (str, optional): Parent split value this node stands for.

        Returns:
            Node: Root node of the subtree.
        """
        n_samples = len(dataset)
        class_counts = {int(k): v for k, v in Counter(dataset[LABEL_COLUMN]).items()}

        if n_samples == 0:
            return self._create_leaf(self.default_label, class_counts, n_samples, value)

        majority_class = self._majority_class(class_counts)
        if not available_attrs:
            return self._create_leaf(majority_class, class_counts, n_samples, value)

        ratios = gain_ratios(dataset, self.domain, available_attrs)
        best_attr = self._select_best(ratios)
        # rounding can leave a useless split slightly below 0
        if not ratios[best_attr] > 0:
            return self._create_leaf(majority_class, class_counts, n_samples, value)

        remaining_attrs = [a for a in available_attrs if a != best_attr]
        children = {}
        for branch_value in self.domain[best_attr]:
            subset = split(dataset, best_attr, branch_value)
            children[branch_value] = self._build_tree(subset, remaining_attrs, branch_value)

        return Node(
            is_leaf=False,
            attribute=best_attr,
            value=value,
            children=children,
            samples=n_samples,
            class_distribution=class_counts,
        )

    def _create_leaf(self, label, class_counts, n_samples, value):
        return Node(
            is_leaf=True,
            label=label,
            value=value,
            samples=n_samples,
            class_distribution=class_counts,
        )

    @staticmethod
    def _majority_class(class_counts):
        """Most frequent rating, the smallest one on a tie."""
        return min(class_counts, key=lambda label: (-class_counts[label], label))

    @staticmethod
    def _select_best(ratios):
        """Attribute with the highest gain ratio, the smallest name on a tie."""
        return min(ratios, key=lambda attribute: (-ratios[attribute], attribute))

    def predict_one(self, attributes):
        """
        Classify a single attribute vector.

        Args:
            attributes (Mapping): attribute -> value, e.g. a dict or a frame row.

        Returns:
            int: Predicted rating. default_label when a value has no branch.

        Raises:
            ValueError: If the model has not been trained.
        """
        if not self.is_fitted:
            raise ValueError("Model not trained. Call fit() first.")
        node = self.tree
        while not node.is_leaf:
            child = node.children.get(attributes[node.attribute])
            if child is None:
                return self.default_label
            node = child
        return node.label

    def predict(self, dataset):
        """
        Classify every row of a frame.

        Args:
            dataset (pd.DataFrame): Rows with attribute columns.

        Returns:
            np.ndarray: Predicted ratings.
        """
        return np.array([self.predict_one(row) for _, row in dataset.iterrows()], dtype=int)

    def score(self, dataset):
        """
        Accuracy of the tree on a held-out set.

        Args:
            dataset (pd.DataFrame): Held-out rows with true ratings.

        Returns:
            float: Fraction of exact matches in [0, 1].

        Raises:
            ValueError: If the held-out set is empty.
        """
        if len(dataset) == 0:
            raise ValueError("Held-out set is empty, accuracy is undefined.")
        y_true = dataset[LABEL_COLUMN].to_numpy(dtype=int)
        y_pred = self.predict(dataset)
        return float(accuracy_score(y_true, y_pred))

    def describe(self):
        """
        Render the tree as indented text.

        Returns:
            str: One line per branch and leaf.
        """
        if self.tree is None:
            return ""
        lines = []
        self._describe(self.tree, 0, lines)
        return "\n".join(lines)

    def _describe(self, node, indent, lines):
        pad = "  " * indent
        if node.is_leaf:
            lines.append(f"{pad}→ {node.label} (samples={node.samples})")
            return
        for branch_value, child in node.children.items():
            lines.append(f"{pad}{node.attribute} = {branch_value}")
            self._describe(child, indent + 1, lines)

    def _log_tree_statistics(self):
        logger.debug(
            f"Tree built: {self.n_nodes} nodes, {self.n_leaves} leaves, "
            f"depth {self.depth}, {self.tree.samples} training rows"
        )
