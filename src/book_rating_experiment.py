"""
Per-User Book Rating Experiment
===============================
Trains one C4.5 tree per reader on that reader's own rating history and
measures accuracy on the last few rated books.

Input tables (CSV, under data_dir):
    - user_rates.csv: user_id, book_id, rate
    - book_genre.csv: book_id, genre
    - book.csv: book_id, num_pages, publication_date

Usage:
    python book_rating_experiment.py --data-dir ../data --min-ratings 10 --test-size 3
"""

import argparse
import logging
import sys
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

import matplotlib

matplotlib.use("Agg")
import matplotlib.pyplot as plt
import numpy as np
import pandas as pd
from sklearn.metrics import accuracy_score, classification_report, confusion_matrix

from book_c45_implementation import LABEL_COLUMN, C45DecisionTree, make_dataset
from book_preprocessing import BookDataPreprocessor


# Configuration Management
@dataclass
class ExperimentConfig:
    """Configuration class for the per-user experiment."""

    data_dir: Path = field(default_factory=lambda: Path("data"))
    results_dir: Path = field(default_factory=lambda: Path("results"))
    log_dir: Path = field(default_factory=lambda: Path("logs"))
    min_ratings: int = 10
    test_size: int = 3
    default_label: int = 0
    save_results: bool = True
    verbose: bool = True

    def __post_init__(self):
        """Validate configuration and create necessary directories.

        Raises:
            ValueError: If test_size < 1 or min_ratings does not leave a training set.
        """
        self.data_dir = Path(self.data_dir)
        self.results_dir = Path(self.results_dir)
        self.log_dir = Path(self.log_dir)

        if self.test_size < 1:
            raise ValueError(f"test_size must be >= 1, got: {self.test_size}")
        if self.min_ratings <= self.test_size:
            raise ValueError(
                f"min_ratings must be greater than test_size, got: {self.min_ratings} <= {self.test_size}"
            )

        for directory in [self.data_dir, self.results_dir, self.log_dir]:
            directory.mkdir(parents=True, exist_ok=True)


def setup_logging(config: ExperimentConfig) -> logging.Logger:
    """Configure the logging system.

    Args:
        config (ExperimentConfig): Configuration object.

    Returns:
        logging.Logger: Configured logger object.
    """
    timestamp = time.strftime("%Y%m%d_%H%M%S")
    log_file = config.log_dir / f"bookrate_experiment_{timestamp}.log"
    logger = logging.getLogger("bookrate")
    for handler in list(logger.handlers):
        handler.close()
        logger.removeHandler(handler)
    logger.setLevel(logging.INFO if config.verbose else logging.WARNING)

    formatter = logging.Formatter(
        "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    file_handler = logging.FileHandler(log_file, encoding="utf-8")
    file_handler.setFormatter(formatter)
    logger.addHandler(file_handler)

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)

    logger.info(f"Logging system initialized, log file: {log_file}")
    return logger


@dataclass
class UserResult:
    """Outcome of one reader's train/evaluate cycle."""

    user_id: str
    n_ratings: int
    n_train: int
    accuracy: float
    y_true: np.ndarray = field(repr=False)
    y_pred: np.ndarray = field(repr=False)


@dataclass
class ExperimentSummary:
    """Per-user results and their average."""

    results: List[UserResult]
    min_ratings: int
    test_size: int

    @property
    def n_users(self) -> int:
        return len(self.results)

    @property
    def mean_accuracy(self) -> float:
        if not self.results:
            return float("nan")
        return sum(r.accuracy for r in self.results) / len(self.results)

    def to_frame(self) -> pd.DataFrame:
        return pd.DataFrame(
            [
                {"user_id": r.user_id, "n_ratings": r.n_ratings, "n_train": r.n_train, "accuracy": r.accuracy}
                for r in self.results
            ],
            columns=["user_id", "n_ratings", "n_train", "accuracy"],
        )

    def pooled_labels(self):
        """All held-out ratings and predictions, concatenated over users."""
        if not self.results:
            return np.array([], dtype=int), np.array([], dtype=int)
        y_true = np.concatenate([r.y_true for r in self.results])
        y_pred = np.concatenate([r.y_pred for r in self.results])
        return y_true, y_pred


def split_user_history(ratings, test_size=3):
    """Split one history into train and held-out parts.

    Items are ordered by identifier; the last test_size items are held out.

    Args:
        ratings (Mapping): item_id -> rating.
        test_size (int): Number of held-out items.

    Returns:
        tuple: (train_ratings, test_ratings) as new dicts.
    """
    ordered = sorted(ratings)
    cut = max(len(ordered) - test_size, 0)
    train = {item_id: ratings[item_id] for item_id in ordered[:cut]}
    test = {item_id: ratings[item_id] for item_id in ordered[cut:]}
    return train, test


def evaluate_user(user_id, items, ratings, domain, test_size=3, default_label=0) -> UserResult:
    """Train a tree on one user's history and score it on the held-out tail.

    Args:
        user_id (str): Reader identifier.
        items (Mapping): item_id -> attribute vector.
        ratings (Mapping): item_id -> rating of this user.
        domain (AttributeDomain): Attributes and legal values.
        test_size (int): Number of held-out items.
        default_label (int): Classification for empty branches and unseen values.

    Returns:
        UserResult: Accuracy and held-out predictions.
    """
    train_ratings, test_ratings = split_user_history(ratings, test_size)
    train_df = make_dataset(items, train_ratings, domain)
    test_df = make_dataset(items, test_ratings, domain)

    model = C45DecisionTree(domain=domain, default_label=default_label).fit(train_df)
    y_true = test_df[LABEL_COLUMN].to_numpy(dtype=int)
    y_pred = model.predict(test_df)

    return UserResult(
        user_id=user_id,
        n_ratings=len(ratings),
        n_train=len(train_ratings),
        accuracy=float(accuracy_score(y_true, y_pred)),
        y_true=y_true,
        y_pred=y_pred,
    )


def evaluate_users(items, histories, domain, min_ratings=10, test_size=3, default_label=0,
                   logger: Optional[logging.Logger] = None) -> ExperimentSummary:
    """Run the per-user experiment over every qualifying reader.

    Readers with fewer than min_ratings ratings are skipped entirely.

    Args:
        items (Mapping): item_id -> attribute vector.
        histories (Mapping): user_id -> {item_id: rating}.
        domain (AttributeDomain): Attributes and legal values.
        min_ratings (int): Minimum history length.
        test_size (int): Number of held-out items per user.
        default_label (int): Classification for empty branches and unseen values.
        logger (logging.Logger, optional): Where to report progress.

    Returns:
        ExperimentSummary: Per-user results; mean_accuracy is NaN when nobody qualifies.

    Raises:
        ValueError: If min_ratings does not leave a training set.
    """
    logger = logger or logging.getLogger("bookrate")
    if min_ratings <= test_size:
        raise ValueError(f"min_ratings must be greater than test_size, got: {min_ratings} <= {test_size}")

    qualifying = [user_id for user_id in sorted(histories) if len(histories[user_id]) >= min_ratings]
    logger.info(f"{len(qualifying)} of {len(histories)} users have at least {min_ratings} ratings")

    results = []
    for user_id in qualifying:
        result = evaluate_user(user_id, items, histories[user_id], domain, test_size, default_label)
        logger.debug(f"user {user_id}: accuracy {result.accuracy:.4f} with {result.n_ratings} ratings")
        results.append(result)

    summary = ExperimentSummary(results=results, min_ratings=min_ratings, test_size=test_size)
    if summary.n_users == 0:
        logger.warning("No user meets the minimum number of ratings, average accuracy is undefined")
    else:
        logger.info(f"Average accuracy for {summary.n_users} users is {summary.mean_accuracy:.4f}")
    return summary


class RatingTreeExperiment:
    """Loads the tables, runs the per-user experiment and saves the results."""

    def __init__(self, config: ExperimentConfig):
        self.config = config
        self.logger = setup_logging(config)
        self.run_time = 0.0

    def run(self) -> ExperimentSummary:
        """Run the complete experiment.

        Returns:
            ExperimentSummary: Per-user results and the average accuracy.

        Raises:
            Exception: Any loading or evaluation failure, after it is logged.
        """
        start_time = time.time()
        try:
            self.logger.info("=" * 70)
            self.logger.info("Per-user C4.5 book rating experiment")
            self.logger.info(f"Configuration: min_ratings={self.config.min_ratings}, test_size={self.config.test_size}")
            self.logger.info("=" * 70)

            preprocessor = BookDataPreprocessor(self.config.data_dir)
            items, histories = preprocessor.get_processed_data(verbose=self.config.verbose)

            summary = evaluate_users(
                items,
                histories,
                preprocessor.get_attribute_domain(),
                min_ratings=self.config.min_ratings,
                test_size=self.config.test_size,
                default_label=self.config.default_label,
                logger=self.logger,
            )
            self._log_pooled_report(summary)

            if self.config.save_results:
                self.save_results(summary)

            self.run_time = time.time() - start_time
            self.logger.info(f"Total execution time: {self.run_time:.2f} seconds")
            return summary
        except Exception as e:
            self.logger.error(f"Experiment failed: {e}")
            self.logger.exception("Detailed error message:")
            raise

    def _log_pooled_report(self, summary: ExperimentSummary) -> None:
        y_true, y_pred = summary.pooled_labels()
        if y_true.size == 0:
            return
        labels = sorted(set(y_true.tolist()) | set(y_pred.tolist()))
        self.logger.info("Pooled confusion matrix (rows: true, columns: predicted):")
        self.logger.info(f"labels {labels}\n{confusion_matrix(y_true, y_pred, labels=labels)}")
        self.logger.info("\n" + classification_report(y_true, y_pred, labels=labels, zero_division=0))

    def save_results(self, summary: ExperimentSummary) -> Dict[str, Any]:
        """Save per-user accuracy as CSV and Excel plus a histogram.

        Args:
            summary (ExperimentSummary): Results to save.

        Returns:
            dict: Paths of the written files.
        """
        results_dir = self.config.results_dir
        per_user = summary.to_frame()
        overview = pd.DataFrame(
            [
                {
                    "n_users": summary.n_users,
                    "mean_accuracy": summary.mean_accuracy,
                    "min_ratings": summary.min_ratings,
                    "test_size": summary.test_size,
                }
            ]
        )

        csv_path = results_dir / "per_user_accuracy.csv"
        per_user.to_csv(csv_path, index=False)

        excel_path = results_dir / "per_user_accuracy.xlsx"
        with pd.ExcelWriter(excel_path, engine="openpyxl") as writer:
            per_user.to_excel(writer, sheet_name="per_user_accuracy", index=False)
            overview.to_excel(writer, sheet_name="summary", index=False)

        plot_path = results_dir / "accuracy_histogram.png"
        half_bin = 0.5 / summary.test_size
        plt.figure(figsize=(8, 5))
        plt.hist(per_user["accuracy"], bins=np.linspace(-half_bin, 1 + half_bin, summary.test_size + 2))
        plt.title(f"Per-user accuracy ({summary.n_users} users)")
        plt.xlabel("Accuracy")
        plt.ylabel("Users")
        plt.tight_layout()
        plt.savefig(plot_path, dpi=140)
        plt.close()

        self.logger.info(f"Results saved to {results_dir}")
        return {"csv_path": csv_path, "excel_path": excel_path, "plot_path": plot_path}


def parse_args(argv=None):
    p = argparse.ArgumentParser(description="Per-user C4.5 book rating experiment.")
    p.add_argument("--data-dir", default="data", help="Directory with the three CSV tables.")
    p.add_argument("--results-dir", default="results", help="Where result files are written.")
    p.add_argument("--log-dir", default="logs", help="Where log files are written.")
    p.add_argument("--min-ratings", type=int, default=10, help="Minimum ratings per user.")
    p.add_argument("--test-size", type=int, default=3, help="Held-out items per user.")
    p.add_argument("--no-save", action="store_true", help="Do not write result files.")
    p.add_argument("--quiet", action="store_true", help="Only log warnings and errors.")
    return p.parse_args(argv)


def main(argv=None) -> Optional[ExperimentSummary]:
    """Main function to run the experiment.

    Returns:
        Optional[ExperimentSummary]: Results, or None if interrupted.
    """
    args = parse_args(argv)
    config = ExperimentConfig(
        data_dir=Path(args.data_dir),
        results_dir=Path(args.results_dir),
        log_dir=Path(args.log_dir),
        min_ratings=args.min_ratings,
        test_size=args.test_size,
        save_results=not args.no_save,
        verbose=not args.quiet,
    )

    experiment = RatingTreeExperiment(config)

    try:
        summary = experiment.run()
    except KeyboardInterrupt:
        print("\n\nExperiment interrupted by user")
        return None

    print("\n" + "=" * 70)
    print(f"Users evaluated:  {summary.n_users}")
    print(f"Average accuracy: {summary.mean_accuracy:.4f}")
    print("=" * 70 + "\n")
    return summary


if __name__ == "__main__":
    main()
