import logging
from dataclasses import dataclass
from pathlib import Path
from types import MappingProxyType
from typing import Dict, Iterator, Mapping, Tuple

import numpy as np
import pandas as pd

logger = logging.getLogger("bookrate.preprocessing")

UNSET_VALUE = "0"


@dataclass(frozen=True)
class AttributeDomain:
    """Fixed catalog of categorical attributes and their legal values.

    The mapping is copied into a read-only view on construction so a domain
    can be shared between users and tree branches without being mutated.

    Args:
        values (Mapping[str, Sequence[str]]): Attribute name to ordered legal values.
    """

    values: Mapping[str, Tuple[str, ...]]

    def __post_init__(self):
        frozen = {str(name): tuple(str(v) for v in vals) for name, vals in dict(self.values).items()}
        object.__setattr__(self, "values", MappingProxyType(frozen))

    @property
    def attributes(self) -> Tuple[str, ...]:
        return tuple(self.values)

    def __getitem__(self, attribute: str) -> Tuple[str, ...]:
        return self.values[attribute]

    def __contains__(self, attribute) -> bool:
        return attribute in self.values

    def __iter__(self) -> Iterator[str]:
        return iter(self.values)

    def __len__(self) -> int:
        return len(self.values)


class BookDataPreprocessor:
    """Turns the rating, genre and book tables into tree-ready inputs."""

    GENRE_FEATURES = [
        "history, historical fiction, biography",
        "children",
        "romance",
        "fantasy, paranormal",
        "fiction",
        "mystery, thriller, crime",
        "poetry",
        "young-adult",
        "non-fiction",
        "comics, graphic",
    ]

    PAGE_BUCKETS = ["Short", "Medium", "Long"]
    AGE_BUCKETS = ["Old", "New", "Mid"]

    SHORT_MAX_PAGES = 150
    MEDIUM_MAX_PAGES = 400
    OLD_BEFORE = pd.Timestamp("1900-01-01", tz="UTC")
    NEW_AFTER = pd.Timestamp("2000-01-01", tz="UTC")

    RATES_COLUMNS = ["user_id", "book_id", "rate"]
    GENRE_COLUMNS = ["book_id", "genre"]
    BOOK_COLUMNS = ["book_id", "num_pages", "publication_date"]

    def __init__(self, data_dir="data"):
        """Initializes the preprocessor with the data directory.

        Args:
            data_dir (str | Path): Directory holding user_rates.csv, book_genre.csv and book.csv.

        Raises:
            FileNotFoundError: If any of the three tables is missing.
        """
        self.data_dir = Path(data_dir)
        self.rates_path = self.data_dir / "user_rates.csv"
        self.genres_path = self.data_dir / "book_genre.csv"
        self.books_path = self.data_dir / "book.csv"

        for path in (self.rates_path, self.genres_path, self.books_path):
            if not path.exists():
                raise FileNotFoundError(f"Data file not found: {path}")

    @classmethod
    def get_attribute_domain(cls) -> AttributeDomain:
        """Returns the attribute domain of a book.

        Returns:
            AttributeDomain: Ten genre flags plus the pages and age buckets.
        """
        values = {genre: (UNSET_VALUE, "1") for genre in cls.GENRE_FEATURES}
        values["pages"] = tuple(cls.PAGE_BUCKETS)
        values["age"] = tuple(cls.AGE_BUCKETS)
        return AttributeDomain(values)

    def load_raw_data(self, verbose=True):
        """Loads the three raw tables.

        Args:
            verbose (bool): If True, logs table shapes.

        Returns:
            tuple: (rates_df, genres_df, books_df).

        Raises:
            ValueError: If a table lacks one of its required columns.
        """
        rates_df = pd.read_csv(self.rates_path, dtype={"user_id": str}, skipinitialspace=True)
        genres_df = pd.read_csv(self.genres_path, skipinitialspace=True)
        books_df = pd.read_csv(self.books_path, skipinitialspace=True)

        for name, df, columns in (
            ("user_rates", rates_df, self.RATES_COLUMNS),
            ("book_genre", genres_df, self.GENRE_COLUMNS),
            ("book", books_df, self.BOOK_COLUMNS),
        ):
            missing = [c for c in columns if c not in df.columns]
            if missing:
                raise ValueError(f"Table {name} is missing columns: {missing}")

        if verbose:
            logger.info(f"Ratings table shape: {rates_df.shape}")
            logger.info(f"Genre table shape: {genres_df.shape}")
            logger.info(f"Book table shape: {books_df.shape}")

        return rates_df, genres_df, books_df

    def clean_data(self, rates_df, genres_df, books_df, verbose=True):
        """Drops unusable rows and normalizes identifier and rating types.

        Args:
            rates_df (pd.DataFrame): Ratings table.
            genres_df (pd.DataFrame): Book-genre table.
            books_df (pd.DataFrame): Book table.
            verbose (bool): If True, logs how many rows were removed.

        Returns:
            tuple: (rates_df, genres_df, books_df) cleaned copies.
        """
        rates_before = len(rates_df)

        rates_df = rates_df.dropna(subset=self.RATES_COLUMNS).copy()
        rates_df["user_id"] = rates_df["user_id"].astype(str).str.strip()
        rates_df["book_id"] = rates_df["book_id"].astype(int)
        rates_df["rate"] = rates_df["rate"].astype(int)

        genres_df = genres_df.dropna(subset=self.GENRE_COLUMNS).copy()
        genres_df["book_id"] = genres_df["book_id"].astype(int)
        genres_df["genre"] = genres_df["genre"].astype(str).str.strip()

        books_df = books_df.dropna(subset=["book_id"]).drop_duplicates(subset="book_id", keep="last").copy()
        books_df["book_id"] = books_df["book_id"].astype(int)

        if verbose:
            logger.info(
                f"Ratings: {rates_before} → {len(rates_df)} "
                f"(removed {rates_before - len(rates_df)} rows)"
            )

        return rates_df, genres_df, books_df

    @classmethod
    def bucket_pages(cls, num_pages) -> pd.Series:
        """Maps page counts to Short / Medium / Long.

        More than 400 pages is Long, more than 150 is Medium, anything else is
        Short. A missing page count stays unset.
        """
        pages = pd.to_numeric(pd.Series(num_pages), errors="coerce")
        buckets = np.select(
            [pages > cls.MEDIUM_MAX_PAGES, pages > cls.SHORT_MAX_PAGES, pages.notna()],
            ["Long", "Medium", "Short"],
            default=UNSET_VALUE,
        )
        return pd.Series(buckets, index=pages.index, dtype=object)

    @classmethod
    def bucket_publication_date(cls, dates) -> pd.Series:
        """Maps publication dates to Old (before 1900), New (after 2000) or Mid.

        Dates without an offset are read as UTC. Values that cannot be parsed
        stay unset and are reported in a warning.
        """
        raw = pd.Series(dates)
        dates = pd.to_datetime(raw, errors="coerce", utc=True, format="mixed")
        n_unparsed = int((raw.notna() & dates.isna()).sum())
        if n_unparsed:
            logger.warning(f"Could not parse {n_unparsed} publication dates, their age stays unset")
        buckets = np.select(
            [dates < cls.OLD_BEFORE, dates > cls.NEW_AFTER, dates.notna()],
            ["Old", "New", "Mid"],
            default=UNSET_VALUE,
        )
        return pd.Series(buckets, index=dates.index, dtype=object)

    def build_items(self, books_df, genres_df, verbose=True) -> Dict[int, Dict[str, str]]:
        """Builds one attribute vector per book.

        Args:
            books_df (pd.DataFrame): Cleaned book table.
            genres_df (pd.DataFrame): Cleaned book-genre table.
            verbose (bool): If True, logs item and genre counts.

        Returns:
            dict: book_id -> {attribute: value} covering every attribute of the domain.
        """
        domain = self.get_attribute_domain()
        genre_lists = genres_df.groupby("book_id")["genre"].apply(list).to_dict()
        pages = self.bucket_pages(books_df["num_pages"])
        ages = self.bucket_publication_date(books_df["publication_date"])

        items = {}
        unknown_genres = set()
        for book_id, page_bucket, age_bucket in zip(books_df["book_id"], pages, ages):
            attributes = {name: UNSET_VALUE for name in domain}
            attributes["pages"] = page_bucket
            attributes["age"] = age_bucket
            for genre in genre_lists.get(book_id, []):
                if genre in self.GENRE_FEATURES:
                    attributes[genre] = "1"
                else:
                    unknown_genres.add(genre)
            items[int(book_id)] = attributes

        if unknown_genres:
            logger.debug(f"Ignored {len(unknown_genres)} genres outside the domain: {sorted(unknown_genres)}")
        if verbose:
            logger.info(f"✓ Built attribute vectors for {len(items)} books")

        return items

    def build_user_histories(self, rates_df, items, verbose=True) -> Dict[str, Dict[int, int]]:
        """Groups ratings per user.

        Ratings of books without an attribute vector are dropped. A repeated
        (user, book) pair keeps the last rating.

        Args:
            rates_df (pd.DataFrame): Cleaned ratings table.
            items (dict): Output of build_items.
            verbose (bool): If True, logs the number of users.

        Returns:
            dict: user_id -> {book_id: rating}.
        """
        known = rates_df["book_id"].isin(list(items))
        n_dropped = int((~known).sum())
        if n_dropped:
            logger.warning(f"Dropped {n_dropped} ratings of books without attributes")

        histories = {}
        for user_id, book_id, rate in rates_df.loc[known, self.RATES_COLUMNS].itertuples(index=False):
            histories.setdefault(user_id, {})[int(book_id)] = int(rate)

        if verbose:
            logger.info(f"✓ Collected rating histories for {len(histories)} users")

        return histories

    def get_processed_data(self, verbose=True):
        """Loads, cleans and assembles the inputs of the per-user experiment.

        Args:
            verbose (bool): If True, logs progress.

        Returns:
            tuple: (items, histories) as produced by build_items and build_user_histories.
        """
        rates_df, genres_df, books_df = self.load_raw_data(verbose)
        rates_df, genres_df, books_df = self.clean_data(rates_df, genres_df, books_df, verbose)
        items = self.build_items(books_df, genres_df, verbose)
        histories = self.build_user_histories(rates_df, items, verbose)
        return items, histories
