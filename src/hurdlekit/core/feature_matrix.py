"""
Core data structure for single-cell expression matrices.

FeatureMatrix couples a log-scale expression matrix (zeros meaning
non-detection) with per-sample covariates and per-feature metadata.
Every model fit, bootstrap replicate and enrichment test starts from one.

Biological Context:
    Single-cell expression matrices are zero-inflated:
    - Rows = features (genes)
    - Columns = samples (cells)
    - Values = log-scale abundance, 0 when the gene was not detected

    Differential expression on such data separates *whether* a gene is
    detected from *how much* it is expressed when detected, and the
    fraction of genes a cell detects is itself an important nuisance
    covariate. The store therefore offers detection indicators and a
    standardized detection-rate covariate directly.

Engineering Design:
    - Immutable: Operations return new instances (value semantics)
    - Type-safe: NumPy arrays for data, Pandas for metadata
    - Validated: Constructor checks shape consistency and id uniqueness
    - Resamplable: take_samples() supports bootstrap draws with duplicates

Examples:
    >>> import numpy as np
    >>> import pandas as pd
    >>> from hurdlekit.core.feature_matrix import FeatureMatrix
    >>>
    >>> data = np.array([[0.0, 2.5], [3.1, 4.0]])
    >>> matrix = FeatureMatrix(
    ...     data=data,
    ...     feature_ids=pd.Index(["GENE1", "GENE2"]),
    ...     sample_ids=pd.Index(["cell1", "cell2"]),
    ...     sample_metadata=pd.DataFrame({'condition': ['A', 'B']}),
    ... )
    >>> b_cells = matrix.select_samples(lambda meta: meta['condition'] == 'B')
    >>> with_cdr = matrix.with_detection_rate()
"""

from __future__ import annotations

from typing import Callable, Sequence, Union

import numpy as np
import pandas as pd

from hurdlekit.core.exceptions import DimensionMismatch, DuplicateColumn, DuplicateIdentifier

__all__ = ['FeatureMatrix']

Selector = Union[np.ndarray, pd.Series, Sequence[bool], Callable[[pd.DataFrame], object]]


class FeatureMatrix:
    """
    Immutable container for expression matrix + sample covariates + feature metadata.

    Attributes:
        data: Numerical expression matrix (features × samples), float64
        feature_ids: Row identifiers (e.g., gene symbols)
        sample_ids: Column identifiers (e.g., cell barcodes)
        sample_metadata: Per-sample covariates (condition, detection rate, ...)
        feature_metadata: Per-feature annotations (symbols, biotypes, ...)

    Shape Invariants:
        - data.shape[0] == len(feature_ids) == len(feature_metadata)
        - data.shape[1] == len(sample_ids) == len(sample_metadata)
        - feature_ids and sample_ids are unique
        - metadata indexes equal the corresponding id indexes
    """

    def __init__(
        self,
        data: np.ndarray,
        feature_ids: pd.Index | Sequence[str],
        sample_ids: pd.Index | Sequence[str],
        sample_metadata: pd.DataFrame | None = None,
        feature_metadata: pd.DataFrame | None = None,
    ):
        """
        Initialize FeatureMatrix with validation.

        Metadata frames are aligned positionally: their row count must match
        the matrix, and their index is replaced by the id index. Nothing is
        ever truncated or padded to make shapes agree.

        Args:
            data: Expression matrix (features × samples)
            feature_ids: Row identifiers, unique
            sample_ids: Column identifiers, unique
            sample_metadata: One row per sample. Empty frame if None.
            feature_metadata: One row per feature. Empty frame if None.

        Raises:
            DimensionMismatch: If any shape is inconsistent
            DuplicateIdentifier: If feature or sample ids repeat
            TypeError: If data is not array-like numeric
        """
        data = np.array(data, dtype=np.float64)
        if data.ndim != 2:
            raise DimensionMismatch(f"data must be 2D, got shape {data.shape}")

        feature_ids = pd.Index(feature_ids)
        sample_ids = pd.Index(sample_ids)
        n_features, n_samples = data.shape

        if len(feature_ids) != n_features:
            raise DimensionMismatch(
                f"feature_ids length ({len(feature_ids)}) must match data rows ({n_features})"
            )
        if len(sample_ids) != n_samples:
            raise DimensionMismatch(
                f"sample_ids length ({len(sample_ids)}) must match data columns ({n_samples})"
            )
        if not feature_ids.is_unique:
            raise DuplicateIdentifier("feature_ids must be unique")
        if not sample_ids.is_unique:
            raise DuplicateIdentifier("sample_ids must be unique")

        if sample_metadata is None:
            sample_metadata = pd.DataFrame(index=sample_ids)
        if feature_metadata is None:
            feature_metadata = pd.DataFrame(index=feature_ids)
        if not isinstance(sample_metadata, pd.DataFrame):
            raise TypeError(f"sample_metadata must be pd.DataFrame, got {type(sample_metadata)}")
        if not isinstance(feature_metadata, pd.DataFrame):
            raise TypeError(f"feature_metadata must be pd.DataFrame, got {type(feature_metadata)}")

        if len(sample_metadata) != n_samples:
            raise DimensionMismatch(
                f"sample_metadata has {len(sample_metadata)} rows for {n_samples} samples"
            )
        if len(feature_metadata) != n_features:
            raise DimensionMismatch(
                f"feature_metadata has {len(feature_metadata)} rows for {n_features} features"
            )

        sample_metadata = sample_metadata.copy()
        sample_metadata.index = sample_ids
        feature_metadata = feature_metadata.copy()
        feature_metadata.index = feature_ids

        # Store as private attributes (immutability by convention)
        self._data = data
        self._data.setflags(write=False)
        self._feature_ids = feature_ids
        self._sample_ids = sample_ids
        self._sample_metadata = sample_metadata
        self._feature_metadata = feature_metadata

    @property
    def data(self) -> np.ndarray:
        """Expression matrix (features × samples), read-only."""
        return self._data

    @property
    def feature_ids(self) -> pd.Index:
        """Row identifiers."""
        return self._feature_ids

    @property
    def sample_ids(self) -> pd.Index:
        """Column identifiers."""
        return self._sample_ids

    @property
    def sample_metadata(self) -> pd.DataFrame:
        """Per-sample covariates (a copy; mutate through with_sample_column)."""
        return self._sample_metadata.copy()

    @property
    def feature_metadata(self) -> pd.DataFrame:
        """Per-feature annotations (a copy)."""
        return self._feature_metadata.copy()

    @property
    def shape(self) -> tuple[int, int]:
        """Matrix dimensions (n_features, n_samples)."""
        return self._data.shape

    @property
    def n_features(self) -> int:
        return self._data.shape[0]

    @property
    def n_samples(self) -> int:
        return self._data.shape[1]

    def _resolve_mask(self, selector: Selector, table: pd.DataFrame, n: int, axis: str) -> np.ndarray:
        if callable(selector):
            selector = selector(table.copy())
        if isinstance(selector, pd.Series):
            selector = selector.values
        mask = np.asarray(selector, dtype=bool)
        if mask.shape != (n,):
            raise DimensionMismatch(
                f"{axis} mask length ({mask.size}) must match n_{axis}s ({n})"
            )
        return mask

    def select_samples(self, selector: Selector) -> FeatureMatrix:
        """
        Subset matrix by samples (columns).

        Args:
            selector: Boolean mask, or a predicate called with the sample
                metadata frame that returns a boolean mask.

        Returns:
            New FeatureMatrix with the selected samples; self is untouched.

        Examples:
            >>> treated = matrix.select_samples(lambda m: m['condition'] == 'B')
        """
        mask = self._resolve_mask(selector, self._sample_metadata, self.n_samples, 'sample')
        return FeatureMatrix(
            data=self._data[:, mask],
            feature_ids=self._feature_ids,
            sample_ids=self._sample_ids[mask],
            sample_metadata=self._sample_metadata.loc[mask],
            feature_metadata=self._feature_metadata,
        )

    def select_features(self, selector: Selector) -> FeatureMatrix:
        """
        Subset matrix by features (rows).

        Args:
            selector: Boolean mask, or a predicate called with the feature
                metadata frame that returns a boolean mask.

        Returns:
            New FeatureMatrix with the selected features.

        Examples:
            >>> expressed = matrix.select_features(
            ...     (matrix.data > 0).mean(axis=1) > 0.1
            ... )
        """
        mask = self._resolve_mask(selector, self._feature_metadata, self.n_features, 'feature')
        return FeatureMatrix(
            data=self._data[mask, :],
            feature_ids=self._feature_ids[mask],
            sample_ids=self._sample_ids,
            sample_metadata=self._sample_metadata,
            feature_metadata=self._feature_metadata.loc[mask],
        )

    def take_samples(self, indices: Sequence[int] | np.ndarray) -> FeatureMatrix:
        """
        Build a store from positional sample indices, duplicates permitted.

        Used for bootstrap resampling. Repeated samples get unique ids of the
        form ``<id>#<k>``, with k raised past any id already taken. The
        original id is recorded in a ``source_sample`` covariate column.

        Args:
            indices: Integer positions into the sample axis

        Returns:
            New FeatureMatrix with len(indices) samples
        """
        indices = np.asarray(indices, dtype=np.intp)
        if indices.ndim != 1:
            raise DimensionMismatch(f"indices must be 1D, got shape {indices.shape}")
        if indices.size and (indices.min() < 0 or indices.max() >= self.n_samples):
            raise IndexError(f"sample indices out of range for {self.n_samples} samples")

        source = self._sample_ids[indices]
        used: set[str] = set()
        new_ids = []
        for sid in source:
            candidate, k = str(sid), 0
            while candidate in used:
                k += 1
                candidate = f"{sid}#{k}"
            used.add(candidate)
            new_ids.append(candidate)
        metadata = self._sample_metadata.iloc[indices].copy()
        if 'source_sample' not in metadata.columns:
            metadata['source_sample'] = np.asarray(source)

        return FeatureMatrix(
            data=self._data[:, indices],
            feature_ids=self._feature_ids,
            sample_ids=pd.Index(new_ids),
            sample_metadata=metadata,
            feature_metadata=self._feature_metadata,
        )

    def with_sample_column(self, name: str, values: Sequence[float] | np.ndarray | pd.Series) -> FeatureMatrix:
        """
        Attach a derived numeric per-sample covariate.

        Args:
            name: New column name
            values: One numeric value per sample (positional)

        Returns:
            New FeatureMatrix with the extra column

        Raises:
            DuplicateColumn: If a column with this name already exists
            DimensionMismatch: If len(values) != n_samples
        """
        if name in self._sample_metadata.columns:
            raise DuplicateColumn(f"sample covariate '{name}' already exists")
        if isinstance(values, pd.Series):
            values = values.values
        values = np.asarray(values, dtype=np.float64)
        if values.shape != (self.n_samples,):
            raise DimensionMismatch(
                f"column '{name}' has {values.size} values for {self.n_samples} samples"
            )
        metadata = self._sample_metadata.copy()
        metadata[name] = values
        return FeatureMatrix(
            data=self._data,
            feature_ids=self._feature_ids,
            sample_ids=self._sample_ids,
            sample_metadata=metadata,
            feature_metadata=self._feature_metadata,
        )

    def detected(self, threshold: float = 0.0) -> np.ndarray:
        """Boolean detection indicator (value > threshold), features × samples."""
        return self._data > threshold

    def detection_rate(self, threshold: float = 0.0) -> pd.Series:
        """Fraction of features detected in each sample."""
        rate = self.detected(threshold).mean(axis=0)
        return pd.Series(rate, index=self._sample_ids, name='detection_rate')

    def with_detection_rate(self, name: str = 'cngeneson', threshold: float = 0.0) -> FeatureMatrix:
        """
        Attach the standardized cellular detection rate as a covariate.

        The detection rate is centered and scaled to unit variance so that
        its coefficient is comparable across datasets. A constant rate is
        only centered.

        Args:
            name: Column name (default follows the usual 'cngeneson' name)
            threshold: Detection threshold

        Raises:
            DuplicateColumn: If the column already exists
        """
        rate = self.detection_rate(threshold).values
        centered = rate - rate.mean()
        scale = centered.std(ddof=1) if rate.size > 1 else 0.0
        if scale > 0:
            centered = centered / scale
        return self.with_sample_column(name, centered)

    def to_long(self, value_name: str = 'value') -> pd.DataFrame:
        """
        Flatten to one row per (feature, sample) with covariates attached.

        This is a read-only projection; the store is not modified.

        Returns:
            DataFrame with columns feature_id, sample_id, <value_name>,
            then sample covariates, then feature metadata columns.
        """
        long = pd.DataFrame({
            'feature_id': np.repeat(self._feature_ids.values, self.n_samples),
            'sample_id': np.tile(self._sample_ids.values, self.n_features),
            value_name: self._data.ravel(),
        })
        samples = self._sample_metadata.rename_axis('sample_id').reset_index()
        features = self._feature_metadata.rename_axis('feature_id').reset_index()
        long = long.merge(samples, on='sample_id', how='left', sort=False)
        long = long.merge(features, on='feature_id', how='left', sort=False,
                          suffixes=('', '_feature'))
        return long

    def copy(self) -> FeatureMatrix:
        """Deep copy of this matrix."""
        return FeatureMatrix(
            data=self._data.copy(),
            feature_ids=self._feature_ids.copy(),
            sample_ids=self._sample_ids.copy(),
            sample_metadata=self._sample_metadata.copy(),
            feature_metadata=self._feature_metadata.copy(),
        )

    def __repr__(self) -> str:
        """String representation for debugging."""
        if self.n_features == 0 or self.n_samples == 0:
            return f"FeatureMatrix({self.n_features} features × {self.n_samples} samples)"
        return (
            f"FeatureMatrix({self.n_features} features × {self.n_samples} samples)\n"
            f"  Features: {self.feature_ids[0]}...{self.feature_ids[-1]}\n"
            f"  Samples: {self.sample_ids[0]}...{self.sample_ids[-1]}\n"
            f"  Sample covariates: {list(self._sample_metadata.columns)}"
        )

    def __str__(self) -> str:
        return self.__repr__()
