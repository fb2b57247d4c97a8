"""
Typed design specification and contrast construction for hurdle models.

A design is declared as an ordered list of covariate terms plus
interaction terms and resolved once, against the sample covariate table,
into a numeric matrix with a coefficient-name table. No formula strings
are parsed at fit time.

Design matrix structure:
    X = [intercept | term columns ... | interaction columns ...]

Coefficient naming:
    (Intercept)           intercept
    <column><level>       dummy column of a categorical term (treatment coding)
    <column>              numeric term
    <a>:<b>               interaction of the columns named a and b

Hurdle models share one design between the discrete and the continuous
component, so contrasts live in the combined coefficient space:

    beta = [D:(Intercept), D:conditionB, ... | C:(Intercept), C:conditionB, ...]
            ^^ discrete block                  ^^ continuous block

Examples:
    >>> spec = DesignSpec([Term('condition', reference='A'), Term('cngeneson')])
    >>> design = resolve_design(spec, matrix.sample_metadata)
    >>> design.coef_names
    ('(Intercept)', 'conditionB', 'cngeneson')
    >>> contrast = Contrast.both(design, {'conditionB': 1.0})
"""

from __future__ import annotations

import itertools
import warnings
from dataclasses import dataclass, field
from typing import Literal, Mapping, Sequence, Union

import numpy as np
import pandas as pd
from numpy.typing import NDArray

from hurdlekit.core.exceptions import DesignError, InvalidContrast

__all__ = [
    'Term',
    'Interaction',
    'DesignSpec',
    'Design',
    'Contrast',
    'resolve_design',
    'INTERCEPT',
    'COMPONENTS',
]

INTERCEPT = '(Intercept)'
COMPONENTS = ('D', 'C')

CONDITION_NUMBER_WARNING = 1e3


@dataclass(frozen=True)
class Term:
    """A single covariate column of the sample table.

    Attributes:
        column: Sample covariate column name.
        kind: 'categorical', 'numeric', or 'auto' (object/category/bool
            dtypes are categorical, everything else numeric).
        reference: Reference level of a categorical term. Defaults to the
            first level.
        levels: Explicit level order of a categorical term. Defaults to the
            sorted observed levels.
        standardize: Center and scale a numeric term to unit variance.
    """

    column: str
    kind: Literal['auto', 'categorical', 'numeric'] = 'auto'
    reference: str | None = None
    levels: tuple | None = None
    standardize: bool = False


@dataclass(frozen=True)
class Interaction:
    """Product of two or more terms (all pairwise column products)."""

    columns: tuple[str, ...]

    def __init__(self, *columns: str):
        if len(columns) == 1 and isinstance(columns[0], (tuple, list)):
            columns = tuple(columns[0])
        if len(columns) < 2:
            raise DesignError("Interaction needs at least two columns")
        object.__setattr__(self, 'columns', tuple(columns))

    @property
    def name(self) -> str:
        return ':'.join(self.columns)


DesignTerm = Union[Term, Interaction, str]


@dataclass(frozen=True)
class DesignSpec:
    """Ordered design declaration.

    Plain strings in ``terms`` are shorthand for ``Term(column)``.
    Interaction columns must also appear as main-effect terms.
    """

    terms: tuple[Term | Interaction, ...] = ()
    intercept: bool = True

    def __init__(self, terms: Sequence[DesignTerm] = (), intercept: bool = True):
        normalized = tuple(Term(t) if isinstance(t, str) else t for t in terms)
        object.__setattr__(self, 'terms', normalized)
        object.__setattr__(self, 'intercept', intercept)

    @property
    def main_terms(self) -> tuple[Term, ...]:
        return tuple(t for t in self.terms if isinstance(t, Term))

    @property
    def interactions(self) -> tuple[Interaction, ...]:
        return tuple(t for t in self.terms if isinstance(t, Interaction))

    def without(self, *names: str) -> DesignSpec:
        """Return a spec with the named terms (column or interaction name) removed.

        Removing a main effect also removes interactions that involve it.
        """
        names_set = set(names)
        kept = []
        for term in self.terms:
            if isinstance(term, Term) and term.column in names_set:
                continue
            if isinstance(term, Interaction) and (
                term.name in names_set or names_set.intersection(term.columns)
            ):
                continue
            kept.append(term)
        return DesignSpec(kept, intercept=self.intercept)


@dataclass(frozen=True)
class Design:
    """Resolved numeric design.

    Attributes:
        X: Design matrix (n_samples, n_params), full column rank.
        coef_names: Coefficient name per column.
        term_columns: Term name -> coefficient names it generated.
        sample_ids: Sample identifiers, one per row.
    """

    X: NDArray[np.float64]
    coef_names: tuple[str, ...]
    term_columns: Mapping[str, tuple[str, ...]] = field(default_factory=dict)
    sample_ids: pd.Index | None = None

    @property
    def n_params(self) -> int:
        return self.X.shape[1]

    @property
    def n_samples(self) -> int:
        return self.X.shape[0]

    @property
    def rank(self) -> int:
        return int(np.linalg.matrix_rank(self.X)) if self.X.size else 0

    @property
    def combined_names(self) -> tuple[str, ...]:
        """Coefficient names of the concatenated discrete + continuous vector."""
        return tuple(
            f"{component}:{name}" for component in COMPONENTS for name in self.coef_names
        )

    def index_of(self, name: str) -> int:
        try:
            return self.coef_names.index(name)
        except ValueError:
            raise InvalidContrast(
                f"Coefficient '{name}' not in design. Available: {list(self.coef_names)}"
            ) from None

    def take_rows(self, indices: Sequence[int] | NDArray[np.intp]) -> Design:
        """Re-index rows (bootstrap resampling); coefficient meaning is unchanged."""
        indices = np.asarray(indices, dtype=np.intp)
        sample_ids = None if self.sample_ids is None else self.sample_ids[indices]
        return Design(
            X=self.X[indices],
            coef_names=self.coef_names,
            term_columns=self.term_columns,
            sample_ids=sample_ids,
        )

    def drop(self, *names: str) -> Design:
        """
        Remove coefficients, given by coefficient or term name.

        Used to build the restricted model of a likelihood-ratio test.

        Raises:
            InvalidContrast: If a name is neither a coefficient nor a term.
        """
        to_drop: set[str] = set()
        for name in names:
            if name in self.term_columns:
                to_drop.update(self.term_columns[name])
            elif name in self.coef_names:
                to_drop.add(name)
            else:
                raise InvalidContrast(
                    f"'{name}' is neither a term nor a coefficient of the design"
                )
        keep = [i for i, n in enumerate(self.coef_names) if n not in to_drop]
        term_columns = {
            term: tuple(c for c in cols if c not in to_drop)
            for term, cols in self.term_columns.items()
        }
        return Design(
            X=self.X[:, keep],
            coef_names=tuple(self.coef_names[i] for i in keep),
            term_columns={t: c for t, c in term_columns.items() if c},
            sample_ids=self.sample_ids,
        )


def _is_categorical(series: pd.Series, kind: str) -> bool:
    if kind == 'categorical':
        return True
    if kind == 'numeric':
        return False
    return (
        series.dtype == object
        or isinstance(series.dtype, pd.CategoricalDtype)
        or pd.api.types.is_bool_dtype(series)
        or pd.api.types.is_string_dtype(series)
    )


def _categorical_columns(term: Term, series: pd.Series) -> tuple[list[str], NDArray]:
    if term.levels is not None:
        levels = list(term.levels)
    elif isinstance(series.dtype, pd.CategoricalDtype):
        levels = list(series.cat.categories)
    else:
        levels = sorted(series.dropna().unique().tolist(), key=str)

    unknown = set(series.dropna().unique()) - set(levels)
    if unknown:
        raise DesignError(f"Term '{term.column}' has values outside its levels: {sorted(unknown, key=str)}")

    reference = levels[0] if term.reference is None else term.reference
    if reference not in levels:
        raise DesignError(
            f"Reference level '{reference}' not found for term '{term.column}' (levels: {levels})"
        )
    others = [lvl for lvl in levels if lvl != reference]
    names = [f"{term.column}{lvl}" for lvl in others]
    values = series.to_numpy()
    block = np.column_stack([(values == lvl).astype(np.float64) for lvl in others]) if others else np.empty((len(series), 0))
    return names, block


def _numeric_column(term: Term, series: pd.Series) -> tuple[list[str], NDArray]:
    try:
        values = series.to_numpy(dtype=np.float64)
    except (TypeError, ValueError) as e:
        raise DesignError(f"Term '{term.column}' is not numeric: {e}") from e
    if term.standardize:
        sigma = np.std(values, ddof=1) if len(values) > 1 else 0.0
        if sigma < 1e-10:
            raise DesignError(f"Covariate '{term.column}' has zero variance; cannot standardize")
        values = (values - values.mean()) / sigma
    return [term.column], values.reshape(-1, 1)


def resolve_design(spec: DesignSpec, sample_metadata: pd.DataFrame) -> Design:
    """
    Resolve a design specification against the sample covariate table.

    Categorical terms are treatment (dummy) coded against their reference
    level; numeric terms enter as-is or standardized. Interactions are the
    elementwise products of every combination of their terms' columns.

    Args:
        spec: Design specification.
        sample_metadata: One row per sample.

    Returns:
        Design with full-rank matrix and coefficient names.

    Raises:
        DesignError: Unknown column, missing values, undeclared interaction
            term, or rank-deficient design.
    """
    n_samples = len(sample_metadata)
    names: list[str] = []
    blocks: list[NDArray] = []
    term_columns: dict[str, tuple[str, ...]] = {}
    term_blocks: dict[str, tuple[list[str], NDArray]] = {}

    if spec.intercept:
        names.append(INTERCEPT)
        blocks.append(np.ones((n_samples, 1)))
        term_columns[INTERCEPT] = (INTERCEPT,)

    for term in spec.main_terms:
        if term.column not in sample_metadata.columns:
            raise DesignError(
                f"Covariate '{term.column}' not in sample metadata "
                f"(available: {list(sample_metadata.columns)})"
            )
        series = sample_metadata[term.column]
        if series.isna().any():
            raise DesignError(f"Covariate '{term.column}' contains missing values")
        if _is_categorical(series, term.kind):
            term_names, block = _categorical_columns(term, series)
        else:
            term_names, block = _numeric_column(term, series)
        term_blocks[term.column] = (term_names, block)
        term_columns[term.column] = tuple(term_names)
        names.extend(term_names)
        blocks.append(block)

    for interaction in spec.interactions:
        missing = [c for c in interaction.columns if c not in term_blocks]
        if missing:
            raise DesignError(
                f"Interaction '{interaction.name}' uses {missing}, which are not main-effect terms"
            )
        parts = [term_blocks[c] for c in interaction.columns]
        inter_names: list[str] = []
        inter_cols: list[NDArray] = []
        for combo in itertools.product(*[range(len(p[0])) for p in parts]):
            column = np.ones(n_samples)
            for part, j in zip(parts, combo):
                column = column * part[1][:, j]
            inter_names.append(':'.join(part[0][j] for part, j in zip(parts, combo)))
            inter_cols.append(column.reshape(-1, 1))
        term_columns[interaction.name] = tuple(inter_names)
        names.extend(inter_names)
        if inter_cols:
            blocks.append(np.hstack(inter_cols))

    if not names:
        raise DesignError("Design has no columns")
    if len(set(names)) != len(names):
        raise DesignError(f"Duplicate coefficient names in design: {names}")

    X = np.hstack(blocks).astype(np.float64)

    # --- Validate rank ---
    rank = np.linalg.matrix_rank(X)
    if rank < X.shape[1]:
        raise DesignError(
            f"Design matrix is rank-deficient: rank={rank}, n_params={X.shape[1]}. "
            f"Columns: {names}. A covariate may be collinear with another term."
        )

    # Condition number check (on X, not X'X, to avoid squared scaling)
    cond_number = np.linalg.cond(X)
    if cond_number > CONDITION_NUMBER_WARNING:
        warnings.warn(
            f"Design matrix condition number is high ({cond_number:.1f} > "
            f"{CONDITION_NUMBER_WARNING:.0f}). Near-collinearity may cause unstable estimates."
        )

    return Design(
        X=X,
        coef_names=tuple(names),
        term_columns=term_columns,
        sample_ids=pd.Index(sample_metadata.index),
    )


@dataclass(frozen=True)
class Contrast:
    """Linear contrast(s) over the combined discrete + continuous coefficients.

    Attributes:
        L: Contrast matrix (n_rows, 2 * n_params). Each row is tested.
        coef_names: Combined coefficient names (columns of L).
        row_names: Label per row.
    """

    L: NDArray[np.float64]
    coef_names: tuple[str, ...]
    row_names: tuple[str, ...]

    @property
    def n_rows(self) -> int:
        return self.L.shape[0]

    @property
    def n_params(self) -> int:
        """Coefficients per component."""
        return self.L.shape[1] // 2

    @property
    def discrete(self) -> NDArray[np.float64]:
        """Rows restricted to the discrete block (all-zero rows dropped)."""
        block = self.L[:, :self.n_params]
        return block[np.any(block != 0, axis=1)]

    @property
    def continuous(self) -> NDArray[np.float64]:
        """Rows restricted to the continuous block (all-zero rows dropped)."""
        block = self.L[:, self.n_params:]
        return block[np.any(block != 0, axis=1)]

    def component(self, component: str) -> NDArray[np.float64]:
        if component == 'D':
            return self.discrete
        if component == 'C':
            return self.continuous
        raise ValueError(f"component must be 'D' or 'C', got {component!r}")

    @classmethod
    def from_array(cls, design: Design, values: NDArray | Sequence[float]) -> Contrast:
        """Contrast from a vector or matrix over the combined coefficient space."""
        L = np.atleast_2d(np.asarray(values, dtype=np.float64))
        expected = 2 * design.n_params
        if L.ndim != 2 or L.shape[1] != expected:
            raise InvalidContrast(
                f"Contrast has {L.shape[-1]} columns but the combined design has {expected} "
                f"coefficients ({list(design.combined_names)})"
            )
        if not np.all(np.isfinite(L)):
            raise InvalidContrast("Contrast contains non-finite weights")
        if not np.any(L != 0):
            raise InvalidContrast("Contrast is identically zero")
        row_names = tuple(f"row{i}" for i in range(L.shape[0]))
        return cls(L=L, coef_names=design.combined_names, row_names=row_names)

    @classmethod
    def from_weights(cls, design: Design, weights: Mapping[str, float], name: str | None = None) -> Contrast:
        """Single-row contrast from combined names, e.g. ``{'C:conditionB': 1.0}``."""
        combined = design.combined_names
        row = np.zeros(len(combined))
        for coef, weight in weights.items():
            if coef not in combined:
                raise InvalidContrast(
                    f"Coefficient '{coef}' not in combined design. Available: {list(combined)}"
                )
            row[combined.index(coef)] = weight
        if not np.any(row != 0):
            raise InvalidContrast("Contrast is identically zero")
        label = name or ' + '.join(f"{w:g}*{c}" for c, w in weights.items())
        return cls(L=row.reshape(1, -1), coef_names=combined, row_names=(label,))

    @classmethod
    def both(cls, design: Design, weights: Mapping[str, float], name: str | None = None) -> Contrast:
        """
        Apply the same coefficient weights to both components.

        Produces two rows, one per component, so each component's test uses
        its own block and the hurdle statistic sums them.
        """
        for coef in weights:
            design.index_of(coef)
        rows = []
        labels = []
        for component in COMPONENTS:
            single = cls.from_weights(
                design, {f"{component}:{coef}": w for coef, w in weights.items()}
            )
            rows.append(single.L[0])
            labels.append(f"{component}:{name}" if name else single.row_names[0])
        return cls(L=np.vstack(rows), coef_names=design.combined_names, row_names=tuple(labels))

    @classmethod
    def coefficients(
        cls,
        design: Design,
        names: Sequence[str],
        component: Literal['D', 'C', 'both'] = 'both',
    ) -> Contrast:
        """
        Joint test that the named coefficients (or all coefficients of a
        named term) are zero: one indicator row per coefficient and component.
        """
        coefs: list[str] = []
        for name in names:
            if name in design.term_columns:
                coefs.extend(design.term_columns[name])
            else:
                design.index_of(name)
                coefs.append(name)
        components = COMPONENTS if component == 'both' else (component,)
        combined = design.combined_names
        rows = []
        labels = []
        for comp in components:
            for coef in coefs:
                row = np.zeros(len(combined))
                row[combined.index(f"{comp}:{coef}")] = 1.0
                rows.append(row)
                labels.append(f"{comp}:{coef}")
        return cls(L=np.vstack(rows), coef_names=combined, row_names=tuple(labels))
