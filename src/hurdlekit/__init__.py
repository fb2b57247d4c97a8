"""
hurdlekit - Hurdle-model differential expression for single-cell data

Fits a two-part (detection + conditional magnitude) regression to every
feature of an expression matrix, tests linear contrasts by likelihood
ratio or Wald statistics, and scores gene modules with a competitive
enrichment test whose variance comes from bootstrap replicates.
"""

__version__ = "0.1.0"

from hurdlekit.core.feature_matrix import FeatureMatrix
from hurdlekit.core.status import FitStatus
from hurdlekit.config import HurdleConfig
from hurdlekit.stats.design_matrix import Contrast, DesignSpec, Interaction, Term
from hurdlekit.stats.hurdle import fit_hurdle
from hurdlekit.stats.hypothesis import lr_test, lr_test_drop, wald_test
from hurdlekit.stats.bootstrap import bootstrap_replicates
from hurdlekit.stats.enrichment import enrich_modules

__all__ = [
    "FeatureMatrix",
    "FitStatus",
    "HurdleConfig",
    "Contrast",
    "DesignSpec",
    "Interaction",
    "Term",
    "fit_hurdle",
    "lr_test",
    "lr_test_drop",
    "wald_test",
    "bootstrap_replicates",
    "enrich_modules",
]
