"""
Statistical engine for hurdle-model differential expression.

Exports:
- Design specification and contrasts
- Per-feature hurdle fitting with post-fit hooks
- Likelihood-ratio and Wald tests, hurdle log-fold change
- Bootstrap coefficient replicates
- Competitive gene-set enrichment (Stouffer-combined)
- Multiple testing correction (FDR)
"""

from .design_matrix import (
    Contrast,
    Design,
    DesignSpec,
    Interaction,
    Term,
    resolve_design,
)
from .hooks import HurdleResiduals, combined_residuals_hook, residuals_hook
from .hurdle import FittedComponent, FittedHurdle, HurdleFit, fit_feature, fit_hurdle
from .hypothesis import log_fold_change, lr_test, lr_test_drop, rank_results, wald_test
from .bootstrap import BootstrapReplicates, bootstrap_replicates, draw_bootstrap_indices
from .enrichment import enrich_modules, module_z, stouffer
from .multitest import fdr_correction

__all__ = [
    "Contrast",
    "Design",
    "DesignSpec",
    "Interaction",
    "Term",
    "resolve_design",
    "HurdleResiduals",
    "combined_residuals_hook",
    "residuals_hook",
    "FittedComponent",
    "FittedHurdle",
    "HurdleFit",
    "fit_feature",
    "fit_hurdle",
    "log_fold_change",
    "lr_test",
    "lr_test_drop",
    "rank_results",
    "wald_test",
    "BootstrapReplicates",
    "bootstrap_replicates",
    "draw_bootstrap_indices",
    "enrich_modules",
    "module_z",
    "stouffer",
    "fdr_correction",
]
