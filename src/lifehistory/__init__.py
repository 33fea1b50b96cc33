"""
Bayesian multivariate mixed models of parasitoid wasp life history

Joint models of development time, fecundity and dispersal across species and
lines, with line-level correlations between traits.
"""

from .data import (
    prepare_observations, load_observations, simulate_observations,
    GroupLevels, build_model_data, make_prediction_grid, observation_medians
)
from .priors import build_priors, PriorSet
from .models import (
    development_spec, fecundity_spec, dispersal_spec,
    assemble_joint_model, build_joint_model, make_model_fn, JointModel
)
from .inference import fit_model, run_nuts, FitCache, FitResult
from .analysis import (
    linear_predictor,
    posterior_epred,
    epred_draws,
    summarize_draws,
    pairwise_contrasts,
    correlation_summary,
    zero_fraction_check
)
from .errors import (
    SchemaError, SpecificationError, UnsupportedPredictionError, ConvergenceWarning
)

__version__ = "0.1.0"
