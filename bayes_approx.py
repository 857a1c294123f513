"""
Approximate inference by Gibbs sampling.
"""
from typing import Any, Dict, Mapping, Sequence, Union
import logging

import numpy as np

from bayes_errors import (
    FactorError,
    InvalidOperationError,
    SamplingError,
    UnsupportedMarginalizationError,
    VarElimError,
)
from bayes_factor import Factor
from bayes_factorize import normal, product_all
from bayes_net import BayesNet
from bayes_result import InferenceResult
from bayes_var_elim import Query, VarElim
from bayes_variables import Variable


logger = logging.getLogger(__name__)

GIBBS_ITERATIONS = 500


class ApproxInference:
    """
    Gibbs sampler over the enumerable variables of a network.

    Every iteration visits the latent variables in a fresh random order and resamples each from
    its distribution given the current values of its Markov blanket. The states visited after
    the burn-in are tallied over the query variables.

    :param bn: the network
    :param iterations: number of sweeps that are counted
    :param burn_in: number of sweeps run before counting starts
    :param seed: seed of the random generator
    """

    def __init__(self, bn: BayesNet, iterations: int = GIBBS_ITERATIONS, burn_in: int = 0,
                 seed: int = None):
        self.bn = bn
        self.iterations = iterations
        self.burn_in = burn_in
        self.rng = np.random.default_rng(seed)
        # query preparation is the same as for exact inference
        self._queries = VarElim(bn)

    def make_query(
        self,
        query_vars: Sequence[Union[Variable, str]] = (),
        evidence: Mapping[Union[Variable, str], Any] = None,
    ) -> Query:
        return self._queries.make_query(query_vars, evidence)

    def _conditional(self, var: Variable, state: Dict[Variable, Any]) -> Factor:
        relevant = dict(state)
        relevant[var] = None
        factors = [self.bn.get_node(var).make_dense_factor(relevant)]
        factors.extend(c.make_dense_factor(relevant) for c in self.bn.get_children(var))
        return normal(product_all(factors))

    def infer(self, query: Query) -> InferenceResult:
        if not query.query_vars:
            raise InvalidOperationError(
                "Gibbs sampling needs query variables; use VarElim.log_likelihood for the "
                "probability of the evidence"
            )
        latent = list(query.query_vars + query.eliminate)
        continuous = [v for v in latent if not v.is_enumerable]
        if continuous:
            raise UnsupportedMarginalizationError(
                "Gibbs sampling cannot resample continuous variables %s"
                % ", ".join(str(v) for v in continuous)
            )
        qvars = [v for v in query.query_vars if v.is_enumerable]
        factor = Factor(*qvars, function=True)
        counts = np.zeros(factor.size)

        # variables outside the query keep their initial forward sample, which is independent of
        # the query variables given the evidence
        state = self.bn.sample(self.rng, dict(query.evidence))
        for sweep in range(self.burn_in + self.iterations):
            for i in self.rng.permutation(len(latent)):
                var = latent[i]
                try:
                    conditional = self._conditional(var, state)
                except (FactorError, VarElimError) as e:
                    logger.error("Sampling failed at sweep %d, node %s: %s", sweep + 1, var, e)
                    raise SamplingError(
                        "Failed to sample %s at sweep #%d: %s" % (var, sweep + 1, e),
                        sample_index=sweep,
                        node_name=var.name,
                    ) from e
                probs = np.exp(conditional.log_values)
                choice = int(self.rng.choice(conditional.size, p=probs / probs.sum()))
                state[var] = conditional.key_of(choice)[0]
            if sweep >= self.burn_in:
                counts[factor.index_of([state[v] for v in factor.enum_vars])] += 1
        logger.debug("Gibbs sampling: %d sweeps, %d counted", self.burn_in + self.iterations, self.iterations)

        factor.set_values(counts)
        return InferenceResult(factor, qvars)

    def infer_vars(
        self,
        query_vars: Sequence[Union[Variable, str]],
        evidence: Mapping[Union[Variable, str], Any] = None,
    ) -> InferenceResult:
        return self.infer(self.make_query(query_vars, evidence))
