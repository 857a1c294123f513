import pytest

from bayes_approx import ApproxInference
from bayes_errors import InvalidOperationError, SamplingError, UnsupportedMarginalizationError
from bayes_net import CPT, BayesNet
from bayes_var_elim import VarElim
from bayes_variables import boolean


# ------------------------------------------------------------------ #
#  Gibbs sampling against exact inference
# ------------------------------------------------------------------ #

def close_to_exact(bn, query, evidence, tol=0.05, iterations=3000):
    exact = VarElim(bn).infer_vars(query, evidence)
    approx = ApproxInference(bn, iterations=iterations, burn_in=100, seed=1).infer_vars(query, evidence)
    assert approx.enum_vars == exact.enum_vars
    for i in range(exact.size):
        assert approx.get_factor(i) == pytest.approx(exact.get_factor(i), abs=tol)


def test_chain_marginal(chain):
    close_to_exact(chain, ["C"], {})


def test_chain_diagnostic_query(chain):
    close_to_exact(chain, ["A"], {"C": False})


def test_sprinkler_with_evidence(sprinkler):
    close_to_exact(sprinkler, ["Rain"], {"WetGrass": True})


def test_joint_query_order(diamond):
    close_to_exact(diamond, ["D", "A"], {"C": True}, tol=0.06)


def test_observed_gaussian_child(gaussian_mixture):
    close_to_exact(gaussian_mixture, ["Class"], {"X": 2.5})


def test_same_seed_same_answer(chain):
    first = ApproxInference(chain, iterations=200, seed=7).infer_vars(["B"], {"C": True})
    second = ApproxInference(chain, iterations=200, seed=7).infer_vars(["B"], {"C": True})
    assert first.get_factor(0) == second.get_factor(0)


# ------------------------------------------------------------------ #
#  Failures
# ------------------------------------------------------------------ #

def test_query_without_variables_is_rejected(chain):
    sampler = ApproxInference(chain, iterations=10, seed=0)
    with pytest.raises(InvalidOperationError):
        sampler.infer(sampler.make_query([], {"C": True}))


def test_latent_continuous_variable(gaussian_mixture):
    with pytest.raises(UnsupportedMarginalizationError):
        ApproxInference(gaussian_mixture).infer_vars(["X"])


def test_impossible_evidence():
    a, b = boolean("A"), boolean("B")
    na, nb = CPT(a), CPT(b, [a])
    na.put([0.5, 0.5])
    nb.put([0.0, 1.0], True)
    nb.put([0.0, 1.0], False)
    sampler = ApproxInference(BayesNet([na, nb]), iterations=10, seed=0)
    with pytest.raises(SamplingError) as info:
        sampler.infer_vars(["A"], {"B": True})
    assert info.value.node_name == "A"
    assert info.value.sample_index == 0
