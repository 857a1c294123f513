import math

import pytest

from bayes_distrib import GaussianDistrib, MixtureDistrib
from bayes_errors import (
    BucketAssignmentError,
    InvalidOperationError,
    UnsupportedMarginalizationError,
    VarElimInternalError,
)
from bayes_factor import Factor
from bayes_net import CPT, GDT, BayesNet, BayesNode
from bayes_result import InferenceResult
from bayes_var_elim import Bucket, Query, QueryMode, VarElim
from bayes_variables import boolean, real

from conftest import brute_force, brute_force_mpe, joint_assignments


def assert_matches(result, expected):
    for key, p in expected.items():
        assert result.get_factor(result.get_index(key)) == pytest.approx(p, abs=1e-9)


# ------------------------------------------------------------------ #
#  Query construction
# ------------------------------------------------------------------ #

def test_make_query_partitions_variables(chain):
    ve = VarElim(chain)
    a, b, c = (chain.get_variable(n) for n in "ABC")
    q = ve.make_query([c], {a: True})
    assert q.query_vars == (c,)
    assert dict(q.evidence) == {a: True}
    assert q.eliminate == (b,)
    assert q.mode is QueryMode.BELIEF
    assert q.relevant == {a: True, b: None, c: None}


def test_query_variable_overrides_evidence(chain):
    ve = VarElim(chain)
    a = chain.get_variable("A")
    q = ve.make_query(["A"], {"A": True})
    assert q.query_vars == (a,)
    assert a not in q.evidence


def test_evidence_outside_domain(chain):
    with pytest.raises(ValueError):
        VarElim(chain).make_query(["C"], {"A": "maybe"})


def test_empty_query_uses_every_node(chain):
    q = VarElim(chain).make_query([], {"B": True})
    assert [n.name for n in q.nodes] == ["A", "B", "C"]
    assert [v.name for v in q.eliminate] == ["A", "C"]


# ------------------------------------------------------------------ #
#  End-to-end scenarios
# ------------------------------------------------------------------ #

def test_chain_marginal(chain):
    """P(C) = sum over A, B of P(A) P(B|A) P(C|B)."""
    result = VarElim(chain).infer_vars(["C"])
    p_b = 0.6 * 0.7 + 0.4 * 0.2
    expected = p_b * 0.9 + (1 - p_b) * 0.3
    assert result.get_factor(result.get_index((True,))) == pytest.approx(expected)
    assert result.get_factor(result.get_index((False,))) == pytest.approx(1 - expected)


def test_chain_with_evidence(chain):
    a, b, c = (chain.get_variable(n) for n in "ABC")
    ve = VarElim(chain)
    result = ve.infer(ve.make_query([c], {a: True}))
    assert result.get_factor(result.get_index((True,))) == pytest.approx(0.7 * 0.9 + 0.3 * 0.3)
    # the evidence-bearing factor has no A dimension
    f = chain.get_node(b).make_dense_factor({a: True, b: None, c: None})
    assert a not in f.enum_vars
    assert f.enum_vars == (b,)


@pytest.mark.parametrize("evidence", [{}, {"D": "hi"}, {"D": "lo", "A": False}])
def test_diamond_matches_brute_force(diamond, evidence):
    evidence = {diamond.get_variable(k): v for k, v in evidence.items()}
    for name in "ABCD":
        var = diamond.get_variable(name)
        if var in evidence:
            continue
        result = VarElim(diamond).infer_vars([var], evidence)
        assert_matches(result, brute_force(diamond, [var], evidence))


def test_diamond_elimination_order_invariance(diamond):
    a, b, c, d = (diamond.get_variable(n) for n in "ABCD")
    ve = VarElim(diamond)
    query = ve.make_query([d])
    swapped = Query(
        query_vars=query.query_vars,
        evidence=query.evidence,
        eliminate=(a, c, b),
        nodes=query.nodes,
        mode=query.mode,
    )
    assert query.eliminate == (a, b, c)
    first, second = ve.infer(query), ve.infer(swapped)
    for i in range(first.size):
        assert first.get_factor(i) == pytest.approx(second.get_factor(i), abs=1e-12)
    assert_matches(first, brute_force(diamond, [d]))


def test_joint_query_in_requested_order(diamond):
    a, d = diamond.get_variable("A"), diamond.get_variable("D")
    result = VarElim(diamond).infer_vars([d, a])
    assert result.enum_vars == (d, a)
    assert result.get_key(0) == ("lo", True)
    assert_matches(result, brute_force(diamond, [d, a]))
    assert sum(result.get_factor(i) for i in result.get_indices()) == pytest.approx(1.0)


def test_v_structure_explaining_away(sprinkler):
    s, wet, rain = (sprinkler.get_variable(n) for n in ("Sprinkler", "WetGrass", "Rain"))
    ve = VarElim(sprinkler)
    wet_only = ve.infer_vars([s], {wet: True})
    wet_and_rain = ve.infer_vars([s], {wet: True, rain: True})
    assert_matches(wet_only, brute_force(sprinkler, [s], {wet: True}))
    assert_matches(wet_and_rain, brute_force(sprinkler, [s], {wet: True, rain: True}))
    assert wet_and_rain.get_probability({s: True}) < wet_only.get_probability({s: True})


def test_zero_probability_entries(sprinkler):
    s, r, wet = (sprinkler.get_variable(n) for n in ("Sprinkler", "Rain", "WetGrass"))
    ve = VarElim(sprinkler)
    assert ve.log_likelihood({s: False, r: False, wet: True}) == -math.inf
    # the grass is never wet without sprinkler or rain
    result = ve.infer_vars([r], {s: False, wet: True})
    assert result.get_indices() == [result.get_index((True,))]
    assert result.get_probability({r: True}) == pytest.approx(1.0)
    assert result.get_log_factor(result.get_index((False,))) == -math.inf


# ------------------------------------------------------------------ #
#  Likelihood
# ------------------------------------------------------------------ #

def test_log_likelihood_of_full_row(diamond):
    ve = VarElim(diamond)
    for assignment in joint_assignments(diamond):
        assert ve.log_likelihood(assignment) == pytest.approx(diamond.sample_log_prob(assignment), abs=1e-9)


def test_log_likelihood_of_partial_row(diamond):
    b, d = diamond.get_variable("B"), diamond.get_variable("D")
    expected = sum(
        math.exp(diamond.sample_log_prob(x)) for x in joint_assignments(diamond, {b: False, d: "mid"})
    )
    assert VarElim(diamond).likelihood({b: False, d: "mid"}) == pytest.approx(expected)


def test_likelihood_without_evidence_is_one(chain):
    assert VarElim(chain).log_likelihood({}) == pytest.approx(0.0, abs=1e-12)


# ------------------------------------------------------------------ #
#  MPE
# ------------------------------------------------------------------ #

@pytest.mark.parametrize("evidence", [{}, {"D": "mid"}, {"B": False}])
def test_mpe_matches_brute_force(diamond, evidence):
    evidence = {diamond.get_variable(k): v for k, v in evidence.items()}
    ve = VarElim(diamond)
    result = ve.infer(ve.make_mpe([], evidence))
    mpe = result.get_mpe()
    mpe.update(evidence)
    assert mpe == brute_force_mpe(diamond, evidence)


def test_mpe_with_query_variables(sprinkler):
    wet = sprinkler.get_variable("WetGrass")
    ve = VarElim(sprinkler)
    result = ve.infer(ve.make_mpe(["Cloudy", "Rain"], {wet: True}))
    mpe = result.get_mpe()
    best = brute_force_mpe(sprinkler, {wet: True})
    for var in mpe:
        assert mpe[var] == best[var]
    assert {v.name for v in mpe} >= {"Cloudy", "Rain"}


def test_mpe_keeps_barren_parents():
    """A -> B <- D: D is d-separated from A, but maxing B still depends on P(D)."""
    a, d, b = boolean("A"), boolean("D"), boolean("B")
    na, nd, nb = CPT(a), CPT(d), CPT(b, [a, d])
    na.put([0.5, 0.5])
    nd.put([0.9, 0.1])
    nb.put([0.5, 0.5], (True, True))
    nb.put([1.0, 0.0], (True, False))
    nb.put([0.6, 0.4], (False, True))
    nb.put([0.0, 1.0], (False, False))
    bn = BayesNet([na, nd, nb])
    ve = VarElim(bn)
    query = ve.make_mpe([a])
    assert set(query.nodes) == {na, nd, nb}
    mpe = ve.infer(query).get_mpe()
    assert mpe == brute_force_mpe(bn)
    assert mpe == {a: False, d: True, b: True}


def test_get_mpe_requires_mpe_query(chain):
    result = VarElim(chain).infer_vars(["C"])
    with pytest.raises(InvalidOperationError):
        result.get_mpe()


# ------------------------------------------------------------------ #
#  Continuous variables
# ------------------------------------------------------------------ #

def test_class_posterior_from_observed_gaussian(gaussian_mixture):
    cls, x = gaussian_mixture.get_variable("Class"), gaussian_mixture.get_variable("X")
    result = VarElim(gaussian_mixture).infer_vars([cls], {x: 1.0})
    pa = 0.25 * GaussianDistrib(0.0, 1.0).get(1.0)
    pb = 0.75 * GaussianDistrib(4.0, 2.0).get(1.0)
    assert result.get_factor(result.get_index(("a",))) == pytest.approx(pa / (pa + pb))
    assert VarElim(gaussian_mixture).likelihood({x: 1.0}) == pytest.approx(pa + pb)


def test_continuous_query_gives_mixture(gaussian_mixture):
    x = gaussian_mixture.get_variable("X")
    result = VarElim(gaussian_mixture).infer_vars([x])
    assert result.has_non_enum_variables()
    assert result.size == 1
    mix = result.get_distrib(0, x)
    assert isinstance(mix, MixtureDistrib)
    assert mix.mean == pytest.approx(0.25 * 0.0 + 0.75 * 4.0)


def test_joint_enum_and_continuous_query(gaussian_mixture):
    cls, x = gaussian_mixture.get_variable("Class"), gaussian_mixture.get_variable("X")
    result = VarElim(gaussian_mixture).infer_vars([x, cls])
    assert result.enum_vars == (cls,)
    assert result.nonenum_vars == (x,)
    i = result.get_index(("b",))
    assert result.get_factor(i) == pytest.approx(0.75)
    assert result.get_distrib(i, x).mean == 4.0


def test_latent_continuous_parent_is_unsupported():
    x, c = real("X"), boolean("C")
    nx_, nc = GDT(x), CPT(c)
    nx_.put(GaussianDistrib(0.0, 1.0))
    nc.put([0.5, 0.5])

    class Threshold(BayesNode):
        def make_dense_factor(self, relevant):
            return Factor(self.variable)

    bn = BayesNet([nx_, nc, Threshold(boolean("T"), [x, c])])
    with pytest.raises(UnsupportedMarginalizationError):
        VarElim(bn).infer_vars(["T"])


def test_cg_safety_gives_same_answer(gaussian_mixture):
    cls, x = gaussian_mixture.get_variable("Class"), gaussian_mixture.get_variable("X")
    fast = VarElim(gaussian_mixture, cg_safety=False).infer_vars([x], {cls: "a"})
    safe = VarElim(gaussian_mixture, cg_safety=True).infer_vars([x], {cls: "a"})
    assert fast.get_distrib(0, x).mean == safe.get_distrib(0, x).mean == 0.0


# ------------------------------------------------------------------ #
#  Engine invariants
# ------------------------------------------------------------------ #

def test_factor_without_bucket_is_rejected(chain):
    ve = VarElim(chain)
    buckets = [Bucket([chain.get_variable("C")])]
    with pytest.raises(BucketAssignmentError):
        ve._assign(buckets, Factor(boolean("Stray")))


def test_atomic_factor_goes_to_query_bucket(chain):
    ve = VarElim(chain)
    buckets = [Bucket([chain.get_variable("C")]), Bucket([chain.get_variable("B")])]
    ve._assign(buckets, Factor())
    assert len(buckets[0].factors) == 1


def test_purge_hands_variable_forward():
    a, b, c = boolean("A"), boolean("B"), boolean("C")
    buckets = [Bucket([a]), Bucket([b]), Bucket([c])]
    f = Factor(b, c)
    buckets[2].put(f)
    active = VarElim._purge(buckets)
    assert len(active) == 2
    assert active[1].vars == [c, b]


def test_result_rejects_factor_over_other_variables():
    a, b = boolean("A"), boolean("B")
    with pytest.raises(VarElimInternalError):
        InferenceResult(Factor(a, b), [a])


def test_result_frame(chain):
    frame = VarElim(chain).infer_vars(["C", "A"]).to_frame()
    assert list(frame.index.names) == ["C", "A"]
    assert frame["prob"].sum() == pytest.approx(1.0)
