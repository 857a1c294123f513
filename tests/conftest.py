import itertools
import math
from typing import Any, Dict, Iterable, List

import pytest

from bayes_distrib import GaussianDistrib
from bayes_net import CPT, GDT, BayesNet
from bayes_variables import Variable, boolean, nominal, real


# ------------------------------------------------------------------ #
#  Brute-force reference
# ------------------------------------------------------------------ #

def joint_assignments(bn: BayesNet, evidence: Dict[Variable, Any] = None) -> Iterable[Dict[Variable, Any]]:
    """Every full assignment of the network consistent with the evidence."""
    evidence = evidence or {}
    variables = [n.variable for n in bn.get_ordered()]
    domains = [[evidence[v]] if v in evidence else list(v.domain) for v in variables]
    for values in itertools.product(*domains):
        yield dict(zip(variables, values))


def brute_force(bn: BayesNet, query: List[Variable], evidence: Dict[Variable, Any] = None) -> Dict[tuple, float]:
    """P(query | evidence) by enumerating the joint distribution."""
    table: Dict[tuple, float] = {}
    for assignment in joint_assignments(bn, evidence):
        key = tuple(assignment[v] for v in query)
        table[key] = table.get(key, 0.0) + math.exp(bn.sample_log_prob(assignment))
    total = sum(table.values())
    return {k: p / total for k, p in table.items()}


def brute_force_mpe(bn: BayesNet, evidence: Dict[Variable, Any] = None) -> Dict[Variable, Any]:
    return max(joint_assignments(bn, evidence), key=bn.sample_log_prob)


# ------------------------------------------------------------------ #
#  Networks
# ------------------------------------------------------------------ #

@pytest.fixture
def chain():
    """A -> B -> C, all Boolean."""
    a, b, c = boolean("A"), boolean("B"), boolean("C")
    na, nb, nc = CPT(a), CPT(b, [a]), CPT(c, [b])
    na.put([0.6, 0.4])
    nb.put([0.7, 0.3], True)
    nb.put([0.2, 0.8], False)
    nc.put([0.9, 0.1], True)
    nc.put([0.3, 0.7], False)
    return BayesNet([na, nb, nc])


@pytest.fixture
def diamond():
    """A -> B, A -> C, B -> D, C -> D; D has three values."""
    a, b, c = boolean("A"), boolean("B"), boolean("C")
    d = nominal(["lo", "mid", "hi"], "D")
    na, nb, nc, nd = CPT(a), CPT(b, [a]), CPT(c, [a]), CPT(d, [b, c])
    na.put([0.3, 0.7])
    nb.put([0.8, 0.2], True)
    nb.put([0.1, 0.9], False)
    nc.put([0.4, 0.6], True)
    nc.put([0.75, 0.25], False)
    nd.put([0.7, 0.2, 0.1], (True, True))
    nd.put([0.2, 0.5, 0.3], (True, False))
    nd.put([0.1, 0.3, 0.6], (False, True))
    nd.put([0.05, 0.15, 0.8], (False, False))
    return BayesNet([na, nb, nc, nd])


@pytest.fixture
def sprinkler():
    """Cloudy -> Sprinkler, Cloudy -> Rain, (Sprinkler, Rain) -> WetGrass."""
    cloudy, sprinkler, rain, wet = boolean("Cloudy"), boolean("Sprinkler"), boolean("Rain"), boolean("WetGrass")
    nc, ns, nr, nw = CPT(cloudy), CPT(sprinkler, [cloudy]), CPT(rain, [cloudy]), CPT(wet, [sprinkler, rain])
    nc.put([0.5, 0.5])
    ns.put([0.1, 0.9], True)
    ns.put([0.5, 0.5], False)
    nr.put([0.8, 0.2], True)
    nr.put([0.2, 0.8], False)
    nw.put([0.99, 0.01], (True, True))
    nw.put([0.9, 0.1], (True, False))
    nw.put([0.9, 0.1], (False, True))
    nw.put([0.0, 1.0], (False, False))
    return BayesNet([nc, ns, nr, nw])


@pytest.fixture
def gaussian_mixture():
    """Class -> X, with X a Gaussian per class."""
    cls = nominal(["a", "b"], "Class")
    x = real("X")
    nc, nx_ = CPT(cls), GDT(x, [cls])
    nc.put([0.25, 0.75])
    nx_.put(GaussianDistrib(0.0, 1.0), "a")
    nx_.put(GaussianDistrib(4.0, 2.0), "b")
    return BayesNet([nc, nx_])
