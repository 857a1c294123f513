"""
Exact inference by bucket (variable) elimination, for networks mixing enumerable nodes with
Gaussian nodes whose parents are enumerable.
"""
from typing import Any, Dict, Iterable, List, Mapping, Sequence, Tuple, Union
from dataclasses import dataclass
from enum import Enum
from types import MappingProxyType
import logging
import math

from bayes_errors import (
    BucketAssignmentError,
    UnsupportedMarginalizationError,
    VarElimInternalError,
)
from bayes_factor import Factor
from bayes_factorize import margin, max_margin, product_all
from bayes_net import BayesNet, BayesNode
from bayes_result import InferenceResult
from bayes_variables import Variable


logger = logging.getLogger(__name__)


class QueryMode(Enum):
    BELIEF = "belief"
    MPE = "mpe"


@dataclass(frozen=True)
class Query:
    """
    A query prepared against a network: the query variables Q (in the order requested), the
    evidence E, and the variables X to eliminate, listed parents first.
    """

    query_vars: Tuple[Variable, ...]
    evidence: Mapping[Variable, Any]
    eliminate: Tuple[Variable, ...]
    nodes: Tuple[BayesNode, ...]
    mode: QueryMode = QueryMode.BELIEF

    @property
    def relevant(self) -> Dict[Variable, Any]:
        """The variables in play: evidence mapped to its values, Q and X mapped to None."""
        relevant = dict(self.evidence)
        for v in self.query_vars + self.eliminate:
            relevant[v] = None
        return relevant


class Bucket:
    """Factors collected to eliminate the variables the bucket is responsible for."""

    def __init__(self, variables: Iterable[Variable]):
        self.vars: List[Variable] = list(variables)
        self.factors: List[Factor] = []

    def match(self, factor: Factor) -> bool:
        return any(v in factor.table for v in self.vars)

    def mentions(self, var: Variable) -> bool:
        return any(var in f.table for f in self.factors)

    def put(self, factor: Factor) -> None:
        self.factors.append(factor)

    def __repr__(self):
        return "Bucket(%s: %d factors)" % (", ".join(str(v) for v in self.vars), len(self.factors))


class VarElim:
    """
    Bucket elimination over a BayesNet.

    :param bn: the network; it is only read, so one instance may serve concurrent queries
    :param cg_safety: overrides bayes_factorize.CG_SAFETY for the products of this engine
    """

    def __init__(self, bn: BayesNet, cg_safety: bool = None):
        self.bn = bn
        self.cg_safety = cg_safety

    def _resolve(self, item: Union[Variable, str]) -> Variable:
        return self.bn.get_variable(item)

    def make_query(
        self,
        query_vars: Sequence[Union[Variable, str]] = (),
        evidence: Mapping[Union[Variable, str], Any] = None,
        mode: QueryMode = QueryMode.BELIEF,
    ) -> Query:
        """
        Prepare a query.
        :param query_vars: variables (or node names) to infer; with none, every node takes part
        and the query computes the likelihood of the evidence
        :param evidence: observed variables (or node names) mapped to their values; None values are
        ignored, and a query variable is never treated as evidence
        :return: the query
        """
        qvars = []
        for item in query_vars:
            var = self._resolve(item)
            if var not in qvars:
                qvars.append(var)
        observed: Dict[Variable, Any] = {}
        for item, value in (evidence or {}).items():
            var = self._resolve(item)
            if value is None or var in qvars:
                continue
            if var.is_enumerable and value not in var.domain:
                raise ValueError("Evidence %r is not in the domain of %s" % (value, var))
            observed[var] = value

        # max-elimination does not let barren nodes sum to a constant, so MPE keeps every node
        if qvars and mode is not QueryMode.MPE:
            nodes = self.bn.get_dconnected(qvars, observed)
        else:
            nodes = self.bn.get_ordered()
        eliminate = tuple(
            n.variable for n in nodes if n.variable not in observed and n.variable not in qvars
        )
        return Query(
            query_vars=tuple(qvars),
            evidence=MappingProxyType(observed),
            eliminate=eliminate,
            nodes=tuple(nodes),
            mode=mode,
        )

    def make_mpe(
        self,
        query_vars: Sequence[Union[Variable, str]] = (),
        evidence: Mapping[Union[Variable, str], Any] = None,
    ) -> Query:
        """
        Prepare a most-probable-explanation query: every variable is maxed out rather than summed.
        Every node of the network takes part, so the explanation covers every unobserved variable.
        """
        return self.make_query(query_vars, evidence, mode=QueryMode.MPE)

    def _check_continuous(self, query: Query) -> None:
        latent = {v for v in query.eliminate if not v.is_enumerable}
        for node in query.nodes:
            for p in node.parents:
                if p in latent:
                    raise UnsupportedMarginalizationError(
                        "Continuous variable %s is a latent parent of %s; instantiate it or "
                        "include it in the query" % (p, node.name)
                    )

    def _assign(self, buckets: List[Bucket], factor: Factor) -> None:
        if factor.is_atomic:
            buckets[0].put(factor)
            return
        for bucket in reversed(buckets):
            if bucket.match(factor):
                bucket.put(factor)
                return
        raise BucketAssignmentError("No bucket for %r" % factor)

    @staticmethod
    def _purge(buckets: List[Bucket]) -> List[Bucket]:
        """
        Remove empty buckets, handing their variables to the nearest later bucket that has a
        factor mentioning them. The query bucket is always kept.
        """
        for i in range(1, len(buckets)):
            if buckets[i].factors:
                continue
            for var in buckets[i].vars:
                target = next((b for b in buckets[i + 1:] if b.mentions(var)), None)
                if target is None and i < len(buckets) - 1:
                    target = buckets[-1]
                if target is not None:
                    target.vars.append(var)
                else:
                    logger.debug("Dropping %s: no factor mentions it", var)
        return [buckets[0]] + [b for b in buckets[1:] if b.factors]

    def infer(self, query: Query) -> InferenceResult:
        mpe = query.mode is QueryMode.MPE
        self._check_continuous(query)
        relevant = query.relevant

        buckets = [Bucket(query.query_vars)]
        buckets.extend(Bucket([x]) for x in query.eliminate if x.is_enumerable)
        for node in query.nodes:
            self._assign(buckets, node.make_dense_factor(relevant))
        buckets = self._purge(buckets)
        logger.debug("Buckets for %s query: %s", query.mode.value, buckets)

        for i in range(len(buckets) - 1, -1, -1):
            bucket = buckets[i]
            result = product_all(bucket.factors, cg_safety=self.cg_safety)
            if i == 0:
                extra = [v for v in result.enum_vars if v not in query.query_vars]
                if extra:
                    raise VarElimInternalError(
                        "Variables %s were never eliminated" % ", ".join(str(v) for v in extra)
                    )
                return InferenceResult(result, query.query_vars, mpe=mpe)
            evars = [v for v in bucket.vars if v in result.table]
            result = max_margin(result, evars) if mpe else margin(result, evars)
            if result.is_atomic:
                buckets[0].put(result)
                continue
            for earlier in buckets[i - 1::-1]:
                if earlier.match(result):
                    earlier.put(result)
                    break
            else:
                raise BucketAssignmentError("No earlier bucket for %r" % result)
        raise VarElimInternalError("Elimination finished without reaching the query bucket")

    def infer_vars(
        self,
        query_vars: Sequence[Union[Variable, str]],
        evidence: Mapping[Union[Variable, str], Any] = None,
    ) -> InferenceResult:
        return self.infer(self.make_query(query_vars, evidence))

    def log_likelihood(self, evidence: Mapping[Union[Variable, str], Any] = None) -> float:
        """ln P(evidence), summing over every unobserved variable."""
        return self.infer(self.make_query((), evidence)).log_likelihood

    def likelihood(self, evidence: Mapping[Union[Variable, str], Any] = None) -> float:
        return math.exp(self.log_likelihood(evidence))
