from typing import List, Dict, Tuple, Any, Iterable, Optional, Sequence, Union
import logging
import math

import networkx as nx
import numpy as np
import pandas as pd

from bayes_distrib import Distrib, EnumDistrib, GaussianDistrib, moments
from bayes_factor import LOG0, Factor
from bayes_table import IndexedTable
from bayes_variables import ContinuousVariable, EnumVariable, Variable


logger = logging.getLogger(__name__)


class BayesNode:
    """
    A node of a bayesian network: a variable together with the conditional distribution of that
    variable given its parents. Every node type is a factor source: given the variables currently
    in play, it produces the factor that represents it in inference.
    """

    def __init__(self, variable: Variable, parents: Sequence[Variable] = None):
        """
        :param variable: the random variable of the node
        :param parents: the parent random variables (conditioning variables), in table order
        """
        self.variable = variable
        self.parents: Tuple[Variable, ...] = tuple(parents or ())
        if self.variable in self.parents:
            raise ValueError("Node %s cannot be its own parent" % variable)
        self.trainable = True

    @property
    def name(self) -> str:
        return self.variable.name

    @property
    def is_root(self) -> bool:
        return not self.parents

    def make_dense_factor(self, relevant: Dict[Variable, Any]) -> Factor:
        """
        Build the factor of this node.
        :param relevant: every variable in play, mapped to its evidence value or to None when it
        should stay a free dimension of the factor. Parents absent from the map are summed out.
        Instantiated variables are sliced out of the factor rather than multiplied in.
        """
        raise NotImplementedError

    def count_instance(self, key: Sequence[Any], value: Any, prob: float = 1.0) -> None:
        """
        Record an (expected) observation for the next call to `maximize_instance`.
        :param key: parent values, in the order of `parents`
        :param value: the value of the node variable
        :param prob: the weight (expectation) of the observation
        """
        raise NotImplementedError

    def maximize_instance(self) -> None:
        """Re-estimate the parameters from the recorded observations and clear them."""
        raise NotImplementedError

    def has_parameters(self) -> bool:
        """True once at least one conditional distribution of the node is set."""
        raise NotImplementedError

    def randomize(self, seed: int = None) -> None:
        raise NotImplementedError

    def log_prob(self, value: Any, parent_values: Sequence[Any] = ()) -> float:
        raise NotImplementedError

    def sample(self, parent_values: Sequence[Any] = (), rng: np.random.Generator = None) -> Any:
        raise NotImplementedError

    def _split_parents(
        self, relevant: Dict[Variable, Any]
    ) -> Tuple[List[Variable], List[Variable], List[Any]]:
        """
        Partition the parents by their role in the factor.
        :return: the parents that stay in the table (free or summed out, in parent order), the
        ones to sum out, and a partial parent key holding the evidence values
        """
        kept, summed, partial = [], [], []
        for p in self.parents:
            if p not in relevant:
                kept.append(p)
                summed.append(p)
                partial.append(None)
            elif relevant[p] is None:
                kept.append(p)
                partial.append(None)
            else:
                partial.append(relevant[p])
        return kept, summed, partial

    def pretty_print_str(self) -> str:
        return str(self) + "\n"

    def __str__(self):
        res = "Node(%s" % self.name
        if self.parents:
            res += " | " + " ".join(p.name for p in self.parents)
        return res + ")"

    def __repr__(self):
        return self.__str__()


def _arrange(values: np.ndarray, axes: Sequence[Variable], factor: Factor) -> np.ndarray:
    """
    Flatten an array whose axes correspond to `axes` into the index order of `factor`.
    """
    if not axes:
        return values.reshape(1)
    perm = [list(axes).index(v) for v in factor.enum_vars]
    return np.transpose(values, perm).ravel()


class PseudoCounts:
    """
    Prior counts added to the observed counts of a CPT before it is re-estimated.
    :param alpha: a scalar, a vector over the node's domain, or a (rows x domain) matrix
    """

    def __init__(self, alpha: Union[float, Sequence] = 1.0):
        self.alpha = np.asarray(alpha, dtype=float)
        if np.any(self.alpha < 0):
            raise ValueError("Pseudo counts must be non-negative")

    def apply(self, counts: np.ndarray) -> np.ndarray:
        return counts + self.alpha


class CPT(BayesNode):
    """
    Conditional probability table of an enumerable variable given enumerable parents.

    Rows are indexed by parent configuration (an `IndexedTable` over the parents), columns by the
    node's own domain. A row may be unset, in which case the row contributes probability zero to
    factors; when no row matches the evidence at all the node is uniform over its own domain.
    """

    def __init__(
        self,
        variable: EnumVariable,
        parents: Sequence[EnumVariable] = None,
        prior: PseudoCounts = None,
    ):
        super(CPT, self).__init__(variable, parents)
        if not variable.is_enumerable or not all(p.is_enumerable for p in self.parents):
            raise ValueError("A CPT needs an enumerable variable and enumerable parents")
        self.prior = prior
        self.parent_table = IndexedTable(self.parents)
        self._table = np.full((self.parent_table.size, variable.size), np.nan)
        self._counts: Optional[np.ndarray] = None

    def _row(self, key: Union[Sequence[Any], Any]) -> int:
        if key is None:
            key = ()
        elif not isinstance(key, (tuple, list)):
            key = (key,)
        return self.parent_table.index(key)

    def put(self, probs: Union[EnumDistrib, Sequence[float], Dict[Any, float]], key=None) -> None:
        """
        Set the distribution for one parent configuration.
        :param probs: an EnumDistrib, a probability per domain value, or a dict value -> probability
        :param key: parent values (a single value is accepted for one parent); None for a root node
        """
        if isinstance(probs, EnumDistrib):
            probs = probs.probs
        elif isinstance(probs, dict):
            probs = [probs.get(v, 0.0) for v in self.variable.domain]
        self._table[self._row(key)] = EnumDistrib(self.variable.domain, probs).probs

    def is_set(self, key=None) -> bool:
        return not np.isnan(self._table[self._row(key)][0])

    def has_parameters(self) -> bool:
        return not np.all(np.isnan(self._table))

    def get_distrib(self, key=None) -> Optional[EnumDistrib]:
        row = self._table[self._row(key)]
        if np.isnan(row[0]):
            return None
        return EnumDistrib(self.variable.domain, row)

    def get(self, value: Any, key=None) -> Optional[float]:
        d = self.get_distrib(key)
        return d.get(value) if d is not None else None

    @property
    def cpd(self) -> pd.DataFrame:
        """
        The table as a DataFrame with a MultiIndex whose first level is the node variable and
        whose next levels are the parents, and a "prob" column. Unset rows are left out.
        """
        records, index = [], []
        for value in self.variable.domain:
            j = self.variable.index(value)
            for row in range(self.parent_table.size):
                if np.isnan(self._table[row, j]):
                    continue
                index.append((value,) + self.parent_table.key(row))
                records.append(self._table[row, j])
        names = [self.name] + [p.name for p in self.parents]
        if not index:
            return pd.DataFrame({"prob": []})
        return pd.DataFrame(
            {"prob": records}, index=pd.MultiIndex.from_tuples(index, names=names)
        ).sort_index()

    def make_dense_factor(self, relevant: Dict[Variable, Any]) -> Factor:
        value = relevant.get(self.variable)
        kept, summed, partial = self._split_parents(relevant)
        evidenced = value is not None or any(p is not None for p in partial)

        table = self._table.reshape(self.parent_table.shape + (self.variable.size,))
        slicer = tuple(
            slice(None) if p is None else var.index(p) for var, p in zip(self.parents, partial)
        )
        slicer += (slice(None) if value is None else self.variable.index(value),)
        block = table[slicer]
        if np.all(np.isnan(block)):
            logger.debug("No row of %s matches the evidence; using a uniform distribution", self)
            return self._uniform_factor(value, evidenced)

        axes = kept + ([self.variable] if value is None else [])
        factor = Factor(*axes, evidenced=evidenced)
        factor.set_values(_arrange(np.nan_to_num(block, nan=0.0), axes, factor))
        if summed:
            factor = factor.marginalize(summed)
        return factor

    def _uniform_factor(self, value: Any, evidenced: bool) -> Factor:
        if value is None:
            factor = Factor(self.variable, evidenced=evidenced)
            factor.set_values(np.full(self.variable.size, 1.0 / self.variable.size))
        else:
            factor = Factor(evidenced=evidenced)
            factor.value = 1.0 / self.variable.size
        return factor

    def count_instance(self, key: Sequence[Any], value: Any, prob: float = 1.0) -> None:
        if prob == 0:
            return
        if self._counts is None:
            self._counts = np.zeros_like(self._table)
        row = self._row(key)
        if isinstance(value, EnumDistrib):
            self._counts[row] += prob * value.probs
        else:
            self._counts[row, self.variable.index(value)] += prob

    def maximize_instance(self) -> None:
        if self._counts is None:
            return
        counts = self._counts if self.prior is None else self.prior.apply(self._counts)
        totals = counts.sum(axis=1, keepdims=True)
        with np.errstate(invalid="ignore", divide="ignore"):
            table = counts / totals
        # rows without any count are removed
        table[totals[:, 0] <= 0] = np.nan
        self._table = table
        self._counts = None

    def randomize(self, seed: int = None) -> None:
        rng = np.random.default_rng(seed)
        self._table = rng.dirichlet(np.ones(self.variable.size), size=self.parent_table.size)

    def _probs(self, parent_values: Sequence[Any]) -> np.ndarray:
        row = self._table[self._row(tuple(parent_values))]
        if np.isnan(row[0]):
            return np.full(self.variable.size, 1.0 / self.variable.size)
        return row

    def log_prob(self, value: Any, parent_values: Sequence[Any] = ()) -> float:
        p = self._probs(parent_values)[self.variable.index(value)]
        return math.log(p) if p > 0 else LOG0

    def sample(self, parent_values: Sequence[Any] = (), rng: np.random.Generator = None) -> Any:
        return EnumDistrib(self.variable.domain, self._probs(parent_values)).sample(rng)

    def pretty_print_str(self) -> str:
        return str(self) + "\n" + str(self.cpd) + "\n"


class GDT(BayesNode):
    """
    Gaussian density table: a Gaussian over a continuous variable for every configuration of
    its enumerable parents.
    """

    def __init__(self, variable: ContinuousVariable, parents: Sequence[EnumVariable] = None):
        super(GDT, self).__init__(variable, parents)
        if variable.is_enumerable or not all(p.is_enumerable for p in self.parents):
            raise ValueError("A GDT needs a continuous variable and enumerable parents")
        self.parent_table = IndexedTable(self.parents)
        self._distribs: List[Optional[GaussianDistrib]] = [None] * self.parent_table.size
        self._counts: Optional[List[List[Tuple[float, float, float]]]] = None

    def _row(self, key) -> int:
        if key is None:
            key = ()
        elif not isinstance(key, (tuple, list)):
            key = (key,)
        return self.parent_table.index(key)

    def put(self, distrib: GaussianDistrib, key=None) -> None:
        self._distribs[self._row(key)] = distrib

    def get_distrib(self, key=None) -> Optional[GaussianDistrib]:
        return self._distribs[self._row(key)]

    def has_parameters(self) -> bool:
        return any(d is not None for d in self._distribs)

    def make_dense_factor(self, relevant: Dict[Variable, Any]) -> Factor:
        value = relevant.get(self.variable)
        kept, summed, partial = self._split_parents(relevant)
        evidenced = value is not None or any(p is not None for p in partial)

        rows = self.parent_table.matching_indices(partial)
        distribs = [self._distribs[r] for r in rows]
        if all(d is None for d in distribs):
            logger.debug("No row of %s matches the evidence; using an uninformative factor", self)
            factor = Factor(evidenced=evidenced)
            factor.log_value = 0.0
            return factor

        if value is not None:
            factor = Factor(*kept, evidenced=evidenced)
        else:
            factor = Factor(*kept, self.variable, evidenced=evidenced)
        # position in `rows` of the entry that supplies each factor index
        source = _arrange(
            np.arange(len(rows)).reshape(tuple(p.size for p in kept)), kept, factor
        )
        logv = np.full(factor.size, LOG0)
        for i, src in enumerate(source):
            d = distribs[src]
            if d is None:
                continue
            if value is not None:
                logv[i] = d.log_get(value)
            else:
                logv[i] = 0.0
        factor.set_log_values(logv)
        if value is None:
            jdfs = factor.get_jdfs()
            for i, src in enumerate(source):
                if distribs[src] is not None:
                    jdfs[i].set_distrib(self.variable, distribs[src])
            factor.set_jdfs(jdfs)
        if summed:
            factor = factor.marginalize(summed)
        return factor

    def count_instance(self, key: Sequence[Any], value: Union[float, Distrib], prob: float = 1.0) -> None:
        """
        :param value: an observed value, or a (Gaussian or mixture) density over the value when
        the variable itself was not observed; densities are matched on their first two moments
        """
        if prob == 0:
            return
        if self._counts is None:
            self._counts = [[] for _ in range(self.parent_table.size)]
        if isinstance(value, Distrib):
            mean, variance = moments(value)
        else:
            mean, variance = float(value), 0.0
        self._counts[self._row(key)].append((mean, variance, prob))

    def maximize_instance(self) -> None:
        if self._counts is None:
            return
        for row, observations in enumerate(self._counts):
            if not observations:
                continue
            means, variances, weights = (np.array(col) for col in zip(*observations))
            fitted = GaussianDistrib.fit(means, weights)
            # spread of the unobserved values adds to the spread of the means
            extra = float(np.dot(weights, variances) / weights.sum())
            self._distribs[row] = GaussianDistrib(fitted.mean, fitted.variance + extra)
        self._counts = None

    def randomize(self, seed: int = None) -> None:
        rng = np.random.default_rng(seed)
        self._distribs = [
            GaussianDistrib(rng.normal(0.0, 1.0), rng.uniform(0.5, 2.0))
            for _ in range(self.parent_table.size)
        ]

    def log_prob(self, value: float, parent_values: Sequence[Any] = ()) -> float:
        d = self._distribs[self._row(tuple(parent_values))]
        return d.log_get(value) if d is not None else 0.0

    def sample(self, parent_values: Sequence[Any] = (), rng: np.random.Generator = None) -> float:
        d = self._distribs[self._row(tuple(parent_values))]
        if d is None:
            raise ValueError("%s has no density for parent values %r" % (self, tuple(parent_values)))
        return d.sample(rng)

    def pretty_print_str(self) -> str:
        res = str(self) + "\n"
        for row, d in enumerate(self._distribs):
            res += "  %r: %r\n" % (self.parent_table.key(row), d)
        return res


class BayesNet:
    """
    Representation for a Bayesian Network

    The structure is kept as a networkx DiGraph whose nodes are the node variables (with the
    BayesNode stored in the `bn_node` attribute) and whose edges go from parent to child.
    Evidence is never stored in the network: it is passed explicitly to every query.
    """

    def __init__(self, nodes: Iterable[BayesNode] = ()):
        self.graph = nx.DiGraph()
        self.nodes: Dict[str, BayesNode] = {}
        self._by_var: Dict[Variable, BayesNode] = {}
        self._ordered: Optional[List[BayesNode]] = None
        self.add(*nodes)

    def add(self, *nodes: BayesNode) -> None:
        for node in nodes:
            if node.name in self.nodes or node.variable in self._by_var:
                raise ValueError("Network already has a node named %s" % node.name)
            self.nodes[node.name] = node
            self._by_var[node.variable] = node
            self.graph.add_node(node.variable, bn_node=node)
            for p in node.parents:
                self.graph.add_edge(p, node.variable)
        self._ordered = None

    def __len__(self) -> int:
        return len(self.nodes)

    def __contains__(self, item) -> bool:
        return item in self._by_var or item in self.nodes

    def get_node(self, item: Union[Variable, str]) -> BayesNode:
        if isinstance(item, Variable):
            node = self._by_var.get(item)
        else:
            node = self.nodes.get(item)
        if node is None:
            raise KeyError("No node %s in the network" % item)
        return node

    def get_variable(self, item: Union[Variable, str]) -> Variable:
        return self.get_node(item).variable

    def get_parents(self, item: Union[Variable, str]) -> List[BayesNode]:
        return [self.get_node(p) for p in self.get_node(item).parents]

    def get_children(self, item: Union[Variable, str]) -> List[BayesNode]:
        var = self.get_variable(item)
        return [self._by_var[c] for c in self.graph.successors(var)]

    def get_markov_blanket(self, item: Union[Variable, str]) -> set:
        """Get the Markov blanket of a node (parents, children, and children's parents)"""
        var = self.get_variable(item)
        blanket = set(self.graph.predecessors(var))
        for child in self.graph.successors(var):
            blanket.add(child)
            blanket.update(self.graph.predecessors(child))
        blanket.discard(var)
        return blanket

    def get_ordered(self) -> List[BayesNode]:
        """
        All nodes in topological order, parents before children; ties keep insertion order.
        """
        if self._ordered is None:
            missing = [v for v in self.graph.nodes if v not in self._by_var]
            if missing:
                raise ValueError(
                    "Parents without a node: %s" % ", ".join(str(v) for v in missing)
                )
            position = {v: i for i, v in enumerate(self._by_var)}
            try:
                ordered = nx.lexicographical_topological_sort(self.graph, key=position.get)
                self._ordered = [self._by_var[v] for v in ordered]
            except nx.NetworkXUnfeasible:
                raise ValueError("The network has a cycle") from None
        return list(self._ordered)

    def get_dconnected(
        self, query: Iterable[Variable], evidence: Dict[Variable, Any] = None
    ) -> List[BayesNode]:
        """
        Nodes reachable from the query variables through active trails given the evidence
        (Koller & Friedman, Algorithm 3.1), in topological order. The evidence nodes met on the
        way are included since their tables carry the evidence into inference.
        :param query: query variables
        :param evidence: observed variables mapped to their values
        :return: the nodes relevant to the query
        """
        observed = {v for v, val in (evidence or {}).items() if val is not None}
        # phase I: the evidence and its ancestors
        ancestors = set(observed)
        for v in observed:
            if v in self.graph:
                ancestors.update(nx.ancestors(self.graph, v))

        # phase II: traverse active trails from the query
        to_visit = []
        for q in query:
            self.get_node(q)
            to_visit.append((q, "up"))
        visited, reachable = set(), set()
        while to_visit:
            var, direction = to_visit.pop()
            if (var, direction) in visited:
                continue
            visited.add((var, direction))
            reachable.add(var)
            if direction == "up" and var not in observed:
                to_visit.extend((p, "up") for p in self.graph.predecessors(var))
                to_visit.extend((c, "down") for c in self.graph.successors(var))
            elif direction == "down":
                if var not in observed:
                    to_visit.extend((c, "down") for c in self.graph.successors(var))
                if var in ancestors:
                    to_visit.extend((p, "up") for p in self.graph.predecessors(var))
        return [n for n in self.get_ordered() if n.variable in reachable]

    def get_graph(self) -> nx.DiGraph:
        """The structure with node names in place of variables."""
        return nx.relabel_nodes(self.graph, {v: v.name for v in self.graph.nodes})

    def sample(
        self, rng: np.random.Generator = None, evidence: Dict[Variable, Any] = None
    ) -> Dict[Variable, Any]:
        """
        Sample values for all the variables in the bayesian network, parents first. Evidence
        values are kept as given rather than sampled.
        :return: A dictionary of variable, value pairs
        """
        rng = rng if rng is not None else np.random.default_rng()
        values = dict(evidence or {})
        for node in self.get_ordered():
            if values.get(node.variable) is None:
                parent_values = [values[p] for p in node.parents]
                values[node.variable] = node.sample(parent_values, rng)
        return values

    def sample_log_prob(self, sample: Dict[Variable, Any]) -> float:
        """ln P(sample) for a sample that assigns every variable: the sum of ln P(node | parents)."""
        logprob = 0.0
        for node in self.get_ordered():
            logprob += node.log_prob(sample[node.variable], [sample[p] for p in node.parents])
        return logprob

    def pretty_print_str(self):
        res = "Bayesian Network:\n"
        for node in self.get_ordered():
            res += node.pretty_print_str() + "\n"

        return res

    def __str__(self):
        res = "Bayesian Network:\n"
        for node in self.nodes.values():
            res += str(node) + "\n"

        return res

    def __repr__(self):
        return self.__str__()
