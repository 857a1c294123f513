from typing import List, Dict, Tuple, Any, Iterable, Mapping, Optional, Union
from collections import defaultdict
from concurrent.futures import ThreadPoolExecutor
import logging
import math
import threading

import numpy as np
import pandas as pd
from tqdm import tqdm

from bayes_errors import EMError, FactorError, VarElimError
from bayes_net import BayesNet, BayesNode
from bayes_var_elim import VarElim
from bayes_variables import Variable


EM_CONVERGENCE_CRITERION = 1e-5
EM_MAX_ROUNDS = 1000

Sample = Dict[Variable, Any]


class ExpectationCounts:
    """
    Expected observations per node, written concurrently by the E-step workers and read by the
    M-step once all of them have finished.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._counts: Dict[str, List[Tuple[Tuple[Any, ...], Any, float]]] = defaultdict(list)

    def add(self, node: BayesNode, key: Tuple[Any, ...], value: Any, prob: float) -> None:
        with self._lock:
            self._counts[node.name].append((key, value, prob))

    def drain(self, node: BayesNode) -> List[Tuple[Tuple[Any, ...], Any, float]]:
        with self._lock:
            return self._counts.pop(node.name, [])

    def __len__(self) -> int:
        with self._lock:
            return sum(len(c) for c in self._counts.values())


def to_samples(bn: BayesNet, data: Union[pd.DataFrame, Iterable[Mapping]]) -> List[Sample]:
    """
    Convert training data into evidence maps.

    Args:
        bn: the network whose nodes the data describe
        data: a DataFrame whose columns are node names, or a list of mappings from node names
            (or variables) to values; NaN and None mark missing values

    Returns:
        one dict per sample mapping variables to the observed values
    """
    if isinstance(data, pd.DataFrame):
        data = data.to_dict("records")
    samples = []
    for record in data:
        sample = {}
        for item, value in record.items():
            if value is None or (isinstance(value, float) and math.isnan(value)):
                continue
            if isinstance(value, np.generic):
                value = value.item()
            sample[bn.get_variable(item)] = value
        samples.append(sample)
    return samples


class EMLearner:
    """
    Expectation-maximisation of the parameters of a network from data with missing values.

    Args:
        bn: the network whose parameters are learned (in place)
        inference: the engine used in the E-step (bucket elimination by default)
        n_workers: size of the thread pool computing the expectations of the nodes of one sample
    """

    def __init__(self, bn: BayesNet, inference: VarElim = None, n_workers: int = 1) -> None:
        self.bn = bn
        self.inference = inference if inference is not None else VarElim(bn)
        self.n_workers = n_workers
        self.logger = logging.getLogger(__name__)
        self.log_likelihoods: List[float] = []

    def _nodes_to_update(self, samples: List[Sample]) -> List[BayesNode]:
        seen = set()
        for sample in samples:
            seen.update(sample)
        return [
            node
            for node in self.bn.get_ordered()
            if node.trainable and (node.variable in seen or any(p in seen for p in node.parents))
        ]

    def _initialize_parameters(self, nodes: List[BayesNode], seed: int = None) -> None:
        """Randomise every node that has no parameters yet so that EM has a starting point."""
        rng = np.random.default_rng(seed)
        for node in nodes:
            if not node.has_parameters():
                self.logger.info("Randomly initializing %s", node.name)
                node.randomize(int(rng.integers(2 ** 31)))

    def _expect_node(self, node: BayesNode, sample: Sample, index: int, counts: ExpectationCounts) -> None:
        """
        E-step for one node and one sample: the expected configurations of the node and its
        parents given everything observed in the sample.
        """
        value = sample.get(node.variable)
        parent_key = [sample.get(p) for p in node.parents]
        query_vars = [p for p, v in zip(node.parents, parent_key) if v is None]
        if value is None:
            query_vars.append(node.variable)
        if not query_vars:
            counts.add(node, tuple(parent_key), value, 1.0)
            return
        try:
            result = self.inference.infer(self.inference.make_query(query_vars, sample))
        except (FactorError, VarElimError) as e:
            self.logger.error("Inference failed for sample #%d, node %s: %s", index + 1, node.name, e)
            raise EMError(
                "Failed query for sample #%d and node %s: %s" % (index + 1, node.name, e),
                sample_index=index,
                node_name=node.name,
            ) from e
        for i in result.get_indices():
            prob = result.get_factor(i)
            assigned = dict(zip(result.enum_vars, result.get_key(i)))
            key = tuple(assigned[p] if v is None else v for p, v in zip(node.parents, parent_key))
            if value is not None:
                observed = value
            elif node.variable.is_enumerable:
                observed = assigned[node.variable]
            else:
                observed = result.get_distrib(i, node.variable)
                if observed is None:
                    continue
            counts.add(node, key, observed, prob)

    def _e_step(self, samples: List[Sample], nodes: List[BayesNode], counts: ExpectationCounts,
                executor: Optional[ThreadPoolExecutor]) -> None:
        for index, sample in enumerate(samples):
            if executor is None:
                for node in nodes:
                    self._expect_node(node, sample, index, counts)
                continue
            futures = [
                executor.submit(self._expect_node, node, sample, index, counts) for node in nodes
            ]
            # every worker finishes before the next sample (and the M-step) starts
            for future in futures:
                future.result()

    def _m_step(self, nodes: List[BayesNode], counts: ExpectationCounts) -> None:
        for node in nodes:
            for key, value, prob in counts.drain(node):
                node.count_instance(key, value, prob)
            node.maximize_instance()

    def compute_log_likelihood(self, samples: Union[pd.DataFrame, List[Mapping]]) -> float:
        """
        Sum over the samples of ln P(observed part of the sample), with every missing value
        summed out exactly.
        """
        samples = to_samples(self.bn, samples)
        return float(sum(self.inference.log_likelihood(sample) for sample in samples))

    def learn_cpds(
        self,
        samples_with_missing: Union[pd.DataFrame, List[Mapping]],
        max_iterations: int = EM_MAX_ROUNDS,
        convergence_threshold: float = EM_CONVERGENCE_CRITERION,
        seed: int = None,
        show_progress: bool = False,
    ) -> List[float]:
        """
        Learn the parameters of the network with EM.

        Args:
            samples_with_missing: training data (see `to_samples`)
            max_iterations: maximum number of EM rounds
            convergence_threshold: stop when the log-likelihood changes by less than this
                between two rounds
            seed: seed for the initialisation of nodes without parameters
            show_progress: display a progress bar over rounds

        Returns:
            the log-likelihood of the data after every round
        """
        samples = to_samples(self.bn, samples_with_missing)
        nodes = self._nodes_to_update(samples)
        self.logger.info("Starting EM on %d samples, updating %d nodes", len(samples), len(nodes))
        self._initialize_parameters(nodes, seed)
        self.log_likelihoods = []

        executor = ThreadPoolExecutor(max_workers=self.n_workers) if self.n_workers > 1 else None
        prev_ll = -math.inf
        try:
            for iteration in tqdm(range(max_iterations), desc="EM Iterations", disable=not show_progress):
                counts = ExpectationCounts()
                self._e_step(samples, nodes, counts, executor)
                self._m_step(nodes, counts)

                current_ll = self.compute_log_likelihood(samples)
                self.log_likelihoods.append(current_ll)
                self.logger.info("Iteration %d, ll=%.6f", iteration + 1, current_ll)
                if abs(current_ll - prev_ll) < convergence_threshold:
                    self.logger.info("Converged after %d iterations", iteration + 1)
                    break
                prev_ll = current_ll
            else:
                self.logger.info("Stopped after %d iterations without converging", max_iterations)
        finally:
            if executor is not None:
                executor.shutdown(wait=True)
        return self.log_likelihoods

