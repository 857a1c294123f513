from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple
import math

import numpy as np

from bayes_variables import Enumerable, Variable


# lower bound on fitted variances so a component never collapses onto a single point
MIN_VARIANCE = 1e-6


class Distrib:
    """A probability distribution (or density) over the values of one variable."""

    def get(self, value: Any) -> float:
        raise NotImplementedError

    def log_get(self, value: Any) -> float:
        p = self.get(value)
        return math.log(p) if p > 0 else -math.inf

    def sample(self, rng: np.random.Generator = None) -> Any:
        raise NotImplementedError


class EnumDistrib(Distrib):
    def __init__(self, domain: Enumerable, probs: Sequence[float] = None):
        self.domain = domain
        if probs is None:
            probs = np.ones(domain.size)
        self.set(probs)

    def set(self, probs: Sequence[float]) -> None:
        probs = np.asarray(probs, dtype=float)
        if probs.shape != (self.domain.size,):
            raise ValueError(
                "Expected %d probabilities, got %d" % (self.domain.size, probs.size)
            )
        if np.any(probs < 0) or np.any(np.isnan(probs)):
            raise ValueError("Probabilities must be non-negative numbers: %r" % (probs,))
        total = probs.sum()
        if total <= 0:
            raise ValueError("Probabilities sum to zero")
        self._probs = probs / total

    @property
    def probs(self) -> np.ndarray:
        return self._probs.copy()

    def get(self, value: Any) -> float:
        return float(self._probs[self.domain.index(value)])

    def get_by_index(self, i: int) -> float:
        return float(self._probs[i])

    def sample(self, rng: np.random.Generator = None) -> Any:
        rng = rng if rng is not None else np.random.default_rng()
        return self.domain.get(int(rng.choice(self.domain.size, p=self._probs)))

    def __repr__(self) -> str:
        return "EnumDistrib(%s)" % ", ".join(
            "%r: %.4f" % (v, p) for v, p in zip(self.domain, self._probs)
        )


class GaussianDistrib(Distrib):
    def __init__(self, mean: float, variance: float):
        if not variance > 0:
            raise ValueError("Variance must be positive, got %r" % (variance,))
        self.mean = float(mean)
        self.variance = float(variance)

    def get(self, value: float) -> float:
        return math.exp(self.log_get(value))

    def log_get(self, value: float) -> float:
        diff = float(value) - self.mean
        return -0.5 * (math.log(2 * math.pi * self.variance) + diff * diff / self.variance)

    def sample(self, rng: np.random.Generator = None) -> float:
        rng = rng if rng is not None else np.random.default_rng()
        return float(rng.normal(self.mean, math.sqrt(self.variance)))

    @classmethod
    def fit(cls, values: Sequence[float], weights: Sequence[float] = None) -> "GaussianDistrib":
        """
        Weighted maximum-likelihood fit.
        :param values: observed values
        :param weights: non-negative weight per value (uniform if omitted)
        """
        values = np.asarray(values, dtype=float)
        weights = np.ones_like(values) if weights is None else np.asarray(weights, dtype=float)
        total = weights.sum()
        if total <= 0:
            raise ValueError("Cannot fit a Gaussian to zero total weight")
        mean = float(np.dot(weights, values) / total)
        variance = float(np.dot(weights, (values - mean) ** 2) / total)
        return cls(mean, max(variance, MIN_VARIANCE))

    def __repr__(self) -> str:
        return "GaussianDistrib(mean=%.4f, variance=%.4f)" % (self.mean, self.variance)


class MixtureDistrib(Distrib):
    """
    Weighted mixture of densities. Weights need not be normalised; every query normalises
    by their total. Components that are themselves mixtures are flattened on insertion.
    """

    def __init__(self, components: Iterable[Tuple[Distrib, float]] = ()):
        self.components: List[Tuple[Distrib, float]] = []
        for d, w in components:
            self.add(d, w)

    def add(self, d: Distrib, weight: float) -> None:
        if weight <= 0:
            return
        if isinstance(d, MixtureDistrib):
            total = d.total_weight
            for c, cw in d.components:
                self.components.append((c, weight * cw / total))
        else:
            self.components.append((d, weight))

    @property
    def total_weight(self) -> float:
        return sum(w for _, w in self.components)

    @property
    def weights(self) -> np.ndarray:
        w = np.array([w for _, w in self.components])
        return w / w.sum()

    def normalized(self) -> "MixtureDistrib":
        total = self.total_weight
        return MixtureDistrib((d, w / total) for d, w in self.components)

    def get(self, value: Any) -> float:
        total = self.total_weight
        return sum(w * d.get(value) for d, w in self.components) / total

    @property
    def mean(self) -> float:
        return float(sum(w * _mean(d) for d, w in zip(self._dists(), self.weights)))

    @property
    def variance(self) -> float:
        m = self.mean
        return float(
            sum(
                w * (_variance(d) + (_mean(d) - m) ** 2)
                for d, w in zip(self._dists(), self.weights)
            )
        )

    def _dists(self) -> List[Distrib]:
        return [d for d, _ in self.components]

    def sample(self, rng: np.random.Generator = None) -> Any:
        rng = rng if rng is not None else np.random.default_rng()
        i = int(rng.choice(len(self.components), p=self.weights))
        return self.components[i][0].sample(rng)

    def __len__(self) -> int:
        return len(self.components)

    def __repr__(self) -> str:
        return "MixtureDistrib(%s)" % ", ".join(
            "%.4f*%r" % (w, d) for d, w in self.normalized().components
        )


def _mean(d: Distrib) -> float:
    if isinstance(d, (GaussianDistrib, MixtureDistrib)):
        return d.mean
    raise TypeError("No mean for %r" % (d,))


def _variance(d: Distrib) -> float:
    if isinstance(d, (GaussianDistrib, MixtureDistrib)):
        return d.variance
    raise TypeError("No variance for %r" % (d,))


def moments(d: Distrib) -> Tuple[float, float]:
    """Mean and variance of a Gaussian or of a mixture of Gaussians."""
    return _mean(d), _variance(d)


class JDF:
    """
    Joint density function: one conditional density per continuous variable, attached to a single
    discrete configuration of a factor. The densities are treated as independent given that
    configuration.
    """

    def __init__(self, variables: Iterable[Variable] = ()):
        self._distribs: Dict[Variable, Optional[Distrib]] = {v: None for v in variables}

    @property
    def variables(self) -> Tuple[Variable, ...]:
        return tuple(self._distribs)

    def get_distrib(self, var: Variable) -> Optional[Distrib]:
        return self._distribs[var]

    def set_distrib(self, var: Variable, d: Distrib) -> None:
        if var not in self._distribs:
            raise KeyError("%s is not a variable of this density" % var)
        self._distribs[var] = d

    def is_empty(self) -> bool:
        return all(d is None for d in self._distribs.values())

    def copy(self) -> "JDF":
        jdf = JDF()
        jdf._distribs = dict(self._distribs)
        return jdf

    def restricted(self, variables: Iterable[Variable]) -> "JDF":
        """Keep only the named variables; densities of the others integrate to one."""
        jdf = JDF()
        jdf._distribs = {v: self._distribs[v] for v in variables if v in self._distribs}
        return jdf

    @staticmethod
    def combine(a: Optional["JDF"], b: Optional["JDF"]) -> Optional["JDF"]:
        """
        Join two densities over disjoint variable sets into one.
        :return: a new JDF, or None if both are None
        """
        if a is None:
            return b.copy() if b is not None else None
        if b is None:
            return a.copy()
        shared = set(a._distribs) & set(b._distribs)
        if shared:
            raise ValueError(
                "Cannot combine densities sharing %s" % ", ".join(str(v) for v in shared)
            )
        jdf = a.copy()
        jdf._distribs.update(b._distribs)
        return jdf

    @staticmethod
    def mixture_of(weighted: Iterable[Tuple["JDF", float]], variables: Iterable[Variable]) -> "JDF":
        """
        Mix several densities, variable by variable, with the given (unnormalised) weights.
        Zero weights and unset densities are dropped.
        """
        variables = tuple(variables)
        mixtures = {v: MixtureDistrib() for v in variables}
        for jdf, weight in weighted:
            if weight <= 0 or jdf is None:
                continue
            for v in variables:
                d = jdf._distribs.get(v)
                if d is not None:
                    mixtures[v].add(d, weight)
        result = JDF(variables)
        for v, mix in mixtures.items():
            if len(mix) == 1:
                result._distribs[v] = mix.components[0][0]
            elif len(mix) > 1:
                result._distribs[v] = mix.normalized()
        return result

    @staticmethod
    def mix(a: "JDF", weight_a: float, b: "JDF", weight_b: float) -> "JDF":
        variables = list(a.variables) + [v for v in b.variables if v not in a._distribs]
        return JDF.mixture_of([(a, weight_a), (b, weight_b)], variables)

    def __repr__(self) -> str:
        return "JDF(%s)" % ", ".join("%s: %r" % (v, d) for v, d in self._distribs.items())
