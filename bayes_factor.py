from typing import Any, Dict, Iterable, Iterator, List, Optional, Sequence, Tuple
import logging
import math

import numpy as np
import pandas as pd

from bayes_distrib import JDF, Distrib
from bayes_errors import (
    FactorIndexError,
    InvalidOperationError,
    InvalidVariableError,
    UnsupportedMarginalizationError,
)
from bayes_table import IndexedTable
from bayes_variables import Variable, canonical


logger = logging.getLogger(__name__)

LOG0 = -math.inf


def _to_log(p: float) -> float:
    if math.isnan(p):
        raise ValueError("Probability cannot be NaN")
    if p < 0:
        raise ValueError("Probability cannot be negative: %r" % p)
    return math.log(p) if p > 0 else LOG0


class Factor:
    """
    Dense log-space table over enumerable variables, with optional densities over continuous
    variables attached to every entry.

    Variables are deduplicated, split by kind and sorted canonically (by interned id); the
    enumerable ones define the index space. A factor without enumerable variables is atomic: it
    holds a single value and is read through `log_value`, `value` and `jdf` rather than through
    the indexed accessors.

    :param variables: the variables of the factor, in any order, duplicates allowed
    :param evidenced: the factor was built while some variable was instantiated
    :param function: the factor was produced by the algebra rather than by a network node
    """

    def __init__(self, *variables: Variable, evidenced: bool = False, function: bool = False):
        variables = canonical(variables)
        self.enum_vars: Tuple[Variable, ...] = tuple(v for v in variables if v.is_enumerable)
        self.nonenum_vars: Tuple[Variable, ...] = tuple(
            v for v in variables if not v.is_enumerable
        )
        self.table = IndexedTable(self.enum_vars)
        self.evidenced = evidenced
        self.function = function
        self._logv = np.full(self.table.size, LOG0)
        self._jdf: Optional[List[JDF]] = (
            [JDF(self.nonenum_vars) for _ in range(self.table.size)] if self.nonenum_vars else None
        )
        # per-entry values of variables that were maxed out to produce this factor
        self._assign: Optional[List[Dict[Variable, Any]]] = None

    @property
    def size(self) -> int:
        return self.table.size

    @property
    def is_atomic(self) -> bool:
        return not self.enum_vars

    @property
    def has_nonenum_vars(self) -> bool:
        return bool(self.nonenum_vars)

    @property
    def is_traced(self) -> bool:
        return self._assign is not None

    @property
    def variables(self) -> Tuple[Variable, ...]:
        return self.enum_vars + self.nonenum_vars

    def has_variable(self, var: Variable) -> bool:
        return var in self.table or var in self.nonenum_vars

    def __len__(self) -> int:
        return self.size

    def _check_index(self, index: int) -> None:
        if self.is_atomic:
            raise InvalidOperationError("Atomic factor has no indexed entries; use the atomic accessors")
        if not 0 <= index < self.size:
            raise FactorIndexError("Index %d out of range [0, %d)" % (index, self.size))

    def _check_atomic(self) -> None:
        if not self.is_atomic:
            raise InvalidOperationError(
                "Factor over %s is not atomic; use the indexed accessors" % self._names()
            )

    def _check_jdf(self) -> None:
        if self._jdf is None:
            raise InvalidOperationError("Factor over %s has no continuous variables" % self._names())

    # indexed access

    def get_log_value(self, index: int) -> float:
        self._check_index(index)
        return float(self._logv[index])

    def set_log_value(self, index: int, value: float) -> None:
        self._check_index(index)
        if math.isnan(value):
            raise ValueError("Log-value cannot be NaN")
        self._logv[index] = value

    def get_value(self, index: int) -> float:
        return math.exp(self.get_log_value(index))

    def set_value(self, index: int, p: float) -> None:
        self._check_index(index)
        self._logv[index] = _to_log(p)

    def get_jdf(self, index: int) -> JDF:
        self._check_index(index)
        self._check_jdf()
        return self._jdf[index]

    def set_jdf(self, index: int, jdf: JDF) -> None:
        self._check_index(index)
        self._check_jdf()
        self._jdf[index] = jdf

    def get_distrib(self, index: int, var: Variable) -> Optional[Distrib]:
        return self.get_jdf(index).get_distrib(var)

    def set_distrib(self, index: int, var: Variable, d: Distrib) -> None:
        self.get_jdf(index).set_distrib(var, d)

    def get_assign(self, index: int) -> Dict[Variable, Any]:
        """Values of maxed-out variables that produced the entry at `index`."""
        if self._assign is None:
            return {}
        return dict(self._assign[index])

    # atomic access

    @property
    def log_value(self) -> float:
        self._check_atomic()
        return float(self._logv[0])

    @log_value.setter
    def log_value(self, value: float) -> None:
        self._check_atomic()
        if math.isnan(value):
            raise ValueError("Log-value cannot be NaN")
        self._logv[0] = value

    @property
    def value(self) -> float:
        return math.exp(self.log_value)

    @value.setter
    def value(self, p: float) -> None:
        self._check_atomic()
        self._logv[0] = _to_log(p)

    @property
    def jdf(self) -> JDF:
        self._check_atomic()
        self._check_jdf()
        return self._jdf[0]

    @jdf.setter
    def jdf(self, jdf: JDF) -> None:
        self._check_atomic()
        self._check_jdf()
        self._jdf[0] = jdf

    @property
    def assign(self) -> Dict[Variable, Any]:
        self._check_atomic()
        return self.get_assign(0)

    # bulk access, valid for atomic and indexed factors alike

    @property
    def log_values(self) -> np.ndarray:
        view = self._logv.view()
        view.flags.writeable = False
        return view

    def set_log_values(self, values: Sequence[float]) -> None:
        values = np.asarray(values, dtype=float)
        if values.shape != (self.size,):
            raise FactorIndexError(
                "Expected %d log-values, got shape %s" % (self.size, values.shape)
            )
        if np.any(np.isnan(values)):
            raise ValueError("Log-values cannot be NaN")
        self._logv = values.copy()

    def set_values(self, values: Sequence[float]) -> None:
        values = np.asarray(values, dtype=float)
        if np.any(np.isnan(values)) or np.any(values < 0):
            raise ValueError("Probabilities must be non-negative numbers")
        with np.errstate(divide="ignore"):
            self.set_log_values(np.log(values))

    def get_jdfs(self) -> Optional[List[JDF]]:
        return None if self._jdf is None else list(self._jdf)

    def set_jdfs(self, jdfs: Sequence[JDF]) -> None:
        self._check_jdf()
        if len(jdfs) != self.size:
            raise FactorIndexError("Expected %d densities, got %d" % (self.size, len(jdfs)))
        self._jdf = list(jdfs)

    def get_assigns(self) -> Optional[List[Dict[Variable, Any]]]:
        return None if self._assign is None else list(self._assign)

    def set_assigns(self, assigns: Sequence[Dict[Variable, Any]]) -> None:
        if len(assigns) != self.size:
            raise FactorIndexError("Expected %d assignments, got %d" % (self.size, len(assigns)))
        self._assign = [dict(a) for a in assigns]

    # keys

    def index_of(self, key: Sequence[Any]) -> int:
        if self.is_atomic:
            raise InvalidOperationError("Atomic factor has no keys")
        return self.table.index(key)

    def key_of(self, index: int) -> Tuple[Any, ...]:
        self._check_index(index)
        return self.table.key(index)

    def get_indices(self, partial_key: Sequence[Any]) -> np.ndarray:
        if self.is_atomic:
            raise InvalidOperationError("Atomic factor has no keys")
        return self.table.matching_indices(partial_key)

    def __iter__(self) -> Iterator[int]:
        """Indices of the entries with non-zero probability."""
        return iter(int(i) for i in np.flatnonzero(self._logv > LOG0))

    # totals

    def get_log_sum(self) -> float:
        return float(np.logaddexp.reduce(self._logv))

    def get_sum(self) -> float:
        return math.exp(self.get_log_sum())

    # elimination

    def _eliminated(self, variables: Iterable[Variable]) -> List[Variable]:
        remove = []
        for var in variables:
            if var in self.nonenum_vars:
                raise UnsupportedMarginalizationError(
                    "Cannot eliminate continuous variable %s from factor over %s"
                    % (var, self._names())
                )
            if var not in self.table:
                raise InvalidVariableError(
                    "Variable %s is not in factor over %s" % (var, self._names())
                )
            if var not in remove:
                remove.append(var)
        return remove

    def _reduced(self, remove: List[Variable]) -> "Factor":
        kept = [v for v in self.enum_vars if v not in remove]
        return Factor(*kept, *self.nonenum_vars, evidenced=self.evidenced, function=True)

    def marginalize(self, variables: Iterable[Variable]) -> "Factor":
        """
        Sum out enumerable variables. Densities attached to the merged entries are mixed, each
        weighted by its entry's share of the merged mass.
        :param variables: enumerable variables of this factor
        :return: a new factor over the remaining variables (this factor if none are named)
        """
        remove = self._eliminated(variables)
        if not remove:
            return self
        result = self._reduced(remove)
        target = self.table.project_indices(np.arange(self.size), remove)
        logv = np.full(result.size, LOG0)
        np.logaddexp.at(logv, target, self._logv)
        result._logv = logv
        if self._jdf is not None:
            weighted: List[List[Tuple[JDF, float]]] = [[] for _ in range(result.size)]
            for src in np.flatnonzero(self._logv > LOG0):
                t = target[src]
                weighted[t].append((self._jdf[src], math.exp(self._logv[src] - logv[t])))
            result._jdf = [JDF.mixture_of(w, self.nonenum_vars) for w in weighted]
        logger.debug("Summed %s out of %s", [str(v) for v in remove], self)
        return result

    def maximize(self, variables: Iterable[Variable]) -> "Factor":
        """
        Max out enumerable variables, keeping per reduced entry the source entry of highest value
        (lowest source index on ties). The values the maxed-out variables took in that entry are
        recorded, so that the full arg-max assignment can be read off the final factor.
        :param variables: enumerable variables of this factor
        :return: a new, traced factor over the remaining variables (this factor if none are named)
        """
        remove = self._eliminated(variables)
        if not remove:
            return self
        result = self._reduced(remove)
        target = self.table.project_indices(np.arange(self.size), remove)
        order = np.lexsort((np.arange(self.size), -self._logv, target))
        sorted_target = target[order]
        first = np.ones(self.size, dtype=bool)
        first[1:] = sorted_target[1:] != sorted_target[:-1]
        best = order[first]
        result._logv = self._logv[best]
        if self._jdf is not None:
            result._jdf = [self._jdf[src] for src in best]
        positions = [self.table.position(v) for v in remove]
        assigns = []
        for src in best:
            key = self.table.key(int(src))
            assign = dict(self._assign[src]) if self._assign is not None else {}
            assign.update((self.enum_vars[p], key[p]) for p in positions)
            assigns.append(assign)
        result._assign = assigns
        logger.debug("Maxed %s out of %s", [str(v) for v in remove], self)
        return result

    def copy(self) -> "Factor":
        f = Factor(*self.variables, evidenced=self.evidenced, function=self.function)
        f._logv = self._logv.copy()
        if self._jdf is not None:
            f._jdf = list(self._jdf)
        if self._assign is not None:
            f._assign = [dict(a) for a in self._assign]
        return f

    def to_frame(self) -> pd.DataFrame:
        """
        Table view with one row per configuration of the enumerable variables (a MultiIndex named
        after them) and the probability in the `prob` column.
        """
        probs = np.exp(self._logv)
        if self.is_atomic:
            return pd.DataFrame({"prob": probs})
        index = pd.MultiIndex.from_tuples(
            [self.table.key(i) for i in range(self.size)],
            names=[v.name for v in self.enum_vars],
        )
        return pd.DataFrame({"prob": probs}, index=index)

    def _names(self) -> str:
        return "(%s)" % ", ".join(str(v) for v in self.variables)

    def __repr__(self) -> str:
        flags = "".join(
            c for c, on in (("E", self.evidenced), ("F", self.function), ("T", self.is_traced)) if on
        )
        return "Factor%s%s" % (self._names(), "[" + flags + "]" if flags else "")
