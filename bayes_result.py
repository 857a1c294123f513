from typing import Any, Dict, List, Optional, Sequence, Tuple
import logging
import math

import numpy as np
import pandas as pd

from bayes_distrib import JDF, Distrib
from bayes_errors import InvalidOperationError, VarElimInternalError
from bayes_factor import LOG0, Factor
from bayes_factorize import get_crossref
from bayes_table import IndexedTable
from bayes_variables import Variable


logger = logging.getLogger(__name__)


class InferenceResult:
    """
    Answer to a query: a normalised table over the enumerable query variables, laid out in the
    order they were asked for, with the densities of the continuous query variables attached to
    each entry.

    :param factor: the final factor of inference; its enumerable variables must be exactly the
    enumerable query variables
    :param query_vars: the query variables in the order requested
    :param mpe: the factor was produced by max-elimination and carries the arg-max trace
    """

    def __init__(self, factor: Factor, query_vars: Sequence[Variable], mpe: bool = False):
        self.mpe = mpe
        self.enum_vars: Tuple[Variable, ...] = tuple(v for v in query_vars if v.is_enumerable)
        self.nonenum_vars: Tuple[Variable, ...] = tuple(
            v for v in query_vars if not v.is_enumerable
        )
        if set(self.enum_vars) != set(factor.enum_vars):
            raise VarElimInternalError(
                "Final factor %r does not range over the query variables %s"
                % (factor, ", ".join(str(v) for v in self.enum_vars))
            )
        self.table = IndexedTable(self.enum_vars)
        # log of the (max-)sum over the final factor: the probability of the evidence in
        # belief mode
        self.log_likelihood = factor.get_log_sum()

        if self.enum_vars:
            perm = get_crossref(self.enum_vars, factor.enum_vars)
            source = np.arange(factor.size).reshape(factor.table.shape).transpose(perm).ravel()
        else:
            source = np.zeros(1, dtype=np.intp)
        logv = np.asarray(factor.log_values)[source]
        if self.log_likelihood == LOG0:
            logger.warning("Evidence has probability zero; the result is all zeros")
            self._log_probs = logv.copy()
        else:
            self._log_probs = logv - self.log_likelihood

        jdfs = factor.get_jdfs()
        self._jdf: Optional[List[JDF]] = None
        if jdfs is not None and self.nonenum_vars:
            self._jdf = [jdfs[s].restricted(self.nonenum_vars) for s in source]
        assigns = factor.get_assigns()
        self._assign: Optional[List[Dict[Variable, Any]]] = (
            [assigns[s] for s in source] if assigns is not None else None
        )

    @property
    def size(self) -> int:
        return self.table.size

    def get_key(self, index: int) -> Tuple[Any, ...]:
        return self.table.key(index)

    def get_index(self, key: Sequence[Any]) -> int:
        return self.table.index(key)

    def get_log_factor(self, index: int) -> float:
        self.table.key(index)
        return float(self._log_probs[index])

    def get_factor(self, index: int) -> float:
        """Probability of the entry at `index`."""
        return math.exp(self.get_log_factor(index))

    def get_indices(self) -> List[int]:
        """Indices of the entries with non-zero probability."""
        return [int(i) for i in np.flatnonzero(self._log_probs > LOG0)]

    def get_probability(self, assignment: Dict[Variable, Any]) -> float:
        """
        Probability that the query variables take the given values; variables left out of
        the assignment are summed over.
        """
        unknown = [v for v in assignment if v not in self.table]
        if unknown:
            raise KeyError("Not enumerable query variables: %s" % ", ".join(str(v) for v in unknown))
        partial = [assignment.get(v) for v in self.enum_vars]
        indices = self.table.matching_indices(partial)
        return float(np.exp(self._log_probs[indices]).sum())

    def has_non_enum_variables(self) -> bool:
        return bool(self.nonenum_vars)

    def get_jdf(self, index: int = 0) -> Optional[JDF]:
        self.table.key(index)
        return self._jdf[index] if self._jdf is not None else None

    def get_distrib(self, index: int, var: Variable) -> Optional[Distrib]:
        jdf = self.get_jdf(index)
        if jdf is None or var not in jdf.variables:
            return None
        return jdf.get_distrib(var)

    def get_mpe(self) -> Dict[Variable, Any]:
        """
        The most probable explanation: the assignment of highest joint probability to the query
        variables and every variable that was maxed out.
        """
        if not self.mpe:
            raise InvalidOperationError("Result was not produced by an MPE query")
        best = int(np.argmax(self._log_probs))
        assignment = dict(zip(self.enum_vars, self.table.key(best)))
        if self._assign is not None:
            assignment.update(self._assign[best])
        return assignment

    def to_frame(self) -> pd.DataFrame:
        probs = np.exp(self._log_probs)
        if not self.enum_vars:
            return pd.DataFrame({"prob": probs})
        index = pd.MultiIndex.from_tuples(
            [self.table.key(i) for i in range(self.size)], names=[v.name for v in self.enum_vars]
        )
        return pd.DataFrame({"prob": probs}, index=index)

    def __str__(self):
        res = "InferenceResult(%s)\n" % ", ".join(
            str(v) for v in self.enum_vars + self.nonenum_vars
        )
        for i in range(self.size):
            res += "  %r: %.6f" % (self.get_key(i), self.get_factor(i))
            if self._jdf is not None:
                res += " %r" % self._jdf[i]
            res += "\n"
        return res

    def __repr__(self):
        return self.__str__()
