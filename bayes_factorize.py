"""
Free-function algebra over factors: product, sum- and max-marginalisation, normalisation.

Log-values are used throughout; -inf stands for probability zero.
"""
from typing import Iterable, List, Optional, Sequence
import logging

import numpy as np

from bayes_distrib import JDF
from bayes_errors import InvalidOperationError, InvalidVariableError
from bayes_factor import LOG0, Factor
from bayes_variables import Variable


logger = logging.getLogger(__name__)

# When False, products leave the densities of zero-valued entries unset; those entries carry no
# mass so the densities cannot influence any later sum. When True, densities are combined for
# every entry regardless of its value, at the cost of building many unused JDFs.
CG_SAFETY = False


def log_sum_of_logs(logx: float, logy: float) -> float:
    """ln(x + y) from ln(x) and ln(y), without leaving log-space."""
    return float(np.logaddexp(logx, logy))


def get_crossref(xvars: Sequence[Variable], yvars: Sequence[Variable]) -> List[Optional[int]]:
    """For every variable in `xvars`, its position in `yvars` (None if absent)."""
    position = {v: i for i, v in enumerate(yvars)}
    return [position.get(v) for v in xvars]


def get_overlap(x: Factor, y: Factor) -> int:
    """Number of enumerable variables the two factors share."""
    return len(set(x.enum_vars) & set(y.enum_vars))


def get_complexity(x: Factor, y: Factor) -> int:
    """Number of entries of the product of the two factors."""
    size = 1
    for v in set(x.enum_vars) | set(y.enum_vars):
        size *= v.size
    return size


def is_valid(f: Factor) -> bool:
    """A factor is valid if at least one entry is non-zero."""
    return bool(np.any(f.log_values > LOG0))


def product(x: Factor, y: Factor, cg_safety: bool = None) -> Factor:
    """
    Multiply two factors. The result ranges over the union of their enumerable variables and
    the disjoint union of their continuous variables; log-values add wherever the shared
    variables agree. Every combined key is produced exactly once, from the unique pair of
    source entries it projects onto, so no accumulation of duplicates is needed.
    :param x: a factor
    :param y: a factor that shares no continuous variable with x
    :param cg_safety: overrides CG_SAFETY for this call
    :return: a new factor
    """
    safety = CG_SAFETY if cg_safety is None else cg_safety
    shared = set(x.nonenum_vars) & set(y.nonenum_vars)
    if shared:
        raise InvalidOperationError(
            "Continuous variables %s occur in both %r and %r"
            % (", ".join(str(v) for v in shared), x, y)
        )
    result = Factor(
        *x.enum_vars,
        *y.enum_vars,
        *x.nonenum_vars,
        *y.nonenum_vars,
        evidenced=x.evidenced or y.evidenced,
        function=True,
    )
    rows = np.arange(result.size)
    xrows = result.table.project_indices(rows, [v for v in result.enum_vars if v not in x.table])
    yrows = result.table.project_indices(rows, [v for v in result.enum_vars if v not in y.table])
    logv = x.log_values[xrows] + y.log_values[yrows]
    result.set_log_values(logv)

    if result.has_nonenum_vars:
        xjdf, yjdf = x.get_jdfs(), y.get_jdfs()
        jdfs = []
        for row in range(result.size):
            if not safety and logv[row] == LOG0:
                jdfs.append(JDF(result.nonenum_vars))
                continue
            jdfs.append(
                JDF.combine(
                    xjdf[xrows[row]] if xjdf is not None else None,
                    yjdf[yrows[row]] if yjdf is not None else None,
                )
            )
        result.set_jdfs(jdfs)

    if x.is_traced or y.is_traced:
        xassign, yassign = x.get_assigns(), y.get_assigns()
        assigns = []
        for row in range(result.size):
            assign = dict(xassign[xrows[row]]) if xassign is not None else {}
            if yassign is not None:
                assign.update(yassign[yrows[row]])
            assigns.append(assign)
        result.set_assigns(assigns)
    return result


def product_all(factors: Iterable[Factor], cg_safety: bool = None) -> Factor:
    """
    Multiply a list of factors. The pair whose product is smallest is multiplied first, ties
    going to the pair sharing more variables and then to the earliest pair; the product joins
    the pool and the choice repeats. This only bounds the size of intermediate tables: the
    result does not depend on the order. An empty list yields the unit atomic factor.
    """
    pool = list(factors)
    if not pool:
        unit = Factor(function=True)
        unit.log_value = 0.0
        return unit
    n = len(pool)
    while len(pool) > 1:
        best = None
        for i in range(len(pool)):
            for j in range(i + 1, len(pool)):
                cost = (get_complexity(pool[i], pool[j]), -get_overlap(pool[i], pool[j]))
                if best is None or cost < best[0]:
                    best = (cost, i, j)
        _, i, j = best
        y = pool.pop(j)
        x = pool.pop(i)
        pool.append(product(x, y, cg_safety=cg_safety))
    logger.debug("Product of %d factors: %r", n, pool[0])
    return pool[0]


def _check_members(f: Factor, variables: Iterable[Variable]) -> List[Variable]:
    variables = list(variables)
    for var in variables:
        if var not in f.table:
            raise InvalidVariableError("Variable %s is not an enumerable variable of %r" % (var, f))
    return variables


def margin(f: Factor, variables: Iterable[Variable]) -> Factor:
    """Sum the named enumerable variables out of `f`."""
    return f.marginalize(_check_members(f, variables))


def max_margin(f: Factor, variables: Iterable[Variable]) -> Factor:
    """Max the named enumerable variables out of `f`, keeping a trace of the arg-max values."""
    return f.maximize(_check_members(f, variables))


def normal(f: Factor) -> Factor:
    """
    Normalised copy of a factor, so that its entries sum to one.
    A factor without mass cannot be normalised.
    """
    if not is_valid(f):
        raise InvalidOperationError("Cannot normalise factor %r: all entries are zero" % f)
    result = f.copy()
    result.set_log_values(f.log_values - f.get_log_sum())
    return result
