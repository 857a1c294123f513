from typing import Any, Iterable, List, Sequence, Tuple
from functools import reduce

import numpy as np

from bayes_errors import CapacityError, FactorIndexError
from bayes_variables import EnumVariable


MAX_INDEX = int(np.iinfo(np.intp).max)


class IndexedTable:
    """
    Bijection between keys (one value per variable) and integer indices in [0, size).

    The encoding is mixed radix with the last variable varying fastest, so that
    index = sum(domain_index(key[i]) * step[i]) where step[i] is the product of the domain sizes
    of all variables after position i. A table without variables has exactly one index, 0,
    and the empty key.
    """

    def __init__(self, variables: Sequence[EnumVariable] = ()):
        self.variables: Tuple[EnumVariable, ...] = tuple(variables)
        self.domsize: Tuple[int, ...] = tuple(v.size for v in self.variables)
        steps = [1] * len(self.variables)
        size = 1
        for i in range(len(self.variables) - 1, -1, -1):
            steps[i] = size
            size *= self.domsize[i]
            if size > MAX_INDEX:
                raise CapacityError(
                    "Table over %s has more entries than the index range allows"
                    % ", ".join(str(v) for v in self.variables),
                    self.variables,
                )
        self.step: Tuple[int, ...] = tuple(steps)
        self.size = size
        self._position = {v: i for i, v in enumerate(self.variables)}

    @property
    def shape(self) -> Tuple[int, ...]:
        return self.domsize

    def __len__(self) -> int:
        return self.size

    def __contains__(self, var) -> bool:
        return var in self._position

    def position(self, var) -> int:
        return self._position[var]

    def _value_index(self, i: int, value: Any) -> int:
        if value is None:
            raise FactorIndexError("Key position %d (%s) is unspecified" % (i, self.variables[i]))
        try:
            return self.variables[i].index(value)
        except ValueError as e:
            raise FactorIndexError(str(e)) from None

    def _check_length(self, key: Sequence[Any]) -> None:
        if len(key) != len(self.variables):
            raise FactorIndexError(
                "Key of length %d does not match %d variables" % (len(key), len(self.variables))
            )

    def index(self, key: Sequence[Any]) -> int:
        """
        :param key: fully specified key, one value per variable
        :return: the index of the key
        """
        self._check_length(key)
        return sum(self._value_index(i, value) * self.step[i] for i, value in enumerate(key))

    def key(self, index: int) -> Tuple[Any, ...]:
        if not 0 <= index < self.size:
            raise FactorIndexError("Index %d out of range [0, %d)" % (index, self.size))
        return tuple(
            v.domain.get((index // step) % size)
            for v, step, size in zip(self.variables, self.step, self.domsize)
        )

    def matching_indices(self, partial_key: Sequence[Any]) -> np.ndarray:
        """
        All indices consistent with the specified positions of a partial key; None marks a
        position that may take any value.
        :return: ascending array of indices
        """
        self._check_length(partial_key)
        start = 0
        free: List[np.ndarray] = []
        for i, value in enumerate(partial_key):
            if value is None:
                free.append(np.arange(self.domsize[i], dtype=np.intp) * self.step[i])
            else:
                start += self._value_index(i, value) * self.step[i]
        if not free:
            return np.array([start], dtype=np.intp)
        return start + reduce(np.add.outer, free).ravel()

    def _kept_positions(self, remove: Iterable) -> List[int]:
        remove = set(remove)
        return [i for i, v in enumerate(self.variables) if v not in remove]

    def reduced(self, remove: Iterable) -> "IndexedTable":
        """The table over the variables that remain once `remove` are dropped."""
        return IndexedTable([self.variables[i] for i in self._kept_positions(remove)])

    def project_index(self, index: int, remove: Iterable) -> int:
        """
        Re-express an index in the space where the variables in `remove` are dropped.
        project_index(index(key), R) == reduced(R).index(key without R) for every full key.
        """
        if not 0 <= index < self.size:
            raise FactorIndexError("Index %d out of range [0, %d)" % (index, self.size))
        return int(self.project_indices(np.array([index], dtype=np.intp), remove)[0])

    def project_indices(self, indices: np.ndarray, remove: Iterable) -> np.ndarray:
        """Vectorised project_index over an array of indices."""
        indices = np.asarray(indices, dtype=np.intp)
        kept = self._kept_positions(remove)
        projected = np.zeros_like(indices)
        step = 1
        for i in reversed(kept):
            projected += ((indices // self.step[i]) % self.domsize[i]) * step
            step *= self.domsize[i]
        return projected

    def __repr__(self) -> str:
        return "IndexedTable(%s)" % ", ".join(str(v) for v in self.variables)
