from typing import Any, Iterable, Iterator, Tuple
import itertools
import threading


_uid_counter = itertools.count()
_uid_lock = threading.Lock()


def _next_uid() -> int:
    with _uid_lock:
        return next(_uid_counter)


class Enumerable:
    """
    A finite, ordered domain of values.
    :param values: the domain values, at least two, hashable and unique. None is reserved for
    "unspecified" positions in partial keys and may not be a value.
    """

    def __init__(self, values: Iterable[Any]):
        values = tuple(values)
        if len(values) < 2:
            raise ValueError("An enumerable domain needs at least two values, got %r" % (values,))
        if any(v is None for v in values):
            raise ValueError("None cannot be a domain value")
        index = {}
        for i, v in enumerate(values):
            if v in index:
                raise ValueError("Duplicate domain value %r" % (v,))
            index[v] = i
        self.values = values
        self._index = index

    @property
    def size(self) -> int:
        return len(self.values)

    def index(self, value: Any) -> int:
        try:
            return self._index[value]
        except (KeyError, TypeError):
            raise ValueError("Value %r is not in domain %r" % (value, self.values)) from None

    def get(self, i: int) -> Any:
        return self.values[i]

    def __contains__(self, value: Any) -> bool:
        try:
            return value in self._index
        except TypeError:
            return False

    def __iter__(self) -> Iterator[Any]:
        return iter(self.values)

    def __len__(self) -> int:
        return len(self.values)

    def __eq__(self, other) -> bool:
        return isinstance(other, Enumerable) and self.values == other.values

    def __hash__(self) -> int:
        return hash(self.values)

    def __repr__(self) -> str:
        return "Enumerable(%s)" % ", ".join(repr(v) for v in self.values)


class Variable:
    """
    A random variable in a network. Every instance receives an interned integer id at construction;
    two variables are equal only if they share that id, whatever their names or domains. Sorting
    variables by id gives the canonical order used to lay out factor tables.
    """

    def __init__(self, name: str = None):
        self.uid = _next_uid()
        self.name = name if name is not None else "X%d" % self.uid

    @property
    def is_enumerable(self) -> bool:
        return False

    def __eq__(self, other) -> bool:
        return isinstance(other, Variable) and other.uid == self.uid

    def __hash__(self) -> int:
        return hash(self.uid)

    def __lt__(self, other: "Variable") -> bool:
        return self.uid < other.uid

    def __str__(self) -> str:
        return self.name

    def __repr__(self) -> str:
        return "%s(%s)" % (type(self).__name__, self.name)


class EnumVariable(Variable):
    def __init__(self, domain, name: str = None):
        super(EnumVariable, self).__init__(name)
        self.domain = domain if isinstance(domain, Enumerable) else Enumerable(domain)

    @property
    def is_enumerable(self) -> bool:
        return True

    @property
    def size(self) -> int:
        return self.domain.size

    def index(self, value: Any) -> int:
        return self.domain.index(value)


class ContinuousVariable(Variable):
    """Real-valued variable; represented in factors by attached densities, never indexed."""


def boolean(name: str = None) -> EnumVariable:
    return EnumVariable(Enumerable((True, False)), name)


def nominal(values: Iterable[Any], name: str = None) -> EnumVariable:
    return EnumVariable(Enumerable(values), name)


def number(n: int, name: str = None) -> EnumVariable:
    return EnumVariable(Enumerable(range(n)), name)


def real(name: str = None) -> ContinuousVariable:
    return ContinuousVariable(name)


def canonical(variables: Iterable[Variable]) -> Tuple[Variable, ...]:
    """Deduplicate and sort variables by their interned id."""
    return tuple(sorted(set(variables)))
