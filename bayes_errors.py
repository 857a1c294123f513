from typing import Sequence


class FactorError(Exception):
    """Base class for failures raised by tables, factors and the factor algebra."""


class FactorIndexError(FactorError, IndexError):
    """Malformed or out-of-range key/index access on an indexed table or factor."""


class CapacityError(FactorError, OverflowError):
    """
    The product of the domain sizes exceeds the platform index range.
    :param variables: the variables whose joint table could not be allocated
    """

    def __init__(self, message: str, variables: Sequence = ()):
        super().__init__(message)
        self.variables = tuple(variables)


class InvalidOperationError(FactorError):
    """Atomic-vs-indexed accessor mismatch and similar misuse of a factor."""


class InvalidVariableError(InvalidOperationError):
    """A variable named in an operation is not a member of the factor."""


class UnsupportedMarginalizationError(InvalidOperationError):
    """Summing out a continuous variable for which there is no closed form."""


class VarElimError(Exception):
    """Base class for failures of the bucket elimination engine."""


class BucketAssignmentError(VarElimError):
    """A factor could not be placed in any bucket."""


class VarElimInternalError(VarElimError):
    """Elimination ended in a state that correct bucket construction cannot produce."""


class LearningError(RuntimeError):
    """
    Failure of an algorithm that runs many inference calls, tagged with the
    sample and node being processed when it happened.
    """

    def __init__(self, message: str, sample_index: int = None, node_name: str = None):
        super().__init__(message)
        self.sample_index = sample_index
        self.node_name = node_name


class EMError(LearningError):
    pass


class SamplingError(LearningError):
    pass
