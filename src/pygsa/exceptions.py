"""Exception types raised by the gene set analysis engine."""


class GSAError(ValueError):
    """Base class for all gene set analysis errors."""


class ConfigError(GSAError):
    """Raised when an analysis option has an invalid name or value."""


class InputMismatchError(GSAError):
    """Raised when gene identifiers disagree across inputs."""


class MissingDirectionsError(GSAError):
    """Raised when gene directions are needed but were not supplied."""


class IncompatibleStatTypeError(GSAError):
    """Raised when a gene set statistic does not accept the gene-level statistic type."""


class EmptyCollectionError(GSAError):
    """Raised when no gene set survives the size filter."""


class DegenerateInputError(GSAError):
    """Raised when gene-level values fall outside the domain of a statistic."""


class UnsupportedCombinationError(GSAError):
    """Raised for a statistic / significance method / class pairing that is not defined."""
