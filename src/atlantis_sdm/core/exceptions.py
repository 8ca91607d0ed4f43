"""Exception classes for atlantis_sdm."""


class SDMError(Exception):
    """Base exception for species distribution modelling errors."""

    pass


class SurveyDataError(SDMError):
    """Raised when survey input is malformed (missing columns, bad effort)."""

    pass


class MeshError(SDMError):
    """Raised when the spatial mesh is degenerate."""

    pass


class ConfigurationError(SDMError):
    """Raised when run configuration values are invalid."""

    pass


class JoinMismatchError(SDMError):
    """Raised when a join drops rows and the join policy is 'raise'."""

    def __init__(self, n_missing: int, context: str):
        super().__init__(f"{n_missing} row(s) unmatched while {context}")
        self.n_missing = n_missing
        self.context = context
