"""
Cost Engine Errors
"""


class CostEngineError(Exception):
    """Base class for all cost engine failures"""
    pass


class InvalidInputError(CostEngineError):
    """Malformed metric values (negative, non-finite) or a non-positive time window"""
    pass


class EmptyInputError(CostEngineError):
    """An aggregator was given a structurally empty result set"""

    def __init__(self, level, identifier: str):
        self.level = level
        self.identifier = identifier
        level_name = getattr(level, 'value', level)
        super().__init__(f"No cost results to aggregate for {level_name} '{identifier}'")


class SourceError(CostEngineError):
    """Metric or billing source failure"""
    pass


class SourceUnavailableError(SourceError):
    pass


class SourceTimeoutError(SourceError):
    pass


class InvalidTargetError(CostEngineError):
    """Simulation target efficiency out of range"""
    pass


class InvalidScopeError(CostEngineError):
    """Misconfigured level/identifier pair"""
    pass
