from typing import Any


class JourneyEngineError(Exception):
    """Base class for errors raised while advancing an enrollment."""


class ConfigurationError(JourneyEngineError):
    """The journey graph or a node config cannot be executed. Never retried."""


class TransientError(JourneyEngineError):
    """A downstream call failed in a way that may succeed on a later attempt."""


class DataError(JourneyEngineError):
    """An operand could not be read or coerced. Evaluated as a non-match, not raised to the engine."""


class JourneyValidationError(JourneyEngineError):
    def __init__(self, issues: list[dict[str, Any]]):
        self.issues = issues
        first = issues[0]["message"] if issues else "Journey definition is invalid"
        super().__init__(first)


def short_error(value: Exception | str) -> str:
    text = str(value).strip() or "Journey step failed"
    return text[:255]
