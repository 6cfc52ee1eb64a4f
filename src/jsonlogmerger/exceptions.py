class JsonLogMergerError(Exception):
    """Base class for errors reported to the user by jsonlogmerger."""


class InputSourceError(JsonLogMergerError):
    """An input file could not be opened or read."""


class ConfigurationError(JsonLogMergerError):
    """Invalid combination of command line options."""


class OutputError(JsonLogMergerError):
    """The output file could not be opened."""
