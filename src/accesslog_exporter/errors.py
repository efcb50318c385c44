from __future__ import annotations


class ExporterError(Exception):
    """Base class for everything the exporter raises on purpose."""


class ConfigError(ExporterError):
    pass


class ExperimentalFeatureError(ConfigError):
    """The configuration uses an option that needs enable_experimental."""

    def __init__(self, option: str):
        super().__init__(f"option '{option}' is an experimental feature")
        self.option = option


class DuplicateLabelError(ConfigError):
    def __init__(self, namespace: str, label: str):
        super().__init__(f"namespace '{namespace}': label '{label}' is defined more than once")
        self.namespace = namespace
        self.label = label


class LineParseError(ExporterError):
    """A line did not match the namespace's log format. Never fatal."""

    def __init__(self, line: str):
        super().__init__(f"line does not match log format: {line!r}")
        self.line = line


class FollowerError(ExporterError):
    """A source file could not be opened or stopped being readable."""

    def __init__(self, path: str, reason: str):
        super().__init__(f"{path}: {reason}")
        self.path = path
        self.reason = reason


class DiscoveryError(ExporterError):
    pass
