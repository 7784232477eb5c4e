"""Exception types shared across marl."""


class AgentError(Exception):
    """Raised by the turn loop or setup helpers for reportable runtime failures."""


class ConfigError(AgentError):
    """Raised for invalid configuration (bad TOML, wrong value types, etc.)."""


class NotFoundError(AgentError):
    """A skill, prompt, or persisted session id does not exist."""


class InvalidFormatError(AgentError):
    """A skill or prompt file has malformed frontmatter."""


class MissingParameterError(AgentError):
    """A tool invocation lacks one or more required parameters."""

    def __init__(self, missing: list[str]):
        self.missing = list(missing)
        noun = "parameter" if len(self.missing) == 1 else "parameters"
        super().__init__(f"Missing required {noun}: {', '.join(self.missing)}")


class ExecutionError(AgentError):
    """A subprocess or evaluation raised an error."""


class PersistenceError(AgentError):
    """Reading, writing or decoding a session record failed."""
