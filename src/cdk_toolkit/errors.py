from __future__ import annotations

import click


BUG_REPORT_URL = "https://github.com/aws/aws-cdk/issues/new/choose"


class ToolkitError(RuntimeError):
    """Base class for failures surfaced verbatim to the CLI."""


class StackSelectionError(ToolkitError):
    pass


class WorkGraphError(ToolkitError):
    pass


class ConfirmationUnavailableError(ToolkitError):
    pass


class UserAbortedError(ToolkitError):
    pass


class RollbackError(ToolkitError):
    pass


class InternalConsistencyError(RuntimeError):
    """Raised when the toolkit reaches a state that correct backends never produce."""

    def __init__(self, message: str) -> None:
        super().__init__(f"{message}. If you are seeing this error, please report it at {BUG_REPORT_URL}")


class StackDeploymentError(ToolkitError):
    """Per-stack failure with the stack name prefixed.

    The message format is matched literally by integration tests:
    ``❌  <bold name> failed: <ErrorName>: <message>``.
    """

    def __init__(self, stack_name: str, cause: BaseException) -> None:
        self.stack_name = stack_name
        self.cause = cause
        parts = [f"❌  {click.style(stack_name, bold=True)} failed:"]
        name = type(cause).__name__
        if name:
            parts.append(f"{name}:")
        parts.append(str(cause))
        super().__init__(" ".join(parts))

    @property
    def is_internal(self) -> bool:
        return isinstance(self.cause, InternalConsistencyError)
