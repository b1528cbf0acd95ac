# flexfuse/containerd/errors.py
from typing import List, Optional, Sequence


# argv options whose value is a secret
SECRET_OPTIONS = ("--user",)


def redact_args(args: Sequence[str]) -> List[str]:
    """Copy of args with the values of SECRET_OPTIONS masked."""
    redacted = []
    hide_next = False
    for arg in args:
        option, sep, _ = arg.partition("=")
        if hide_next:
            redacted.append("***")
            hide_next = False
        elif arg in SECRET_OPTIONS:
            redacted.append(arg)
            hide_next = True
        elif sep and option in SECRET_OPTIONS:
            redacted.append(f"{option}=***")
        else:
            redacted.append(arg)
    return redacted


class FlexFuseError(Exception):
    """Base class for every error raised by flexfuse."""


class RuntimeServiceError(FlexFuseError):
    """A containerd call failed."""

    def __init__(self, message: str, code: Optional[str] = None):
        super().__init__(message)
        self.code = code


class NotFoundError(RuntimeServiceError):
    """The requested image, container, task or snapshot does not exist."""


class CommandError(FlexFuseError):
    """A host command exited non-zero or could not be run."""

    def __init__(self, args: Sequence[str], returncode: Optional[int], output: str = ""):
        self.args_list = list(args)
        self.returncode = returncode
        self.output = output
        super().__init__(
            f"Command {' '.join(redact_args(self.args_list))!r} failed with code {returncode}: {output.strip()}"
        )


class TransientResolutionError(FlexFuseError):
    """One attempt of the cross-namespace image import failed; safe to retry."""


class RetriesExhaustedError(TransientResolutionError):
    def __init__(self, attempts: int, last_error: Optional[BaseException]):
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(f"Gave up after {attempts} attempts: {last_error}")


class ImagePullError(FlexFuseError):
    """Pulling the image onto the host failed."""


class FatalLifecycleError(FlexFuseError):
    """Creating or tearing down a helper container failed; never retried."""

    def __init__(self, container_name: str, message: str):
        self.container_name = container_name
        super().__init__(f"{container_name}: {message}")


class TaskExitTimeoutError(FatalLifecycleError):
    pass
