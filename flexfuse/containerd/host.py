# flexfuse/containerd/host.py
import os
import subprocess
from shutil import which
from typing import Optional, Sequence

from flexfuse.containerd.errors import CommandError
from flexfuse.logpkg.log_flex import LogFlex, log_to_file

logger = LogFlex()

CTR_FALLBACK_PATHS = ("/usr/local/bin/ctr", "/usr/bin/ctr")


class HostExecutor:
    """Runs commands on the host. Swapped for a double in tests."""

    def __init__(self, timeout: Optional[float] = None):
        self.timeout = timeout

    @log_to_file(logger)
    def run(self, args: Sequence[str], input: Optional[bytes] = None,
            combine_output: bool = True) -> bytes:
        """
        Run args and return its output (stdout+stderr unless combine_output is False).
        Raises CommandError on a non-zero exit or when the binary cannot be run.
        """
        stderr = subprocess.STDOUT if combine_output else subprocess.PIPE
        try:
            res = subprocess.run(list(args), input=input, stdout=subprocess.PIPE,
                                 stderr=stderr, timeout=self.timeout)
        except subprocess.TimeoutExpired as err:
            # str(err) would repeat the full command line
            raise CommandError(args, None, f"timed out after {self.timeout}s") from err
        except OSError as err:
            raise CommandError(args, None, str(err)) from err

        if res.returncode != 0:
            output = res.stdout if combine_output else res.stderr
            raise CommandError(args, res.returncode, (output or b"").decode(errors="replace"))
        return res.stdout

    def which(self, name: str) -> Optional[str]:
        return which(name)

    def exists(self, path: str) -> bool:
        return os.path.exists(path)


def locate_ctr(host: HostExecutor) -> str:
    """Path to the ctr binary: PATH first, then the usual install locations."""
    path = host.which("ctr")
    if path:
        return path
    for candidate in CTR_FALLBACK_PATHS:
        if host.exists(candidate):
            return candidate
    raise CommandError(["ctr"], None, "ctr not found in PATH or " + ", ".join(CTR_FALLBACK_PATHS))
