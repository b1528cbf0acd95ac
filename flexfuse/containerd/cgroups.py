# flexfuse/containerd/cgroups.py
import posixpath

from flexfuse.containerd.errors import CommandError
from flexfuse.containerd.host import HostExecutor
from flexfuse.logpkg.log_flex import LogFlex

logger = LogFlex()

CGROUP_MOUNT = "/sys/fs/cgroup/"
UNIFIED_FS_TYPE = "cgroup2fs"
UNIFIED_ROOT = "/kubepods.slice"
LEGACY_ROOT = "/kubepods"


def detect_cgroup_root(host: HostExecutor) -> str:
    """
    Cgroup parent for helper containers: the systemd-style slice on a unified
    (v2) hierarchy, the legacy path otherwise or when the check fails.
    """
    try:
        out = host.run(["stat", "-fc", "%T", CGROUP_MOUNT], combine_output=False)
    except CommandError as err:
        logger.warning(f"Failed probing cgroup filesystem type, assuming {LEGACY_ROOT}: {err}")
        return LEGACY_ROOT

    if out.decode(errors="replace").strip() == UNIFIED_FS_TYPE:
        return UNIFIED_ROOT
    return LEGACY_ROOT


def cgroup_path(root: str, container_id: str) -> str:
    return posixpath.join(root, container_id)
