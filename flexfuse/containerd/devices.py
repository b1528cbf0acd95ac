# flexfuse/containerd/devices.py
import os
import stat
from typing import List

from flexfuse.containerd.models import DeviceSpec
from flexfuse.logpkg.log_flex import LogFlex

logger = LogFlex()

# directories under /dev that never hold devices a privileged container should inherit
SKIPPED_DIRS = {"pts", "shm", "fd", "mqueue", ".lxc", ".lxd-mounts", ".udev"}
SKIPPED_DEVICES = {"/dev/console"}


class NotADeviceError(ValueError):
    pass


def device_from_path(path: str) -> DeviceSpec:
    """Describe the char or block device at path. Symlinks are not followed."""
    st = os.lstat(path)
    if stat.S_ISCHR(st.st_mode):
        dev_type = "c"
    elif stat.S_ISBLK(st.st_mode):
        dev_type = "b"
    else:
        raise NotADeviceError(f"{path} is not a device node")

    return DeviceSpec(
        path=path,
        type=dev_type,
        major=os.major(st.st_rdev),
        minor=os.minor(st.st_rdev),
        file_mode=stat.S_IMODE(st.st_mode),
        uid=st.st_uid,
        gid=st.st_gid,
    )


def host_devices(root: str = "/dev") -> List[DeviceSpec]:
    devices: List[DeviceSpec] = []
    try:
        entries = list(os.scandir(root))
    except OSError as err:
        logger.warning(f"Cannot list {root}: {err}")
        return devices

    for entry in sorted(entries, key=lambda e: e.name):
        if entry.is_dir(follow_symlinks=False):
            if entry.name in SKIPPED_DIRS:
                continue
            devices.extend(host_devices(entry.path))
            continue
        if entry.is_symlink() or entry.path in SKIPPED_DEVICES:
            continue
        try:
            devices.append(device_from_path(entry.path))
        except NotADeviceError:
            continue
        except FileNotFoundError:
            # node vanished between listing and stat
            continue
    return devices


class DeviceInventory:
    """Host device lookups used while building a privileged spec."""

    def __init__(self, root: str = "/dev"):
        self.root = root

    def host_devices(self) -> List[DeviceSpec]:
        return host_devices(self.root)

    def device(self, path: str) -> DeviceSpec:
        return device_from_path(path)
