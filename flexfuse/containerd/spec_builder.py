# flexfuse/containerd/spec_builder.py
"""
Runtime spec assembly for FUSE helper containers.

A spec is an immutable RuntimeSpecConfig built by folding a sequence of option
setters over the default spec. Every setter takes a config and returns a new
one; later setters only add to or narrow what earlier ones produced.
"""
from dataclasses import dataclass
from typing import Callable, Iterable, List, Optional, Sequence

from flexfuse.containerd.cgroups import cgroup_path
from flexfuse.containerd.models import (
    ContainerRequest,
    DeviceRule,
    DeviceSpec,
    ImageRecord,
    MountSpec,
    RuntimeSpecConfig,
)
from flexfuse.logpkg.log_flex import LogFlex

logger = LogFlex()

SpecOpt = Callable[[RuntimeSpecConfig], RuntimeSpecConfig]

OCI_VERSION = "1.1.0"
DEFAULT_PATH_ENV = "PATH=/usr/local/sbin:/usr/local/bin:/usr/sbin:/usr/bin:/sbin:/bin"
DEFAULT_STOP_SIGNAL = "SIGTERM"

DEFAULT_CAPABILITIES = (
    "CAP_CHOWN", "CAP_DAC_OVERRIDE", "CAP_FSETID", "CAP_FOWNER", "CAP_MKNOD",
    "CAP_NET_RAW", "CAP_SETGID", "CAP_SETUID", "CAP_SETFCAP", "CAP_SETPCAP",
    "CAP_NET_BIND_SERVICE", "CAP_SYS_CHROOT", "CAP_KILL", "CAP_AUDIT_WRITE",
)

ALL_CAPABILITIES = (
    "CAP_CHOWN", "CAP_DAC_OVERRIDE", "CAP_DAC_READ_SEARCH", "CAP_FOWNER", "CAP_FSETID",
    "CAP_KILL", "CAP_SETGID", "CAP_SETUID", "CAP_SETPCAP", "CAP_LINUX_IMMUTABLE",
    "CAP_NET_BIND_SERVICE", "CAP_NET_BROADCAST", "CAP_NET_ADMIN", "CAP_NET_RAW",
    "CAP_IPC_LOCK", "CAP_IPC_OWNER", "CAP_SYS_MODULE", "CAP_SYS_RAWIO", "CAP_SYS_CHROOT",
    "CAP_SYS_PTRACE", "CAP_SYS_PACCT", "CAP_SYS_ADMIN", "CAP_SYS_BOOT", "CAP_SYS_NICE",
    "CAP_SYS_RESOURCE", "CAP_SYS_TIME", "CAP_SYS_TTY_CONFIG", "CAP_MKNOD", "CAP_LEASE",
    "CAP_AUDIT_WRITE", "CAP_AUDIT_CONTROL", "CAP_SETFCAP", "CAP_MAC_OVERRIDE",
    "CAP_MAC_ADMIN", "CAP_SYSLOG", "CAP_WAKE_ALARM", "CAP_BLOCK_SUSPEND",
    "CAP_AUDIT_READ", "CAP_PERFMON", "CAP_BPF", "CAP_CHECKPOINT_RESTORE",
)

DEFAULT_MOUNTS = (
    MountSpec(destination="/proc", type="proc", source="proc",
              options=("nosuid", "noexec", "nodev")),
    MountSpec(destination="/dev", type="tmpfs", source="tmpfs",
              options=("nosuid", "strictatime", "mode=755", "size=65536k")),
    MountSpec(destination="/dev/pts", type="devpts", source="devpts",
              options=("nosuid", "noexec", "newinstance", "ptmxmode=0666", "mode=0620", "gid=5")),
    MountSpec(destination="/dev/shm", type="tmpfs", source="shm",
              options=("nosuid", "noexec", "nodev", "mode=1777", "size=65536k")),
    MountSpec(destination="/dev/mqueue", type="mqueue", source="mqueue",
              options=("nosuid", "noexec", "nodev")),
    MountSpec(destination="/sys", type="sysfs", source="sysfs",
              options=("nosuid", "noexec", "nodev", "ro")),
    MountSpec(destination="/run", type="tmpfs", source="tmpfs",
              options=("nosuid", "strictatime", "mode=755", "size=65536k")),
)

DEFAULT_MASKED_PATHS = (
    "/proc/acpi", "/proc/asound", "/proc/kcore", "/proc/keys", "/proc/latency_stats",
    "/proc/timer_list", "/proc/timer_stats", "/proc/sched_debug", "/sys/firmware",
    "/proc/scsi",
)

DEFAULT_READONLY_PATHS = (
    "/proc/bus", "/proc/fs", "/proc/irq", "/proc/sys", "/proc/sysrq-trigger",
)

DEFAULT_NAMESPACES = ("pid", "ipc", "uts", "mount", "network")

DEFAULT_UNIX_DEVICES = (
    DeviceSpec(path="/dev/null", type="c", major=1, minor=3, file_mode=0o666, uid=0, gid=0),
    DeviceSpec(path="/dev/random", type="c", major=1, minor=8, file_mode=0o666, uid=0, gid=0),
    DeviceSpec(path="/dev/full", type="c", major=1, minor=7, file_mode=0o666, uid=0, gid=0),
    DeviceSpec(path="/dev/tty", type="c", major=5, minor=0, file_mode=0o666, uid=0, gid=0),
    DeviceSpec(path="/dev/zero", type="c", major=1, minor=5, file_mode=0o666, uid=0, gid=0),
    DeviceSpec(path="/dev/urandom", type="c", major=1, minor=9, file_mode=0o666, uid=0, gid=0),
)

# mknod of any char/block device, plus pts, ptmx and tun
DEFAULT_UNIX_DEVICE_RULES = (
    DeviceRule(allow=True, type="c", access="m"),
    DeviceRule(allow=True, type="b", access="m"),
    DeviceRule(allow=True, type="c", major=136, access="rwm"),
    DeviceRule(allow=True, type="c", major=5, minor=2, access="rwm"),
    DeviceRule(allow=True, type="c", major=10, minor=200, access="rwm"),
)


@dataclass(frozen=True)
class FuseLayout:
    """Host paths bind-mounted into every helper container."""
    config_dir: str = "/etc/v3io/fuse"
    log_dir: str = "/var/log/containers"
    mount_point: str = "/fuse_mount"
    device: str = "/dev/fuse"

    def mounts(self, target_path: str) -> List[MountSpec]:
        return [
            MountSpec(destination=self.config_dir, source=self.config_dir,
                      options=("rbind", "ro")),
            # shared propagation lets mounts made by the FUSE process reach the host
            MountSpec(destination=self.mount_point, source=target_path,
                      options=("rbind", "shared")),
            MountSpec(destination=self.log_dir, source=self.log_dir,
                      options=("rbind", "shared")),
        ]


def default_spec() -> RuntimeSpecConfig:
    return RuntimeSpecConfig(
        env=(DEFAULT_PATH_ENV,),
        cwd="/",
        capabilities=DEFAULT_CAPABILITIES,
        rlimits=(("RLIMIT_NOFILE", 1024, 1024),),
        mounts=DEFAULT_MOUNTS,
        masked_paths=DEFAULT_MASKED_PATHS,
        readonly_paths=DEFAULT_READONLY_PATHS,
        namespaces=DEFAULT_NAMESPACES,
        device_rules=(DeviceRule(allow=False, access="rwm"),),
        stop_signal=DEFAULT_STOP_SIGNAL,
    )


def apply_opts(config: RuntimeSpecConfig, opts: Iterable[SpecOpt]) -> RuntimeSpecConfig:
    for opt in opts:
        config = opt(config)
    return config


def _replace_or_append_env(defaults: Sequence[str], overrides: Sequence[str]) -> tuple:
    env = list(defaults)
    keys = [item.split("=", 1)[0] for item in env]
    for item in overrides:
        key = item.split("=", 1)[0]
        if key in keys:
            env[keys.index(key)] = item
        else:
            env.append(item)
            keys.append(key)
    return tuple(env)


def with_default_unix_devices(config: RuntimeSpecConfig) -> RuntimeSpecConfig:
    return config.model_copy(update={
        "devices": config.devices + DEFAULT_UNIX_DEVICES,
        "device_rules": config.device_rules + DEFAULT_UNIX_DEVICE_RULES,
    })


def with_mounts(mounts: Sequence[MountSpec]) -> SpecOpt:
    def _opt(config: RuntimeSpecConfig) -> RuntimeSpecConfig:
        return config.model_copy(update={"mounts": config.mounts + tuple(mounts)})
    return _opt


def with_image_config(image: ImageRecord) -> SpecOpt:
    """Entrypoint, command, env, working dir, user and stop signal from the image."""

    def _opt(config: RuntimeSpecConfig) -> RuntimeSpecConfig:
        image_config = image.config or {}
        update = {
            "env": _replace_or_append_env(config.env, image_config.get("Env") or []),
            "args": tuple(image_config.get("Entrypoint") or []) + tuple(image_config.get("Cmd") or []),
            "cwd": image_config.get("WorkingDir") or "/",
            "stop_signal": image.stop_signal or DEFAULT_STOP_SIGNAL,
        }
        user = image_config.get("User") or ""
        if user:
            uid, _, gid = user.partition(":")
            if uid.isdigit() and (not gid or gid.isdigit()):
                update["uid"] = int(uid)
                update["gid"] = int(gid) if gid else int(uid)
            else:
                logger.warning(f"Ignoring non-numeric image user {user!r} for {image.name}")
        return config.model_copy(update=update)

    return _opt


def with_process_args(args: Sequence[str]) -> SpecOpt:
    def _opt(config: RuntimeSpecConfig) -> RuntimeSpecConfig:
        return config.model_copy(update={"args": tuple(args)})
    return _opt


def with_privileged(config: RuntimeSpecConfig) -> RuntimeSpecConfig:
    # writable sysfs
    mounts = tuple(
        m.model_copy(update={"options": tuple(o for o in m.options if o != "ro")})
        if m.type == "sysfs" else m
        for m in config.mounts
    )
    return config.model_copy(update={
        "capabilities": ALL_CAPABILITIES,
        "masked_paths": (),
        "readonly_paths": (),
        "mounts": mounts,
    })


def with_all_devices_allowed(config: RuntimeSpecConfig) -> RuntimeSpecConfig:
    return config.model_copy(update={"device_rules": (DeviceRule(allow=True, access="rwm"),)})


def with_host_devices(devices: Sequence[DeviceSpec]) -> SpecOpt:
    def _opt(config: RuntimeSpecConfig) -> RuntimeSpecConfig:
        return config.model_copy(update={"devices": config.devices + tuple(devices)})
    return _opt


def with_host_namespace(ns_type: str) -> SpecOpt:
    """Share the host's namespace of ns_type by not creating a new one."""

    def _opt(config: RuntimeSpecConfig) -> RuntimeSpecConfig:
        return config.model_copy(update={
            "namespaces": tuple(ns for ns in config.namespaces if ns != ns_type)
        })
    return _opt


def with_host_hosts_file(config: RuntimeSpecConfig) -> RuntimeSpecConfig:
    return with_mounts([MountSpec(destination="/etc/hosts", source="/etc/hosts",
                                  options=("rbind", "ro"))])(config)


def with_host_resolvconf(config: RuntimeSpecConfig) -> RuntimeSpecConfig:
    return with_mounts([MountSpec(destination="/etc/resolv.conf", source="/etc/resolv.conf",
                                  options=("rbind", "ro"))])(config)


def with_devices(device: DeviceSpec, container_path: str = "", permissions: str = "rwm") -> SpecOpt:
    def _opt(config: RuntimeSpecConfig) -> RuntimeSpecConfig:
        node = device.model_copy(update={"path": container_path}) if container_path else device
        rule = DeviceRule(allow=True, type=device.type, major=device.major,
                          minor=device.minor, access=permissions)
        return config.model_copy(update={
            "devices": config.devices + (node,),
            "device_rules": config.device_rules + (rule,),
        })
    return _opt


def with_cgroups_path(path: str) -> SpecOpt:
    def _opt(config: RuntimeSpecConfig) -> RuntimeSpecConfig:
        return config.model_copy(update={"cgroups_path": path})
    return _opt


def with_rootfs_propagation(mode: str) -> SpecOpt:
    if mode not in ("shared", "slave", "private", "rshared", "rslave", "rprivate"):
        raise ValueError(f"unknown rootfs propagation mode: {mode}")

    def _opt(config: RuntimeSpecConfig) -> RuntimeSpecConfig:
        return config.model_copy(update={"rootfs_propagation": mode})
    return _opt


def build_runtime_spec(request: ContainerRequest,
                       image: ImageRecord,
                       cgroup_root: str,
                       fuse_device: DeviceSpec,
                       host_devices: Sequence[DeviceSpec] = (),
                       layout: Optional[FuseLayout] = None) -> RuntimeSpecConfig:
    layout = layout or FuseLayout()
    opts: List[SpecOpt] = [
        with_default_unix_devices,
        with_mounts(layout.mounts(request.target_path)),
        with_image_config(image),
        with_process_args(request.args),
        with_privileged,
        with_all_devices_allowed,
        with_host_devices(host_devices),
        with_host_namespace("network"),
        with_host_hosts_file,
        with_host_resolvconf,
        with_devices(fuse_device, permissions="rwm"),
        with_cgroups_path(cgroup_path(cgroup_root, request.name)),
        with_rootfs_propagation("shared"),
    ]
    return apply_opts(default_spec(), opts)


def to_oci_spec(config: RuntimeSpecConfig) -> dict:
    """Render the config as an OCI runtime-spec document."""
    caps = list(config.capabilities)
    linux = {
        "namespaces": [{"type": ns} for ns in config.namespaces],
        "devices": [d.to_oci() for d in config.devices],
        "resources": {"devices": [r.to_oci() for r in config.device_rules]},
        "maskedPaths": list(config.masked_paths),
        "readonlyPaths": list(config.readonly_paths),
    }
    if config.cgroups_path:
        linux["cgroupsPath"] = config.cgroups_path
    if config.rootfs_propagation:
        linux["rootfsPropagation"] = config.rootfs_propagation

    return {
        "ociVersion": OCI_VERSION,
        "process": {
            "terminal": False,
            "user": {"uid": config.uid, "gid": config.gid},
            "args": list(config.args),
            "env": list(config.env),
            "cwd": config.cwd,
            "capabilities": {
                "bounding": caps,
                "effective": caps,
                "permitted": caps,
            },
            "rlimits": [{"type": t, "hard": hard, "soft": soft} for t, hard, soft in config.rlimits],
            "noNewPrivileges": config.no_new_privileges,
        },
        "root": {"path": "rootfs"},
        "mounts": [m.to_oci() for m in config.mounts],
        "linux": linux,
    }
