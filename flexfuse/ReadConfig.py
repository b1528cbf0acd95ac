import copy
import json
import logging
import os

from flexfuse.singleton import Singleton

_log = logging.getLogger(__name__)

DEFAULT_CONFIG = {
    "containerd": {
        "socket": "/run/containerd/containerd.sock",
        "namespace": "flexfuse",
        "source_namespace": "k8s.io",
        "snapshotter": "overlayfs",
        "runtime": "io.containerd.runc.v2",
        "kill_timeout": 20,
    },
    "fuse": {
        "config_dir": "/etc/v3io/fuse",
        "log_dir": "/var/log/containers",
        "device": "/dev/fuse",
        "multilog": False,
    },
    "registry": {
        "ecr_region": "us-east-2",
        "hosts_dir": "/etc/containerd/certs.d/",
    },
    "retry": {
        "attempts": 10,
        "delay": 3,
    },
    "logging": {
        "name": "flexfuse",
        "level": "INFO",
        "file": None,
        "max_bytes": 10 * 1024 * 1024,
        "backup_count": 5,
    },
}

# environment variable -> (section, key)
ENV_OVERRIDES = {
    "CONTAINERD_SOCKET": ("containerd", "socket"),
    "CONTAINERD_NAMESPACE": ("containerd", "namespace"),
    "CONTAINERD_SNAPSHOTTER": ("containerd", "snapshotter"),
    "FLEXFUSE_LOG_LEVEL": ("logging", "level"),
}


class _ReadConfig:

    def __init__(self, base_dir=None) -> None:
        if base_dir is None:
            base_dir = os.environ.get("FLEXFUSE_CONFIG_DIR", ".")
        self.base_dir = os.path.join(base_dir, 'config')
        self.file_path = os.path.join(self.base_dir, 'config.json')
        self._config_data = copy.deepcopy(DEFAULT_CONFIG)
        self.load_config()
        self._apply_env()

    @property
    def set_config_dir(self) -> str:
        return self.base_dir

    def load_config(self) -> None:
        if not os.path.exists(self.file_path):
            _log.debug(f"No config file at {self.file_path}, using defaults")
            return
        with open(self.file_path, 'r') as file:
            loaded = json.load(file)
        for section, values in loaded.items():
            if isinstance(values, dict):
                self._config_data.setdefault(section, {}).update(values)
            else:
                self._config_data[section] = values

    def _apply_env(self) -> None:
        for env_name, (section, key) in ENV_OVERRIDES.items():
            value = os.environ.get(env_name)
            if value:
                self._config_data[section][key] = value

    @property
    def containerd_config(self) -> dict:
        return self._config_data['containerd']

    @property
    def fuse_config(self) -> dict:
        return self._config_data['fuse']

    @property
    def registry_config(self) -> dict:
        return self._config_data['registry']

    @property
    def retry_config(self) -> dict:
        return self._config_data['retry']

    @property
    def logging_config(self) -> dict:
        return self._config_data['logging']


class ReadConfig(_ReadConfig, metaclass=Singleton):
    pass
