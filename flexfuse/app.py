# flexfuse/app.py
from typing import Tuple

from flexfuse.ReadConfig import _ReadConfig
from flexfuse.containerd.containerd_interface import ContainerdClient, socket_path
from flexfuse.containerd.credentials import EcrCredentialHelper
from flexfuse.containerd.devices import DeviceInventory
from flexfuse.containerd.host import HostExecutor
from flexfuse.containerd.image_resolver import ImagePuller, ImageResolver
from flexfuse.containerd.lifecycle import LifecycleManager
from flexfuse.containerd.models import RetryPolicy
from flexfuse.containerd.spec_builder import FuseLayout
from flexfuse.logpkg.log_flex import LogFlex, log_to_file

logger = LogFlex()


@log_to_file(logger)
def build_manager(config: _ReadConfig) -> Tuple[LifecycleManager, ContainerdClient]:
    """Wire a LifecycleManager and the containerd client it owns from config."""
    containerd_config = config.containerd_config
    fuse_config = config.fuse_config
    registry_config = config.registry_config

    host = HostExecutor()
    client = ContainerdClient(
        socket=containerd_config["socket"],
        namespace=containerd_config["namespace"],
        source_namespace=containerd_config["source_namespace"],
        runtime=containerd_config["runtime"],
        host=host,
    )
    puller = ImagePuller(
        host,
        address=socket_path(containerd_config["socket"]),
        credentials=EcrCredentialHelper(region_name=registry_config["ecr_region"]),
        hosts_dir=registry_config["hosts_dir"],
    )
    resolver = ImageResolver(
        client,
        puller,
        retry_policy=RetryPolicy(**config.retry_config),
        snapshotter=containerd_config["snapshotter"],
    )
    layout = FuseLayout(
        config_dir=fuse_config["config_dir"],
        log_dir=fuse_config["log_dir"],
        device=fuse_config["device"],
    )
    manager = LifecycleManager(
        client,
        resolver,
        host,
        devices=DeviceInventory(),
        layout=layout,
        snapshotter=containerd_config["snapshotter"],
        kill_timeout=float(containerd_config["kill_timeout"]),
        multilog=bool(fuse_config["multilog"]),
    )
    logger.debug(f"Using containerd at {containerd_config['socket']}, "
                 f"namespace {client.namespace} (source {client.source_namespace})")
    return manager, client
