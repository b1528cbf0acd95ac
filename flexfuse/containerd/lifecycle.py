# flexfuse/containerd/lifecycle.py
import concurrent.futures
import signal
import tempfile
from typing import List, Optional, Sequence

from flexfuse.containerd.cgroups import detect_cgroup_root
from flexfuse.containerd.devices import DeviceInventory
from flexfuse.containerd.errors import FatalLifecycleError, FlexFuseError, NotFoundError, TaskExitTimeoutError
from flexfuse.containerd.host import HostExecutor
from flexfuse.containerd.image_resolver import DEFAULT_SNAPSHOTTER, ImageResolver
from flexfuse.containerd.models import ContainerRequest, TaskStatus
from flexfuse.containerd.runtime import RuntimeService
from flexfuse.containerd.spec_builder import FuseLayout, build_runtime_spec
from flexfuse.logpkg.log_flex import LogFlex, log_to_file

logger = LogFlex()

DEFAULT_KILL_TIMEOUT = 20.0

# Pipes the FUSE process output through multilog into the shared log dir. The file
# name takes the pod's container id from /proc/self/cgroup (the last path element
# when longer than 32 chars, "random" otherwise) plus a random suffix.
MULTILOG_PIPE = (
    " 2>&1 | multilog s16777215 n20 /var/log/containers/flex-fuse-`awk "
    "'match($0, /\\/([^/]+)$/) {if (RLENGTH>32) {printf \"%s.%08x\",substr($0, RSTART+1, RLENGTH-1), "
    "int(rand()*1e8) ;exit}} BEGIN {srand()} END {if (RLENGTH <= 32) { printf \"random.%08x\", "
    "int(rand()*1e8);}}' /proc/self/cgroup`"
)


class LifecycleManager:
    """Creates and tears down FUSE helper containers in the working namespace."""

    def __init__(self, runtime: RuntimeService,
                 resolver: ImageResolver,
                 host: HostExecutor,
                 devices: Optional[DeviceInventory] = None,
                 layout: Optional[FuseLayout] = None,
                 snapshotter: str = DEFAULT_SNAPSHOTTER,
                 kill_timeout: float = DEFAULT_KILL_TIMEOUT,
                 multilog: bool = False,
                 log_dir: Optional[str] = None):
        self.runtime = runtime
        self.resolver = resolver
        self.host = host
        self.devices = devices or DeviceInventory()
        self.layout = layout or FuseLayout()
        self.snapshotter = snapshotter
        self.kill_timeout = kill_timeout
        self.multilog = multilog
        # None means the platform temp dir
        self.log_dir = log_dir

    @log_to_file(logger)
    def create_container(self, image: str, name: str, target_path: str, args: Sequence[str]) -> None:
        """
        Create and start the helper container `name` mounting into target_path.

        Returns once the task start is acknowledged; FUSE readiness is up to the
        caller. Nothing created along the way is rolled back on failure.
        """
        try:
            request = ContainerRequest(image=image, name=name, target_path=target_path,
                                       args=self._process_args(args))
        except ValueError as err:
            raise FatalLifecycleError(name, f"Invalid request: {err}") from err
        namespace = self.runtime.namespace

        try:
            log_file_path = self._log_file_path(name, target_path)
        except OSError as err:
            raise FatalLifecycleError(name, f"Failed creating log file: {err}") from err
        logger.debug(f"Creating log file for {name} (target {target_path}): {log_file_path}")

        try:
            image_record = self.resolver.ensure_image(request.image)
        except FlexFuseError as err:
            raise FatalLifecycleError(name, f"Failed resolving image {image}: {err}") from err

        # a snapshot left by an earlier failed attempt would make creation fail
        try:
            self.runtime.remove_snapshot(namespace, self.snapshotter, name)
        except FlexFuseError as err:
            logger.debug(f"No stale snapshot removed for {name}: {err}")

        try:
            spec = build_runtime_spec(
                request,
                image_record,
                cgroup_root=detect_cgroup_root(self.host),
                fuse_device=self.devices.device(self.layout.device),
                host_devices=self.devices.host_devices(),
                layout=self.layout,
            )
        except (OSError, ValueError) as err:
            raise FatalLifecycleError(name, f"Failed building runtime spec: {err}") from err

        logger.debug(f"Creating container {name} from {image_record.name} with args {list(spec.args)}")
        try:
            container = self.runtime.new_container(namespace, name, image_record, self.snapshotter, spec)
        except FlexFuseError as err:
            raise FatalLifecycleError(name, f"Failed creating container: {err}") from err

        try:
            task = container.new_task(log_file_path)
        except FlexFuseError as err:
            raise FatalLifecycleError(name, f"Failed creating task: {err}") from err

        try:
            task.start()
        except FlexFuseError as err:
            raise FatalLifecycleError(name, f"Failed starting task: {err}") from err

        logger.info(f"Started container {name} for {target_path}")

    @log_to_file(logger)
    def remove_container(self, name: str) -> None:
        """
        Stop and delete the container `name` and its task.

        Raises NotFoundError when the container does not exist so callers can
        decide whether that counts as success.
        """
        logger.debug(f"Removing container {name}")
        try:
            container = self.runtime.load_container(self.runtime.namespace, name)
        except NotFoundError:
            raise
        except FlexFuseError as err:
            raise FatalLifecycleError(name, f"Failed loading container: {err}") from err

        try:
            task = container.task()
        except NotFoundError:
            logger.debug(f"No task found for container {name}, removing container")
            self._delete_container(container, name)
            return
        except FlexFuseError as err:
            raise FatalLifecycleError(name, f"Failed getting task: {err}") from err

        logger.debug(f"Got task {task.id} for container {name}")

        try:
            status = task.status()
        except FlexFuseError as err:
            raise FatalLifecycleError(name, f"Failed getting task status: {err}") from err

        logger.debug(f"Task status for container {name}: {status.value}")

        if status not in (TaskStatus.STOPPED, TaskStatus.CREATED):
            self._stop_task(task, name)

        try:
            task.delete()
        except FlexFuseError as err:
            raise FatalLifecycleError(name, f"Failed to delete task: {err}") from err

        logger.debug(f"Task deleted, deleting container {name}")
        self._delete_container(container, name)

    def _stop_task(self, task, name: str) -> None:
        logger.debug(f"Killing task of {name}")
        try:
            task.kill(signal.SIGTERM, all_processes=True)
        except FlexFuseError as err:
            raise FatalLifecycleError(name, f"Failed killing task: {err}") from err

        logger.debug(f"Waiting for task of {name} to exit")
        try:
            exit_future = task.wait()
        except FlexFuseError as err:
            raise FatalLifecycleError(name, f"Failed waiting for task: {err}") from err

        try:
            exit_status = exit_future.result(timeout=self.kill_timeout)
        except concurrent.futures.TimeoutError as err:
            raise TaskExitTimeoutError(
                name, f"Timed out after {self.kill_timeout}s waiting for task to exit") from err
        except FlexFuseError as err:
            raise FatalLifecycleError(name, f"Failed waiting for task: {err}") from err

        logger.debug(f"Task of {name} exited with status {exit_status.code}")

    @staticmethod
    def _delete_container(container, name: str) -> None:
        try:
            container.delete()
        except FlexFuseError as err:
            raise FatalLifecycleError(name, f"Failed to delete container: {err}") from err

    def _process_args(self, args: Sequence[str]) -> List[str]:
        args = list(args)
        if self.multilog:
            args.append(MULTILOG_PIPE)
        return args

    def _log_file_path(self, name: str, target_path: str) -> str:
        sanitized_target_path = target_path.replace("/", "-")
        with tempfile.NamedTemporaryFile(prefix=f"{name}-{sanitized_target_path}-",
                                         dir=self.log_dir, delete=False) as log_file:
            return log_file.name
