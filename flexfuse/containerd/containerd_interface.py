# flexfuse/containerd/containerd_interface.py
"""
containerd implementation of the runtime capabilities, over its native gRPC API.

Each namespace gets its own intercepted channel, so one client serves both the
working namespace and the kubelet's namespace images are copied from. Image
export and import go through the host's ctr binary; unpacking applies layers
through the diff and snapshots services under a lease.

Requires the `containerd` protobuf bindings (containerd.services.*).
"""
import hashlib
import io
import json
import os
import tarfile
import uuid
from concurrent.futures import Future
from contextlib import contextmanager
from typing import Dict, List, Optional, Tuple

import grpc
from google.protobuf import any_pb2

from containerd.services.containers.v1 import containers_pb2, containers_pb2_grpc
from containerd.services.content.v1 import content_pb2, content_pb2_grpc
from containerd.services.diff.v1 import diff_pb2, diff_pb2_grpc
from containerd.services.images.v1 import images_pb2, images_pb2_grpc
from containerd.services.leases.v1 import leases_pb2, leases_pb2_grpc
from containerd.services.snapshots.v1 import snapshots_pb2, snapshots_pb2_grpc
from containerd.services.tasks.v1 import tasks_pb2, tasks_pb2_grpc
from containerd.types import descriptor_pb2

from flexfuse.containerd.errors import NotFoundError, RuntimeServiceError
from flexfuse.containerd.grpc_ns import _AddNamespaceInterceptor, lease_md
from flexfuse.containerd.host import HostExecutor, locate_ctr
from flexfuse.containerd.models import ExitStatus, ImageRecord, RuntimeSpecConfig, TaskStatus
from flexfuse.containerd.runtime import RuntimeContainer, RuntimeService, RuntimeTask
from flexfuse.containerd.spec_builder import to_oci_spec
from flexfuse.logpkg.log_flex import LogFlex, log_to_file

logger = LogFlex()

CONTAINERD_SOCKET = "/run/containerd/containerd.sock"
SOURCE_NAMESPACE = "k8s.io"
DEFAULT_RUNTIME = "io.containerd.runc.v2"
OCI_SPEC_TYPEURL = "types.containerd.io/opencontainers/runtime-spec/1/Spec"
STOP_SIGNAL_LABEL = "io.containerd.image.config.stop-signal"
# committed layer chains survive garbage collection once the unpack lease is gone
GC_ROOT_LABEL = "containerd.io/gc.root"
IMAGE_NAME_ANNOTATION = "io.containerd.image.name"
REF_NAME_ANNOTATION = "org.opencontainers.image.ref.name"

# ----- Docker media types -----
DOCKER_LIST = "application/vnd.docker.distribution.manifest.list.v2+json"
DOCKER_MAN = "application/vnd.docker.distribution.manifest.v2+json"

# containerd.types.Status
_TASK_STATUS = {
    0: TaskStatus.UNKNOWN,
    1: TaskStatus.CREATED,
    2: TaskStatus.RUNNING,
    3: TaskStatus.STOPPED,
    4: TaskStatus.PAUSED,
    5: TaskStatus.PAUSING,
}


def _normalize_unix_target(sock: str) -> str:
    """
    Accepts '/run/containerd/containerd.sock', 'unix:///run/...' or 'unix://run/...'
    and returns a valid gRPC target 'unix:///run/containerd/containerd.sock'.
    """
    if not sock:
        raise ValueError("socket path/target is empty")

    if sock.startswith("unix://"):
        after = sock[len("unix://"):]
        if after.startswith("/"):
            return sock
        return "unix:///" + after
    if not sock.startswith("/"):
        sock = "/" + sock
    return "unix://" + sock


def socket_path(sock: str) -> str:
    return "/" + _normalize_unix_target(sock)[len("unix:///"):]


def _detect_platform() -> Tuple[str, str]:
    m = os.uname().machine.lower()
    arch_map = {
        "x86_64": "amd64", "amd64": "amd64",
        "aarch64": "arm64", "arm64": "arm64",
        "armv7l": "arm", "armv6l": "arm",
        "ppc64le": "ppc64le", "s390x": "s390x",
    }
    return ("linux", arch_map.get(m, m or "amd64"))


PLATFORM_OS, PLATFORM_ARCH = (
    os.environ.get("FORCE_PLATFORM_OS", None),
    os.environ.get("FORCE_PLATFORM_ARCH", None),
)
if not PLATFORM_OS or not PLATFORM_ARCH:
    PLATFORM_OS, PLATFORM_ARCH = _detect_platform()


def _is_index(mt: str) -> bool:
    return mt.endswith("image.index.v1+json") or mt == DOCKER_LIST


def _is_manifest(mt: str) -> bool:
    return mt.endswith("image.manifest.v1+json") or mt == DOCKER_MAN


def _compute_chain_id(diff_ids: List[str]) -> str:
    if not diff_ids:
        raise ValueError("chainID needs at least one diff_id")
    chain = diff_ids[0]
    for d in diff_ids[1:]:
        h = hashlib.sha256()
        h.update(chain.encode("utf-8"))
        h.update(b" ")
        h.update(d.encode("utf-8"))
        chain = f"sha256:{h.hexdigest()}"
    return chain


def _archive_image_names(archive: bytes) -> List[str]:
    """Image names recorded in an OCI archive's index.json."""
    with tarfile.open(fileobj=io.BytesIO(archive)) as tar:
        try:
            member = tar.extractfile("index.json")
        except KeyError:
            return []
        index = json.load(member) if member else {}

    names = []
    for manifest in index.get("manifests") or []:
        annotations = manifest.get("annotations") or {}
        name = annotations.get(IMAGE_NAME_ANNOTATION) or annotations.get(REF_NAME_ANNOTATION)
        if name and name not in names:
            names.append(name)
    return names


@contextmanager
def _rpc(action: str):
    try:
        yield
    except grpc.RpcError as e:
        code = e.code()
        message = f"{action}: {code.name}: {e.details()}"
        if code == grpc.StatusCode.NOT_FOUND:
            raise NotFoundError(message, code=code.name) from e
        raise RuntimeServiceError(message, code=code.name) from e


def _exit_status(resp) -> ExitStatus:
    exited_at = resp.exited_at.ToDatetime() if resp.HasField("exited_at") else None
    return ExitStatus(code=resp.exit_status, exited_at=exited_at)


class _NamespaceStubs:
    """Service stubs on a channel scoped to one namespace."""

    def __init__(self, channel: grpc.Channel, namespace: str):
        self.namespace = namespace
        self._ich = grpc.intercept_channel(channel, _AddNamespaceInterceptor(namespace))

        self.images = images_pb2_grpc.ImagesStub(self._ich)
        self.content = content_pb2_grpc.ContentStub(self._ich)
        self.snapshots = snapshots_pb2_grpc.SnapshotsStub(self._ich)
        self.containers = containers_pb2_grpc.ContainersStub(self._ich)
        self.tasks = tasks_pb2_grpc.TasksStub(self._ich)
        self.diff = diff_pb2_grpc.DiffStub(self._ich)
        self.leases = leases_pb2_grpc.LeasesStub(self._ich)


class ContainerdClient(RuntimeService):

    @log_to_file(logger)
    def __init__(self,
                 socket: str = CONTAINERD_SOCKET,
                 namespace: str = "default",
                 source_namespace: str = SOURCE_NAMESPACE,
                 runtime: str = DEFAULT_RUNTIME,
                 host: Optional[HostExecutor] = None):
        self.socket = socket
        self.namespace = namespace
        self.source_namespace = source_namespace
        self.runtime = runtime
        self.host = host or HostExecutor()
        self.channel = grpc.insecure_channel(_normalize_unix_target(socket))
        self._stubs: Dict[str, _NamespaceStubs] = {}

    def stubs(self, namespace: str) -> _NamespaceStubs:
        if namespace not in self._stubs:
            self._stubs[namespace] = _NamespaceStubs(self.channel, namespace)
        return self._stubs[namespace]

    def close(self) -> None:
        self.channel.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False

    # ---------- Images ----------
    def _read_blob_json(self, stubs: _NamespaceStubs, digest: str) -> dict:
        with _rpc(f"read blob {digest}"):
            stream = stubs.content.Read(content_pb2.ReadContentRequest(digest=digest))
            data = b"".join(part.data for part in stream if part.data)
        return json.loads(data.decode("utf-8"))

    def _resolve_manifest(self, stubs: _NamespaceStubs, target) -> dict:
        """Manifest JSON for an image target, picking this platform out of an index."""
        if _is_manifest(target.media_type):
            return self._read_blob_json(stubs, target.digest)
        if not _is_index(target.media_type):
            raise RuntimeServiceError(f"Unsupported target media type: {target.media_type}")

        idx = self._read_blob_json(stubs, target.digest)
        manifests = idx.get("manifests") or []
        if not manifests:
            raise RuntimeServiceError(f"Image index {target.digest} lists no manifests")
        chosen = manifests[0]
        for m in manifests:
            plat = m.get("platform", {}) or {}
            if plat.get("os") == PLATFORM_OS and plat.get("architecture") == PLATFORM_ARCH:
                chosen = m
                break
        return self._read_blob_json(stubs, chosen["digest"])

    @log_to_file(logger)
    def get_image(self, namespace: str, name: str) -> ImageRecord:
        stubs = self.stubs(namespace)
        with _rpc(f"get image {name} in {namespace}"):
            img = stubs.images.Get(images_pb2.GetImageRequest(name=name)).image

        manifest = self._resolve_manifest(stubs, img.target)
        cfg = self._read_blob_json(stubs, manifest["config"]["digest"])
        return ImageRecord(
            name=img.name,
            digest=img.target.digest,
            media_type=img.target.media_type,
            config=cfg.get("config") or {},
            diff_ids=list((cfg.get("rootfs") or {}).get("diff_ids", [])),
        )

    def _ctr(self, namespace: str, *args: str) -> List[str]:
        return [locate_ctr(self.host), "-a", socket_path(self.socket), "-n", namespace, *args]

    @log_to_file(logger)
    def export_image(self, namespace: str, image: ImageRecord) -> bytes:
        return self.host.run(self._ctr(namespace, "images", "export", "-", image.name),
                             combine_output=False)

    @log_to_file(logger)
    def import_images(self, namespace: str, archive: bytes) -> List[ImageRecord]:
        self.host.run(self._ctr(namespace, "images", "import", "--no-unpack", "-"), input=archive)
        return [self.get_image(namespace, name) for name in _archive_image_names(archive)]

    @log_to_file(logger)
    def unpack_image(self, namespace: str, image: ImageRecord, snapshotter: str) -> None:
        stubs = self.stubs(namespace)
        with _rpc(f"get image {image.name} in {namespace}"):
            img = stubs.images.Get(images_pb2.GetImageRequest(name=image.name)).image
        manifest = self._resolve_manifest(stubs, img.target)

        layers = manifest.get("layers", [])
        if len(image.diff_ids) != len(layers):
            raise RuntimeServiceError("layers vs diff_ids length mismatch; cannot compute chainIDs.")

        lease_id = self._new_lease(stubs, "unpack")
        try:
            self._apply_layers(stubs, layers, image.diff_ids, snapshotter, lease_md(lease_id))
        finally:
            self._delete_lease(stubs, lease_id)

    def image_unpacked(self, namespace: str, image: ImageRecord, snapshotter: str) -> bool:
        if not image.diff_ids:
            return False
        return self._snap_exists(self.stubs(namespace), snapshotter, _compute_chain_id(image.diff_ids))

    def _apply_layers(self, stubs, layers, diff_ids, snapshotter, md) -> None:
        parent_chain = ""
        for i, layer in enumerate(layers):
            cur_chain = _compute_chain_id(diff_ids[:i + 1])

            if self._snap_exists(stubs, snapshotter, cur_chain):
                parent_chain = cur_chain
                continue

            prep_key = f"extract-{uuid.uuid4().hex[:8]}-{i}"
            with _rpc(f"prepare snapshot for layer {i}"):
                prep = stubs.snapshots.Prepare(
                    snapshots_pb2.PrepareSnapshotRequest(
                        snapshotter=snapshotter, key=prep_key, parent=parent_chain),
                    metadata=md)
            try:
                desc = descriptor_pb2.Descriptor(
                    media_type=layer.get("mediaType", ""),
                    digest=layer["digest"],
                    size=layer.get("size", 0))
                with _rpc(f"apply layer {layer['digest']}"):
                    stubs.diff.Apply(diff_pb2.ApplyRequest(diff=desc, mounts=prep.mounts), metadata=md)
                with _rpc(f"commit layer {i}"):
                    commit = snapshots_pb2.CommitSnapshotRequest(
                        snapshotter=snapshotter, name=cur_chain, key=prep_key)
                    commit.labels.add(key=GC_ROOT_LABEL, value="true")
                    stubs.snapshots.Commit(commit, metadata=md)
            except RuntimeServiceError as err:
                self._snap_remove_quiet(stubs, snapshotter, prep_key)
                # another unpack committed the same chain first
                if err.code != grpc.StatusCode.ALREADY_EXISTS.name:
                    raise

            parent_chain = cur_chain

    def _snap_exists(self, stubs, snapshotter: str, key: str) -> bool:
        try:
            with _rpc(f"stat snapshot {key}"):
                stubs.snapshots.Stat(snapshots_pb2.StatSnapshotRequest(snapshotter=snapshotter, key=key))
        except NotFoundError:
            return False
        return True

    def _snap_remove_quiet(self, stubs, snapshotter: str, key: str) -> None:
        try:
            with _rpc(f"remove snapshot {key}"):
                stubs.snapshots.Remove(snapshots_pb2.RemoveSnapshotRequest(snapshotter=snapshotter, key=key))
        except RuntimeServiceError as err:
            logger.warning(f"Failed removing unpack snapshot {key}: {err}")

    def _new_lease(self, stubs, id_hint: str) -> str:
        lid = f"{id_hint}-{uuid.uuid4().hex[:8]}"
        req = leases_pb2.CreateRequest(id=lid)
        req.labels.add(key=GC_ROOT_LABEL, value="true")
        with _rpc("create lease"):
            resp = stubs.leases.Create(req)
        return resp.lease.id

    def _delete_lease(self, stubs, lease_id: str) -> None:
        try:
            with _rpc(f"delete lease {lease_id}"):
                stubs.leases.Delete(leases_pb2.DeleteRequest(id=lease_id))
        except RuntimeServiceError as err:
            logger.warning(f"Failed deleting lease {lease_id}: {err}")

    # ---------- Containers ----------
    @log_to_file(logger)
    def new_container(self, namespace: str, name: str, image: ImageRecord,
                      snapshotter: str, spec: RuntimeSpecConfig) -> "ContainerdContainer":
        if not image.diff_ids:
            raise RuntimeServiceError(f"image {image.name} has no layers")
        stubs = self.stubs(namespace)
        with _rpc(f"prepare snapshot {name}"):
            stubs.snapshots.Prepare(snapshots_pb2.PrepareSnapshotRequest(
                snapshotter=snapshotter, key=name, parent=_compute_chain_id(image.diff_ids)))

        spec_any = any_pb2.Any()
        spec_any.type_url = OCI_SPEC_TYPEURL
        spec_any.value = json.dumps(to_oci_spec(spec)).encode("utf-8")

        container = containers_pb2.Container(
            id=name,
            image=image.name,
            spec=spec_any,
            runtime=containers_pb2.Container.Runtime(name=self.runtime),
            snapshotter=snapshotter,
            snapshot_key=name,
        )
        container.labels.add(key=STOP_SIGNAL_LABEL, value=spec.stop_signal)
        with _rpc(f"create container {name}"):
            stubs.containers.Create(containers_pb2.CreateContainerRequest(container=container))
        return ContainerdContainer(stubs, name, snapshotter, name)

    @log_to_file(logger)
    def load_container(self, namespace: str, name: str) -> "ContainerdContainer":
        stubs = self.stubs(namespace)
        with _rpc(f"load container {name}"):
            c = stubs.containers.Get(containers_pb2.GetContainerRequest(id=name)).container
        return ContainerdContainer(stubs, c.id, c.snapshotter, c.snapshot_key)

    def remove_snapshot(self, namespace: str, snapshotter: str, key: str) -> None:
        with _rpc(f"remove snapshot {key}"):
            self.stubs(namespace).snapshots.Remove(
                snapshots_pb2.RemoveSnapshotRequest(snapshotter=snapshotter, key=key))


class ContainerdContainer(RuntimeContainer):

    def __init__(self, stubs: _NamespaceStubs, cid: str, snapshotter: str, snapshot_key: str):
        self._stubs = stubs
        self._id = cid
        self.snapshotter = snapshotter
        self.snapshot_key = snapshot_key

    @property
    def id(self) -> str:
        return self._id

    def new_task(self, log_path: str) -> "ContainerdTask":
        with _rpc(f"get mounts of {self.snapshot_key}"):
            mounts = self._stubs.snapshots.Mounts(
                snapshots_pb2.MountsRequest(snapshotter=self.snapshotter, key=self.snapshot_key)).mounts

        log_uri = f"file://{log_path}"
        req = tasks_pb2.CreateTaskRequest(container_id=self._id, stdout=log_uri, stderr=log_uri)
        req.rootfs.extend(mounts)
        with _rpc(f"create task for {self._id}"):
            resp = self._stubs.tasks.Create(req)
        return ContainerdTask(self._stubs, self._id, resp.pid)

    def task(self) -> "ContainerdTask":
        with _rpc(f"get task of {self._id}"):
            resp = self._stubs.tasks.Get(tasks_pb2.GetRequest(container_id=self._id))
        return ContainerdTask(self._stubs, self._id, resp.process.pid)

    def delete(self) -> None:
        with _rpc(f"delete container {self._id}"):
            self._stubs.containers.Delete(containers_pb2.DeleteContainerRequest(id=self._id))


class ContainerdTask(RuntimeTask):

    def __init__(self, stubs: _NamespaceStubs, container_id: str, pid: int = 0):
        self._stubs = stubs
        self._container_id = container_id
        self.pid = pid

    @property
    def id(self) -> str:
        return self._container_id

    def start(self) -> None:
        with _rpc(f"start task {self._container_id}"):
            resp = self._stubs.tasks.Start(tasks_pb2.StartRequest(container_id=self._container_id))
        self.pid = resp.pid

    def kill(self, signal: int, all_processes: bool = True) -> None:
        with _rpc(f"kill task {self._container_id}"):
            self._stubs.tasks.Kill(tasks_pb2.KillRequest(
                container_id=self._container_id, signal=int(signal), all=all_processes))

    def wait(self) -> "Future[ExitStatus]":
        exit_future: Future = Future()
        call = self._stubs.tasks.Wait.future(tasks_pb2.WaitRequest(container_id=self._container_id))

        def _done(finished):
            try:
                with _rpc(f"wait task {self._container_id}"):
                    resp = finished.result()
            except RuntimeServiceError as err:
                exit_future.set_exception(err)
            else:
                exit_future.set_result(_exit_status(resp))

        call.add_done_callback(_done)
        return exit_future

    def status(self) -> TaskStatus:
        with _rpc(f"get task status {self._container_id}"):
            resp = self._stubs.tasks.Get(tasks_pb2.GetRequest(container_id=self._container_id))
        return _TASK_STATUS.get(resp.process.status, TaskStatus.UNKNOWN)

    def delete(self) -> ExitStatus:
        with _rpc(f"delete task {self._container_id}"):
            resp = self._stubs.tasks.Delete(tasks_pb2.DeleteTaskRequest(container_id=self._container_id))
        return _exit_status(resp)
