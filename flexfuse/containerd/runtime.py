# flexfuse/containerd/runtime.py
"""
Capabilities the lifecycle code needs from the container-runtime service.

ContainerdClient implements these over containerd's gRPC API; tests substitute
in-memory doubles. Missing objects are reported by raising NotFoundError, any
other failure by raising RuntimeServiceError.
"""
from abc import ABC, abstractmethod
from concurrent.futures import Future
from typing import List

from flexfuse.containerd.models import ExitStatus, ImageRecord, RuntimeSpecConfig, TaskStatus


class RuntimeTask(ABC):

    @property
    @abstractmethod
    def id(self) -> str:
        ...

    @abstractmethod
    def start(self) -> None:
        ...

    @abstractmethod
    def kill(self, signal: int, all_processes: bool = True) -> None:
        ...

    @abstractmethod
    def wait(self) -> "Future[ExitStatus]":
        """Return a future resolved with the exit status once the task exits."""

    @abstractmethod
    def status(self) -> TaskStatus:
        ...

    @abstractmethod
    def delete(self) -> ExitStatus:
        ...


class RuntimeContainer(ABC):

    @property
    @abstractmethod
    def id(self) -> str:
        ...

    @abstractmethod
    def new_task(self, log_path: str) -> RuntimeTask:
        """Create (not start) the container's task, sending its output to log_path."""

    @abstractmethod
    def task(self) -> RuntimeTask:
        ...

    @abstractmethod
    def delete(self) -> None:
        ...


class RuntimeService(ABC):
    # working namespace and the privileged namespace images are imported from
    namespace: str
    source_namespace: str

    @abstractmethod
    def get_image(self, namespace: str, name: str) -> ImageRecord:
        ...

    @abstractmethod
    def export_image(self, namespace: str, image: ImageRecord) -> bytes:
        ...

    @abstractmethod
    def import_images(self, namespace: str, archive: bytes) -> List[ImageRecord]:
        ...

    @abstractmethod
    def unpack_image(self, namespace: str, image: ImageRecord, snapshotter: str) -> None:
        ...

    @abstractmethod
    def image_unpacked(self, namespace: str, image: ImageRecord, snapshotter: str) -> bool:
        """True when the snapshot for the image's full layer chain exists."""

    @abstractmethod
    def new_container(self, namespace: str, name: str, image: ImageRecord,
                      snapshotter: str, spec: RuntimeSpecConfig) -> RuntimeContainer:
        """Create a container whose rootfs is a new snapshot keyed by name."""

    @abstractmethod
    def load_container(self, namespace: str, name: str) -> RuntimeContainer:
        ...

    @abstractmethod
    def remove_snapshot(self, namespace: str, snapshotter: str, key: str) -> None:
        ...
