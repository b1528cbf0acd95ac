# flexfuse/containerd/image_resolver.py
"""
Makes sure the helper image is usable in the working namespace.

The image normally already sits in the kubelet's namespace, so it is copied
over (export, import, unpack) instead of pulled again. Only when that keeps
failing is the image pulled from its registry with ctr.
"""
import time
from typing import Callable, List, Optional

from flexfuse.containerd.credentials import EcrCredentialHelper
from flexfuse.containerd.errors import (
    CommandError,
    FlexFuseError,
    ImagePullError,
    NotFoundError,
    TransientResolutionError,
)
from flexfuse.containerd.host import HostExecutor, locate_ctr
from flexfuse.containerd.models import ImageRecord, RetryPolicy
from flexfuse.containerd.runtime import RuntimeService
from flexfuse.logpkg.log_flex import LogFlex, log_to_file
from flexfuse.retry import run_with_retry

logger = LogFlex()

DEFAULT_SNAPSHOTTER = "overlayfs"
DEFAULT_HOSTS_DIR = "/etc/containerd/certs.d/"


class ImagePuller:
    """Pulls an image into a namespace with the host's ctr binary."""

    def __init__(self, host: HostExecutor,
                 address: str,
                 credentials: Optional[EcrCredentialHelper] = None,
                 hosts_dir: str = DEFAULT_HOSTS_DIR):
        self.host = host
        self.address = address
        self.credentials = credentials
        self.hosts_dir = hosts_dir

    @log_to_file(logger)
    def pull(self, namespace: str, reference: str) -> None:
        try:
            ctr_path = locate_ctr(self.host)
        except CommandError as err:
            raise ImagePullError(f"Failed to pull image {reference}: ctr not found") from err

        cmd = [ctr_path, "-a", self.address, "-n", namespace, "images", "pull"]
        if self.credentials is not None and self.credentials.available():
            cmd += ["--user", self.credentials.user_argument()]
        else:
            cmd += ["--hosts-dir", self.hosts_dir]
        cmd.append(reference)

        try:
            self.host.run(cmd)
        except CommandError as err:
            # the command line may carry the registry secret
            logger.error(f"Failed pulling {reference}, exit code {err.returncode}: {err.output}")
            raise ImagePullError(f"Failed pulling {reference}: {err.output.strip()}") from err


class ImageResolver:

    def __init__(self, runtime: RuntimeService,
                 puller: ImagePuller,
                 retry_policy: Optional[RetryPolicy] = None,
                 snapshotter: str = DEFAULT_SNAPSHOTTER,
                 sleep: Callable[[float], None] = time.sleep):
        self.runtime = runtime
        self.puller = puller
        self.retry_policy = retry_policy or RetryPolicy()
        self.snapshotter = snapshotter
        self._sleep = sleep

    @log_to_file(logger)
    def ensure_image(self, reference: str) -> ImageRecord:
        """Return the image record for reference in the working namespace."""
        namespace = self.runtime.namespace
        try:
            present = self.runtime.get_image(namespace, reference)
        except NotFoundError:
            logger.debug(f"Image {reference} not in namespace {namespace}")
        else:
            return self._ensure_unpacked(present)

        try:
            imported = self.import_from_source(reference)
        except TransientResolutionError as err:
            logger.info(f"Failed to import {reference} from namespace "
                        f"{self.runtime.source_namespace}: {err}")
        else:
            name = imported[0].name if imported else reference
            logger.info(f"Imported {len(imported)} image(s) for {reference}, using {name}")
            try:
                return self.runtime.get_image(namespace, name)
            except NotFoundError:
                logger.info(f"Imported image {name} not visible in namespace {namespace}")

        logger.info(f"Image {reference} does not exist, pulling")
        self.puller.pull(namespace, reference)
        try:
            pulled = self.runtime.get_image(namespace, reference)
        except NotFoundError as err:
            raise ImagePullError(f"Pulled {reference} but it is not in namespace {namespace}") from err
        return self._ensure_unpacked(pulled)

    def _ensure_unpacked(self, image: ImageRecord) -> ImageRecord:
        # layer snapshots can be garbage collected while the image record stays
        namespace = self.runtime.namespace
        if not self.runtime.image_unpacked(namespace, image, self.snapshotter):
            logger.info(f"Image {image.name} has no unpacked layers in namespace {namespace}, unpacking")
            self.runtime.unpack_image(namespace, image, self.snapshotter)
        return image

    def import_from_source(self, reference: str) -> List[ImageRecord]:
        """
        Copy reference from the source namespace into the working namespace and
        unpack it, retrying the whole sequence under the retry policy.
        """
        return run_with_retry(self.retry_policy,
                              lambda attempt: self._import_once(reference, attempt),
                              sleep=self._sleep)

    def _import_once(self, reference: str, attempt: int) -> List[ImageRecord]:
        runtime = self.runtime
        step = "find image in source namespace"
        try:
            source_image = runtime.get_image(runtime.source_namespace, reference)

            step = "export image from source namespace"
            archive = runtime.export_image(runtime.source_namespace, source_image)

            step = "import image to working namespace"
            imported = runtime.import_images(runtime.namespace, archive)

            step = "find image in working namespace"
            image = runtime.get_image(runtime.namespace, reference)

            step = "unpack image in working namespace"
            runtime.unpack_image(runtime.namespace, image, self.snapshotter)
        except FlexFuseError as err:
            logger.debug(f"Failed to {step}, retrying (attempt {attempt}): {err}")
            raise TransientResolutionError(f"{step}: {err}") from err
        return imported
