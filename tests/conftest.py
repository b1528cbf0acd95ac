import os

import pytest

os.environ.setdefault("PROTOCOL_BUFFERS_PYTHON_IMPLEMENTATION", "python")

from flexfuse.containerd.image_resolver import ImageResolver  # noqa: E402
from flexfuse.containerd.lifecycle import LifecycleManager  # noqa: E402
from flexfuse.containerd.models import RetryPolicy  # noqa: E402
from flexfuse.containerd.spec_builder import FuseLayout  # noqa: E402
from flexfuse.logpkg.log_flex import LogFlex  # noqa: E402
from tests.fakes import FakeDevices, FakeHost, FakePuller, FakeRuntime  # noqa: E402

STAT_CGROUP = ("stat", "-fc", "%T", "/sys/fs/cgroup/")


@pytest.fixture
def runtime():
    return FakeRuntime()


@pytest.fixture
def host():
    return FakeHost(outputs={STAT_CGROUP: b"cgroup2fs\n"})


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def puller(runtime):
    return FakePuller(runtime)


@pytest.fixture
def resolver(runtime, puller, sleeps):
    return ImageResolver(runtime, puller, retry_policy=RetryPolicy(attempts=10, delay=3),
                         sleep=sleeps.append)


@pytest.fixture
def layout():
    return FuseLayout(config_dir="/etc/v3io/fuse", log_dir="/var/log/containers")


@pytest.fixture
def manager(runtime, resolver, host, layout, tmp_path):
    return LifecycleManager(runtime, resolver, host, devices=FakeDevices(), layout=layout,
                            kill_timeout=20.0, log_dir=str(tmp_path))


@pytest.fixture
def log_capture(caplog):
    """caplog wired to the flexfuse logger, which does not propagate."""
    logger = LogFlex().logger
    logger.addHandler(caplog.handler)
    yield caplog
    logger.removeHandler(caplog.handler)
