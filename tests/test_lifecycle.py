"""Tests for LifecycleManager create and remove."""
import os
import signal

import pytest

from flexfuse.containerd.errors import (
    FatalLifecycleError,
    ImagePullError,
    NotFoundError,
    RuntimeServiceError,
    TaskExitTimeoutError,
)
from flexfuse.containerd.lifecycle import MULTILOG_PIPE, LifecycleManager
from flexfuse.containerd.models import TaskStatus
from tests.fakes import FakeDevices, FakeTask, WORKING_NS, SOURCE_NS, make_image

TASK_OPS = {"task.status", "task.kill", "task.wait", "task.delete", "task.start", "task.create"}


class TestCreateContainer:

    def test_create_with_local_image(self, manager, runtime):
        """Image already in the working namespace: spec, snapshot, started task."""
        runtime.add_image(WORKING_NS, make_image("img:v1", Entrypoint=["/bin/fuse"]))

        manager.create_container("img:v1", "fuse-a", "/mnt/a", ["run"])

        container = runtime.containers["fuse-a"]
        assert (WORKING_NS, "fuse-a") in runtime.snapshots
        assert container.task_obj.status() == TaskStatus.RUNNING

        spec = container.spec
        assert spec.args == ("run",)
        binds = {m.destination: m for m in spec.mounts if m.type == "bind"}
        assert binds["/etc/v3io/fuse"].options == ("rbind", "ro")
        assert binds["/fuse_mount"].source == "/mnt/a"
        assert binds["/fuse_mount"].options == ("rbind", "shared")
        assert binds["/var/log/containers"].options == ("rbind", "shared")
        assert spec.cgroups_path == "/kubepods.slice/fuse-a"
        assert spec.rootfs_propagation == "shared"
        assert "image.export" not in runtime.call_names()

    def test_stale_snapshot_removed_before_container_create(self, manager, runtime):
        runtime.add_image(WORKING_NS, make_image())
        manager.create_container("img:v1", "fuse-a", "/mnt/a", ["run"])

        names = runtime.call_names()
        assert names.index("snapshot.remove") < names.index("container.create")
        assert names[-2:] == ["task.create", "task.start"]

    def test_create_imports_from_source_namespace(self, manager, runtime, sleeps):
        """Image only in the privileged namespace: copied over on the first attempt."""
        runtime.add_image(SOURCE_NS, make_image("img:v1"))

        manager.create_container("img:v1", "fuse-a", "/mnt/a", ["run"])

        assert runtime.call_names().count("image.export") == 1
        assert runtime.call_names().count("image.import") == 1
        assert runtime.unpacked == ["img:v1"]
        assert sleeps == []
        assert runtime.containers["fuse-a"].image.name == "img:v1"

    def test_create_twice_after_failure_past_snapshot(self, manager, runtime):
        """A snapshot left by a failed create does not break the next create."""
        runtime.add_image(WORKING_NS, make_image())
        runtime.container_create_error = RuntimeServiceError("create container: unavailable")

        with pytest.raises(FatalLifecycleError):
            manager.create_container("img:v1", "fuse-a", "/mnt/a", ["run"])
        assert (WORKING_NS, "fuse-a") in runtime.snapshots

        manager.create_container("img:v1", "fuse-a", "/mnt/a", ["run"])
        assert "fuse-a" in runtime.containers

    def test_log_file_per_attempt(self, manager, runtime, tmp_path):
        runtime.add_image(WORKING_NS, make_image())
        runtime.container_create_error = RuntimeServiceError("create container: unavailable")
        with pytest.raises(FatalLifecycleError):
            manager.create_container("img:v1", "fuse-a", "/mnt/a", ["run"])
        manager.create_container("img:v1", "fuse-a", "/mnt/a", ["run"])

        log_files = sorted(os.listdir(tmp_path))
        assert len(log_files) == 2
        assert all(name.startswith("fuse-a--mnt-a-") for name in log_files)
        assert runtime.containers["fuse-a"].task_obj.log_path.startswith(str(tmp_path))

    def test_image_failure_is_fatal(self, manager, runtime, puller):
        puller.error = ImagePullError("Failed pulling img:v1: not found")

        with pytest.raises(FatalLifecycleError) as err:
            manager.create_container("img:v1", "fuse-a", "/mnt/a", ["run"])

        assert err.value.container_name == "fuse-a"
        assert isinstance(err.value.__cause__, ImagePullError)
        assert "fuse-a" not in runtime.containers

    def test_start_failure_leaves_container(self, manager, runtime):
        runtime.add_image(WORKING_NS, make_image())
        runtime.start_error = RuntimeServiceError("start task: failed to mount")

        with pytest.raises(FatalLifecycleError, match="Failed starting task"):
            manager.create_container("img:v1", "fuse-a", "/mnt/a", ["run"])

        assert "fuse-a" in runtime.containers

    def test_multilog_pipe_appended(self, runtime, resolver, host, layout, tmp_path):
        runtime.add_image(WORKING_NS, make_image())
        manager = LifecycleManager(runtime, resolver, host, devices=FakeDevices(), layout=layout,
                                   multilog=True, log_dir=str(tmp_path))

        manager.create_container("img:v1", "fuse-a", "/mnt/a", ["run"])

        assert runtime.containers["fuse-a"].spec.args == ("run", MULTILOG_PIPE)

    def test_relative_target_rejected(self, manager, runtime):
        runtime.add_image(WORKING_NS, make_image())
        with pytest.raises(FatalLifecycleError, match="fuse-a: Invalid request") as err:
            manager.create_container("img:v1", "fuse-a", "mnt/a", ["run"])
        assert isinstance(err.value.__cause__, ValueError)
        assert runtime.calls == []

    def test_log_file_failure_is_fatal(self, runtime, resolver, host, layout, tmp_path):
        manager = LifecycleManager(runtime, resolver, host, devices=FakeDevices(), layout=layout,
                                   log_dir=str(tmp_path / "missing"))
        runtime.add_image(WORKING_NS, make_image())

        with pytest.raises(FatalLifecycleError, match="Failed creating log file"):
            manager.create_container("img:v1", "fuse-a", "/mnt/a", ["run"])
        assert runtime.calls == []


class TestRemoveContainer:

    def test_running_task(self, manager, runtime):
        """Kill, wait for the exit, then delete task and container."""
        runtime.add_container("fuse-a", FakeTask(runtime, "fuse-a", TaskStatus.RUNNING, exit_after=0.05))

        manager.remove_container("fuse-a")

        assert [c for c in runtime.calls if c[0] in TASK_OPS | {"container.delete"}] == [
            ("task.status", "fuse-a"),
            ("task.kill", "fuse-a", int(signal.SIGTERM), True),
            ("task.wait", "fuse-a"),
            ("task.delete", "fuse-a"),
            ("container.delete", "fuse-a"),
        ]
        assert "fuse-a" not in runtime.containers

    @pytest.mark.parametrize("status", [TaskStatus.CREATED, TaskStatus.STOPPED])
    def test_no_kill_for_idle_task(self, manager, runtime, status):
        runtime.add_container("fuse-a", FakeTask(runtime, "fuse-a", status))

        manager.remove_container("fuse-a")

        names = runtime.call_names()
        assert "task.kill" not in names
        assert "task.wait" not in names
        assert names.index("task.delete") < names.index("container.delete")

    @pytest.mark.parametrize("status", [TaskStatus.PAUSED, TaskStatus.UNKNOWN])
    def test_kill_for_other_states(self, manager, runtime, status):
        runtime.add_container("fuse-a", FakeTask(runtime, "fuse-a", status))
        manager.remove_container("fuse-a")
        assert "task.kill" in runtime.call_names()

    def test_no_task(self, manager, runtime):
        runtime.add_container("fuse-a")

        manager.remove_container("fuse-a")

        assert runtime.call_names() == ["container.load", "task.get", "container.delete"]

    def test_missing_container(self, manager, runtime):
        with pytest.raises(NotFoundError):
            manager.remove_container("fuse-a")

    def test_exit_timeout_deletes_nothing(self, runtime, resolver, host, layout):
        manager = LifecycleManager(runtime, resolver, host, devices=FakeDevices(), layout=layout,
                                   kill_timeout=0.05)
        runtime.add_container("fuse-a", FakeTask(runtime, "fuse-a", TaskStatus.RUNNING, exit_after=None))

        with pytest.raises(TaskExitTimeoutError):
            manager.remove_container("fuse-a")

        names = runtime.call_names()
        assert "task.delete" not in names
        assert "container.delete" not in names
        assert "fuse-a" in runtime.containers

    def test_retry_after_timeout_skips_kill_once_stopped(self, runtime, resolver, host, layout):
        manager = LifecycleManager(runtime, resolver, host, devices=FakeDevices(), layout=layout,
                                   kill_timeout=0.05)
        task = FakeTask(runtime, "fuse-a", TaskStatus.RUNNING, exit_after=None)
        runtime.add_container("fuse-a", task)
        with pytest.raises(TaskExitTimeoutError):
            manager.remove_container("fuse-a")

        task._status = TaskStatus.STOPPED
        runtime.calls.clear()
        manager.remove_container("fuse-a")

        assert "task.kill" not in runtime.call_names()
        assert "fuse-a" not in runtime.containers

    def test_kill_failure_is_fatal(self, manager, runtime):
        task = FakeTask(runtime, "fuse-a", TaskStatus.RUNNING)
        task.kill_error = RuntimeServiceError("kill: process already finished")
        runtime.add_container("fuse-a", task)

        with pytest.raises(FatalLifecycleError, match="fuse-a: Failed killing task"):
            manager.remove_container("fuse-a")
        assert "container.delete" not in runtime.call_names()

    def test_load_failure_is_fatal(self, manager, runtime, monkeypatch):
        def broken(namespace, name):
            raise RuntimeServiceError("load container: unavailable")
        monkeypatch.setattr(runtime, "load_container", broken)

        with pytest.raises(FatalLifecycleError, match="Failed loading container"):
            manager.remove_container("fuse-a")

    def test_task_lookup_failure_is_fatal(self, manager, runtime):
        container = runtime.add_container("fuse-a")
        container.task_error = RuntimeServiceError("get task: unavailable")

        with pytest.raises(FatalLifecycleError, match="fuse-a: Failed getting task"):
            manager.remove_container("fuse-a")
        assert "container.delete" not in runtime.call_names()

    def test_status_failure_stops_teardown(self, manager, runtime):
        task = FakeTask(runtime, "fuse-a", TaskStatus.RUNNING)
        task.status_error = RuntimeServiceError("get task status: unavailable")
        runtime.add_container("fuse-a", task)

        with pytest.raises(FatalLifecycleError, match="Failed getting task status"):
            manager.remove_container("fuse-a")

        names = runtime.call_names()
        assert "task.kill" not in names
        assert "task.delete" not in names
        assert "container.delete" not in names

    def test_wait_failure_stops_teardown(self, manager, runtime):
        task = FakeTask(runtime, "fuse-a", TaskStatus.RUNNING)
        task.wait_error = RuntimeServiceError("wait task: connection reset")
        runtime.add_container("fuse-a", task)

        with pytest.raises(FatalLifecycleError, match="Failed waiting for task") as err:
            manager.remove_container("fuse-a")

        assert not isinstance(err.value, TaskExitTimeoutError)
        names = runtime.call_names()
        assert "task.kill" in names
        assert "task.delete" not in names
        assert "container.delete" not in names

    def test_task_delete_failure_keeps_container(self, manager, runtime):
        task = FakeTask(runtime, "fuse-a", TaskStatus.STOPPED)
        task.delete_error = RuntimeServiceError("delete task: busy")
        runtime.add_container("fuse-a", task)

        with pytest.raises(FatalLifecycleError, match="Failed to delete task"):
            manager.remove_container("fuse-a")

        assert "container.delete" not in runtime.call_names()
        assert "fuse-a" in runtime.containers

    def test_container_delete_failure_is_fatal(self, manager, runtime):
        container = runtime.add_container("fuse-a", FakeTask(runtime, "fuse-a", TaskStatus.STOPPED))
        container.delete_error = RuntimeServiceError("delete container: busy")

        with pytest.raises(FatalLifecycleError, match="fuse-a: Failed to delete container"):
            manager.remove_container("fuse-a")

        assert runtime.call_names()[-2:] == ["task.delete", "container.delete"]
