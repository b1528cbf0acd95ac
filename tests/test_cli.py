from unittest.mock import MagicMock

import pytest

from flexfuse.cli import parse_args, run
from flexfuse.containerd.errors import FatalLifecycleError, NotFoundError


class TestParseArgs:

    def test_create(self):
        args = parse_args(["create", "--image", "img:v1", "--name", "fuse-a", "--target", "/mnt/a",
                           "run", "--verbose"])
        assert (args.command, args.image, args.name, args.target) == ("create", "img:v1", "fuse-a", "/mnt/a")
        assert args.args == ["run", "--verbose"]

    def test_remove(self):
        args = parse_args(["--configDir", "/etc/flexfuse", "remove", "--name", "fuse-a"])
        assert args.configDir == "/etc/flexfuse"
        assert args.ignore_missing is False

    def test_command_required(self):
        with pytest.raises(SystemExit):
            parse_args([])


class TestRun:

    def test_create_success(self):
        manager = MagicMock()
        args = parse_args(["create", "--image", "img:v1", "--name", "fuse-a", "--target", "/mnt/a", "run"])

        assert run(manager, args)["status"] == "Success"
        manager.create_container.assert_called_once_with("img:v1", "fuse-a", "/mnt/a", ["run"])

    def test_create_failure(self):
        manager = MagicMock()
        manager.create_container.side_effect = FatalLifecycleError("fuse-a", "Failed starting task: boom")
        args = parse_args(["create", "--image", "img:v1", "--name", "fuse-a", "--target", "/mnt/a"])

        assert run(manager, args) == {"status": "Failure", "message": "fuse-a: Failed starting task: boom"}

    def test_remove_missing(self):
        manager = MagicMock()
        manager.remove_container.side_effect = NotFoundError("container fuse-a: not found")

        assert run(manager, parse_args(["remove", "--name", "fuse-a"]))["status"] == "Failure"
        ignored = run(manager, parse_args(["remove", "--name", "fuse-a", "--ignore-missing"]))
        assert ignored["status"] == "Success"

    def test_invalid_create_request_is_reported(self, manager, runtime):
        args = parse_args(["create", "--image", "img:v1", "--name", "fuse-a", "--target", "mnt/a", "run"])

        result = run(manager, args)

        assert result["status"] == "Failure"
        assert result["message"].startswith("fuse-a: Invalid request")
        assert runtime.calls == []
