# flexfuse/cli.py
"""
Command line used by the volume driver:

    flexfuse create --image IMG --name NAME --target PATH -- ARGS...
    flexfuse remove --name NAME

Prints one JSON result object on stdout; logs go to stderr or the configured file.
"""
import argparse
import json
import sys
from typing import List, Optional

from flexfuse.ReadConfig import ReadConfig as rc
from flexfuse.containerd.errors import FlexFuseError, NotFoundError

SUCCESS = "Success"
FAILURE = "Failure"


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="flexfuse",
                                     description="Manage FUSE helper containers on containerd")
    parser.add_argument('--configDir', type=str, help='Please specify ConfigDir')
    sub = parser.add_subparsers(dest="command", required=True)

    create = sub.add_parser("create", help="create and start a helper container")
    create.add_argument("--image", required=True)
    create.add_argument("--name", required=True)
    create.add_argument("--target", required=True, help="host path the FUSE process mounts on")
    create.add_argument("args", nargs=argparse.REMAINDER, help="FUSE process arguments")

    remove = sub.add_parser("remove", help="stop and delete a helper container")
    remove.add_argument("--name", required=True)
    remove.add_argument("--ignore-missing", action="store_true",
                        help="report success when the container does not exist")

    args = parser.parse_args(argv)
    if getattr(args, "args", None) and args.args[0] == "--":
        args.args = args.args[1:]
    return args


def run(manager, args: argparse.Namespace) -> dict:
    try:
        if args.command == "create":
            manager.create_container(args.image, args.name, args.target, args.args)
            return {"status": SUCCESS, "message": f"Container {args.name} started"}

        try:
            manager.remove_container(args.name)
        except NotFoundError:
            if not args.ignore_missing:
                raise
            return {"status": SUCCESS, "message": f"Container {args.name} does not exist"}
        return {"status": SUCCESS, "message": f"Container {args.name} removed"}
    except FlexFuseError as err:
        return {"status": FAILURE, "message": str(err)}


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    # config first: the modules below log through it
    config = rc(args.configDir)

    from flexfuse.app import build_manager

    manager, client = build_manager(config)
    try:
        result = run(manager, args)
    finally:
        client.close()

    print(json.dumps(result))
    return 0 if result["status"] == SUCCESS else 1


if __name__ == '__main__':
    sys.exit(main())
