"""Command line entry point: ``tinydocker run <image> <command> [args...]``."""

import os
import sys

from .config import load_settings
from .errors import TinyDockerError
from .reference import parse_image_reference
from .registry import pull as pull_image
from .sandbox import SandboxLauncher

USAGE = """tinydocker - run a command inside a freshly pulled container image

Usage: tinydocker [command] [args...]

Commands:
  run <image> <command> [args...]   Pull an image and run a command in it
  pull <image> <directory>          Pull an image's filesystem into a directory
  help                              Display this message

Environment:
  TINYDOCKER_AUTH_URL        Token endpoint (default https://auth.docker.io/token)
  TINYDOCKER_REGISTRY        Registry host (default registry-1.docker.io)
  TINYDOCKER_HELPER_PATH     Helper binary copied into the sandbox, empty to disable
  TINYDOCKER_MAX_REDIRECTS   Redirect hops allowed per blob (default 5)
  TINYDOCKER_VERBOSE         Set to 1 to print progress to stderr"""


def help_command(args):
    """Display help message"""
    print(USAGE)
    return 0


def run(args):
    """Pull the image into a temporary root and run the command inside it"""
    if len(args) < 2:
        print("Usage: tinydocker run <image> <command> [args...]", file=sys.stderr)
        return 1

    image = parse_image_reference(args[0])
    launcher = SandboxLauncher(image, args[1:], settings=load_settings())
    return launcher.run()


def pull(args):
    """Pull the image's layers into a directory without running anything"""
    if len(args) != 2:
        print("Usage: tinydocker pull <image> <directory>", file=sys.stderr)
        return 1

    image = parse_image_reference(args[0])
    directory = os.path.abspath(args[1])
    os.makedirs(directory, exist_ok=True)
    pull_image(image, directory, load_settings())
    print(f"Pulled {image} into {directory}", file=sys.stderr)
    return 0


COMMANDS = {
    'run': run,
    'pull': pull,
    'help': help_command,
}


def main(argv=None):
    """Main entry point"""
    argv = sys.argv[1:] if argv is None else argv
    if not argv:
        print(USAGE, file=sys.stderr)
        return 1

    command, args = argv[0], argv[1:]
    if command not in COMMANDS:
        print(f"Unknown command: {command}", file=sys.stderr)
        print(USAGE, file=sys.stderr)
        return 1

    try:
        return COMMANDS[command](args)
    except KeyboardInterrupt:
        print("\nOperation cancelled by user", file=sys.stderr)
        return 130
    except (TinyDockerError, ValueError, OSError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
