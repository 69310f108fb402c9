"""Running a command inside a freshly pulled image.

The launcher process never confines itself. It forks a child that
chroots into the sandbox and unshares a new PID namespace, and that child
forks once more so the command becomes PID 1 of the new namespace. The
launcher only waits, then removes the sandbox root, which is why cleanup
still works after the command has been jailed.

    launcher ── fork ──> child: chroot, chdir /, unshare(CLONE_NEWPID)
                              └── fork ──> grandchild: execvp(command)
"""

import ctypes
import os
import shutil
import sys
import tempfile
from enum import Enum
from typing import Callable, List, Optional

from .config import Settings, load_settings, report
from .errors import ConfinementError, SandboxSetupError
from .reference import ImageReference
from .registry import pull

CLONE_NEWPID = 0x20000000

# Directories the confined command expects to exist
SKELETON_DIRS = ('usr/local/bin', 'tmp', 'dev', 'proc')


class LauncherState(Enum):
    CREATED = "created"
    ROOT_PREPARED = "root_prepared"
    POPULATED = "populated"
    CONFINED = "confined"
    EXITED = "exited"
    CLEANED = "cleaned"


class Confiner:
    """The privileged, OS specific part of a launch.

    Both methods run in the forked child, never in the launcher.
    """

    def enter_root(self, root: str) -> None:
        raise NotImplementedError

    def new_pid_namespace(self) -> None:
        raise NotImplementedError


class LinuxConfiner(Confiner):
    def enter_root(self, root: str) -> None:
        try:
            os.chroot(root)
            os.chdir('/')
        except OSError as e:
            raise ConfinementError(f"chroot into {root} failed: {e.strerror}") from e

    def new_pid_namespace(self) -> None:
        libc = ctypes.CDLL(None, use_errno=True)
        if libc.unshare(CLONE_NEWPID) != 0:
            errno = ctypes.get_errno()
            raise ConfinementError(f"unshare(CLONE_NEWPID) failed: {os.strerror(errno)}")


def exit_code_from_status(status: int) -> int:
    """Map a waitpid() status to the launcher's exit code.

    A command killed by a signal has no exit status of its own, so it
    maps to 1.
    """
    if os.WIFEXITED(status):
        return os.WEXITSTATUS(status)
    return 1


def _send_error(fd: int, message: str) -> None:
    os.write(fd, message.encode('utf-8', errors='replace'))


def _read_error(fd: int) -> str:
    chunks = []
    while True:
        chunk = os.read(fd, 4096)
        if not chunk:
            break
        chunks.append(chunk)
    return b''.join(chunks).decode('utf-8', errors='replace')


class SandboxLauncher:
    """
    Pulls an image into a private root and runs one command inside it.

    Args:
        image: Image to pull
        command: Program and arguments to exec inside the root
        settings: Registry and helper settings (read from the environment
            when omitted)
        confiner: Confinement primitives, LinuxConfiner by default
        puller: Called as ``puller(image, root, settings)`` to populate
            the root
    """

    def __init__(self, image: ImageReference, command: List[str],
                 settings: Optional[Settings] = None,
                 confiner: Optional[Confiner] = None,
                 puller: Callable[..., None] = pull):
        if not command:
            raise ValueError("command must not be empty")
        self.image = image
        self.command = list(command)
        self.settings = settings or load_settings()
        self.confiner = confiner or LinuxConfiner()
        self.puller = puller
        self.root: Optional[str] = None
        self.state = LauncherState.CREATED

    def run(self) -> int:
        """Prepare, populate and launch, always removing the root afterwards.

        A failed removal is only printed as a warning here, so it never
        replaces the command's exit code or an earlier error.

        Returns:
            The command's exit code
        """
        try:
            self.prepare_root()
            self.populate()
            exit_code = self.execute()
        except BaseException:
            self._cleanup_with_warning()
            raise
        self._cleanup_with_warning()
        return exit_code

    def _cleanup_with_warning(self) -> None:
        try:
            self.cleanup()
        except SandboxSetupError as e:
            print(f"Warning: {e}", file=sys.stderr, flush=True)

    def prepare_root(self) -> str:
        try:
            self.root = tempfile.mkdtemp(prefix="tinydocker-")
        except OSError as e:
            raise SandboxSetupError(f"could not create sandbox root: {e}") from e
        report(self.settings, f"Created sandbox root {self.root}")
        self.state = LauncherState.ROOT_PREPARED
        return self.root

    def populate(self) -> None:
        root = self._require_root()
        try:
            for directory in SKELETON_DIRS:
                os.makedirs(os.path.join(root, directory), exist_ok=True)
        except OSError as e:
            raise SandboxSetupError(f"could not create sandbox skeleton: {e}") from e

        self.inject_helper()

        report(self.settings, f"Pulling {self.image} into {root}")
        self.puller(self.image, root, self.settings)
        self.state = LauncherState.POPULATED

    def inject_helper(self) -> Optional[str]:
        """Copy the helper binary into ``usr/local/bin`` of the root.

        Returns:
            Path of the copy, or None when no helper is configured or the
            host does not have one
        """
        root = self._require_root()
        helper = self.settings.helper_path
        if not helper:
            return None
        if not os.path.isfile(helper):
            report(self.settings, f"Helper {helper} not found on host, skipping")
            return None

        target = os.path.join(root, 'usr/local/bin', os.path.basename(helper))
        try:
            shutil.copy2(helper, target)
        except OSError as e:
            raise SandboxSetupError(f"could not copy helper {helper}: {e}") from e
        return target

    def execute(self) -> int:
        """
        Fork, confine the child and exec the command, then wait for it.

        Returns:
            The command's exit status, or 1 if it died from a signal

        Raises:
            ConfinementError: chroot, unshare or exec failed in the child
        """
        root = self._require_root()

        # Anything still buffered would otherwise be written twice
        sys.stdout.flush()
        sys.stderr.flush()

        # os.pipe() fds are close-on-exec, so a successful exec closes the
        # write end and the launcher reads EOF
        read_fd, write_fd = os.pipe()
        try:
            pid = os.fork()
        except OSError as e:
            os.close(read_fd)
            os.close(write_fd)
            raise ConfinementError(f"could not fork: {e}") from e

        if pid == 0:
            os.close(read_fd)
            code = 1
            try:
                code = self._confine_and_exec(root, write_fd)
            except Exception as e:
                _send_error(write_fd, str(e))
            finally:
                os._exit(code)

        os.close(write_fd)
        self.state = LauncherState.CONFINED
        try:
            error = _read_error(read_fd)
        finally:
            os.close(read_fd)

        _, status = os.waitpid(pid, 0)
        self.state = LauncherState.EXITED
        if error:
            raise ConfinementError(error)

        exit_code = exit_code_from_status(status)
        report(self.settings, f"Exit code: {exit_code}")
        return exit_code

    def _confine_and_exec(self, root: str, error_fd: int) -> int:
        # Runs in the forked child
        self.confiner.enter_root(root)
        self.confiner.new_pid_namespace()

        pid = os.fork()
        if pid == 0:
            try:
                os.execvp(self.command[0], self.command)
            except OSError as e:
                _send_error(error_fd, f"could not start {self.command[0]}: {e.strerror}")
            os._exit(1)

        os.close(error_fd)
        _, status = os.waitpid(pid, 0)
        return exit_code_from_status(status)

    def cleanup(self) -> None:
        """Remove the sandbox root. Safe to call more than once."""
        if self.state is LauncherState.CLEANED:
            return
        root, self.root = self.root, None
        self.state = LauncherState.CLEANED
        if root is None:
            return
        report(self.settings, f"Removing sandbox root {root}")
        try:
            shutil.rmtree(root)
        except OSError as e:
            raise SandboxSetupError(f"could not remove sandbox root {root}: {e}") from e

    def _require_root(self) -> str:
        if self.root is None:
            raise SandboxSetupError("sandbox root has not been prepared")
        return self.root
