import functools
import os
from unittest import mock

import pytest

from conftest import make_layer, requires_tar, serve_image
from tinydocker import sandbox
from tinydocker.config import Settings
from tinydocker.errors import (
    ConfinementError,
    SandboxSetupError,
    UnexpectedStatusError,
)
from tinydocker.reference import parse_image_reference
from tinydocker.registry import pull
from tinydocker.sandbox import (
    Confiner,
    LauncherState,
    LinuxConfiner,
    SandboxLauncher,
    exit_code_from_status,
)

pytestmark = pytest.mark.skipif(not hasattr(os, 'fork'), reason="needs os.fork")

ALPINE = parse_image_reference('alpine')


class HostConfiner(Confiner):
    """Leaves the child on the host so launches work without root."""

    def enter_root(self, root):
        pass

    def new_pid_namespace(self):
        pass


class FailingConfiner(Confiner):
    def enter_root(self, root):
        raise ConfinementError(f"chroot into {root} failed: Operation not permitted")

    def new_pid_namespace(self):
        pass


def noop_puller(image, root, settings):
    pass


def make_launcher(command, settings=None, confiner=None, puller=noop_puller):
    return SandboxLauncher(
        ALPINE,
        command,
        settings=settings or Settings(helper_path=None),
        confiner=confiner or HostConfiner(),
        puller=puller,
    )


def watch_root(launcher):
    """Remember the root path so the test can check it is gone afterwards."""
    seen = []
    original = launcher.prepare_root

    def prepare_root():
        seen.append(original())
        return seen[-1]

    launcher.prepare_root = prepare_root
    return seen


def test_true_exits_zero_and_root_is_removed():
    launcher = make_launcher(['true'])
    roots = watch_root(launcher)

    assert launcher.run() == 0
    assert launcher.state is LauncherState.CLEANED
    assert not os.path.exists(roots[0])


def test_nonzero_exit_code_is_propagated():
    launcher = make_launcher(['sh', '-c', 'exit 7'])
    roots = watch_root(launcher)

    assert launcher.run() == 7
    assert not os.path.exists(roots[0])


def test_child_killed_by_signal_exits_one():
    launcher = make_launcher(['sh', '-c', 'kill -9 $$'])
    assert launcher.run() == 1


def test_command_that_cannot_start_raises_confinement_error():
    launcher = make_launcher(['/definitely/not/a/program'])
    roots = watch_root(launcher)

    with pytest.raises(ConfinementError, match="could not start"):
        launcher.run()
    assert not os.path.exists(roots[0])


def test_confinement_failure_is_reported_and_root_removed():
    launcher = make_launcher(['true'], confiner=FailingConfiner())
    roots = watch_root(launcher)

    with pytest.raises(ConfinementError, match="Operation not permitted"):
        launcher.run()
    assert launcher.state is LauncherState.CLEANED
    assert not os.path.exists(roots[0])


def test_pull_failure_aborts_before_exec_and_root_removed():
    def failing_puller(image, root, settings):
        raise UnexpectedStatusError(404)

    launcher = make_launcher(['true'], puller=failing_puller)
    roots = watch_root(launcher)

    with mock.patch.object(launcher, 'execute') as execute:
        with pytest.raises(UnexpectedStatusError):
            launcher.run()
    execute.assert_not_called()
    assert not os.path.exists(roots[0])


def test_root_allocation_failure_is_sandbox_setup_error(monkeypatch):
    def mkdtemp(prefix=None):
        raise OSError(28, "No space left on device")

    monkeypatch.setattr(sandbox.tempfile, 'mkdtemp', mkdtemp)
    launcher = make_launcher(['true'])

    with pytest.raises(SandboxSetupError):
        launcher.run()
    assert launcher.state is LauncherState.CLEANED


def test_skeleton_exists_before_pull():
    seen = {}

    def puller(image, root, settings):
        seen['image'] = image
        seen['dirs'] = [d for d in sandbox.SKELETON_DIRS if os.path.isdir(os.path.join(root, d))]

    launcher = make_launcher(['true'], puller=puller)
    assert launcher.run() == 0
    assert seen['image'] == ALPINE
    assert seen['dirs'] == list(sandbox.SKELETON_DIRS)


def test_helper_binary_is_injected(tmp_path):
    helper = tmp_path / "docker-explorer"
    helper.write_bytes(b'#!/bin/sh\necho explorer\n')
    helper.chmod(0o755)
    copied = {}

    def puller(image, root, settings):
        target = os.path.join(root, 'usr/local/bin/docker-explorer')
        with open(target, 'rb') as f:
            copied['data'] = f.read()
        copied['executable'] = os.access(target, os.X_OK)

    launcher = make_launcher(['true'], settings=Settings(helper_path=str(helper)), puller=puller)
    assert launcher.run() == 0
    assert copied == {'data': b'#!/bin/sh\necho explorer\n', 'executable': True}


def test_missing_helper_on_host_is_skipped(tmp_path):
    launcher = make_launcher(['true'], settings=Settings(helper_path=str(tmp_path / "absent")))
    launcher.prepare_root()
    try:
        assert launcher.inject_helper() is None
    finally:
        launcher.cleanup()


def test_states_advance_through_a_launch():
    launcher = make_launcher(['true'])
    assert launcher.state is LauncherState.CREATED
    launcher.prepare_root()
    assert launcher.state is LauncherState.ROOT_PREPARED
    launcher.populate()
    assert launcher.state is LauncherState.POPULATED
    assert launcher.execute() == 0
    assert launcher.state is LauncherState.EXITED
    launcher.cleanup()
    assert launcher.state is LauncherState.CLEANED


def test_cleanup_runs_exactly_once(monkeypatch):
    launcher = make_launcher(['true'])
    root = launcher.prepare_root()
    removed = []
    monkeypatch.setattr(sandbox.shutil, 'rmtree', removed.append)

    launcher.cleanup()
    launcher.cleanup()
    assert removed == [root]
    os.rmdir(root)


def break_rmtree(monkeypatch):
    real_rmtree = sandbox.shutil.rmtree
    kept = []

    def rmtree(path):
        kept.append(path)
        raise OSError(16, "Device or resource busy")

    monkeypatch.setattr(sandbox.shutil, 'rmtree', rmtree)
    return kept, real_rmtree


def test_failed_removal_keeps_command_exit_code(monkeypatch, capsys):
    kept, real_rmtree = break_rmtree(monkeypatch)
    launcher = make_launcher(['sh', '-c', 'exit 7'])

    assert launcher.run() == 7
    assert "Warning: could not remove sandbox root" in capsys.readouterr().err
    assert launcher.state is LauncherState.CLEANED
    real_rmtree(kept[0])


def test_failed_removal_keeps_original_error(monkeypatch, capsys):
    kept, real_rmtree = break_rmtree(monkeypatch)

    def failing_puller(image, root, settings):
        raise UnexpectedStatusError(404)

    launcher = make_launcher(['true'], puller=failing_puller)
    with pytest.raises(UnexpectedStatusError):
        launcher.run()
    assert "Warning: could not remove sandbox root" in capsys.readouterr().err
    real_rmtree(kept[0])


def test_direct_cleanup_still_raises_on_failed_removal(monkeypatch):
    kept, real_rmtree = break_rmtree(monkeypatch)
    launcher = make_launcher(['true'])
    launcher.prepare_root()

    with pytest.raises(SandboxSetupError):
        launcher.cleanup()
    real_rmtree(kept[0])


def test_empty_command_is_rejected():
    with pytest.raises(ValueError):
        make_launcher([])


@requires_tar
def test_end_to_end_with_pulled_image(settings, session):
    name = ALPINE.repository
    serve_image(session, name, 'latest', [
        ('sha256:base', make_layer({'etc/alpine-release': b'3.20.0\n'})),
        ('sha256:app', make_layer({'app/run.sh': b'exit 7\n'})),
    ])
    class ChdirConfiner(HostConfiner):
        def enter_root(self, root):
            os.chdir(root)

    launcher = SandboxLauncher(
        ALPINE,
        ['sh', 'app/run.sh'],
        settings=settings,
        confiner=ChdirConfiner(),
        puller=functools.partial(pull, session=session),
    )
    roots = watch_root(launcher)
    assert launcher.run() == 7
    assert not os.path.exists(roots[0])
    assert session.calls[0]['url'] == settings.auth_url


def test_exit_code_from_status():
    assert exit_code_from_status(0) == 0
    assert exit_code_from_status(7 << 8) == 7
    # terminated by SIGKILL
    assert exit_code_from_status(9) == 1


def test_linux_confiner_reports_chroot_failure(tmp_path):
    with pytest.raises(ConfinementError):
        LinuxConfiner().enter_root(str(tmp_path / "does-not-exist"))


def test_linux_confiner_reports_unshare_failure():
    libc = mock.Mock()
    libc.unshare.return_value = -1
    with mock.patch.object(sandbox.ctypes, 'CDLL', return_value=libc), \
            mock.patch.object(sandbox.ctypes, 'get_errno', return_value=1):
        with pytest.raises(ConfinementError, match="unshare"):
            LinuxConfiner().new_pid_namespace()
    libc.unshare.assert_called_once_with(sandbox.CLONE_NEWPID)
