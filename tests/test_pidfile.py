import os
import subprocess
import sys

import pytest

from rmqmonitor.pidfile import (
    PID_FILE_NAME,
    AlreadyRunningError,
    PidFile,
    PidFileError,
    default_path,
    is_process_running,
    is_writable,
)


def test_create_writes_current_pid(tmp_path):
    path = tmp_path / "app.pid"
    pid = PidFile(path)
    pid.create()
    assert path.read_text() == f"{os.getpid()}\n"


def test_create_makes_directories(tmp_path):
    path = tmp_path / "a" / "b" / "app.pid"
    PidFile(path).create()
    assert int(path.read_text()) == os.getpid()


def test_remove(tmp_path):
    path = tmp_path / "app.pid"
    pid = PidFile(path)
    pid.create()
    pid.remove()
    assert not path.exists()
    pid.remove()
    assert not path.exists()


def test_running_instance_is_refused(tmp_path):
    path = tmp_path / "app.pid"
    path.write_text(f"{os.getpid()}\n")
    with pytest.raises(AlreadyRunningError) as info:
        PidFile(path).create()
    assert info.value.pid == os.getpid()
    assert str(os.getpid()) in str(info.value)
    assert path.read_text() == f"{os.getpid()}\n"


def test_invalid_content_is_replaced(tmp_path):
    path = tmp_path / "app.pid"
    path.write_text("garbage")
    PidFile(path).create()
    assert path.read_text() == f"{os.getpid()}\n"


def test_stale_pid_is_replaced(tmp_path):
    child = subprocess.Popen([sys.executable, "-c", ""])
    child.wait()
    path = tmp_path / "app.pid"
    path.write_text(f"{child.pid}\n")
    PidFile(path).create()
    assert path.read_text() == f"{os.getpid()}\n"


def test_context_manager(tmp_path):
    path = tmp_path / "app.pid"
    with PidFile(path) as pid:
        assert path.exists()
        assert pid.path == str(path)
    assert not path.exists()


def test_directory_failure_raises(tmp_path):
    blocker = tmp_path / "file.txt"
    blocker.write_text("x")
    with pytest.raises(PidFileError, match="failed to create PID file directory"):
        PidFile(blocker / "app.pid").create()


def test_is_process_running():
    assert is_process_running(os.getpid()) is True
    assert is_process_running(0) is False
    assert is_process_running(-1) is False


def test_is_writable(tmp_path):
    assert is_writable(tmp_path) is True
    assert list(tmp_path.iterdir()) == []
    assert is_writable(tmp_path / "missing") is False


def test_default_path_absolute(tmp_path):
    config_path = tmp_path / "conf" / "config.yaml"
    assert default_path(str(config_path)) == str(tmp_path / "conf" / PID_FILE_NAME)


def test_default_path_relative():
    result = default_path("config.yaml")
    assert result in {"/var/run/" + PID_FILE_NAME, "/tmp/" + PID_FILE_NAME}
    assert os.path.basename(result) == PID_FILE_NAME