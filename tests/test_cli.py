import socket

import pytest

from peerrelay import cli


def test_echo_client_command(echo_service, capsys):
    rc = cli.main(
        ["echo-client", "--host", echo_service.host, "--port", str(echo_service.port), "--message", "PING"]
    )

    assert rc == 0
    assert capsys.readouterr().out.strip() == "PING"


def test_relay_requires_target(monkeypatch):
    monkeypatch.delenv("PEERRELAY_TARGET", raising=False)
    with pytest.raises(SystemExit):
        cli.main(["relay"])


def test_relay_rejects_malformed_target():
    with pytest.raises(SystemExit):
        cli.main(["relay", "--target", "no-port-here"])


def test_relay_bind_failure_exits_nonzero(echo_service, capsys):
    occupied = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    occupied.bind(("127.0.0.1", 0))
    occupied.listen(1)
    try:
        port = occupied.getsockname()[1]
        rc = cli.main(["relay", "--port", str(port), "--target", str(echo_service)])
    finally:
        occupied.close()

    assert rc == 1
    assert "cannot bind" in capsys.readouterr().err


def test_target_from_environment(monkeypatch, echo_service, capsys):
    monkeypatch.setenv("PEERRELAY_TARGET", str(echo_service))
    occupied = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    occupied.bind(("127.0.0.1", 0))
    occupied.listen(1)
    try:
        # bind failure proves the target parsed and the locator resolved it
        rc = cli.main(["relay", "--port", str(occupied.getsockname()[1])])
    finally:
        occupied.close()

    assert rc == 1


def test_listen_defaults_come_from_environment(monkeypatch, echo_service, capsys):
    occupied = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    occupied.bind(("127.0.0.1", 0))
    occupied.listen(1)
    try:
        port = occupied.getsockname()[1]
        monkeypatch.setenv("PEERRELAY_BIND", "127.0.0.1")
        monkeypatch.setenv("PEERRELAY_PORT", str(port))
        rc = cli.main(["relay", "--target", str(echo_service)])
    finally:
        occupied.close()

    assert rc == 1
    assert f"127.0.0.1:{port}" in capsys.readouterr().err
