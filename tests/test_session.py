"""
Tests for the share session lifecycle: bind, serve, timeout, signals and the
bounded drain.
"""

import os
import signal
import socket
import sys
import threading
import time

import pytest
import requests

import webshare
from conftest import logged


def _wait_until(predicate, timeout=5.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.02)
    return False


@pytest.fixture
def shared(tmp_path):
    (tmp_path / "hello.txt").write_text("hello world")
    return tmp_path


def test_timeout_stops_session_cleanly(shared):
    session = webshare.ShareSession(str(shared), port=0, host="127.0.0.1", timeout=0.3, grace=1)
    assert session.state == webshare.STATE_STARTING

    port = session.start()
    assert port > 0
    session.serve()
    assert session.state == webshare.STATE_SERVING

    response = requests.get(f"http://127.0.0.1:{port}/hello.txt", timeout=5)
    assert response.text == "hello world"

    started = time.monotonic()
    assert session.wait() is True
    assert time.monotonic() - started < 5
    assert session.state == webshare.STATE_STOPPED
    assert session.outcome == "clean"
    assert logged("timeout")

    with pytest.raises(requests.ConnectionError):
        requests.get(f"http://127.0.0.1:{port}/hello.txt", timeout=2)


def test_forced_shutdown_when_request_never_finishes(shared):
    release = threading.Event()

    def hanging_app(environ, start_response):
        release.wait(30)
        start_response("200 OK", [("Content-Type", "text/plain")])
        return [b"late"]

    session = webshare.ShareSession(str(shared), port=0, host="127.0.0.1", grace=0.5, wsgi_app=hanging_app)
    port = session.start()
    session.serve()

    def fetch():
        try:
            requests.get(f"http://127.0.0.1:{port}/", timeout=30)
        except requests.RequestException:
            pass

    client = threading.Thread(target=fetch, daemon=True)
    client.start()
    try:
        assert _wait_until(lambda: session.tracker.active == 1)

        session.request_shutdown("signal")
        assert session.stop_requested.is_set()

        started = time.monotonic()
        assert session.wait() is False
        assert time.monotonic() - started < 3
        assert session.state == webshare.STATE_STOPPED
        assert session.outcome == "forced"
        assert logged("[WARN]")
    finally:
        release.set()
        client.join(5)


def test_shutdown_request_is_single_shot(shared):
    session = webshare.ShareSession(str(shared), port=0, host="127.0.0.1")
    session.start()
    session.serve()

    session.request_shutdown("signal")
    session.request_shutdown("timeout")
    session.request_shutdown("signal")
    assert len(logged("종료 요청 수신")) == 1

    session.wait()
    assert session.state == webshare.STATE_STOPPED
    assert session.outcome == "clean"


@pytest.mark.skipif(sys.platform == "win32", reason="POSIX signals only")
def test_sigterm_triggers_shutdown(shared):
    session = webshare.ShareSession(str(shared), port=0, host="127.0.0.1")
    session.start()
    previous = webshare.install_signal_handlers(session)
    try:
        session.serve()
        os.kill(os.getpid(), signal.SIGTERM)
        assert _wait_until(session.stop_requested.is_set)
        assert session.wait() is True
    finally:
        webshare.restore_signal_handlers(previous)

    assert session.state == webshare.STATE_STOPPED
    assert logged("SIGTERM")
    assert signal.getsignal(signal.SIGTERM) == previous[signal.SIGTERM]


def test_bind_failure_is_fatal(shared):
    busy = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    busy.bind(("127.0.0.1", 0))
    busy.listen(1)
    try:
        session = webshare.ShareSession(str(shared), port=busy.getsockname()[1], host="127.0.0.1")
        with pytest.raises(webshare.ServerError, match="이미 사용 중"):
            session.start()
        assert session.server is None
        assert session.state == webshare.STATE_STARTING
    finally:
        busy.close()


def test_werkzeug_exit_on_bind_becomes_server_error(shared, monkeypatch):
    def exiting_make_server(*args, **kwargs):
        raise SystemExit(1)

    monkeypatch.setattr(webshare, "make_server", exiting_make_server)
    session = webshare.ShareSession(str(shared), port=0, host="127.0.0.1")

    with pytest.raises(webshare.ServerError, match="바인딩할 수 없습니다"):
        session.start()


def test_concurrent_shutdown_requests_log_once(shared):
    session = webshare.ShareSession(str(shared), port=0, host="127.0.0.1")
    barrier = threading.Barrier(8)

    def trigger(reason):
        barrier.wait()
        session.request_shutdown(reason)

    threads = [threading.Thread(target=trigger, args=(f"trigger-{i}",)) for i in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(5)

    assert session.stop_requested.is_set()
    assert len(logged("종료 요청 수신")) == 1


def test_listener_error_aborts_without_drain(shared, monkeypatch):
    session = webshare.ShareSession(str(shared), port=0, host="127.0.0.1")
    session.start()

    def broken(*args, **kwargs):
        raise OSError("listener died")

    monkeypatch.setattr(session.server, "serve_forever", broken)
    try:
        session.serve()
        with pytest.raises(webshare.ServerError, match="listener died"):
            session.wait()
        assert session.state == webshare.STATE_STOPPED
        assert session.outcome is None
    finally:
        session.server.server_close()


def test_connection_tracker_counts_until_close():
    def app(environ, start_response):
        start_response("200 OK", [])
        return [b"body"]

    tracker = webshare.ConnectionTracker(app)
    body = tracker({}, lambda status, headers: None)

    assert tracker.active == 1
    assert tracker.wait_idle(0.05) is False
    assert b"".join(body) == b"body"
    body.close()
    assert tracker.active == 0
    assert tracker.wait_idle(0.05) is True
