import logging
import socket
import threading

import pytest

from macvz.vsockconn import DELIMITER, VsockConnection


@pytest.fixture
def pair():
    left, right = socket.socketpair()
    yield left, right
    left.close()
    right.close()


def test_write_events_strips_and_terminates(pair):
    left, right = pair
    VsockConnection(left).write_events("  hello \n")
    left.shutdown(socket.SHUT_WR)
    received = []
    VsockConnection(right).read_events(received.append)
    assert received == ["hello"]


def test_read_events_delivers_every_message(pair):
    left, right = pair
    right.sendall(b"first" + DELIMITER + b"second" + DELIMITER + b"partial")
    right.close()
    received = []
    VsockConnection(left).read_events(received.append)
    assert received == ["first", "second"]


def test_round_trip_across_chunks(pair):
    left, right = pair
    sender = VsockConnection(right)
    messages = ['{"localPorts":[]}', "x" * 3000, "tail"]

    def send():
        for message in messages:
            sender.write_events(message)
        right.shutdown(socket.SHUT_WR)

    thread = threading.Thread(target=send)
    thread.start()
    received = []
    VsockConnection(left).read_events(received.append)
    thread.join()
    assert received == messages


def test_write_on_closed_socket_logs_warning(pair, caplog):
    left, _ = pair
    left.close()
    with caplog.at_level(logging.WARNING, logger="macvz.vsockconn"):
        VsockConnection(left).write_events("data")
    assert any(r.levelno == logging.WARNING for r in caplog.records)


def test_read_stops_at_eof_and_logs(pair, caplog):
    left, right = pair
    right.close()
    received = []
    with caplog.at_level(logging.ERROR, logger="macvz.vsockconn"):
        VsockConnection(left).read_events(received.append)
    assert received == []
    assert any("Error reading data" in r.getMessage() for r in caplog.records)