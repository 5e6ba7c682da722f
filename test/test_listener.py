import errno

import pytest
from twisted.internet import error

import ripclient
from conftest import rte, response, adv, FakeTransport, FakeReactor

SENDER = ("192.168.1.1", 520)


@pytest.fixture
def reactor():
    return FakeReactor()


@pytest.fixture
def channel():
    return ripclient.AdvertisementChannel(size=4)


@pytest.fixture
def listener(channel, reactor):
    listener = ripclient.RIPListener(channel, "192.168.1.10", reactor)
    listener.makeConnection(FakeTransport())
    return listener


class TestReceive(object):

    def test_joins_rip_group(self, listener):
        assert listener.transport.joined == [("224.0.0.9", "192.168.1.10")]
        assert listener.exit_status == 0

    def test_advertisements_queued(self, listener, channel):
        listener.datagramReceived(
            response(rte("10.0.0.0", "255.255.255.0", 2),
                     rte("10.1.0.0", "255.255.0.0", 1, afi=0)), SENDER)
        assert channel.pending == [adv("10.0.0.0", 24, 2, "192.168.1.1")]

    @pytest.mark.parametrize("data", [
        b"\x02\x02",
        b"\x02\x01\x00\x00" + b"\x00" * 20,
        b"\x01\x02\x00\x00" + b"\x00" * 20,
        b"\x02\x02\x00\x00" + b"\x00" * 21,
    ])
    def test_bad_packets_produce_nothing(self, listener, channel, data):
        listener.datagramReceived(data, SENDER)
        assert channel.pending == []

    def test_bad_packet_does_not_affect_next(self, listener, channel):
        listener.datagramReceived(b"\x02\x02\x00", SENDER)
        listener.datagramReceived(
            response(rte("10.0.0.0", "255.255.255.0", 2)), SENDER)
        assert len(channel.pending) == 1

    def test_malformed_packet_hex_dump(self, listener, caplog):
        caplog.set_level(1, logger="RIP")
        listener.datagramReceived(b"\x02\x02\x00\x00\xab", SENDER)
        dumps = [r.getMessage() for r in caplog.records
                 if r.getMessage().startswith("Hex dump")]
        assert dumps == ["Hex dump: 02020000ab"]

    def test_invalid_sender_discarded(self, listener, channel):
        listener.datagramReceived(
            response(rte("10.0.0.0", "255.255.255.0", 2)), ("fe80::1", 520))
        assert channel.pending == []


class TestJoinFailure(object):

    def test_join_failure_is_fatal(self, channel, reactor):
        listener = ripclient.RIPListener(channel, "192.168.1.10", reactor)
        err = error.MulticastJoinError("224.0.0.9", "192.168.1.10")
        listener.makeConnection(FakeTransport(join_result=err))
        assert listener.exit_status == 1
        assert reactor.stopped


class TestBackpressure(object):

    def test_full_channel_pauses_listener(self, listener, channel):
        data = response(*[rte("10.%d.0.0" % i, "255.255.0.0", 1)
                          for i in range(4)])
        listener.datagramReceived(data, SENDER)
        assert channel.paused
        assert not listener.transport.reading

    def test_overflow_dropped(self, listener, channel):
        data = response(*[rte("10.%d.0.0" % i, "255.255.0.0", 1)
                          for i in range(6)])
        listener.datagramReceived(data, SENDER)
        assert len(channel.pending) == 4
        assert channel.dropped == 2

    def test_drain_resumes_listener(self, listener, channel):
        data = response(*[rte("10.%d.0.0" % i, "255.255.0.0", 1)
                          for i in range(4)])
        listener.datagramReceived(data, SENDER)
        channel.get()
        assert not listener.transport.reading
        channel.get()
        assert listener.transport.reading
        assert not channel.paused

    def test_waiting_consumer_takes_directly(self, listener, channel):
        received = []
        channel.get().addCallback(received.append)
        listener.datagramReceived(
            response(rte("10.0.0.0", "255.255.255.0", 2)), SENDER)
        assert received == [adv("10.0.0.0", 24, 2, "192.168.1.1")]
        assert channel.pending == []


class TestReceiveError(object):

    def test_backoff(self, listener, reactor):
        listener.receiveError(OSError(errno.ENOBUFS, "No buffer space"))
        assert not listener.transport.reading
        reactor.advance(0.5)
        assert not listener.transport.reading
        reactor.advance(0.5)
        assert listener.transport.reading

    def test_repeated_errors_single_backoff(self, listener, reactor):
        listener.receiveError(OSError(errno.ENOBUFS, "No buffer space"))
        listener.receiveError(OSError(errno.ENOBUFS, "No buffer space"))
        assert len(reactor.getDelayedCalls()) == 1

    def test_backoff_keeps_paused_listener_paused(self, listener, reactor):
        listener.pauseProducing()
        listener.receiveError(OSError(errno.ENOBUFS, "No buffer space"))
        reactor.advance(1)
        assert not listener.transport.reading
        listener.resumeProducing()
        assert listener.transport.reading

    def test_resume_waits_for_backoff(self, listener, reactor):
        listener.pauseProducing()
        listener.receiveError(OSError(errno.ENOBUFS, "No buffer space"))
        listener.resumeProducing()
        assert not listener.transport.reading
        reactor.advance(1)
        assert listener.transport.reading


class TestPort(object):

    def test_read_error_reported_to_protocol(self, monkeypatch):
        errors = []

        class Proto(object):
            def receiveError(self, err):
                errors.append(err)

        def fail(self):
            raise OSError(errno.ENETDOWN, "Network is down")

        monkeypatch.setattr(ripclient.udp.MulticastPort, "doRead", fail)
        port = ripclient.RIPMulticastPort(0, Proto(), reactor=FakeReactor())
        port.doRead()
        assert len(errors) == 1
        assert errors[0].errno == errno.ENETDOWN

