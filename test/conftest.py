import struct

import pytest
from twisted.internet import defer, task

import ripclient
import sysiface


def rte(address, mask, metric, afi=2, nexthop="0.0.0.0", tag=0):
    return ripclient.RIPRouteEntry(address=address, mask=mask,
                                   nexthop=nexthop, metric=metric, tag=tag,
                                   afi=afi)


def response(*rtes, **kwargs):
    """Wire bytes for a RIP response carrying rtes."""
    hdr = ripclient.RIPHeader(cmd=kwargs.get("cmd", 2),
                              ver=kwargs.get("ver", 2))
    return ripclient.RIPPacket(hdr=hdr, rtes=list(rtes)).serialize()


def auth_entry(password=b"secret"):
    return struct.pack(">HH16s", 0xffff, 2, password)


class FakeExecutor(object):
    """Records route commands. Results are popped from self.results, or
    success when it's empty."""

    def __init__(self, *results):
        self.calls = []
        self.results = list(results)

    def __call__(self, prog, args):
        self.calls.append((prog, list(args)))
        if self.results:
            return self.results.pop(0)
        return sysiface.CommandResult(0)

    def actions(self):
        return [args[1] for prog, args in self.calls]


class FakeTransport(object):
    def __init__(self, join_result=None):
        self.reading = True
        self.stops = 0
        self.starts = 0
        self.joined = []
        self.join_result = join_result

    def joinGroup(self, addr, interface=""):
        self.joined.append((addr, interface))
        if self.join_result is not None:
            return defer.fail(self.join_result)
        return defer.succeed(1)

    def stopReading(self):
        self.stops += 1
        self.reading = False

    def startReading(self):
        self.starts += 1
        self.reading = True


class FakeReactor(task.Clock):
    running = True

    def __init__(self):
        task.Clock.__init__(self)
        self.stopped = False

    def stop(self):
        self.stopped = True


@pytest.fixture
def clock():
    return task.Clock()


@pytest.fixture
def executor():
    return FakeExecutor()


@pytest.fixture
def reconciler(clock, executor):
    return ripclient.RouteReconciler(sysiface.LinuxRoutePlatform(), "eth0",
                                     clock, executor=executor,
                                     now=clock.seconds)


def adv(destination="10.0.0.0", prefixlen=24, metric=2,
        source="192.168.1.1"):
    return ripclient.Advertisement(destination, prefixlen, metric, source)
