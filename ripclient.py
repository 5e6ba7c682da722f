#!/usr/bin/env python

"""A passive RIPv2 client. Listens for RIPv2 responses on the RIP multicast
group and mirrors the advertised routes into the kernel routing table,
withdrawing them once the network goes quiet."""

# ripclient.py
# Copyright (C) 2012 Patrick F. Allen
#
# This program is free software; you can redistribute it and/or
# modify it under the terms of the GNU General Public License
# as published by the Free Software Foundation; either version 2
# of the License, or (at your option) any later version.
#
# This program is distributed in the hope that it will be useful,
# but WITHOUT ANY WARRANTY; without even the implied warranty of
# MERCHANTABILITY or FITNESS FOR A PARTICULAR PURPOSE.  See the
# GNU General Public License for more details.
#
# You should have received a copy of the GNU General Public License
# along with this program; if not, write to the Free Software
# Foundation, Inc., 51 Franklin Street, Fifth Floor, Boston, MA 02110-1301, USA.

import sys
import time
import struct
import binascii
import optparse
import ipaddress
import logging
from collections import OrderedDict

from zope.interface import implementer
from twisted.internet import defer, error, protocol, task, udp
from twisted.internet.interfaces import IPushProducer
from twisted.python import log as twisted_log

import riputil
import ripadmin
import sysiface

log = logging.getLogger("RIP")


class RIPHeader(object):
    FORMAT = ">BBH"
    SIZE = struct.calcsize(FORMAT)
    TYPE_REQUEST = 1
    TYPE_RESPONSE = 2
    VERSION = 2

    def __init__(self, rawdata=None, cmd=None, ver=None):
        if cmd and ver:
            self.cmd = cmd
            self.ver = ver
            self.zero = 0
        elif rawdata:
            self._init_from_net(rawdata)
        else:
            raise(ValueError)

    def __repr__(self):
        return "RIPHeader(cmd=%d, ver=%d)" % (self.cmd, self.ver)

    def _init_from_net(self, rawdata):
        """Init from data received from the network. Only RIPv2 responses are
        accepted; RIPv1 and requests are rejected rather than parsed."""
        self.cmd, self.ver, self.zero = struct.unpack(self.FORMAT, rawdata)
        if self.cmd != self.TYPE_RESPONSE or \
           self.ver != self.VERSION or \
           self.zero != 0:
            raise VersionException("Not a RIPv2 response: cmd=%d ver=%d" %
                                   (self.cmd, self.ver))

    def serialize(self):
        return struct.pack(self.FORMAT, self.cmd, self.ver, 0)


class RIPRouteEntry(object):
    """One 20 byte route entry as it appears on the wire (RFC 2453
    section 4)."""

    FORMAT = ">HHIIII"
    SIZE = struct.calcsize(FORMAT)
    AFI_INET = 2

    def __init__(self, rawdata=None, address="0.0.0.0", mask="0.0.0.0",
                 nexthop="0.0.0.0", metric=1, tag=0, afi=AFI_INET):
        if rawdata:
            afi, tag, address, mask, nexthop, metric = \
                struct.unpack(self.FORMAT, rawdata)
        self.afi = afi
        self.tag = tag
        self.address = ipaddress.IPv4Address(address)
        self.mask = ipaddress.IPv4Address(mask)
        self.nexthop = ipaddress.IPv4Address(nexthop)
        self.metric = metric

    def __repr__(self):
        return "RIPRouteEntry(afi=%d, address=%s, mask=%s, nexthop=%s, " \
               "metric=%d, tag=%d)" % (self.afi, self.address, self.mask,
                                       self.nexthop, self.metric, self.tag)

    def serialize(self):
        return struct.pack(self.FORMAT, self.afi, self.tag,
                           int(self.address), int(self.mask),
                           int(self.nexthop), self.metric)


class RIPPacket(object):
    def __init__(self, data=None, src_ip=None, hdr=None, rtes=None):
        """Create a RIP packet either from the binary data received from the
        network, or from a RIP header and RTE list."""
        if data is not None and src_ip:
            self._init_from_net(data, src_ip)
        elif hdr and rtes is not None:
            self.hdr = hdr
            self.rtes = rtes
            self.src_ip = None
        else:
            raise(ValueError)

    def __repr__(self):
        return "RIPPacket: Command %d, Version %d, number of RTEs %d." % \
                (self.hdr.cmd, self.hdr.ver, len(self.rtes))

    def _init_from_net(self, data, src_ip):
        datalen = len(data)
        if datalen < RIPHeader.SIZE:
            raise FormatException("Packet too short: %d byte(s)" % datalen)

        self.hdr = RIPHeader(data[:RIPHeader.SIZE])

        # A truncated entry means the whole packet is suspect.
        if (datalen - RIPHeader.SIZE) % RIPRouteEntry.SIZE:
            raise FormatException("Invalid length: %d byte(s)" % datalen)

        self.src_ip = ipaddress.IPv4Address(src_ip)
        self.rtes = []
        for start in range(RIPHeader.SIZE, datalen, RIPRouteEntry.SIZE):
            self.rtes.append(RIPRouteEntry(
                                rawdata=data[start:start + RIPRouteEntry.SIZE]))

    def advertisements(self):
        """Return an Advertisement for each IPv4 entry, in packet order.
        Entries of any other family (e.g. authentication) are skipped."""
        advs = []
        for rte in self.rtes:
            if rte.afi != RIPRouteEntry.AFI_INET:
                log.debug5("Skipping entry with family %d." % rte.afi)
                continue
            advs.append(Advertisement(rte.address,
                                      mask_to_prefixlen(rte.mask),
                                      rte.metric, self.src_ip))
        return advs

    def serialize(self):
        packed = self.hdr.serialize()
        for rte in self.rtes:
            packed += rte.serialize()
        return packed


def mask_to_prefixlen(mask):
    """Count the leading one bits of a subnet mask.

    A zero mask or a non-contiguous mask (a one bit after a zero bit) gives
    32, so such an entry is handled as a host route."""
    bits = int(ipaddress.IPv4Address(mask))
    if bits == 0:
        return 32
    inverted = ~bits & 0xffffffff
    if inverted & (inverted + 1):
        return 32
    return 32 - inverted.bit_length()


class Advertisement(object):
    """A route learned from a RIP response. The datagram's sender is the
    nexthop."""

    def __init__(self, destination, prefixlen, metric, source):
        self.destination = ipaddress.IPv4Address(destination)
        self.prefixlen = prefixlen
        self.metric = metric
        self.source = ipaddress.IPv4Address(source)

    @property
    def key(self):
        # The metric is part of the identity: a new metric is a new route.
        return (self.destination, self.prefixlen, self.metric)

    def __repr__(self):
        return "Advertisement(%s/%d, metric=%d, source=%s)" % \
               (self.destination, self.prefixlen, self.metric, self.source)

    def __eq__(self, other):
        if not isinstance(other, Advertisement):
            return NotImplemented
        return self.key == other.key and self.source == other.source

    def __hash__(self):
        return hash(self.key + (self.source,))


class RejectRule(object):
    """Exact (network, prefix length) match. No subnet containment."""

    def __init__(self, network, prefixlen=32):
        self.network = ipaddress.IPv4Address(network)
        if not 0 <= prefixlen <= 32:
            raise ValueError("Invalid prefix length: %d" % prefixlen)
        self.prefixlen = prefixlen

    def matches(self, adv):
        return self.network == adv.destination and \
               self.prefixlen == adv.prefixlen

    def __repr__(self):
        return "RejectRule(%s/%d)" % (self.network, self.prefixlen)

    def __eq__(self, other):
        return isinstance(other, RejectRule) and \
               (self.network, self.prefixlen) == \
               (other.network, other.prefixlen)

    def __hash__(self):
        return hash((self.network, self.prefixlen))


def parse_reject_routes(text):
    """Parse "10.0.0.0/8;192.168.1.1" into RejectRules. A missing prefix
    length means /32. Raises ValueError on a bad entry."""
    rules = []
    if not text:
        return rules
    for item in text.split(";"):
        item = item.strip()
        if not item:
            continue
        tks = item.split("/")
        if len(tks) > 2:
            raise ValueError("Invalid reject route: %s" % item)
        prefixlen = 32
        if len(tks) == 2:
            prefixlen = int(tks[1])
        rules.append(RejectRule(tks[0], prefixlen))
    return rules


def is_rejected(adv, rules):
    for rule in rules:
        if rule.matches(adv):
            return True
    return False


class AdvertisementChannel(defer.DeferredQueue):
    """Bounded handoff from the datagram listener to the reconciler.

    The listener is registered as a push producer. It is paused when the
    channel fills and resumed once the channel has drained to half its
    size. Anything put while full is dropped."""

    DEFAULT_SIZE = 512

    def __init__(self, size=DEFAULT_SIZE):
        defer.DeferredQueue.__init__(self, size=size)
        self.producer = None
        self.paused = False
        self.dropped = 0

    def registerProducer(self, producer):
        self.producer = producer

    def put(self, obj):
        try:
            defer.DeferredQueue.put(self, obj)
        except defer.QueueOverflow:
            self.dropped += 1
            log.warning("Advertisement queue full, dropping %s" % (obj,))
            return
        if len(self.pending) >= self.size and not self.paused:
            log.debug1("Advertisement queue full, pausing the listener.")
            self.paused = True
            if self.producer:
                self.producer.pauseProducing()

    def get(self):
        d = defer.DeferredQueue.get(self)
        if self.paused and len(self.pending) <= self.size // 2:
            log.debug1("Advertisement queue drained, resuming the listener.")
            self.paused = False
            if self.producer:
                self.producer.resumeProducing()
        return d


class RouteReconciler(object):
    """Mirrors accepted advertisements into the kernel and withdraws them
    once no advertisement has been accepted for quiet_period seconds.

    Every change to self.installed and self.last_update happens in
    handle_advertisement or expire_routes, which are only ever called from
    the reactor thread, one at a time.

    clock only schedules the expiry check. Ages are measured with now, a
    monotonic source, so a wall clock step can't delay or force a
    withdrawal."""

    DEFAULT_CHECK_INTERVAL = 180
    DEFAULT_QUIET_PERIOD = 300

    def __init__(self, platform, interface, clock, reject_rules=None,
                 executor=sysiface.run_command,
                 quiet_period=DEFAULT_QUIET_PERIOD, now=time.monotonic):
        self.platform = platform
        self.interface = interface
        self.clock = clock
        self.now = now
        self.reject_rules = reject_rules or []
        self.executor = executor
        self.quiet_period = quiet_period

        self.installed = OrderedDict()
        self.last_update = None
        self._expiry = None
        self._check_interval = None
        self._running = False

    def _execute(self, prog, args):
        """Run a route command. An executor that raises is reported as a
        failed command."""
        try:
            return self.executor(prog, args)
        except Exception as e:
            log.exception("Route command crashed: %s" %
                          " ".join([prog] + args))
            return sysiface.CommandResult(None, error=repr(e))

    def handle_advertisement(self, adv):
        """Install the route for adv unless it is rejected or already
        tracked. Returns True if the route became tracked."""
        if is_rejected(adv, self.reject_rules):
            log.info("Rejecting route %s/%d from %s." %
                     (adv.destination, adv.prefixlen, adv.source))
            return False

        if adv.key in self.installed:
            log.debug3("Already installed: %s" % adv)
            return False

        prog, args = self.platform.route_command("add", adv, self.interface)
        cmdline = " ".join([prog] + args)
        result = self._execute(prog, args)

        if result.ok:
            log.info("Installed: %s" % cmdline)
        elif self.platform.route_exists(result):
            log.info("Already in the kernel, tracking it: %s" % cmdline)
        else:
            log.warning("Cannot install: %s, reason: %s" %
                        (cmdline, result.error or result.output))
            return False

        self.installed[adv.key] = adv
        self.last_update = self.now()
        return True

    def age(self):
        """Seconds since the last accepted advertisement, or None."""
        if self.last_update is None:
            return None
        return self.now() - self.last_update

    def expire_routes(self):
        """Withdraw every tracked route if the network has been quiet long
        enough. Returns the number of routes withdrawn."""
        if not self.installed:
            return 0
        quiet_for = self.age()
        if quiet_for < self.quiet_period:
            log.debug2("Last advertisement %d second(s) ago, keeping %d "
                       "route(s)." % (quiet_for, len(self.installed)))
            return 0

        log.info("No advertisements for %d second(s). Withdrawing %d "
                 "route(s)." % (quiet_for, len(self.installed)))
        withdrawn = list(self.installed.values())
        for adv in withdrawn:
            prog, args = self.platform.route_command("del", adv,
                                                     self.interface)
            result = self._execute(prog, args)
            if not result.ok:
                log.warning("Cannot remove: %s, reason: %s" %
                            (" ".join([prog] + args),
                             result.error or result.output))

        # A failed delete is not retried. The route may already be gone.
        self.installed.clear()
        return len(withdrawn)

    def start(self, channel, check_interval=DEFAULT_CHECK_INTERVAL):
        self._running = True
        self._check_interval = check_interval
        self._start_expiry()
        self._consume(channel)

    def _start_expiry(self):
        self._expiry = task.LoopingCall(self.expire_routes)
        self._expiry.clock = self.clock
        d = self._expiry.start(self._check_interval, now=False)
        d.addErrback(self._expiry_failed)

    def _expiry_failed(self, failure):
        log.error("Route expiry check failed, restarting it: %s" %
                  failure.getTraceback())
        if self._running:
            self._start_expiry()

    def stop(self):
        self._running = False
        if self._expiry and self._expiry.running:
            self._expiry.stop()

    @defer.inlineCallbacks
    def _consume(self, channel):
        while self._running:
            adv = yield channel.get()
            if not self._running:
                break
            try:
                self.handle_advertisement(adv)
            except Exception:
                log.exception("Cannot handle %s" % (adv,))


@implementer(IPushProducer)
class RIPListener(protocol.DatagramProtocol):
    """Receives RIP responses and hands the decoded advertisements to the
    channel. Holds no routing state."""

    RIP_GROUP = "224.0.0.9"
    RECEIVE_BACKOFF = 1

    def __init__(self, channel, interface_ip, reactor):
        self.channel = channel
        self.interface_ip = interface_ip
        self.reactor = reactor
        self.exit_status = 0
        self._paused = False
        self._backoff = None
        channel.registerProducer(self)

    def startProtocol(self):
        log.info("Joining %s on %s." % (self.RIP_GROUP, self.interface_ip))
        d = self.transport.joinGroup(self.RIP_GROUP, self.interface_ip)
        d.addErrback(self._join_failed)
        return d

    def _join_failed(self, failure):
        log.critical("Cannot join %s on %s: %s" %
                     (self.RIP_GROUP, self.interface_ip,
                      failure.getErrorMessage()))
        self.exit_status = 1
        if self.reactor.running:
            self.reactor.stop()

    def datagramReceived(self, data, addr):
        host, port = addr[:2]
        log.debug2("Processing a datagram from host %s." % host)

        try:
            msg = RIPPacket(data=data, src_ip=host)
        except VersionException as e:
            log.info("Not a RIPv2 response from %s, discarding: %s" %
                     (host, e.message))
            return
        except FormatException as e:
            log.warning("Malformed RIP packet from %s, discarding: %s" %
                     (host, e.message))
            log.debug5("Hex dump: %s" %
                       binascii.hexlify(data).decode("ascii"))
            return
        except ValueError:
            log.warning("Invalid source address %s, discarding." % host)
            return

        log.debug5(msg)
        for adv in msg.advertisements():
            self.channel.put(adv)

    def receiveError(self, err):
        """Back off for a moment after a socket read error, so a persistent
        error doesn't spin the reactor."""
        log.error("Error reading packet: %s" % err)
        if self._backoff and self._backoff.active():
            return
        self.transport.stopReading()
        self._backoff = self.reactor.callLater(self.RECEIVE_BACKOFF,
                                               self._end_backoff)

    def _end_backoff(self):
        self._backoff = None
        if not self._paused:
            self.transport.startReading()

    def pauseProducing(self):
        self._paused = True
        self.transport.stopReading()

    def resumeProducing(self):
        self._paused = False
        if not (self._backoff and self._backoff.active()):
            self.transport.startReading()

    def stopProducing(self):
        self.pauseProducing()


class RIPMulticastPort(udp.MulticastPort):
    """A multicast port that reports socket read errors to its protocol
    instead of letting them escape into the reactor."""

    def doRead(self):
        try:
            udp.MulticastPort.doRead(self)
        except OSError as e:
            self.protocol.receiveError(e)


class _RIPException(Exception):
    def __init__(self, message=""):
        Exception.__init__(self, message)
        self.message = message


class FormatException(_RIPException):
    pass


class VersionException(FormatException):
    pass


def parse_args(argv):
    op = optparse.OptionParser()
    op.add_option("-i", "--interface", default="eth0",
                  help="Interface to listen on and install routes "
                       "through (eth0)")
    op.add_option("-p", "--rip-port", default=520, type="int",
                  help="RIP port number to use (520)")
    op.add_option("-l", "--listen-address", default="0.0.0.0",
                  help="Address to bind to (0.0.0.0)")
    op.add_option("-r", "--reject", type="str", action="append",
                  help="Routes to ignore, in CIDR notation, separated by "
                       "';'. Can specify -r multiple times.")
    op.add_option("-c", "--log-config", default="logging.conf",
                  help="The logging configuration file "
                       "(default logging.conf).")
    op.add_option("-t", "--check-interval", type="int",
                  default=RouteReconciler.DEFAULT_CHECK_INTERVAL,
                  help="Seconds between checks for a quiet network (180)")
    op.add_option("-q", "--quiet-period", type="int",
                  default=RouteReconciler.DEFAULT_QUIET_PERIOD,
                  help="Seconds without advertisements before all routes "
                       "are withdrawn (300)")
    op.add_option("-P", "--admin-port", default=1520, type="int",
                  help="Admin telnet interface port number to use, 0 to "
                       "disable (1520)")
    op.add_option("--platform", default=None,
                  help="Route command flavour: linux or darwin (default: "
                       "the running OS)")

    options, arguments = op.parse_args(argv[1:])

    if arguments:
        op.error("Unexpected non-option argument(s): '" +
                 " ".join(arguments) + "'")
    if options.check_interval <= 0:
        op.error("The check interval must be positive.")
    if options.quiet_period < 0:
        op.error("The quiet period can't be negative.")

    try:
        options.reject_rules = parse_reject_routes(";".join(options.reject
                                                            or []))
    except ValueError as e:
        op.error("Cannot parse reject routes: %s" % e)

    return options, arguments


def main(argv, reactor=None):
    options, arguments = parse_args(argv)

    try:
        riputil.init_logging(options.log_config)
    except Exception as e:
        sys.stderr.write("Cannot configure logging: %s\n" % e)
        return 1
    twisted_log.PythonLoggingObserver(loggerName="twisted").start()

    if not riputil.is_admin():
        sys.stderr.write("Must run as a privileged user (root). Exiting.\n")
        return 1

    if reactor is None:
        from twisted.internet import reactor

    try:
        platform = sysiface.get_platform(options.platform)
        interface_ip = platform.interface_address(options.interface)
    except (sysiface.NotSupported, sysiface.InterfaceError) as e:
        log.critical(e.message)
        return 1

    log.info("RIP client is starting up on %s (%s), platform %s." %
             (options.interface, interface_ip, platform.NAME))
    for rule in options.reject_rules:
        log.info("Rejecting %s/%d." % (rule.network, rule.prefixlen))

    channel = AdvertisementChannel()
    listener = RIPListener(channel, interface_ip, reactor)
    port = RIPMulticastPort(options.rip_port, listener,
                            interface=options.listen_address,
                            reactor=reactor)
    try:
        port.startListening()
    except error.CannotListenError as e:
        log.critical("Cannot listen: %s" % e)
        return 1
    if listener.exit_status:
        port.stopListening()
        return listener.exit_status

    reconciler = RouteReconciler(platform, options.interface, reactor,
                                 options.reject_rules,
                                 quiet_period=options.quiet_period)
    reconciler.start(channel, options.check_interval)

    if options.admin_port:
        ripadmin.start(reconciler, channel, port=options.admin_port,
                       reactor=reactor)

    reactor.run()
    return listener.exit_status


def run():
    sys.exit(main(sys.argv))


if __name__ == "__main__":
    run()
