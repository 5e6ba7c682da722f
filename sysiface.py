#!/usr/bin/env python

"""Interface to the OS."""

# sysiface.py
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

import re
import sys
import logging
import subprocess

import riputil  # registers log.debug1 .. log.debug5

log = logging.getLogger("System")


class _RoutePlatform(object):
    """Abstract class for the OS-specific pieces needed to mirror RIP routes
    into the kernel. These are all the methods that need to be overridden
    by a subclass in order to support another OS."""

    NAME = None
    ACTIONS = ("add", "del")

    # Exit status of the route tool when the route is already in the kernel.
    ROUTE_EXISTS_STATUS = 2

    def route_exists(self, result):
        """True if a failed add means the kernel already has the route."""
        return result.returncode == self.ROUTE_EXISTS_STATUS

    def route_command(self, action, route, interface):
        """Build the command that adds or deletes a route.

        action is "add" or "del". route needs destination, prefixlen, metric
        and source (used as the nexthop). Returns a (prog, args) tuple.
        """
        if action not in self.ACTIONS:
            raise ValueError("Unknown route action: %s" % action)
        return self._route_command(action, route, interface)

    def _route_command(self, action, route, interface):
        """Override in subclass."""
        raise NotImplementedError

    def interface_address(self, name):
        """Return the first IPv4 address assigned to the named interface.

        Raises InterfaceError if the interface doesn't exist or has no IPv4
        address. Override in subclass."""
        raise NotImplementedError

    def _read_interface(self, cmd, pattern, name):
        try:
            output = subprocess.check_output(cmd, stderr=subprocess.STDOUT,
                                             universal_newlines=True,
                                             errors="replace")
        except subprocess.CalledProcessError as e:
            raise InterfaceError(name, e.output.strip())
        except OSError as e:
            raise InterfaceError(name, str(e))

        match = re.search(pattern, output)
        if not match:
            raise InterfaceError(name, "no IPv4 address assigned")
        log.debug2("Interface %s has address %s" % (name, match.group(1)))
        return match.group(1)

    def __repr__(self):
        return "%s()" % self.__class__.__name__


class LinuxRoutePlatform(_RoutePlatform):
    """The Linux interface: iproute2."""

    NAME = "linux"
    IP_CMD = "ip"
    RT_ARGS = "route %(action)s %(net)s/%(preflen)d via %(nh)s dev %(dev)s " \
              "proto rip metric %(metric)d"

    def _route_command(self, action, route, interface):
        args = self.RT_ARGS % {"action":  action,
                               "net":     route.destination,
                               "preflen": route.prefixlen,
                               "nh":      route.source,
                               "dev":     interface,
                               "metric":  route.metric,
                              }
        return self.IP_CMD, args.split()

    def interface_address(self, name):
        cmd = [self.IP_CMD] + ("-4 -o addr show dev %s" % name).split()
        return self._read_interface(cmd, r"\binet (\d+\.\d+\.\d+\.\d+)/",
                                    name)


class DarwinRoutePlatform(_RoutePlatform):
    """The macOS/BSD interface: route(8). It has no device or metric
    arguments, and spells the delete verb out."""

    NAME = "darwin"
    ROUTE_CMD = "route"
    VERBS = {"add": "add", "del": "delete"}
    RT_ARGS = "-n %(verb)s -net %(net)s/%(preflen)d %(nh)s"

    # route(8) exits 1 for every failure, so the message tells them apart.
    ROUTE_EXISTS_STATUS = 1
    ROUTE_EXISTS_MESSAGE = "File exists"

    def route_exists(self, result):
        return result.returncode == self.ROUTE_EXISTS_STATUS and \
               self.ROUTE_EXISTS_MESSAGE in result.output

    def _route_command(self, action, route, interface):
        args = self.RT_ARGS % {"verb":    self.VERBS[action],
                               "net":     route.destination,
                               "preflen": route.prefixlen,
                               "nh":      route.source,
                              }
        return self.ROUTE_CMD, args.split()

    def interface_address(self, name):
        return self._read_interface(["ifconfig", name],
                                    r"\binet (\d+\.\d+\.\d+\.\d+) ", name)


PLATFORMS = dict((cls.NAME, cls) for cls in (LinuxRoutePlatform,
                                              DarwinRoutePlatform))


def get_platform(name=None):
    """Return the route platform for name, or for the running OS if name is
    None. sys.platform style names ("linux2", "darwin") are accepted."""
    if name is None:
        name = sys.platform
    for key, cls in PLATFORMS.items():
        if name.startswith(key):
            return cls()
    raise NotSupported("No support for platform %s." % name)


class CommandResult(object):
    """Outcome of an external command. returncode is None when the command
    could not be started at all."""

    def __init__(self, returncode=0, output="", error=None):
        self.returncode = returncode
        self.output = output
        self.error = error

    @property
    def ok(self):
        return self.returncode == 0 and self.error is None

    def __repr__(self):
        if self.error:
            return "CommandResult(error=%s)" % self.error
        return "CommandResult(returncode=%s, output=%r)" % (self.returncode,
                                                            self.output)


def run_command(prog, args):
    """Run a route command to completion. Never raises for command failure;
    the outcome is reported in the returned CommandResult."""
    cmd = [prog] + list(args)
    log.debug3("Running: %s" % " ".join(cmd))
    try:
        output = subprocess.check_output(cmd, stderr=subprocess.STDOUT,
                                         universal_newlines=True,
                                         errors="replace")
    except subprocess.CalledProcessError as e:
        return CommandResult(e.returncode, (e.output or "").strip())
    except OSError as e:
        return CommandResult(None, error=str(e))
    return CommandResult(0, output.strip())


class _SystemException(Exception):
    def __init__(self, message=""):
        Exception.__init__(self, message)
        self.message = message


class NotSupported(_SystemException):
    pass


class InterfaceError(_SystemException):
    def __init__(self, name, reason=""):
        _SystemException.__init__(self, "Interface %s is unusable: %s" %
                                  (name, reason))
        self.name = name
        self.reason = reason
