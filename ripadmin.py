#!/usr/bin/env python

"""Telnet style administrative console for the RIP client."""

# ripadmin.py
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

from cmd import Cmd
from twisted.internet import protocol
from twisted.protocols.basic import LineReceiver
import pprint
import inspect
import logging

log = logging.getLogger("Admin")

LEVELS = [ "OFF", "CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG" ]
SUBSYSTEMS = [ "RIP", "SYSTEM" ]


class _TransportWriter(object):
    """File-like wrapper so Cmd can write text to a byte transport."""

    def __init__(self, transport):
        self.transport = transport

    def write(self, data):
        self.transport.write(data.encode("utf-8"))

    def flush(self):
        pass


class RIPAdminProtocol(LineReceiver):
    """Network accessible administrative interface for the RIPAdminCLI."""

    delimiter = b"\n"

    def __init__(self, reconciler, channel, prompt):
        self.reconciler = reconciler
        self.channel = channel
        self.prompt = prompt

    def connectionMade(self):
        self.out = _TransportWriter(self.transport)
        self.cli = RIPAdminCLI(self.reconciler, self.channel, self.prompt,
                               stdout=self.out)

        # Using raw_input seems to cause some screwiness.
        self.cli.use_rawinput = False
        self.out.write("Connected to the RIP client administrative "
                       "interface.\n"
                       "  Type ? for a list of commands.\n"
                       "  Type help <COMMAND> for command info.\n"
                       "  Type 'exit' to exit.\n")
        self.out.write(self.cli.prompt)

    def connectionLost(self, reason):
        if hasattr(self, "cli"):
            self.cli.delete_all_handlers()

    def lineReceived(self, line):
        line = line.decode("utf-8", "replace").strip()
        try:
            self.cli.onecmd(line)
            self.out.write(self.cli.prompt)
        except RIPAdminExit:
            self.out.write("Disconnecting by operator command.\n")
            self.transport.loseConnection()


class RIPAdminCLI(Cmd):
    """Administrative interface for the RIP client."""

    def __init__(self, reconciler, channel, prompt, *args, **kwargs):
        Cmd.__init__(self, *args, **kwargs)
        self.reconciler = reconciler
        self.channel = channel
        self.prompt = prompt
        self.my_handlers = {}

    def do_EOF(self, line):
        """Exit the CLI."""
        raise RIPAdminExit

    def do_show_routes(self, line):
        """Show routes installed by the RIP client."""
        routes = list(self.reconciler.installed.values())
        self.sendline("%d routes:" % len(routes))
        if routes:
            self.sendline(pprint.pformat(routes))

    def do_show_status(self, line):
        """Show the time since the last accepted advertisement and queue
        statistics."""
        last = self.reconciler.last_update
        if last is None:
            self.sendline("No advertisement accepted yet.")
        else:
            age = self.reconciler.age()
            self.sendline("Last advertisement accepted %d second(s) ago." %
                          age)
        self.sendline("Routes installed: %d" % len(self.reconciler.installed))
        self.sendline("Quiet period: %d second(s)" %
                      self.reconciler.quiet_period)
        self.sendline("Queued advertisements: %d" % len(self.channel.pending))
        self.sendline("Dropped advertisements: %d" % self.channel.dropped)

    def do_debug(self, line):
        """Subscribe to log messages from a subsystem.
        Usage: debug <SUBSYSTEM> <LEVEL>
        SUBSYSTEM can be: RIP, SYSTEM
        LEVEL can be: OFF, CRITICAL, ERROR, WARNING, INFO, DEBUG"""
        args = line.split()
        if len(args) != 2:
            self.usage()
            return
        subsystem = args[0].upper()
        level = args[1].upper()

        if level not in LEVELS:
            self.stdout.write("Bad logging level.\n")
            self.usage()
            return

        if subsystem not in SUBSYSTEMS:
            self.stdout.write("Bad subsystem name.\n")
            self.usage()
            return

        # Logger names are "RIP" and "System".
        logger_name = subsystem if subsystem == "RIP" else subsystem.title()
        self.stdout.write("Setting %s to level %s.\n" % (subsystem, level))

        if level == "OFF":
            self.delete_handler(logger_name)
            return

        # If the handler already exists, set the new requested level. Other-
        # wise create a new handler.
        try:
            self.my_handlers[logger_name].setLevel(level)
        except KeyError:
            new_handler = logging.StreamHandler(self.stdout)
            new_handler.setLevel(level)
            formatter = logging.Formatter('%(asctime)s - %(name)s - '
                                          '%(levelname)s - %(message)s')
            new_handler.setFormatter(formatter)
            self.my_handlers[logger_name] = new_handler
            logging.getLogger(logger_name).addHandler(new_handler)

    def delete_handler(self, logger_name):
        handler = self.my_handlers.pop(logger_name, None)
        if handler:
            logging.getLogger(logger_name).removeHandler(handler)

    def delete_all_handlers(self):
        for logger_name in list(self.my_handlers):
            self.delete_handler(logger_name)

    def do_show_handlers(self, line):
        """Show debug handlers."""
        self.stdout.write(pprint.pformat(self.my_handlers) + "\n")

    def usage(self):
        self.stdout.write("Error parsing command. Usage:\n")
        try:
            # Prints the docstring of the caller, which (for 'do_' functions)
            # is a usage string used by the Cmd class for the 'help' command.
            self.stdout.write(inspect.getdoc(getattr(self,
                              (inspect.stack()[1][3]))) + "\n")
        except AttributeError:
            self.stdout.write("No usage available.\n")

    def sendline(self, line):
        self.stdout.write(str(line) + "\n")

    def emptyline(self):
        pass

    # Command aliases
    do_quit = do_EOF
    do_exit = do_EOF


class RIPAdminExit(Exception):
    """Notification that the CLI should exit."""
    pass


class RIPAdminProtocolFactory(protocol.ServerFactory):
    def __init__(self, reconciler, channel, prompt):
        self.reconciler = reconciler
        self.channel = channel
        self.prompt = prompt

    def buildProtocol(self, addr):
        log.info("Admin connection from %s." % addr.host)
        return RIPAdminProtocol(self.reconciler, self.channel, self.prompt)


def start(reconciler, channel, prompt="ripclient> ", port=1520,
          interface="127.0.0.1", reactor=None):
    if reactor is None:
        from twisted.internet import reactor
    return reactor.listenTCP(port, RIPAdminProtocolFactory(reconciler,
                                                           channel, prompt),
                             interface=interface)
