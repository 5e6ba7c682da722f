#!/usr/bin/env python

"""Logging and privilege helpers shared by the RIP client modules."""

# riputil.py
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

import os
import logging
import logging.config

# debug1 is less verbose, debug5 is more verbose.
DEBUG_LEVELS = [ (10, "DEBUG1"),
                 (9,  "DEBUG2"),
                 (8,  "DEBUG3"),
                 (7,  "DEBUG4"),
                 (6,  "DEBUG5"),
               ]


def create_new_log_level(level, name):
    """Add a custom log level. See my comment here:
    http://stackoverflow.com/questions/2183233/how-to-add-a-custom-loglevel-to-pythons-logging-facility
    """
    def newlog(self, msg, *args, **kwargs):
        if self.isEnabledFor(level):
            self._log(level, msg, args, **kwargs)
    logging.addLevelName(level, name)
    setattr(logging.Logger, name.lower(), newlog)


def init_logging(log_config):
    """Configure logging from an INI style file. Raises if the file can't
    be used; callers treat that as a startup error."""
    if not os.path.exists(log_config):
        raise IOError("Logging configuration %s not found." % log_config)
    logging.config.fileConfig(log_config, disable_existing_loggers=True)


def is_admin():
    """Route changes need root. Only POSIX systems are supported."""
    try:
        return os.geteuid() == 0
    except AttributeError:
        return False


for (_level, _name) in DEBUG_LEVELS:
    create_new_log_level(_level, _name)
