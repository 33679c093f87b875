"""
Daemon log file utility functions.

A monitoring daemon writes everything it would print to a per-domain log
file. Older logs are kept, rotated as name.log.1 .. name.log.9.
"""

import logging
import os

from avocado.utils import path as utils_path

from domctl import defaults

LOG = logging.getLogger(__name__)

_log_file_dir = defaults.LOG_DIR

# Log generations kept, the live file included
LOG_ROTATE_KEEP = 10


def set_log_file_dir(directory):
    """
    Set the base directory for daemon log files

    :param directory: Directory for log files
    """
    global _log_file_dir
    _log_file_dir = directory


def get_log_file_dir():
    """
    Get the base directory for daemon log files
    """
    return _log_file_dir


def get_log_filename(name):
    """
    Return full path of the log file of the daemon called name
    """
    return os.path.join(_log_file_dir, "%s.log" % name)


def rotate(logfile, keep=LOG_ROTATE_KEEP):
    """
    Shift logfile.1 .. logfile.(keep-2) up by one and move logfile to .1.

    Missing generations are skipped; the oldest one is overwritten.
    """
    for i in range(keep - 1, 0, -1):
        if i > 1:
            older = "%s.%d" % (logfile, i - 1)
        else:
            older = logfile
        if not os.path.exists(older):
            continue
        newer = "%s.%d" % (logfile, i)
        LOG.debug("rotating %s to %s", older, newer)
        os.rename(older, newer)


def create_logfile(name):
    """
    Rotate the log of daemon name and return the path of a fresh one.

    :param name: Daemon name, usually "xl-<domain name>".
    :raise OSError: If the log directory cannot be created or the old
                    logs cannot be rotated.
    :return: Path of the (not yet created) log file.
    """
    utils_path.init_dir(_log_file_dir)
    logfile = get_log_filename(name)
    rotate(logfile)
    return logfile


def open_logfile(name):
    """
    Create the log file of daemon name for appending.

    :return: an O_APPEND file descriptor, mode 0644.
    """
    logfile = create_logfile(name)
    return os.open(logfile, os.O_WRONLY | os.O_CREAT | os.O_APPEND, 0o644)
