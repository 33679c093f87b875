"""
Orchestrator utility functions.

Byte-exact descriptor I/O used by the save-file codec and the migration
protocol, plus pid file handling for the monitoring daemon.
"""

import errno
import logging
import os

from avocado.utils import genio

LOG = logging.getLogger(__name__)


class ShortReadError(Exception):

    """
    Raised when a stream ends before the requested amount was read.
    """

    def __init__(self, source, what, wanted, got):
        Exception.__init__(self, source, what, wanted, got)
        self.source = source
        self.what = what
        self.wanted = wanted
        self.got = got

    def __str__(self):
        return ("file/stream truncated reading %s from %s (wanted %d bytes, "
                "got %d)" % (self.what, self.source, self.wanted, self.got))


def read_exactly(stream, size, source="stream", what="data"):
    """
    Read exactly size bytes from stream.

    Descriptors are read with os.read() so nothing past the requested
    bytes is consumed; whatever follows still belongs to the caller.

    :param stream: A raw file descriptor or an object with a read() method.
    :param size: Number of bytes wanted.
    :param source: Name of the stream, for error messages.
    :param what: What is being read, for error messages.
    :raise ShortReadError: If EOF arrives before size bytes were read.
    :return: The bytes read.
    """
    chunks = []
    got = 0
    while got < size:
        try:
            if isinstance(stream, int):
                chunk = os.read(stream, size - got)
            else:
                chunk = stream.read(size - got)
        except InterruptedError:
            continue
        if not chunk:
            raise ShortReadError(source, what, size, got)
        chunks.append(chunk)
        got += len(chunk)
    return b"".join(chunks)


def write_exactly(stream, data, source="stream", what="data"):
    """
    Write all of data to stream.

    :param stream: A raw file descriptor or an object with a write() method.
    :param data: Bytes to write.
    :param source: Name of the stream, for error messages.
    :param what: What is being written, for error messages.
    :raise OSError: If the underlying write fails (e.g. EPIPE).
    """
    view = memoryview(data)
    while view:
        try:
            if isinstance(stream, int):
                written = os.write(stream, view)
            else:
                written = stream.write(view)
                if written is None:
                    written = len(view)
        except InterruptedError:
            continue
        except OSError as details:
            LOG.error("failed to write %s to %s: %s", what, source, details)
            raise
        view = view[written:]
    if not isinstance(stream, int) and hasattr(stream, "flush"):
        stream.flush()


def close_quietly(fd):
    """
    Close a descriptor, logging (not raising) if that fails.
    """
    if fd is None or fd < 0:
        return
    try:
        os.close(fd)
    except OSError as details:
        if details.errno != errno.EBADF:
            LOG.warning("failed to close fd %d: %s", fd, details)


def write_pid(pidfile):
    """
    Write the pid of the current process to pidfile.

    :param pidfile: Path of the pid file, created with mode 0600.
    """
    fd = os.open(pidfile, os.O_RDWR | os.O_CREAT, 0o600)
    os.close(fd)
    genio.write_one_line(pidfile, "%d" % os.getpid())
