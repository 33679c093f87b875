"""
Host-wide lock serializing domain creation.

Domain creation races with the platform's free-memory accounting, so
every orchestrator process takes the same POSIX record lock around the
bring-up call. The lock is advisory and only keeps cooperating
orchestrators apart.
"""

import fcntl
import logging
import os
import stat

from domctl import defaults

LOG = logging.getLogger(__name__)


class LockError(Exception):
    pass


class AlreadyLockedError(LockError):

    def __init__(self, path):
        LockError.__init__(self, path)
        self.path = path

    def __str__(self):
        return "lock %s is already held by this session" % self.path


class LockFileError(LockError):

    def __init__(self, path, action, err):
        LockError.__init__(self, path, action, err)
        self.path = path
        self.action = action
        self.err = err

    def __str__(self):
        return "cannot %s the lockfile %s errno=%s" % (self.action, self.path,
                                                       self.err)


class SingleInstanceLock(object):

    """
    Exclusive whole-file lock on a well-known path.

    acquire() blocks until the lock is granted; there is no timeout.
    Acquiring twice from the same object is a programming error and
    raises AlreadyLockedError.

    >>> lock = SingleInstanceLock("/var/lock/xl")
    >>> with lock:
    ...     platform.domain_create_new(config)
    """

    def __init__(self, path=defaults.LOCK_FILE):
        self.path = path
        self._fd = -1

    @property
    def held(self):
        return self._fd >= 0

    def acquire(self):
        if self.held:
            raise AlreadyLockedError(self.path)
        try:
            fd = os.open(self.path, os.O_WRONLY | os.O_CREAT | os.O_CLOEXEC,
                         stat.S_IWUSR)
        except OSError as details:
            raise LockFileError(self.path, "open", details.errno)
        while True:
            try:
                fcntl.lockf(fd, fcntl.LOCK_EX)
                break
            except InterruptedError:
                continue
            except OSError as details:
                os.close(fd)
                raise LockFileError(self.path, "acquire", details.errno)
        self._fd = fd
        LOG.debug("acquired lock %s", self.path)

    def release(self):
        """
        Release the lock.

        :return: False if the lock was not held, True otherwise.
        """
        if not self.held:
            return False
        fd, self._fd = self._fd, -1
        try:
            while True:
                try:
                    fcntl.lockf(fd, fcntl.LOCK_UN)
                    break
                except InterruptedError:
                    continue
                except OSError as details:
                    LOG.error("cannot release lock %s, errno=%d", self.path,
                              details.errno)
                    raise LockFileError(self.path, "release", details.errno)
        finally:
            os.close(fd)
        LOG.debug("released lock %s", self.path)
        return True

    def __enter__(self):
        self.acquire()
        return self

    def __exit__(self, exc_type, exc_value, traceback):
        self.release()
