"""
Helper child processes of the orchestrator.

At most one child per role is outstanding at a time: the console
client, the VNC viewer, the daemonizing intermediate and the migration
transport. Children are created with fork() and reaped explicitly; the
orchestrator never relies on SIGCHLD.
"""

import enum
import logging
import os
import select
import signal
import sys
import time

from domctl import defaults
from domctl import utils_logfile
from domctl import utils_misc

LOG = logging.getLogger(__name__)

# Time between two polls of a child that is expected to exit soon
POLL_INTERVAL = 0.001


class Role(enum.Enum):
    CONSOLE = "console child"
    VNCVIEWER = "vncviewer child"
    WAITDAEMON = "domain monitoring daemonizing child"
    MIGRATION = "migration transport process"


class ChildError(Exception):

    def __init__(self, role, reason):
        Exception.__init__(self, role, reason)
        self.role = role
        self.reason = reason

    def __str__(self):
        return "%s: %s" % (self.role.value, self.reason)


class ExitOutcome(object):

    """
    How a child ended, as far as we know.

    :param pid: Pid of the child.
    :param status: Raw wait status, or None when it is unknown.
    """

    def __init__(self, pid, status=None, description=None):
        self.pid = pid
        self.status = status
        self.description = description

    @property
    def unknown(self):
        return self.status is None

    @property
    def ok(self):
        return self.status == 0

    @property
    def exit_code(self):
        if self.status is not None and os.WIFEXITED(self.status):
            return os.WEXITSTATUS(self.status)
        return None

    def describe(self):
        if self.status is None:
            return "exit status unknown"
        if os.WIFEXITED(self.status):
            code = os.WEXITSTATUS(self.status)
            if not code:
                return "exited normally"
            return "exited with error status %d" % code
        if os.WIFSIGNALED(self.status):
            signum = os.WTERMSIG(self.status)
            name = signal.strsignal(signum) or "signal %d" % signum
            msg = "died due to fatal signal %s" % name
            if os.WCOREDUMP(self.status):
                msg += " (core dumped)"
            return msg
        return "changed state (wait status %#x)" % self.status

    def __str__(self):
        prefix = "%s [%d]" % (self.description or "child", self.pid)
        return "%s %s" % (prefix, self.describe())


def _run_child_body(body):
    """
    Run body in a freshly forked child and leave the process.
    """
    status = 1
    try:
        rc = body()
        status = rc if isinstance(rc, int) else 0
    except SystemExit as details:
        if details.code is None:
            status = 0
        elif isinstance(details.code, int):
            status = details.code
        else:
            status = 1
    except BaseException:  # pylint: disable=W0703
        LOG.exception("child process body failed")
    finally:
        try:
            sys.stdout.flush()
            sys.stderr.flush()
        finally:
            os._exit(status)


class ChildProcessSupervisor(object):

    """
    Registry of the outstanding helper children, one per Role.
    """

    def __init__(self):
        self._children = {}

    def child_pid(self, role):
        """
        :return: the pid registered for role, or None.
        """
        entry = self._children.get(role)
        return entry[0] if entry else None

    def spawn(self, role, body, description=None):
        """
        Fork a child running body().

        In the child, body's return value (or 1 if it raised) becomes the
        exit status and this method never returns.

        :param role: The Role the child plays.
        :param body: Callable run in the child.
        :param description: Text used when reporting the child.
        :raise ChildError: If a child with this role is outstanding.
        :return: the child pid, in the parent.
        """
        if role in self._children:
            raise ChildError(role, "already running as pid %d"
                             % self._children[role][0])
        description = description or role.value
        sys.stdout.flush()
        sys.stderr.flush()
        pid = os.fork()
        if pid == 0:
            self._children.clear()
            _run_child_body(body)
        LOG.debug("%s started [%d]", description, pid)
        self._children[role] = (pid, description)
        return pid

    def _reaped(self, role, status, level=logging.ERROR):
        pid, description = self._children.pop(role)
        outcome = ExitOutcome(pid, status, description)
        if status:
            LOG.log(level, "%s", outcome)
        return outcome

    def report(self, role):
        """
        Wait for the child with role to exit and reap it.

        :raise ChildError: If no such child is registered or the wait fails.
        :return: its ExitOutcome.
        """
        pid = self.child_pid(role)
        if pid is None:
            raise ChildError(role, "no such child")
        while True:
            try:
                _, status = os.waitpid(pid, 0)
                break
            except InterruptedError:
                continue
            except OSError as details:
                self._children.pop(role)
                raise ChildError(role, "failed to waitpid [%d]: %s"
                                 % (pid, details))
        return self._reaped(role, status)

    def reap_if_running(self, role):
        """
        Report the child with role if there is one.

        :return: its ExitOutcome, or None when there was no child.
        """
        if self.child_pid(role) is None:
            return None
        try:
            return self.report(role)
        except ChildError as details:
            LOG.warning("warning, %s", details)
            return None

    def report_bounded(self, role, timeout=defaults.MIGRATION_CHILD_WAIT,
                       recv_fd=None):
        """
        Reap the child with role if it exits within timeout seconds.

        While waiting, recv_fd (if given) is watched so an EOF from the
        child wakes us; once it has fired we fall back to short sleeps.
        A child still running at the deadline is left alone and its exit
        status goes unreported.

        :return: its ExitOutcome (unknown if it did not exit in time), or
                 None when there was no child.
        """
        pid = self.child_pid(role)
        if pid is None:
            return None
        description = self._children[role][1]
        deadline = time.monotonic() + timeout
        while True:
            try:
                got, status = os.waitpid(pid, os.WNOHANG)
            except InterruptedError:
                continue
            except OSError as details:
                self._children.pop(role)
                LOG.error("wait for %s [%d] failed: %s", description, pid,
                          details)
                return ExitOutcome(pid, None, description)
            if got == pid:
                return self._reaped(role, status, logging.INFO)
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                LOG.warning("%s [%d] not exiting, no longer waiting (exit "
                            "status will be unreported)", description, pid)
                self._children.pop(role)
                return ExitOutcome(pid, None, description)
            if recv_fd is not None and recv_fd >= 0:
                try:
                    ready = select.select([recv_fd], [], [recv_fd],
                                          remaining)
                except InterruptedError:
                    continue
                if ready[0] or ready[2]:
                    recv_fd = None
            else:
                time.sleep(min(remaining, POLL_INTERVAL))

    def daemonize(self, name, pidfile=None):
        """
        Continue in a detached daemon whose output goes to a log file.

        The original process waits for the intermediate child and gets
        True back. The daemon gets False and carries on with the caller's
        work; its stdin is /dev/null and stdout/stderr go to the rotated
        log file of name.

        :param name: Daemon name, used for the log file name.
        :param pidfile: Where the daemon writes its pid, if given.
        :raise ChildError: In the original process, if the intermediate
                child failed.
        """
        role = Role.WAITDAEMON
        if role in self._children:
            raise ChildError(role, "already running as pid %d"
                             % self._children[role][0])
        sys.stdout.flush()
        sys.stderr.flush()
        pid = os.fork()
        if pid:
            self._children[role] = (pid, role.value)
            outcome = self.report(role)
            if not outcome.ok:
                raise ChildError(role, outcome.describe())
            return True

        self._children.clear()
        try:
            logfd = utils_logfile.open_logfile(name)
            nullfd = os.open(os.devnull, os.O_RDONLY)
            os.dup2(nullfd, 0)
            os.dup2(logfd, 1)
            os.dup2(logfd, 2)
            utils_misc.close_quietly(nullfd)
            utils_misc.close_quietly(logfd)
            # detach the way daemon(0, 1) does
            if os.fork():
                os._exit(0)
            os.setsid()
            os.chdir("/")
            if pidfile:
                utils_misc.write_pid(pidfile)
        except OSError as details:
            LOG.error("failed to daemonize %s: %s", name, details)
            os._exit(1)
        return False


def exec_transport(rune, send_read_fd, recv_write_fd, close_fds=()):
    """
    Child body: run rune with sh, reading stdin from send_read_fd and
    writing stdout to recv_write_fd.
    """
    signal.signal(signal.SIGPIPE, signal.SIG_DFL)
    os.dup2(send_read_fd, 0)
    os.dup2(recv_write_fd, 1)
    for fd in set((send_read_fd, recv_write_fd) + tuple(close_fds)):
        if fd > 2:
            utils_misc.close_quietly(fd)
    try:
        os.execlp("sh", "sh", "-c", rune)
    except OSError as details:
        LOG.error("failed to exec sh: %s", details)
    return 1


def exec_console(platform_obj, domid, notify_fd):
    """
    Child body: replace the process with the console client of domid.
    """
    time.sleep(1)
    try:
        # the client writes its readiness byte to notify_fd after exec
        os.set_inheritable(notify_fd, True)
        platform_obj.primary_console_exec(domid, notify_fd)
    except Exception as details:  # pylint: disable=W0703
        LOG.error("unable to exec console client: %s", details)
    return 1


def exec_vncviewer(platform_obj, domid, autopass):
    """
    Child body: replace the process with a VNC viewer for domid.
    """
    time.sleep(1)
    try:
        platform_obj.vncviewer_exec(domid, autopass)
    except Exception as details:  # pylint: disable=W0703
        LOG.error("Unable to execute vncviewer: %s", details)
    return 1
