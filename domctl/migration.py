"""
Live migration handshake.

The sender and the receiver talk over a pair of byte streams, usually the
stdin/stdout of an ssh command on the sender side and of the receiving
orchestrator on the other. After the receiver's banner, the sender ships
the save-file header, the domain configuration and the platform's state
stream, then both sides exchange fixed messages so that at any moment at
most one copy of the domain can be running::

    receiver                              sender
    banner                      ---->
                                <----     header + config + state
    "ready"                     ---->
                                          rename to <name>--migratedaway
                                <----     "permission to go"
    rename, unpause
    "report" + status byte      ---->
    (on failure) destroy, "permission to go back" ---->
                                          destroy (or resume on failure)

Once the sender has tried to send "permission to go" nothing can be
undone: a failure after that point leaves the domain state undefined and
is reported as such, never resolved by resuming.
"""

import enum
import logging
import os
import signal

from domctl import defaults
from domctl import domain_config
from domctl import lifecycle
from domctl import logging_manager
from domctl import platform
from domctl import save
from domctl import savefile
from domctl import utils_child
from domctl import utils_lock
from domctl import utils_misc
from domctl.utils_params import Params

LOG = logging.getLogger(__name__)

EXIT_SUCCESS = 0
EXIT_FAILURE = 1

RECEIVER_BANNER = b"xl migration receiver ready, send binary domain data.\n"
RECEIVER_READY = b"domain received, ready to unpause\0"
PERMISSION_TO_GO = b"domain is yours, you are cleared to unpause\0"
RECEIVER_REPORT = b"my copy unpause results are as follows\0"

SENDER_STREAM = "migration stream"
RECEIVER_STREAM = "migration receiver stream"
ACK_STREAM = "migration ack stream"

MIGRATED_AWAY_SUFFIX = "--migratedaway"

FAILED_BADLY_WARNING = (
    "** Migration failed during final handshake **\n"
    "Domain state is now undefined !\n"
    "Please CHECK AT BOTH ENDS for running instances, before renaming and\n"
    " resuming at most one instance.  Two simultaneous instances of the "
    "domain\n"
    " would probably result in SEVERE DATA LOSS and it is now your\n"
    " responsibility to avoid that.  Sorry.\n")


class MigrationError(Exception):

    def __init__(self, msg):
        Exception.__init__(self, msg)
        self.msg = msg

    def __str__(self):
        return self.msg


class ProtocolMismatchError(MigrationError):

    def __init__(self, stream, what, rune=None):
        msg = "%s contained unexpected data instead of %s" % (stream, what)
        if rune:
            msg += " (command run was: %s )" % rune
        MigrationError.__init__(self, msg)
        self.stream = stream
        self.what = what
        self.rune = rune


class SenderState(enum.Enum):
    SEND_CONFIG = "send config"
    AWAIT_READY = "await receiver ready"
    RENAME = "rename"
    SEND_GO = "send go"
    AWAIT_REPORT = "await report"
    DONE = "done"
    FAILED_SUSPEND = "failed to suspend"
    FAILED_BEFORE_GO = "failed before go"
    FAILED_AFTER_GO = "failed after go"
    FAILED_AT_TARGET = "failed at target, resumed"


# Forward transitions; any state may also fail
_NEXT_STATE = {
    SenderState.SEND_CONFIG: SenderState.AWAIT_READY,
    SenderState.AWAIT_READY: SenderState.RENAME,
    SenderState.RENAME: SenderState.SEND_GO,
    SenderState.SEND_GO: SenderState.AWAIT_REPORT,
    SenderState.AWAIT_REPORT: SenderState.DONE,
}


def read_fixed_message(fd, msg, what, rune=None):
    """
    Read len(msg) bytes from fd and check they are msg.

    :param rune: Transport command, mentioned in the error if given; also
            selects the stream name used in messages.
    :raise MigrationError: On EOF or a read error.
    :raise ProtocolMismatchError: If other bytes arrived.
    """
    stream = RECEIVER_STREAM if rune else SENDER_STREAM
    try:
        data = utils_misc.read_exactly(fd, len(msg), stream, what)
    except utils_misc.ShortReadError as details:
        raise MigrationError(str(details))
    except OSError as details:
        raise MigrationError("failed to read %s from %s: %s"
                             % (what, stream, details))
    if data != msg:
        raise ProtocolMismatchError(stream, what, rune)


def write_message(fd, msg, stream, what):
    """
    :raise MigrationError: If msg could not be written in full.
    """
    try:
        utils_misc.write_exactly(fd, msg, stream, what)
    except OSError as details:
        raise MigrationError("failed to write %s to %s: %s"
                             % (what, stream, details))


def build_migration_rune(host, ssh_command=defaults.DEFAULT_SSH_COMMAND,
                         daemonize=True, debug=False,
                         pause_after_migration=False, pass_tty=False,
                         verbosity=0):
    """
    Command line that starts the receiving end on host.

    An empty ssh_command means host already is the whole command.
    """
    if not ssh_command:
        return host
    return "exec %s %s xl%s%s migrate-receive%s%s%s" % (
        ssh_command, host,
        " -t" if pass_tty else "",
        " -" + "v" * verbosity if verbosity else "",
        "" if daemonize else " -e",
        " -d" if debug else "",
        " -p" if pause_after_migration else "")


def build_replication_rune(host, ssh_command=defaults.DEFAULT_SSH_COMMAND,
                           daemonize=True, colo=False, netbufscript=None):
    if not ssh_command:
        return host
    if not colo:
        return "exec %s %s xl migrate-receive -r%s" % (
            ssh_command, host, "" if daemonize else " -e")
    return "exec %s %s xl migrate-receive --colo%s%s" % (
        ssh_command, host,
        " --coloft-script %s" % netbufscript if netbufscript else "",
        "" if daemonize else " -e")


class MigrationSession(object):

    """
    Endpoints of one migration attempt.

    :param role: "sender" or "receiver".
    :param send_fd: Descriptor we write to.
    :param recv_fd: Descriptor we read from.
    :param supervisor: ChildProcessSupervisor owning the transport child,
            if there is one.
    :param rune: Command the transport child runs.
    """

    def __init__(self, role, send_fd, recv_fd, supervisor=None, rune=None,
                 config_data=b""):
        self.role = role
        self.send_fd = send_fd
        self.recv_fd = recv_fd
        self.supervisor = supervisor
        self.rune = rune
        self.config_data = config_data

    @property
    def has_transport(self):
        return (self.supervisor is not None and
                self.supervisor.child_pid(utils_child.Role.MIGRATION)
                is not None)

    def close_send(self):
        utils_misc.close_quietly(self.send_fd)
        self.send_fd = -1

    def report_transport(self):
        """
        Best-effort report of the transport child's exit.
        """
        if self.has_transport:
            self.supervisor.report_bounded(utils_child.Role.MIGRATION,
                                           recv_fd=self.recv_fd)

    def close(self):
        self.close_send()
        self.report_transport()
        utils_misc.close_quietly(self.recv_fd)
        self.recv_fd = -1


def create_transport(supervisor, rune):
    """
    Start rune with sh, connected to us by two pipes.

    :return: a sender MigrationSession over the pipes.
    """
    send_r, send_w = os.pipe()
    recv_r, recv_w = os.pipe()
    supervisor.spawn(utils_child.Role.MIGRATION,
                     lambda: utils_child.exec_transport(
                         rune, send_r, recv_w, (send_w, recv_r)))
    os.close(send_r)
    os.close(recv_w)
    return MigrationSession("sender", send_w, recv_r, supervisor, rune)


class MigrationSender(object):

    """
    Sending half of the handshake for a running domain.

    :param ctx: Context.
    :param domid: The domain to migrate.
    :param session: MigrationSession whose config_data is the serialized
            configuration to ship.
    :param domname: Name of the domain, for the rename away; None skips
            the rename.
    """

    def __init__(self, ctx, domid, session, domname=None, debug=False):
        self.ctx = ctx
        self.platform = ctx.platform
        self.domid = domid
        self.session = session
        self.domname = domname
        self.debug = debug
        self.state = SenderState.SEND_CONFIG
        self.suspended = False

    @property
    def away_domname(self):
        return "%s%s" % (self.domname, MIGRATED_AWAY_SUFFIX)

    def _advance(self, expected):
        if self.state != expected:
            raise MigrationError("migration sender: in state %s, expected %s"
                                 % (self.state.value, expected.value))
        self.state = _NEXT_STATE[expected]
        LOG.debug("migration sender: now in state %s", self.state.value)

    def preamble(self):
        """
        Wait for the banner, then send the header and configuration.
        """
        read_fixed_message(self.session.recv_fd, RECEIVER_BANNER, "banner",
                           self.session.rune)
        try:
            savefile.write_config(self.session.send_fd,
                                  self.session.config_data, SENDER_STREAM)
        except OSError as details:
            raise MigrationError("failed to send the domain configuration: "
                                 "%s" % details)

    def _fail(self, state, msg, resume):
        self.state = state
        self.session.close_send()
        self.session.report_transport()
        LOG.error("%s", msg)
        if resume:
            try:
                self.platform.domain_resume(self.domid, suspend_cancel=True)
            except platform.PlatformError as details:
                LOG.error("migration sender: failed to resume: %s", details)
        return EXIT_FAILURE

    def _fail_badly(self, details):
        LOG.error("%s", details)
        self.state = SenderState.FAILED_AFTER_GO
        warning = logging_manager.LoggingFile(level=logging.ERROR,
                                              logger=LOG)
        warning.write(FAILED_BADLY_WARNING)
        warning.flush()
        self.session.close_send()
        self.session.report_transport()
        return EXIT_FAILURE

    def run(self):
        """
        Drive the sender side to completion.

        :return: exit status.
        """
        try:
            self.preamble()
        except MigrationError as details:
            return self._fail(SenderState.FAILED_BEFORE_GO, details, False)

        self._advance(SenderState.SEND_CONFIG)
        try:
            self.platform.domain_suspend(self.domid, self.session.send_fd,
                                         live=True, debug=self.debug)
            self.suspended = True
        except platform.PlatformError as details:
            LOG.error("migration sender: domain suspend failed: %s", details)
            if details.code == platform.ERROR_GUEST_TIMEDOUT:
                return self._fail(SenderState.FAILED_SUSPEND,
                                  "Migration failed, failed to suspend at "
                                  "sender.", False)
            return self._fail(SenderState.FAILED_BEFORE_GO,
                              "Migration failed, resuming at sender.", True)

        try:
            read_fixed_message(self.session.recv_fd, RECEIVER_READY,
                               "ready message", self.session.rune)
            self._advance(SenderState.AWAIT_READY)
            # we are about to give the destination permission to rename
            # and resume, so we must first rename the domain away ourselves
            LOG.info("migration sender: Target has acknowledged transfer.")
            if self.domname:
                self.platform.domain_rename(self.domid, self.domname,
                                            self.away_domname)
            self._advance(SenderState.RENAME)
        except (MigrationError, platform.PlatformError) as details:
            LOG.error("%s", details)
            return self._fail(SenderState.FAILED_BEFORE_GO,
                              "Migration failed, resuming at sender.", True)

        # point of no return: once we have tried to say "go" to the
        # receiver, it is not safe to carry on
        LOG.info("migration sender: Giving target permission to start.")
        try:
            self._advance(SenderState.SEND_GO)
            write_message(self.session.send_fd, PERMISSION_TO_GO,
                          SENDER_STREAM, "GO message")
            read_fixed_message(self.session.recv_fd, RECEIVER_REPORT,
                               "success/failure report message",
                               self.session.rune)
            status = utils_misc.read_exactly(self.session.recv_fd, 1,
                                             ACK_STREAM,
                                             "success/failure status")[0]
        except (MigrationError, utils_misc.ShortReadError,
                OSError) as details:
            return self._fail_badly(details)

        if status:
            LOG.error("migration sender: Target reports startup failure "
                      "(status code %d).", status)
            try:
                read_fixed_message(self.session.recv_fd, PERMISSION_TO_GO,
                                   "permission for sender to resume",
                                   self.session.rune)
            except MigrationError as details:
                return self._fail_badly(details)
            LOG.info("migration sender: Trying to resume at our end.")
            self.state = SenderState.FAILED_AT_TARGET
            try:
                if self.domname:
                    self.platform.domain_rename(self.domid, self.away_domname,
                                                self.domname)
            except platform.PlatformError as details:
                LOG.error("migration sender: failed to rename back: %s",
                          details)
            try:
                self.platform.domain_resume(self.domid, suspend_cancel=True)
                LOG.info("migration sender: Resumed OK.")
            except platform.PlatformError as details:
                LOG.error("migration sender: failed to resume: %s", details)
            LOG.error("Migration failed due to problems at target.")
            return EXIT_FAILURE

        LOG.info("migration sender: Target reports successful startup.")
        self._advance(SenderState.AWAIT_REPORT)
        try:
            self.platform.domain_destroy(self.domid)
        except platform.PlatformError as details:
            LOG.error("migration sender: failed to destroy our copy: %s",
                      details)
        LOG.info("Migration successful.")
        return EXIT_SUCCESS


class MigrationReceiver(object):

    """
    Receiving half of the handshake.

    :param ctx: Context.
    :param send_fd: Descriptor to the sender (our stdout, usually).
    :param recv_fd: Descriptor from the sender (our stdin, usually).
    :param options: Params: debug, daemonize, monitor,
            pause_after_migration, checkpointed_stream, colo_proxy_script.
    """

    def __init__(self, ctx, send_fd, recv_fd, options=None):
        self.ctx = ctx
        self.platform = ctx.platform
        self.send_fd = send_fd
        self.recv_fd = recv_fd
        self.options = Params(options or {})
        self.domid = platform.INVALID_DOMID
        self.checkpointed = self.options.get(
            "checkpointed_stream", platform.CheckpointedStream.NONE)

    def _create_options(self):
        daemonize = self.options.get_boolean("daemonize")
        return Params({
            "debug": self.options.get_boolean("debug"),
            "daemonize": daemonize,
            # a monitor running inline would hold up the handshake
            "monitor": daemonize and self.options.get_boolean("monitor",
                                                              True),
            "paused": True,
            "send_back_fd": self.send_fd,
            "checkpointed_stream": self.checkpointed,
            "colo_proxy_script": self.options.get("colo_proxy_script"),
            "quiet": True,
        })

    @property
    def incoming_name(self):
        if self.ctx.common_domname:
            return "%s--incoming" % self.ctx.common_domname
        return None

    def receive(self):
        """
        Send the banner and bring the incoming domain up paused.

        :raise MigrationError: If the banner cannot be sent.
        :raise DomainCreateError: and friends if the domain cannot be
                created.
        """
        LOG.info("migration target: Ready to receive domain.")
        write_message(self.send_fd, RECEIVER_BANNER, ACK_STREAM, "banner")
        self.domid = lifecycle.create_domain(self.ctx, "migrate",
                                             self.recv_fd,
                                             self._create_options())
        return self.domid

    def _failover(self):
        ha = "COLO" if self.checkpointed == platform.CheckpointedStream.COLO \
            else "Remus"
        # we only get here when the primary has gone away
        LOG.info("migration target: %s Failover for domain %d", ha,
                 self.domid)
        ok = True
        if self.incoming_name:
            try:
                self.platform.domain_rename(self.domid, self.incoming_name,
                                            self.ctx.common_domname)
            except platform.PlatformError as details:
                LOG.error("migration target (%s): Failed to rename domain "
                          "from %s to %s: %s", ha, self.incoming_name,
                          self.ctx.common_domname, details)
                ok = False
        if self.checkpointed == platform.CheckpointedStream.COLO:
            # the guest is already running after a COLO failover
            return EXIT_SUCCESS if ok else EXIT_FAILURE
        try:
            self.platform.domain_unpause(self.domid)
        except platform.PlatformError as details:
            LOG.error("migration target (%s): Failed to unpause domain %s "
                      "(id: %d): %s", ha, self.ctx.common_domname,
                      self.domid, details)
            return EXIT_FAILURE
        return EXIT_SUCCESS

    def _start_domain(self):
        """
        Wait for permission, then start our copy.

        :return: 0 on success, else a platform error code.
        """
        try:
            read_fixed_message(self.recv_fd, PERMISSION_TO_GO, "GO message")
        except MigrationError as details:
            LOG.error("%s", details)
            return platform.ERROR_FAIL
        LOG.info("migration target: Got permission, starting domain.")
        try:
            if self.incoming_name:
                self.platform.domain_rename(self.domid, self.incoming_name,
                                            self.ctx.common_domname)
            if not self.options.get_boolean("pause_after_migration"):
                self.platform.domain_unpause(self.domid)
        except platform.PlatformError as details:
            LOG.error("migration target: %s", details)
            return details.code or platform.ERROR_FAIL
        LOG.info("migration target: Domain started successsfully.")
        return 0

    def run(self):
        """
        Drive the receiver side to completion.

        :return: exit status.
        """
        try:
            self.receive()
        except MigrationError as details:
            LOG.error("%s", details)
            return EXIT_FAILURE
        except (lifecycle.DomainCreateError, savefile.SaveFileError,
                domain_config.DomainConfigError, platform.PlatformError,
                utils_lock.LockError, utils_child.ChildError,
                OSError) as details:
            LOG.error("migration target: Domain creation failed (%s).",
                      details)
            return EXIT_FAILURE

        if self.checkpointed != platform.CheckpointedStream.NONE:
            return self._failover()

        LOG.info("migration target: Transfer complete, requesting "
                 "permission to start domain.")
        try:
            write_message(self.send_fd, RECEIVER_READY, ACK_STREAM,
                          "ready message")
        except MigrationError as details:
            LOG.error("%s", details)
            return EXIT_FAILURE

        rc = self._start_domain()

        try:
            write_message(self.send_fd, RECEIVER_REPORT, ACK_STREAM,
                          "success/failure report")
            write_message(self.send_fd, bytes([-rc & 0xff]), ACK_STREAM,
                          "success/failure code")
        except MigrationError as details:
            LOG.error("%s", details)
            return EXIT_FAILURE

        if rc:
            LOG.error("migration target: Failure, destroying our copy.")
            try:
                self.platform.domain_destroy(self.domid)
            except platform.PlatformError as details:
                LOG.error("migration target: Failed to destroy our copy "
                          "(%s).", details)
                return EXIT_FAILURE
            LOG.info("migration target: Cleanup OK, granting sender "
                     "permission to resume.")
            try:
                write_message(self.send_fd, PERMISSION_TO_GO, ACK_STREAM,
                              "permission to sender to have domain back")
            except MigrationError as details:
                LOG.error("%s", details)
                return EXIT_FAILURE
        return EXIT_SUCCESS


def _ignore_sigpipe():
    """
    Ignore SIGPIPE so a dead peer shows up as EPIPE.

    :return: the previous handler, for _restore_sigpipe().
    """
    return signal.signal(signal.SIGPIPE, signal.SIG_IGN)


def _restore_sigpipe(handler):
    if handler is None:
        handler = signal.SIG_DFL
    signal.signal(signal.SIGPIPE, handler)


def migrate_send(ctx, domid, rune, options=None):
    """
    Migrate domid through the transport started by rune.

    :param options: Params: debug, config_file (override configuration).
    :return: exit status.
    """
    options = Params(options or {})
    try:
        config, config_data = save.prepare_config_data(
            ctx, domid, options.get("config_file"))
    except save.ConfigUnavailableError as details:
        LOG.error("%s", details)
        LOG.error("No config file stored for running domain and none "
                  "supplied - cannot migrate.")
        return EXIT_FAILURE
    if not ctx.common_domname:
        ctx.common_domname = config.name

    session = create_transport(ctx.supervisor, rune)
    old_handler = _ignore_sigpipe()
    session.config_data = config_data
    sender = MigrationSender(ctx, domid, session, ctx.common_domname,
                             options.get_boolean("debug"))
    try:
        return sender.run()
    finally:
        session.close()
        _restore_sigpipe(old_handler)


def migrate_receive(ctx, send_fd=1, recv_fd=0, options=None):
    """
    Receive a migrating domain over send_fd/recv_fd.

    :return: exit status.
    """
    old_handler = _ignore_sigpipe()
    try:
        return MigrationReceiver(ctx, send_fd, recv_fd, options).run()
    finally:
        _restore_sigpipe(old_handler)


def replicate_send(ctx, domid, rune=None, options=None):
    """
    Start checkpointed replication of domid to a backup host.

    The platform keeps checkpointing until replication fails or the
    primary goes away. If the primary was destroyed, the backup has taken
    over and that is success; otherwise the primary is resumed (unless it
    did not respond to suspend) and replication has failed.

    :param rune: Transport command; ignored in blackhole mode.
    :param options: Params: interval, allow_unsafe, blackhole,
            compression, netbuf, netbufscript, diskbuf, colo.
    :raise ValueError: For options COLO cannot be combined with.
    :return: exit status.
    """
    options = Params(options or {})
    info = platform.RemusInfo(
        interval=options.get_numeric("interval", 0),
        allow_unsafe=options.get("allow_unsafe"),
        blackhole=options.get_boolean("blackhole"),
        compression=options.get("compression"),
        netbuf=options.get("netbuf"),
        netbufscript=options.get("netbufscript"),
        diskbuf=options.get("diskbuf"),
        colo=options.get_boolean("colo"))
    if not info.colo and not info.interval:
        info.interval = defaults.REMUS_DEFAULT_INTERVAL
    if info.colo:
        if (info.interval or info.blackhole or info.netbuf is not None or
                info.diskbuf is not None):
            raise ValueError("option colo is conflict with interval, "
                             "diskbuf, netbuf or blackhole")
        if info.compression is None:
            LOG.warning("COLO can't be used with memory compression. "
                        "Disable memory checkpoint compression now...")
            info.compression = False
    ha = "COLO" if info.colo else "Remus"

    old_handler = signal.getsignal(signal.SIGPIPE)
    if info.blackhole:
        session = MigrationSession("sender",
                                   os.open(os.devnull, os.O_RDWR), -1)
    else:
        try:
            _, config_data = save.prepare_config_data(ctx, domid)
        except save.ConfigUnavailableError as details:
            LOG.error("%s", details)
            LOG.error("No config file stored for running domain and none "
                      "supplied - cannot start remus.")
            return EXIT_FAILURE
        session = create_transport(ctx.supervisor, rune)
        old_handler = _ignore_sigpipe()
        session.config_data = config_data
        try:
            MigrationSender(ctx, domid, session).preamble()
        except MigrationError as details:
            LOG.error("%s", details)
            session.close()
            _restore_sigpipe(old_handler)
            return EXIT_FAILURE

    try:
        # point of no return
        rc = 0
        try:
            ctx.platform.domain_remus_start(info, domid, session.send_fd,
                                            session.recv_fd)
        except platform.PlatformError as details:
            rc = details.code
            LOG.error("%s: %s", ha, details)

        # the operator may have destroyed the primary to force failover
        try:
            ctx.platform.domain_info(domid)
        except platform.PlatformError:
            LOG.info("%s: Primary domain has been destroyed.", ha)
            return EXIT_SUCCESS

        if rc == platform.ERROR_GUEST_TIMEDOUT:
            LOG.error("Failed to suspend domain at primary.")
        else:
            LOG.error("%s: Backup failed? resuming domain at primary.", ha)
            try:
                ctx.platform.domain_resume(domid, suspend_cancel=True)
            except platform.PlatformError as details:
                LOG.error("failed to resume domain %d: %s", domid, details)
        return EXIT_FAILURE
    finally:
        session.close()
        _restore_sigpipe(old_handler)
