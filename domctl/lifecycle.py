"""
Domain bring-up and the restart-on-shutdown loop.

Every way of starting a domain (fresh create, restore from a save file,
incoming migration) goes through LifecycleController. It brings the
domain up under the host-wide lock, then optionally keeps watching it
and applies the configured action when the guest shuts down.
"""

import enum
import logging
import os
import sys
import time
import uuid

from avocado.utils import genio
from avocado.utils import path as utils_path

from domctl import domain_config
from domctl import platform
from domctl import savefile
from domctl import utils_child
from domctl import utils_misc
from domctl.platform import EventType, ShutdownReason
from domctl.domain_config import ShutdownAction
from domctl.utils_params import Params

LOG = logging.getLogger(__name__)

MODES = ('create', 'restore', 'migrate')

# Userdata key under which config_update stores a configuration
USERDATA_KEY = "xl"

MIGRATION_STREAM_SOURCE = "<incoming migration stream>"

PRESERVE_SUFFIX_FORMAT = "-%Y%m%dT%H%MZ"


class DomainCreateError(Exception):

    def __init__(self, msg):
        Exception.__init__(self, msg)
        self.msg = msg

    def __str__(self):
        return self.msg


class MemoryReclamationFailure(DomainCreateError):

    def __init__(self, name):
        DomainCreateError.__init__(self, "failed to free memory for the "
                                         "domain %s" % name)
        self.name = name


class ConfigMissingError(DomainCreateError):

    def __init__(self, source):
        DomainCreateError.__init__(self, "Config file not specified and none "
                                         "in save file %s" % source)
        self.source = source


class PreserveError(DomainCreateError):

    def __init__(self, domid, name):
        DomainCreateError.__init__(self, "failed to preserve domain %d %s, "
                                         "leaving it in place" % (domid, name))
        self.domid = domid
        self.name = name


class ControllerState(enum.Enum):
    STARTING = "starting"
    CREATED = "created"
    RUNNING = "running"
    RESTARTING = "restarting"
    TERMINAL = "terminal"


class RestartDecision(enum.Enum):
    NONE = 0
    NORMAL = 1
    RENAME = 2
    SOFT_RESET = 3


REASON_OPTIONS = {
    ShutdownReason.POWEROFF: 'on_poweroff',
    ShutdownReason.REBOOT: 'on_reboot',
    ShutdownReason.CRASH: 'on_crash',
    ShutdownReason.WATCHDOG: 'on_watchdog',
    ShutdownReason.SOFT_RESET: 'on_soft_reset',
}

_COREDUMP_COLLAPSE = {
    ShutdownAction.COREDUMP_DESTROY: ShutdownAction.DESTROY,
    ShutdownAction.COREDUMP_RESTART: ShutdownAction.RESTART,
}

_DECISIONS = {
    ShutdownAction.PRESERVE: RestartDecision.NONE,
    ShutdownAction.DESTROY: RestartDecision.NONE,
    ShutdownAction.RESTART: RestartDecision.NORMAL,
    ShutdownAction.RESTART_RENAME: RestartDecision.RENAME,
    ShutdownAction.SOFT_RESET: RestartDecision.SOFT_RESET,
}


def shutdown_action(reason, config):
    """
    Look up the configured action for a shutdown reason code.

    :return: the ShutdownAction, DESTROY for an unknown reason, or None
             for a suspend (which needs no action).
    """
    try:
        reason = ShutdownReason(reason)
    except ValueError:
        LOG.info("Unknown shutdown reason code %s. Destroying domain.",
                 reason)
        return ShutdownAction.DESTROY
    if reason == ShutdownReason.SUSPEND:
        return None
    return config.actions[REASON_OPTIONS[reason]]


def decide_restart(reason, config):
    """
    What happens to a domain that shut down for reason, given config.

    Pure: nothing is done to any domain.
    """
    action = shutdown_action(reason, config)
    if action is None:
        return RestartDecision.NONE
    return _DECISIONS[_COREDUMP_COLLAPSE.get(action, action)]


def reload_domain_config(ctx, domid, config):
    """
    Pick the configuration the next incarnation of domid starts with.

    A configuration stored with config_update wins (and is consumed);
    then whatever the platform reports the domain is running with;
    failing both, config itself.
    """
    try:
        data = ctx.platform.userdata_retrieve(domid, USERDATA_KEY)
    except platform.PlatformError as details:
        LOG.info("\"%s\" configuration found but failed to load: %s",
                 USERDATA_KEY, details)
        data = None
    if data:
        LOG.info("\"%s\" configuration found, using it", USERDATA_KEY)
        try:
            new_config = domain_config.DomainConfig.from_legacy(data,
                                                                "<updated>")
        except domain_config.DomainConfigError as details:
            LOG.error("%s", details)
        else:
            try:
                ctx.platform.userdata_unlink(domid, USERDATA_KEY)
            except platform.PlatformError as details:
                LOG.warning("failed to remove the stored configuration: %s",
                            details)
            return new_config

    try:
        return ctx.platform.retrieve_domain_configuration(domid)
    except platform.PlatformError as details:
        LOG.info("failed to retrieve guest configuration (rc=%d). "
                 "reusing old configuration", details.code)
        return config


def _dump_core(ctx, domid, config):
    corefile = os.path.join(ctx.dump_dir, config.name or "%d" % domid)
    LOG.info("dumping core to %s", corefile)
    try:
        utils_path.init_dir(ctx.dump_dir)
        ctx.platform.domain_core_dump(domid, corefile)
    except (OSError, platform.PlatformError) as details:
        # continue on failure, the domain is going away regardless
        LOG.info("core dump failed: %s", details)


def handle_shutdown_event(ctx, domid, event, config):
    """
    Apply the configured action to a domain that shut down.

    :param ctx: Context.
    :param domid: The domain that shut down.
    :param event: Its DOMAIN_SHUTDOWN DomainEvent.
    :param config: The DomainConfig it runs with.
    :return: (RestartDecision, domid, config). domid is INVALID_DOMID if
             the domain was destroyed; config is the one to restart with.
    """
    reason = event.shutdown_reason
    action = shutdown_action(reason, config)
    if action is None:
        LOG.info("Domain has suspended.")
        return RestartDecision.NONE, domid, config

    LOG.info("Action for shutdown reason code %s is %s", reason,
             action.value)

    if action in _COREDUMP_COLLAPSE:
        _dump_core(ctx, domid, config)
        action = _COREDUMP_COLLAPSE[action]

    decision = _DECISIONS[action]
    if action in (ShutdownAction.RESTART, ShutdownAction.RESTART_RENAME,
                  ShutdownAction.SOFT_RESET):
        config = reload_domain_config(ctx, domid, config)
    if action in (ShutdownAction.RESTART, ShutdownAction.DESTROY):
        LOG.info("Domain %d needs to be cleaned up: destroying the domain",
                 domid)
        try:
            ctx.platform.domain_destroy(domid)
        except platform.PlatformError as details:
            LOG.error("failed to destroy domain %d: %s", domid, details)
        domid = platform.INVALID_DOMID
    return decision, domid, config


def preserve_domain(ctx, domid, config):
    """
    Keep the dead domain around under a time-stamped name and a new UUID.

    :return: True on success.
    """
    suffix = time.strftime(PRESERVE_SUFFIX_FORMAT, time.gmtime())
    new_uuid = str(uuid.uuid4())
    LOG.info("Preserving domain %d %s with suffix%s", domid, config.name,
             suffix)
    try:
        ctx.platform.domain_preserve(domid, config, suffix, new_uuid)
    except platform.PlatformError as details:
        LOG.error("failed to preserve domain %d: %s", domid, details)
        return False
    return True


class RestoreSource(object):

    """
    Where a restored domain's state stream comes from.

    :param fd: Descriptor positioned at the platform state stream.
    :param name: Name of the stream, for messages.
    :param header: The SaveFileHeader read from fd.
    :param send_back_fd: Acknowledgement channel for checkpointed streams.
    :param owned: Whether fd is ours to close.
    """

    def __init__(self, fd, name, header, send_back_fd=-1, owned=False,
                 checkpointed_stream=platform.CheckpointedStream.NONE,
                 colo_proxy_script=None):
        self.fd = fd
        self.name = name
        self.header = header
        self.send_back_fd = send_back_fd
        self.owned = owned
        self.checkpointed_stream = checkpointed_stream
        self.colo_proxy_script = colo_proxy_script

    def params(self):
        return platform.RestoreParams(self.header.stream_version,
                                      self.checkpointed_stream,
                                      self.colo_proxy_script)

    def close(self):
        if self.owned and self.fd >= 0:
            try:
                os.close(self.fd)
            except OSError as details:
                LOG.error("Failed to close restoring file, fd %d, errno %d",
                          self.fd, details.errno)
        self.fd = -1


class LifecycleController(object):

    """
    Brings one domain up and, when monitoring, keeps it going.

    :param ctx: Context.
    :param config: DomainConfig to start from.
    :param options: Params with the booleans paused, daemonize, monitor,
            vnc, vncautopass and console_autoconnect, and an optional
            pidfile for the monitoring daemon.
    :param restore: RestoreSource when restoring, None to create.
    """

    def __init__(self, ctx, config, options=None, restore=None):
        self.ctx = ctx
        self.platform = ctx.platform
        self.config = config
        self.options = Params(options or {})
        self.restore = restore
        self.state = ControllerState.STARTING
        self.domid = platform.INVALID_DOMID
        self.soft_reset_domid = platform.INVALID_DOMID
        self.paused = self.options.get_boolean("paused")
        self.console_autoconnect = self.options.get_boolean(
            "console_autoconnect")
        self.in_daemon = False
        self._death_handle = None
        self._disk_handles = []
        self._notify_fds = None

    #
    # Bring-up
    #
    def _console_ready(self, domid):
        supervisor = self.ctx.supervisor
        supervisor.reap_if_running(utils_child.Role.CONSOLE)
        notify_fd = self._notify_fds[1]
        supervisor.spawn(utils_child.Role.CONSOLE,
                         lambda: utils_child.exec_console(self.platform,
                                                          domid, notify_fd))

    def _create(self, console_ready):
        if self.restore is not None:
            restore, self.restore = self.restore, None
            try:
                # later restarts create the domain afresh
                return self.platform.domain_create_restore(
                    self.config, restore.fd, restore.send_back_fd,
                    restore.params(), console_ready)
            finally:
                restore.close()
        if self.soft_reset_domid != platform.INVALID_DOMID:
            domid, self.soft_reset_domid = (self.soft_reset_domid,
                                            platform.INVALID_DOMID)
            try:
                self.platform.domain_soft_reset(self.config, domid,
                                                console_ready)
            except platform.PlatformError as details:
                details.domid = domid
                raise
            return domid
        return self.platform.domain_create_new(self.config, console_ready)

    def bring_up(self):
        """
        Perform the single bring-up call under the host-wide lock.

        :raise MemoryReclamationFailure: If memory could not be freed.
        :raise DomainCreateError: If the domain is already up.
        :raise PlatformError: If the platform failed to build the domain;
                any domain it left behind has been destroyed.
        """
        if self.domid != platform.INVALID_DOMID:
            raise DomainCreateError("domain %s is already up as %d"
                                    % (self.config.name, self.domid))
        self.state = ControllerState.STARTING
        console_ready = None
        if self.console_autoconnect:
            self._notify_fds = os.pipe()
            console_ready = self._console_ready
        try:
            with self.ctx.lock:
                if self.soft_reset_domid == platform.INVALID_DOMID:
                    if not self.ctx.reclaimer.ensure_capacity(
                            self.config.build_info):
                        raise MemoryReclamationFailure(self.config.name)
                self.domid = self._create(console_ready)
        except (platform.PlatformError, DomainCreateError) as details:
            self._close_notify()
            domid = getattr(details, "domid", platform.INVALID_DOMID)
            if platform.domid_valid_guest(domid):
                try:
                    self.platform.domain_destroy(domid)
                except platform.PlatformError as err:
                    LOG.error("failed to destroy domain %d: %s", domid, err)
            raise
        self.state = ControllerState.CREATED
        return self.domid

    def _close_notify(self):
        if self._notify_fds:
            for fd in self._notify_fds:
                utils_misc.close_quietly(fd)
            self._notify_fds = None

    def _await_console(self):
        """
        Wait for the console client to say it is attached.

        Only a minor annoyance if it does not show up, so errors are
        warnings.
        """
        notify_r, notify_w = self._notify_fds
        if self.ctx.supervisor.child_pid(utils_child.Role.CONSOLE) is None:
            self._close_notify()
            return
        # the client holds the only write end now, so its death is EOF
        utils_misc.close_quietly(notify_w)
        self._notify_fds = (notify_r, -1)
        try:
            data = utils_misc.read_exactly(notify_r, 1, "console notify",
                                           "notification")
            if data != b"\0":
                LOG.warning("Got unexpected response from console client: "
                            "%#x", data[0])
        except utils_misc.ShortReadError:
            LOG.warning("Got EOF from console client notification fd")
        except OSError as details:
            LOG.warning("Failed to get notification from console client: "
                        "%s", details)
        self._close_notify()

    def start(self):
        """
        Finish bring-up: wait for the console, then unpause.
        """
        if self._notify_fds:
            self._await_console()
        if not self.paused:
            try:
                self.platform.domain_unpause(self.domid)
            except platform.PlatformError as details:
                LOG.error("failed to unpause domain %d: %s", self.domid,
                          details)
        self.state = ControllerState.RUNNING

    #
    # Monitoring
    #
    def _spawn_vncviewer(self):
        supervisor = self.ctx.supervisor
        supervisor.reap_if_running(utils_child.Role.VNCVIEWER)
        domid = self.domid
        autopass = self.options.get_boolean("vncautopass")
        supervisor.spawn(utils_child.Role.VNCVIEWER,
                         lambda: utils_child.exec_vncviewer(self.platform,
                                                            domid, autopass))

    def _enable_watches(self):
        self._death_handle = self.platform.evenable_domain_death(self.domid)
        for disk in self.config.disks:
            if disk.removable:
                self._disk_handles.append(
                    self.platform.evenable_disk_eject(self.domid, disk.vdev))

    def _disable_watches(self):
        if self._death_handle is not None:
            self.platform.evdisable_domain_death(self._death_handle)
            self._death_handle = None
        for handle in self._disk_handles:
            self.platform.evdisable_disk_eject(handle)
        self._disk_handles = []

    def next_event(self):
        """
        Wait for the next event about our domain.

        Events about other domains should never arrive; they are logged
        and dropped.
        """
        while True:
            try:
                event = self.platform.event_wait()
            except platform.PlatformError as details:
                LOG.error("Domain %d, failed to get event, quitting: %s",
                          self.domid, details)
                raise
            if event.domid != self.domid:
                LOG.error("INTERNAL PROBLEM - ignoring unexpected event for "
                          "domain %d (expected %d): event=%s", event.domid,
                          self.domid, event.to_json())
                continue
            return event

    def wait_for_death(self):
        """
        Process events until the domain needs restarting or is gone.

        :raise PreserveError: If a rename-restart could not preserve the
                old domain; it is left in place.
        :return: the RestartDecision; NONE means stop monitoring.
        """
        LOG.info("Waiting for domain %s (domid %d) to die [pid %d]",
                 self.config.name, self.domid, os.getpid())
        self._enable_watches()
        while True:
            event = self.next_event()
            if event.type == EventType.DOMAIN_SHUTDOWN:
                LOG.info("Domain %d has shut down, reason code %s", self.domid,
                         event.shutdown_reason)
                return self._handle_shutdown(event)
            if event.type == EventType.DOMAIN_DEATH:
                LOG.info("Domain %d has been destroyed.", self.domid)
                return RestartDecision.NONE
            if event.type == EventType.DISK_EJECT:
                try:
                    self.platform.cdrom_insert(self.domid, event.disk)
                except platform.PlatformError as details:
                    LOG.warning("failed to re-insert ejected media: %s",
                                details)
                continue
            LOG.warning("warning, got unexpected event type %s, event=%s",
                        event.type, event.to_json())

    def handle_shutdown_event(self, event):
        """
        Apply the restart policy to a shutdown of our domain.

        :return: the RestartDecision.
        """
        old_domid = self.domid
        decision, self.domid, self.config = handle_shutdown_event(
            self.ctx, self.domid, event, self.config)
        if decision == RestartDecision.SOFT_RESET:
            self.soft_reset_domid = old_domid
            self.domid = platform.INVALID_DOMID
        return decision

    def _handle_shutdown(self, event):
        decision = self.handle_shutdown_event(event)
        if decision == RestartDecision.RENAME:
            preserved = preserve_domain(self.ctx, self.domid, self.config)
            # the old domain is no longer the one we are concerned with
            old_domid, self.domid = self.domid, platform.INVALID_DOMID
            if not preserved:
                raise PreserveError(old_domid, self.config.name)
        return decision

    def _drain_events(self):
        while True:
            try:
                event = self.platform.event_check()
            except platform.PlatformError as details:
                LOG.warning("warning, event check (cleanup) failed: %s",
                            details)
                return
            if event is None:
                return
            LOG.debug("discarding event %s", event.to_json())

    def prepare_restart(self):
        """
        Get ready to bring the domain up again.
        """
        self.state = ControllerState.RESTARTING
        self._disable_watches()
        self._drain_events()
        # stdin/out are disconnected by the time a guest reboots
        self.console_autoconnect = False
        # some settings only make sense on first boot
        self.paused = False
        common_domname = self.ctx.common_domname
        if common_domname and self.config.name != common_domname:
            self.config = self.config.renamed(common_domname)
        LOG.info("Done. Rebooting now")
        time.sleep(self.ctx.restart_delay)

    def run(self):
        """
        Bring the domain up and, if asked, monitor it until it goes away.

        When daemonizing, the calling process gets the domid back as soon
        as the daemon is set up, while the daemon itself returns from
        run() (with in_daemon set) only once monitoring ends.

        :return: the domid of the domain brought up last.
        """
        need_daemon = self.options.get_boolean("daemonize")
        monitor = need_daemon or self.options.get_boolean("monitor")
        try:
            while True:
                self.bring_up()
                self.start()
                if not monitor:
                    return self.domid
                if self.options.get_boolean("vnc"):
                    self._spawn_vncviewer()
                if need_daemon:
                    name = "xl-%s" % self.config.name
                    if self.ctx.supervisor.daemonize(
                            name, self.options.get("pidfile")):
                        return self.domid
                    need_daemon = False
                    self.in_daemon = True
                decision = self.wait_for_death()
                if decision == RestartDecision.NONE:
                    LOG.info("Done. Exiting now")
                    self.state = ControllerState.TERMINAL
                    return self.domid
                self.prepare_restart()
        finally:
            if self.restore is not None:
                self.restore.close()
            self._close_notify()
            self.ctx.supervisor.reap_if_running(utils_child.Role.CONSOLE)
            if self._death_handle is not None or self._disk_handles:
                try:
                    self._disable_watches()
                except platform.PlatformError as details:
                    LOG.warning("failed to disable event watches: %s",
                                details)


def _read_config_file(config_file):
    # /dev/null stands for "everything comes from extra_config"
    if config_file == os.devnull:
        return ""
    try:
        return genio.read_file(config_file)
    except (IOError, OSError) as details:
        raise DomainCreateError("Failed to read config file: %s: %s"
                                % (config_file, details))


def _open_restore(ctx, mode, source, options):
    if mode == "restore":
        try:
            fd = os.open(source, os.O_RDONLY | os.O_CLOEXEC)
        except OSError as details:
            raise DomainCreateError("Can't open restore file: %s"
                                    % details.strerror)
        name, send_back_fd, owned = source, -1, True
    else:
        fd, name, owned = source, MIGRATION_STREAM_SOURCE, False
        send_back_fd = options.get_numeric("send_back_fd", -1)
    try:
        header, data = savefile.read_config(fd, name)
    except savefile.SaveFileError:
        if owned:
            os.close(fd)
        raise
    restore = RestoreSource(
        fd, name, header, send_back_fd, owned,
        options.get("checkpointed_stream", platform.CheckpointedStream.NONE),
        options.get("colo_proxy_script"))
    return restore, data


def create_domain(ctx, mode, source, options=None):
    """
    Create, restore or receive a domain.

    :param ctx: Context.
    :param mode: "create" (source is a configuration file), "restore"
            (source is a save file) or "migrate" (source is the
            descriptor of an incoming migration stream).
    :param options: Params. Besides the LifecycleController ones:
            config_file (overrides the saved configuration),
            extra_config (key=value lines, create only), send_back_fd,
            checkpointed_stream and colo_proxy_script (migrate), debug,
            dryrun and quiet.
    :raise DomainCreateError: If there is nothing to create the domain from,
            or not enough memory.
    :raise SaveFileError: If the save stream is bad.
    :raise PlatformError: If the platform failed.
    :return: the new domid (INVALID_DOMID for a dry run).
    """
    if mode not in MODES:
        raise ValueError("unknown create mode %s" % mode)
    options = Params(options or {})
    restore = None
    data = None
    config_file = options.get("config_file")
    if mode == "create":
        config_file = source

    if mode != "create":
        restore, data = _open_restore(ctx, mode, source, options)

    try:
        if config_file:
            text = _read_config_file(config_file)
            extra = options.get("extra_config") if mode == "create" else None
            if not options.get_boolean("quiet"):
                LOG.info("Parsing config from %s", config_file)
            config = domain_config.DomainConfig.from_legacy(
                text, config_file, extra)
        elif not data:
            raise ConfigMissingError(restore.name)
        else:
            config = domain_config.parse(data, restore.header.config_in_json,
                                         "<saved>")

        if mode == "migrate" and config.name:
            # the domain is received under a temporary name
            ctx.common_domname = config.name
            config = config.renamed("%s--incoming" % config.name)

        if options.get_boolean("debug") or options.get_boolean("dryrun"):
            stream = sys.stdout if options.get_boolean("dryrun") else sys.stderr
            stream.write(config.to_json() + "\n")
            stream.flush()
        if options.get_boolean("dryrun"):
            return platform.INVALID_DOMID

        controller = LifecycleController(ctx, config, options, restore)
        restore = None
    finally:
        if restore is not None:
            restore.close()

    try:
        domid = controller.run()
    except Exception:
        if not controller.in_daemon:
            raise
        LOG.exception("monitoring of domain %s failed", config.name)
        status = 1
    else:
        status = 0
    if controller.in_daemon:
        # the monitoring daemon has nobody to return to
        logging.shutdown()
        os._exit(status)
    return domid


def config_update(ctx, domid, filename, extra_config=None):
    """
    Store a new configuration for the next restart of domid.

    :raise DomainCreateError: If filename cannot be read.
    :raise DomainConfigError: If the configuration does not parse.
    :raise PlatformError: If it cannot be stored.
    :return: the parsed DomainConfig.
    """
    LOG.warning("WARNING: the platform keeps track of domain configuration "
                "changes, avoid using this command when possible")
    text = domain_config.append_extra_config(_read_config_file(filename),
                                             extra_config)
    config = domain_config.DomainConfig.from_legacy(text, filename)
    LOG.info("setting dom%d configuration", domid)
    ctx.platform.userdata_store(domid, USERDATA_KEY, text.encode("utf-8"))
    return config
