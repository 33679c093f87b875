"""
Capability interface to the virtualization platform.

The orchestrator never talks to the hypervisor directly; everything goes
through a Platform object. Concrete bindings subclass Platform and
implement the calls they support.
"""

import enum
import json

INVALID_DOMID = -1

# Platform error codes, as reported by the toolstack library
ERROR_NONSPECIFIC = -1
ERROR_VERSION = -2
ERROR_FAIL = -3
ERROR_NI = -4
ERROR_NOMEM = -5
ERROR_INVAL = -6
ERROR_BADFAIL = -7
ERROR_GUEST_TIMEDOUT = -8
ERROR_TIMEDOUT = -9
ERROR_NOPARAVIRT = -10
ERROR_NOT_READY = -11
ERROR_LOCK_FAIL = -12
ERROR_DOMAIN_NOTFOUND = -18
ERROR_NOTFOUND = -20
ERROR_DOMAIN_DESTROYED = -21


def domid_valid_guest(domid):
    """
    True for a domid naming a guest (not dom0, not the invalid sentinel).
    """
    return domid is not None and domid > 0


class PlatformError(Exception):

    """
    A platform call failed.

    The platform's numeric code is kept verbatim in `code`. A creation
    call that got as far as allocating a domain before failing reports
    it in `domid`, so the caller can clean it up.
    """

    def __init__(self, call, code=ERROR_FAIL, detail=None,
                 domid=INVALID_DOMID):
        Exception.__init__(self, call, code, detail)
        self.call = call
        self.code = code
        self.detail = detail
        self.domid = domid

    def __str__(self):
        msg = "%s failed (rc=%d)" % (self.call, self.code)
        if self.detail:
            msg += ": %s" % self.detail
        return msg


class EventType(enum.Enum):
    DOMAIN_SHUTDOWN = 1
    DOMAIN_DEATH = 2
    DISK_EJECT = 3
    OPERATION_COMPLETE = 4


class ShutdownReason(enum.IntEnum):
    POWEROFF = 0
    REBOOT = 1
    SUSPEND = 2
    CRASH = 3
    WATCHDOG = 4
    SOFT_RESET = 5


class CheckpointedStream(enum.Enum):
    NONE = 0
    REMUS = 1
    COLO = 2


class DomainEvent(object):

    def __init__(self, type, domid, shutdown_reason=None, disk=None):
        self.type = type
        self.domid = domid
        self.shutdown_reason = shutdown_reason
        self.disk = disk

    def to_json(self):
        data = {"type": getattr(self.type, "name", self.type),
                "domid": self.domid}
        if self.shutdown_reason is not None:
            data["shutdown_reason"] = self.shutdown_reason
        if self.disk is not None:
            data["disk"] = self.disk
        return json.dumps(data, sort_keys=True)

    def __repr__(self):
        return "DomainEvent(%s)" % self.to_json()


class RestoreParams(object):

    def __init__(self, stream_version=1,
                 checkpointed_stream=CheckpointedStream.NONE,
                 colo_proxy_script=None):
        self.stream_version = stream_version
        self.checkpointed_stream = checkpointed_stream
        self.colo_proxy_script = colo_proxy_script


class RemusInfo(object):

    """
    Settings for checkpointed replication of a running domain.

    Booleans left at None take the platform default.
    """

    def __init__(self, interval=0, allow_unsafe=None, blackhole=None,
                 compression=None, netbuf=None, netbufscript=None,
                 diskbuf=None, colo=None):
        self.interval = interval
        self.allow_unsafe = allow_unsafe
        self.blackhole = blackhole
        self.compression = compression
        self.netbuf = netbuf
        self.netbufscript = netbufscript
        self.diskbuf = diskbuf
        self.colo = colo


class Platform(object):

    """
    Base class for platform bindings.

    Every call either returns normally or raises PlatformError. Calls a
    binding does not support raise NotImplementedError.
    """

    #
    # Domain bring-up
    #
    def domain_create_new(self, config, console_ready=None):
        """
        Create and build a new domain from config.

        :param config: DomainConfig of the new domain.
        :param console_ready: Callable invoked with the domid once the
                primary console can be attached, or None.
        :return: the new domid.
        """
        raise NotImplementedError

    def domain_create_restore(self, config, restore_fd, send_back_fd,
                              params, console_ready=None):
        """
        Create a domain from the state stream readable on restore_fd.

        The domain is left paused.

        :param send_back_fd: Descriptor for checkpoint acknowledgements, or
                -1 when the stream is not checkpointed.
        :param params: RestoreParams.
        :return: the new domid.
        """
        raise NotImplementedError

    def domain_soft_reset(self, config, domid, console_ready=None):
        """
        Soft-reset the running domain domid in place.
        """
        raise NotImplementedError

    #
    # Running domains
    #
    def domain_suspend(self, domid, fd, live=False, debug=False):
        """
        Write the state of domid to fd. Long running.
        """
        raise NotImplementedError

    def domain_resume(self, domid, suspend_cancel=True):
        raise NotImplementedError

    def domain_destroy(self, domid):
        raise NotImplementedError

    def domain_pause(self, domid):
        raise NotImplementedError

    def domain_unpause(self, domid):
        raise NotImplementedError

    def domain_rename(self, domid, old_name, new_name):
        raise NotImplementedError

    def domain_preserve(self, domid, config, suffix, new_uuid):
        """
        Keep domid around under name + suffix with a new UUID.
        """
        raise NotImplementedError

    def domain_core_dump(self, domid, filename):
        raise NotImplementedError

    def domain_info(self, domid):
        """
        Return basic information about domid.

        :raise PlatformError: with ERROR_DOMAIN_NOTFOUND if it is gone.
        """
        raise NotImplementedError

    def domain_remus_start(self, info, domid, send_fd, recv_fd):
        """
        Run checkpointed replication of domid until it fails or stops.
        """
        raise NotImplementedError

    #
    # Configuration storage
    #
    def retrieve_domain_configuration(self, domid):
        """
        Return the DomainConfig the running domain currently has.
        """
        raise NotImplementedError

    def userdata_retrieve(self, domid, key):
        """
        Return the bytes stored for domid under key, or None.
        """
        raise NotImplementedError

    def userdata_store(self, domid, key, data):
        raise NotImplementedError

    def userdata_unlink(self, domid, key):
        raise NotImplementedError

    #
    # Memory
    #
    def domain_need_memory(self, build_info):
        """
        Return the memory (KiB) a domain with build_info needs.
        """
        raise NotImplementedError

    def get_free_memory(self):
        """
        Return the host free memory in KiB.
        """
        raise NotImplementedError

    def set_memory_target(self, domid, target, relative=False):
        raise NotImplementedError

    def wait_for_memory_target(self, domid, timeout):
        raise NotImplementedError

    def hypervisor_commandline(self):
        return ""

    #
    # Events
    #
    def evenable_domain_death(self, domid):
        """
        Start delivering shutdown and death events for domid.

        :return: a handle for evdisable_domain_death().
        """
        raise NotImplementedError

    def evdisable_domain_death(self, handle):
        raise NotImplementedError

    def evenable_disk_eject(self, domid, vdev):
        raise NotImplementedError

    def evdisable_disk_eject(self, handle):
        raise NotImplementedError

    def event_wait(self):
        """
        Block until the next event is available and return it.
        """
        raise NotImplementedError

    def event_check(self):
        """
        Return the next pending event without blocking, or None.
        """
        raise NotImplementedError

    def cdrom_insert(self, domid, disk):
        raise NotImplementedError

    #
    # Helper programs. These exec and only return on failure.
    #
    def primary_console_exec(self, domid, notify_fd):
        raise NotImplementedError

    def vncviewer_exec(self, domid, autopass):
        raise NotImplementedError
